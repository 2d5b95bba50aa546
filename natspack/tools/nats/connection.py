import os
import tempfile
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import nats
from nats.aio.client import Client as NATS

from natspack.core.config import Settings
from natspack.core.errors import NatsConnectionError
from natspack.core.logger import setup_logger

logger = setup_logger(__name__, include_location=True)


def _is_creds_content(value: str) -> bool:
    return '-----BEGIN' in value or '\n' in value.strip()


def _write_creds_file(content: str) -> str:
    fd, path = tempfile.mkstemp(prefix="natspack-", suffix=".creds")
    with os.fdopen(fd, 'w', encoding='utf-8') as f:
        f.write(content)
    os.chmod(path, 0o600)
    return path


def build_connect_kwargs(conn_params: Dict, settings: Settings, creds_path: Optional[str] = None) -> Dict:
    """Keyword arguments for ``nats.connect`` from resolved connection parameters."""
    url = conn_params['url']
    connect_kwargs = {
        'servers': url if isinstance(url, list) else [u.strip() for u in str(url).split(',') if u.strip()],
        'connect_timeout': settings.connect_timeout,
        'allow_reconnect': settings.allow_reconnect,
    }
    user = conn_params.get('user')
    password = conn_params.get('password')
    token = conn_params.get('token')
    if user and password:
        connect_kwargs['user'] = user
        connect_kwargs['password'] = password
    elif token:
        connect_kwargs['token'] = token
    if creds_path:
        connect_kwargs['user_credentials'] = creds_path
    return connect_kwargs


@asynccontextmanager
async def nats_connection(conn_params: Dict, settings: Settings) -> AsyncIterator[NATS]:
    """
    Connect, yield the client and always close it.

    Connect failures are raised as NatsConnectionError. Inline creds content is
    written to a private temporary file that is removed once the client closes.
    """
    creds = conn_params.get('creds')
    temp_creds = None
    creds_path = None
    if creds:
        if _is_creds_content(str(creds)):
            temp_creds = _write_creds_file(str(creds))
            creds_path = temp_creds
        else:
            creds_path = os.path.expanduser(str(creds))

    nc = None
    try:
        connect_kwargs = build_connect_kwargs(conn_params, settings, creds_path)
        logger.debug(f"NATS: Connecting to {connect_kwargs['servers']}")
        try:
            nc = await nats.connect(**connect_kwargs)
        except Exception as e:
            raise NatsConnectionError(
                f"Failed to connect to NATS at {connect_kwargs['servers']}: {e or type(e).__name__}",
                servers=connect_kwargs['servers'],
                cause=type(e).__name__,
            ) from e
        yield nc
    finally:
        if nc is not None:
            try:
                await nc.close()
            except Exception as e:
                logger.warning(f"NATS: Error closing connection: {e}")
        if temp_creds and os.path.exists(temp_creds):
            os.remove(temp_creds)
