"""
NATS authentication and connection parameter resolution.

This module handles:
- Mapping explicit task fields and ``auth`` references onto connection fields
- Environment fallbacks from Settings
- Connection parameter validation
"""

from typing import Any, Dict, Mapping, Optional

from natspack.core.common import mask_value
from natspack.core.config import Settings
from natspack.core.logger import setup_logger

logger = setup_logger(__name__, include_location=True)

# Accepted field names (task fields or auth payload) -> connection field
FIELD_MAPPING = {
    'nats_url': 'nats_url',
    'url': 'nats_url',
    'server': 'nats_url',
    'servers': 'nats_url',
    'user': 'nats_user',
    'username': 'nats_user',
    'nats_user': 'nats_user',
    'password': 'nats_password',
    'nats_password': 'nats_password',
    'token': 'nats_token',
    'nats_token': 'nats_token',
    'creds': 'nats_creds',
    'credentials_file': 'nats_creds',
    'nats_creds': 'nats_creds',
}


def _lookup_auth(auth_ref: Any, context: Mapping) -> Optional[Dict]:
    if isinstance(auth_ref, Mapping):
        return dict(auth_ref)
    if isinstance(auth_ref, str) and auth_ref.strip():
        credentials = context.get('credentials') or {}
        data = credentials.get(auth_ref.strip()) if isinstance(credentials, Mapping) else None
        if data is None:
            logger.warning(f"NATS: auth reference '{auth_ref}' not found in context credentials")
            return None
        if not isinstance(data, Mapping):
            raise ValueError(f"NATS: credential '{auth_ref}' must be a map, got {type(data).__name__}")
        # Host credential records keep the secret fields under 'data'
        if isinstance(data.get('data'), Mapping):
            return dict(data['data'])
        return dict(data)
    return None


def resolve_nats_auth(task_with: Dict, context: Mapping, settings: Settings) -> Dict:
    """
    Resolve NATS connection fields for a task.

    Precedence: explicit task fields, then the ``auth`` reference (inline map or
    a key of ``context['credentials']``), then environment settings.

    Args:
        task_with: The rendered task fields
        context: The rendering context
        settings: Environment settings

    Returns:
        Dictionary keyed by nats_url, nats_user, nats_password, nats_token, nats_creds
    """
    resolved: Dict[str, Any] = {}

    for key, target in FIELD_MAPPING.items():
        value = task_with.get(key)
        if value is not None and target not in resolved:
            resolved[target] = value

    auth_ref = task_with.get('auth')
    if auth_ref:
        auth_data = _lookup_auth(auth_ref, context)
        if auth_data:
            logger.debug(f"NATS: Using auth with fields: {list(auth_data.keys())}")
            for auth_key, target in FIELD_MAPPING.items():
                if target not in resolved and auth_data.get(auth_key) is not None:
                    resolved[target] = auth_data[auth_key]
                    logger.debug(f"NATS: Mapped {auth_key}={mask_value(auth_key, auth_data[auth_key])} -> {target}")

    fallbacks = {
        'nats_url': settings.nats_url,
        'nats_user': settings.nats_user,
        'nats_password': settings.nats_password,
        'nats_token': settings.nats_token,
        'nats_creds': settings.nats_creds,
    }
    for target, value in fallbacks.items():
        if target not in resolved and value is not None:
            resolved[target] = value
            logger.debug(f"NATS: {target}={mask_value(target, value)} taken from environment")

    return resolved


def get_nats_connection_params(resolved: Dict) -> Dict:
    """
    Extract and validate NATS connection parameters.

    Args:
        resolved: Output of resolve_nats_auth

    Returns:
        Dictionary with connection parameters

    Raises:
        ValueError: If the server URL is missing
    """
    nats_url = resolved.get('nats_url')
    if isinstance(nats_url, (list, tuple)):
        nats_url = [str(u) for u in nats_url if u]
    if not nats_url:
        raise ValueError(
            "NATS URL is not configured. Use `auth: <credential_key>`, "
            "provide `url` in the task configuration or set NATS_URL."
        )

    return {
        'url': nats_url,
        'user': resolved.get('nats_user'),
        'password': resolved.get('nats_password'),
        'token': resolved.get('nats_token'),
        'creds': resolved.get('nats_creds'),
    }
