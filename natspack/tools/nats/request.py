from typing import Any, Callable, Dict, Optional

import nats.errors

from natspack.core.common import parse_duration
from natspack.core.config import Settings
from natspack.core.errors import SerializationError
from natspack.core.logger import setup_logger
from natspack.core.logging_context import LoggingContext
from natspack.tools.nats.produce import require_subject
from natspack.tools.nats.source import resolve_single

logger = setup_logger(__name__, include_location=True)


def request_timeout(fields: Dict[str, Any], settings: Settings) -> float:
    value = fields.get('request_timeout', fields.get('requestTimeout'))
    seconds = parse_duration(value)
    if seconds is None:
        return settings.default_request_timeout
    if seconds <= 0:
        raise ValueError(f"request_timeout must be positive, got {value!r}")
    return seconds


async def execute_request(
    nc,
    fields: Dict[str, Any],
    settings: Settings,
    render: Optional[Callable[[Any], Any]] = None,
) -> Dict[str, Any]:
    """
    Request task: send one message and wait for a single reply.

    No reply within the timeout, or no responders on the subject, yields
    ``response: None`` rather than an error.
    """
    subject = require_subject(fields)
    timeout = request_timeout(fields, settings)
    with LoggingContext(logger, operation='request', subject=subject):
        message = resolve_single(fields.get('from'), render)
        try:
            reply = await nc.request(subject, message.data, timeout=timeout, headers=message.wire_headers())
        except nats.errors.NoRespondersError:
            logger.info(f"NATS: No responders on '{subject}'")
            return {'status': 'success', 'subject': subject, 'response': None}
        except nats.errors.TimeoutError:
            logger.info(f"NATS: No reply on '{subject}' within {timeout}s")
            return {'status': 'success', 'subject': subject, 'response': None}

        try:
            response = reply.data.decode('utf-8')
        except UnicodeDecodeError as e:
            raise SerializationError(
                f"Reply on '{subject}' is not valid UTF-8: {e.reason}",
                subject=subject,
            ) from e
        return {'status': 'success', 'subject': subject, 'response': response}
