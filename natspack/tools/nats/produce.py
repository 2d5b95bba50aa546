from typing import Any, Callable, Dict, Optional

from natspack.core.config import Settings
from natspack.core.logger import setup_logger
from natspack.core.logging_context import LoggingContext
from natspack.tools.nats.source import iter_messages

logger = setup_logger(__name__, include_location=True)


def require_subject(fields: Dict[str, Any]) -> str:
    subject = fields.get('subject')
    if subject is None or not str(subject).strip():
        raise ValueError("NATS task requires a non-empty 'subject'")
    return str(subject).strip()


async def execute_produce(
    nc,
    fields: Dict[str, Any],
    settings: Settings,
    render: Optional[Callable[[Any], Any]] = None,
) -> Dict[str, Any]:
    """
    Produce task: publish every record of ``from`` to ``subject``.

    Records are resolved lazily, so file sources are streamed. The connection
    is flushed once after the last publish.
    """
    subject = require_subject(fields)
    with LoggingContext(logger, operation='produce', subject=subject):
        count = 0
        for message in iter_messages(fields.get('from'), render):
            await nc.publish(subject, message.data, headers=message.wire_headers())
            count += 1
        await nc.flush()
        logger.success(f"NATS: Published {count} messages to '{subject}'")
        return {
            'status': 'success',
            'subject': subject,
            'messages_count': count,
        }
