"""
natspack tool implementations for workflow execution.

- nats: NATS core pub/sub, JetStream consumption and K/V Store operations
"""

from natspack.tools import nats
from natspack.tools.nats import execute_nats_task, execute_nats_task_async

# Tool registry for dynamic lookup
REGISTRY = {
    "nats": nats,
}

__all__ = [
    "nats",
    "execute_nats_task",
    "execute_nats_task_async",
    "REGISTRY",
]
