"""
natspack NATS tool for core pub/sub, JetStream consumption and the K/V store.

Operations:
- consume: Bounded pull from a JetStream subject (durable or ephemeral)
- produce: Publish records from an inline map, a list or a stored file
- request: Request/reply with a single record
- kv_create_bucket, kv_get, kv_put, kv_delete: Key/Value store

Triggers:
- PollingTrigger: one bounded consume per evaluation
- RealtimeTrigger: unbounded consumption with cooperative stop

Auth pattern:
  auth: nats_credential_name

Credential fields:
  - url: NATS server URL (e.g., nats://host:4222)
  - user: (optional) Username
  - password: (optional) Password
  - token: (optional) Auth token
  - creds: (optional) Path to a .creds file, or its content
"""

from .executor import OPERATIONS, execute_nats_task, execute_nats_task_async
from .trigger import PollingTrigger, RealtimeTrigger

__all__ = [
    "OPERATIONS",
    "execute_nats_task",
    "execute_nats_task_async",
    "PollingTrigger",
    "RealtimeTrigger",
]
