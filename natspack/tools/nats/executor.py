"""
NATS tool executor for core pub/sub, JetStream consumption and the K/V store.

Supported operations:
- consume: Bounded pull from a JetStream subject into a JSON Lines file
- produce: Publish one or many records to a subject
- request: Send one record and wait for a single reply
- kv_create_bucket: Create a K/V bucket
- kv_get: Get values from the K/V store
- kv_put: Put values to the K/V store
- kv_delete: Delete keys from the K/V store

Every invocation opens its own connection and closes it before returning,
on success and on error.
"""

import asyncio
import datetime
import uuid
from typing import Any, Callable, Dict, Optional

from jinja2 import Environment

from natspack.core.config import Settings, load_settings
from natspack.core.errors import classify_nats_error
from natspack.core.logger import setup_logger
from natspack.core.render import render_template
from natspack.core.storage import is_storage_uri
from natspack.tools.nats.auth import get_nats_connection_params, resolve_nats_auth
from natspack.tools.nats.connection import nats_connection
from natspack.tools.nats.consume import execute_consume
from natspack.tools.nats.kv import (
    execute_kv_create_bucket,
    execute_kv_delete,
    execute_kv_get,
    execute_kv_put,
)
from natspack.tools.nats.produce import execute_produce
from natspack.tools.nats.request import execute_request

logger = setup_logger(__name__, include_location=True)


OPERATIONS = {
    'consume': execute_consume,
    'produce': execute_produce,
    'request': execute_request,
    'kv_create_bucket': execute_kv_create_bucket,
    'kv_get': execute_kv_get,
    'kv_put': execute_kv_put,
    'kv_delete': execute_kv_delete,
}

# Operations that render each record of a 'from' source on resolution
RECORD_RENDERING_OPERATIONS = ('produce', 'request')

# Keys describing the task itself rather than operation inputs
_TASK_KEYS = ('kind', 'tool', 'task_id', 'task_name')


def render_task_fields(
    task_config: Dict[str, Any],
    context: Dict[str, Any],
    jinja_env: Environment,
    task_with: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Merge and render task fields; task_config wins over task_with.

    A ``from`` map or list is left as-is here. Its records are rendered one at a
    time when the source is resolved.
    """
    merged = dict(task_with or {})
    merged.update({k: v for k, v in task_config.items() if k not in _TASK_KEYS and v is not None})

    fields = {}
    for key, value in merged.items():
        if key == 'from' and not isinstance(value, str):
            fields[key] = value
        else:
            fields[key] = render_template(jinja_env, value, context)
    return fields


def record_renderer(
    raw_from: Any,
    rendered_from: Any,
    jinja_env: Environment,
    context: Dict[str, Any],
) -> Optional[Callable[[Any], Any]]:
    """
    Per-record renderer for a 'from' source, or None when its records are final.

    A string 'from' was already rendered with the other fields, so whatever it
    produced (literal text, or a list or map looked up from the context) is sent
    as-is. Records of a stored file and of an inline map or list are rendered
    one at a time.
    """
    if isinstance(raw_from, str) and not is_storage_uri(rendered_from):
        return None
    return lambda raw: render_template(jinja_env, raw, context)


def _validate_operation(fields: Dict[str, Any]) -> str:
    operation = fields.get('operation')
    if not operation:
        raise ValueError("NATS task requires 'operation' field")
    if operation not in OPERATIONS:
        raise ValueError(
            f"Unknown NATS operation: {operation}. "
            f"Valid operations: {', '.join(OPERATIONS.keys())}"
        )
    return operation


async def execute_nats_task_async(
    task_config: Dict[str, Any],
    context: Dict[str, Any],
    jinja_env: Environment,
    task_with: Optional[Dict[str, Any]] = None,
    log_event_callback: Optional[Callable] = None,
    settings: Optional[Settings] = None,
) -> Dict[str, Any]:
    """
    Execute a NATS tool task on the running event loop.

    Args:
        task_config: Task configuration from DSL
        context: Execution context
        jinja_env: Jinja2 environment
        task_with: Rendered 'with' parameters
        log_event_callback: Optional callback for logging
        settings: Environment settings; loaded fresh when omitted

    Returns:
        Task execution result

    Example playbook usage:
        tool:
          kind: nats
          auth: nats_credential
          operation: produce
          subject: orders.created
          from: "{{ outputs.fetch_orders.uri }}"
    """
    settings = settings or load_settings()
    task_id = task_config.get('task_id') or str(uuid.uuid4())
    task_name = task_config.get('task_name') or 'nats'
    start_time = datetime.datetime.now()

    fields = render_task_fields(task_config, context, jinja_env, task_with)
    operation = _validate_operation(fields)
    conn_params = get_nats_connection_params(resolve_nats_auth(fields, context, settings))

    op_kwargs = {}
    if operation in RECORD_RENDERING_OPERATIONS:
        raw_from = task_config.get('from')
        if raw_from is None:
            raw_from = (task_with or {}).get('from')
        op_kwargs['render'] = record_renderer(raw_from, fields.get('from'), jinja_env, context)

    event_id = None
    if log_event_callback:
        event_id = log_event_callback(
            'task_start', task_id, task_name, 'nats',
            'in_progress', 0, context, None,
            {'operation': operation, 'subject': fields.get('subject')}, None
        )

    try:
        async with nats_connection(conn_params, settings) as nc:
            result = await OPERATIONS[operation](nc, fields, settings, **op_kwargs)
    except Exception as e:
        error = classify_nats_error(e, operation)
        logger.error(f"NATS: {operation} failed: {error.code}: {error.message}")
        if log_event_callback:
            duration = (datetime.datetime.now() - start_time).total_seconds()
            log_event_callback(
                'task_error', task_id, task_name, 'nats',
                'error', duration, context, None,
                {'operation': operation, 'error': error.to_dict()}, event_id
            )
        raise

    if log_event_callback:
        duration = (datetime.datetime.now() - start_time).total_seconds()
        log_event_callback(
            'task_complete', task_id, task_name, 'nats',
            'success', duration, context, result,
            {'operation': operation}, event_id
        )
    return result


def execute_nats_task(
    task_config: Dict[str, Any],
    context: Dict[str, Any],
    jinja_env: Environment,
    task_with: Optional[Dict[str, Any]] = None,
    log_event_callback: Optional[Callable] = None,
    settings: Optional[Settings] = None,
) -> Dict[str, Any]:
    """Synchronous entry point; runs the task on a fresh event loop."""
    return asyncio.run(
        execute_nats_task_async(
            task_config,
            context,
            jinja_env,
            task_with=task_with,
            log_event_callback=log_event_callback,
            settings=settings,
        )
    )
