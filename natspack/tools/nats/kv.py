"""
JetStream Key/Value operations.

Values are stored as compact JSON. Reads decode JSON and fall back to the raw
string for values written by other clients.
"""

import json
from typing import Any, Dict, List, Mapping, Optional, Tuple

import nats.js.errors
from nats.js import api

from natspack.core.common import compact_json
from natspack.core.config import Settings
from natspack.core.errors import NotAMap, shape_of
from natspack.core.logger import setup_logger
from natspack.core.logging_context import LoggingContext

logger = setup_logger(__name__, include_location=True)


def _require(fields: Dict[str, Any], name: str) -> str:
    value = fields.get(name)
    if value is None or not str(value).strip():
        raise ValueError(f"NATS KV task requires a non-empty '{name}'")
    return str(value).strip()


def _optional_int(fields: Dict[str, Any], *names: str) -> Optional[int]:
    for name in names:
        value = fields.get(name)
        if value is not None and value != '':
            return int(value)
    return None


def _pairs(value: Any, field_name: str) -> List[Tuple[str, Any]]:
    """Flatten a map, or a list of single-key maps, into ordered (key, value) pairs."""
    if isinstance(value, Mapping):
        return [(str(k), v) for k, v in value.items()]
    if isinstance(value, (list, tuple)):
        pairs = []
        for index, item in enumerate(value):
            if not isinstance(item, Mapping):
                raise NotAMap(
                    f"'{field_name}' element at index {index} must be a map, got {shape_of(item)}",
                    shape=shape_of(item),
                    index=index,
                )
            pairs.extend((str(k), v) for k, v in item.items())
        return pairs
    raise NotAMap(f"'{field_name}' must be a map or a list of maps, got {shape_of(value)}", shape=shape_of(value))


def _keys(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [k.strip() for k in value.split(',') if k.strip()]
    if isinstance(value, (list, tuple)):
        return [str(k) for k in value]
    raise ValueError(f"'keys' must be a string or a list, got {shape_of(value)}")


def decode_value(raw: Optional[bytes]) -> Any:
    if raw is None:
        return None
    text = raw.decode('utf-8', errors='replace')
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


async def execute_kv_create_bucket(nc, fields: Dict[str, Any], settings: Settings) -> Dict[str, Any]:
    """Create (or open an identical) Key/Value bucket and report its status."""
    name = _require(fields, 'name')
    history = _optional_int(fields, 'history_per_key', 'historyPerKey', 'history') or 1
    bucket_size = _optional_int(fields, 'bucket_size', 'bucketSize')
    value_size = _optional_int(fields, 'value_size', 'valueSize')

    config = api.KeyValueConfig(
        bucket=name,
        description=fields.get('description'),
        history=history,
    )
    if bucket_size is not None:
        config.max_bytes = bucket_size
    if value_size is not None:
        config.max_value_size = value_size

    with LoggingContext(logger, operation='kv_create_bucket', bucket=name):
        js = nc.jetstream()
        kv = await js.create_key_value(config=config)
        status = await kv.status()
        stream_config = status.stream_info.config
        logger.info(f"NATS: Key/Value bucket '{name}' ready (history={status.history})")
        return {
            'status': 'success',
            'bucket': name,
            'description': stream_config.description,
            'history': status.history,
            'entry_count': status.values,
            'bucket_size': stream_config.max_bytes,
            'value_size': stream_config.max_msg_size,
        }


async def execute_kv_get(nc, fields: Dict[str, Any], settings: Settings) -> Dict[str, Any]:
    """Read keys (latest revision) or key_revisions (pinned revision); missing keys are omitted."""
    bucket = _require(fields, 'bucket')
    requests: List[Tuple[str, Optional[int]]] = [(key, None) for key in _keys(fields.get('keys'))]
    if fields.get('key_revisions') is not None:
        requests.extend(
            (key, int(revision)) for key, revision in _pairs(fields['key_revisions'], 'key_revisions')
        )
    if not requests:
        raise ValueError("NATS kv_get requires 'keys' or 'key_revisions'")

    with LoggingContext(logger, operation='kv_get', bucket=bucket):
        kv = await nc.jetstream().key_value(bucket)
        output: Dict[str, Any] = {}
        for key, revision in requests:
            try:
                entry = await kv.get(key, revision=revision)
            except (nats.js.errors.KeyNotFoundError, nats.js.errors.KeyDeletedError):
                logger.debug(f"NATS: Key '{key}' not found in '{bucket}'")
                continue
            output[key] = decode_value(entry.value)
        return {'status': 'success', 'bucket': bucket, 'output': output}


async def execute_kv_put(nc, fields: Dict[str, Any], settings: Settings) -> Dict[str, Any]:
    bucket = _require(fields, 'bucket')
    values = fields.get('values')
    if values is None:
        raise ValueError("NATS kv_put requires 'values'")
    pairs = _pairs(values, 'values')

    with LoggingContext(logger, operation='kv_put', bucket=bucket):
        kv = await nc.jetstream().key_value(bucket)
        revisions: Dict[str, int] = {}
        for key, value in pairs:
            revisions[key] = await kv.put(key, compact_json(value).encode('utf-8'))
        logger.success(f"NATS: Put {len(revisions)} keys into '{bucket}'")
        return {'status': 'success', 'bucket': bucket, 'revisions': revisions}


async def execute_kv_delete(nc, fields: Dict[str, Any], settings: Settings) -> Dict[str, Any]:
    bucket = _require(fields, 'bucket')
    keys = _keys(fields.get('keys'))
    if not keys:
        raise ValueError("NATS kv_delete requires 'keys'")

    with LoggingContext(logger, operation='kv_delete', bucket=bucket):
        kv = await nc.jetstream().key_value(bucket)
        for key in keys:
            await kv.delete(key)
        return {'status': 'success', 'bucket': bucket, 'deleted': keys}
