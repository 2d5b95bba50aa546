"""
Message source resolution for the produce and request tasks.

The ``from`` field of a task is polymorphic. It is classified once, at the
boundary, into one of three variants:

- LiteralSource: one inline record (a map, or a plain string used as data)
- FileReferenceSource: a storage locator to a JSON Lines file of records
- InlineListSource: an ordered list of inline records

Each raw record is rendered independently and normalized into an
``OutboundMessage`` with multi-value headers and payload bytes.
"""

from dataclasses import dataclass
from itertools import islice
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Union

from natspack.core.common import compact_json
from natspack.core.errors import EmptyInput, InvalidInputShape, NotAMap, shape_of
from natspack.core.logger import setup_logger
from natspack.core.storage import is_storage_uri, read_records
from natspack.tools.nats.models import OutboundMessage

logger = setup_logger(__name__, include_location=True)

Renderer = Callable[[Any], Any]


def _identity(value: Any) -> Any:
    return value


@dataclass(frozen=True)
class LiteralSource:
    record: Any

    def iter_raw(self) -> Iterator[Any]:
        yield self.record


@dataclass(frozen=True)
class FileReferenceSource:
    uri: str

    def iter_raw(self) -> Iterator[Any]:
        return read_records(self.uri)


@dataclass(frozen=True)
class InlineListSource:
    records: tuple

    def iter_raw(self) -> Iterator[Any]:
        return iter(self.records)


MessageSource = Union[LiteralSource, FileReferenceSource, InlineListSource]


def classify_source(value: Any) -> MessageSource:
    """Decide the source variant from the shape of the rendered ``from`` value."""
    if isinstance(value, str):
        if is_storage_uri(value):
            return FileReferenceSource(value.strip())
        return LiteralSource({'data': value})
    if isinstance(value, Mapping):
        return LiteralSource(value)
    if isinstance(value, (list, tuple)):
        return InlineListSource(tuple(value))
    raise InvalidInputShape(
        f"Invalid message source: expected a storage URI, a string, a map or a list, got {shape_of(value)}",
        shape=shape_of(value),
    )


def normalize_headers(headers: Any) -> Dict[str, List[str]]:
    if headers is None:
        return {}
    if not isinstance(headers, Mapping):
        raise NotAMap(
            f"Message headers must be a map, got {shape_of(headers)}",
            shape=shape_of(headers),
        )
    normalized = {}
    for key, value in headers.items():
        if isinstance(value, (list, tuple)):
            normalized[str(key)] = [str(v) for v in value]
        else:
            normalized[str(key)] = [str(value)]
    return normalized


def normalize_data(data: Any) -> bytes:
    if data is None:
        return b""
    if isinstance(data, str):
        return data.encode('utf-8')
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    return compact_json(data).encode('utf-8')


def to_outbound(record: Any, index: Optional[int] = None) -> OutboundMessage:
    if not isinstance(record, Mapping):
        where = f" at index {index}" if index is not None else ""
        raise NotAMap(
            f"Message record{where} must be a map, got {shape_of(record)}",
            shape=shape_of(record),
            index=index,
        )
    return OutboundMessage(
        headers=normalize_headers(record.get('headers')),
        data=normalize_data(record.get('data')),
    )


def _iter_normalized(source: MessageSource, render: Renderer) -> Iterator[OutboundMessage]:
    count = 0
    for index, raw in enumerate(source.iter_raw()):
        yield to_outbound(render(raw), index)
        count += 1
    if count == 0:
        raise EmptyInput(
            f"Message source {type(source).__name__} resolved to no records",
            source=type(source).__name__,
        )


def iter_messages(value: Any, render: Optional[Renderer] = None) -> Iterator[OutboundMessage]:
    """
    Lazily resolve every record of a ``from`` value, in order.

    File-backed sources are read one record at a time and cannot be restarted.
    Raises EmptyInput once the source is exhausted without yielding a record.
    """
    source = classify_source(value)
    return _iter_normalized(source, render or _identity)


def resolve_single(value: Any, render: Optional[Renderer] = None) -> OutboundMessage:
    """
    Resolve a ``from`` value to exactly one message.

    A list with more than one record uses its first element; the rest are
    ignored with a warning.
    """
    source = classify_source(value)
    if isinstance(source, InlineListSource) and len(source.records) > 1:
        logger.warning(
            f"Message source holds {len(source.records)} records; using the first and "
            f"ignoring {len(source.records) - 1}"
        )
    messages = _iter_normalized(source, render or _identity)
    try:
        first = next(islice(messages, 1))
    finally:
        messages.close()
    return first
