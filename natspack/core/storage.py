"""
File-backed record storage for task inputs and outputs.

Records are stored as JSON Lines, one record per line, optionally gzip
compressed. Locators use the ``file://`` scheme; ``artifact://localfs/``
locators written by other playbook steps resolve to the same filesystem.
"""

import gzip
import json
import os
import uuid
from typing import Any, Dict, Iterator, Optional
from urllib.parse import unquote, urlparse

from natspack.core.common import DateTimeEncoder
from natspack.core.errors import SerializationError
from natspack.core.logger import setup_logger

logger = setup_logger(__name__, include_location=True)

STORAGE_SCHEMES = ('file://', 'artifact://')


def is_storage_uri(value: Any) -> bool:
    return isinstance(value, str) and value.strip().lower().startswith(STORAGE_SCHEMES)


def uri_to_path(uri: str) -> str:
    """Resolve a storage locator to an absolute local path."""
    uri = uri.strip()
    if uri.startswith('artifact://'):
        # artifact://localfs/path/to/file -> /path/to/file
        path = uri[len('artifact://'):]
        if path.startswith('localfs/'):
            path = '/' + path[len('localfs/'):]
    elif uri.startswith('file://'):
        path = unquote(urlparse(uri).path)
    else:
        path = uri
    return os.path.abspath(os.path.expanduser(path))


def path_to_uri(path: str) -> str:
    return f"file://{os.path.abspath(path)}"


def read_records(uri: str) -> Iterator[Any]:
    """
    Lazily decode the records stored at ``uri``.

    The file is opened on first iteration and closed once the generator is
    exhausted or closed. Blank lines are skipped.
    """
    path = uri_to_path(uri)
    if not os.path.exists(path):
        raise FileNotFoundError(f"Storage file not found: {path}")

    logger.debug(f"Reading records from {path}")
    opener = gzip.open if path.endswith(('.gz', '.gzip')) else open
    with opener(path, 'rt', encoding='utf-8') as f:
        for line_number, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError as e:
                raise SerializationError(
                    f"Invalid JSON record at {path}:{line_number}: {e.msg}",
                    uri=uri,
                    line=line_number,
                ) from e


class RecordWriter:
    """
    Append-only JSON Lines sink.

    Every ``write`` is flushed before it returns so that callers can
    acknowledge upstream only after the record reached the file.
    """

    def __init__(self, storage_dir: str, prefix: str = "records"):
        self.storage_dir = storage_dir
        self.path = os.path.join(storage_dir, f"{prefix}-{uuid.uuid4().hex}.jsonl")
        self.count = 0
        self._file = None

    @property
    def uri(self) -> str:
        return path_to_uri(self.path)

    def open(self) -> "RecordWriter":
        os.makedirs(self.storage_dir, exist_ok=True)
        self._file = open(self.path, 'w', encoding='utf-8')
        return self

    def write(self, record: Dict[str, Any]) -> None:
        if self._file is None:
            raise RuntimeError("RecordWriter is not open")
        self._file.write(json.dumps(record, cls=DateTimeEncoder, ensure_ascii=False))
        self._file.write('\n')
        self._file.flush()
        self.count += 1

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self) -> "RecordWriter":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> Optional[bool]:
        self.close()
        return None
