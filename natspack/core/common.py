import re
import json
from datetime import datetime, timedelta, timezone, date
from decimal import Decimal
from typing import Any, Optional, Union

from jinja2 import Undefined


#===================================
# time
#===================================

_ISO_DURATION = re.compile(
    r'^P(?:(?P<days>\d+(?:\.\d+)?)D)?'
    r'(?:T(?:(?P<hours>\d+(?:\.\d+)?)H)?(?:(?P<minutes>\d+(?:\.\d+)?)M)?(?:(?P<seconds>\d+(?:\.\d+)?)S)?)?$',
    re.IGNORECASE,
)
_COMPACT_DURATION = re.compile(r'^(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>ms|s|m|h|d)$', re.IGNORECASE)
_UNIT_SECONDS = {'ms': 0.001, 's': 1.0, 'm': 60.0, 'h': 3600.0, 'd': 86400.0}


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def format_iso8601(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def format_rfc3339(dt: datetime) -> str:
    """UTC timestamp with a trailing Z, the form the NATS server expects."""
    return dt.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')


def parse_iso8601(iso_str: str) -> datetime:
    value = iso_str.strip()
    if value.endswith(('Z', 'z')):
        value = value[:-1] + '+00:00'
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_duration(value: Union[int, float, str, timedelta, None]) -> Optional[float]:
    """
    Parse a duration into seconds.

    Accepts plain numbers (seconds), ISO-8601 durations (PT2S, PT1M30S, P1D)
    and compact forms (500ms, 2s, 5m, 1h). None passes through.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        raise ValueError(f"Invalid duration: {value!r}")

    text = value.strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        pass

    match = _COMPACT_DURATION.match(text)
    if match:
        return float(match.group('value')) * _UNIT_SECONDS[match.group('unit').lower()]

    match = _ISO_DURATION.match(text)
    if match and any(match.groupdict().values()):
        parts = {k: float(v) for k, v in match.groupdict().items() if v}
        return timedelta(**parts).total_seconds()

    raise ValueError(f"Invalid duration: {value!r}")


#===================================
# environment
#===================================


def get_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on", "y", "t")
    if isinstance(value, (int, float)):
        return value != 0
    return False


def mask_value(key: str, value: Any) -> Any:
    sensitive = ('password', 'token', 'key', 'secret', 'creds')
    return '***' if any(t in key.lower() for t in sensitive) else value


#===================================
# serialization
#===================================


class DateTimeEncoder(json.JSONEncoder):
    def default(self, obj):
        if isinstance(obj, Undefined):
            return None
        if isinstance(obj, datetime):
            return obj.isoformat()
        elif isinstance(obj, date):
            return obj.isoformat()
        elif isinstance(obj, Decimal):
            return float(obj)
        elif isinstance(obj, (bytes, bytearray)):
            return obj.decode('utf-8', errors='replace')
        return super().default(obj)


def compact_json(value: Any) -> str:
    return json.dumps(value, cls=DateTimeEncoder, separators=(',', ':'), ensure_ascii=False)
