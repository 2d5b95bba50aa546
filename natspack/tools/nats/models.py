from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from nats.js import api
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from natspack.core.common import parse_duration, parse_iso8601
from natspack.core.config import Settings


class DeliverPolicy(str, Enum):
    """Where a new consumer starts reading the stream."""

    ALL = "all"
    LAST = "last"
    NEW = "new"
    BY_START_SEQUENCE = "by_start_sequence"
    BY_START_TIME = "by_start_time"
    LAST_PER_SUBJECT = "last_per_subject"

    def to_nats(self) -> api.DeliverPolicy:
        return api.DeliverPolicy(self.value)


# Accepts snake_case values as well as the CamelCase names used in older playbooks
_POLICY_NAMES = {
    "all": DeliverPolicy.ALL,
    "last": DeliverPolicy.LAST,
    "new": DeliverPolicy.NEW,
    "bystartsequence": DeliverPolicy.BY_START_SEQUENCE,
    "startsequence": DeliverPolicy.BY_START_SEQUENCE,
    "bystarttime": DeliverPolicy.BY_START_TIME,
    "starttime": DeliverPolicy.BY_START_TIME,
    "lastpersubject": DeliverPolicy.LAST_PER_SUBJECT,
}


def parse_deliver_policy(value: Any) -> DeliverPolicy:
    if isinstance(value, DeliverPolicy):
        return value
    key = str(value).strip().replace("_", "").replace("-", "").lower()
    if key not in _POLICY_NAMES:
        raise ValueError(
            f"Unknown deliver policy: {value}. "
            f"Valid policies: {', '.join(p.value for p in DeliverPolicy)}"
        )
    return _POLICY_NAMES[key]


class DecodeErrorPolicy(str, Enum):
    ABORT = "abort"
    SKIP = "skip"


class StopReason(str, Enum):
    EXHAUSTED = "exhausted"
    RECORD_CAP = "record_cap"
    DURATION_CAP = "duration_cap"


class ConsumeOptions(BaseModel):
    """Configuration of one bounded consume run."""

    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    subject: str
    durable: Optional[str] = Field(
        None, validation_alias=AliasChoices('durable', 'durable_id', 'durable_name', 'durableId')
    )
    deliver_policy: DeliverPolicy = Field(
        DeliverPolicy.ALL, validation_alias=AliasChoices('deliver_policy', 'deliverPolicy')
    )
    since: Optional[datetime] = None
    start_sequence: Optional[int] = Field(
        None, ge=1, validation_alias=AliasChoices('start_sequence', 'startSequence')
    )
    batch_size: int = Field(10, ge=1, validation_alias=AliasChoices('batch_size', 'batchSize'))
    poll_duration: float = Field(
        2.0, ge=0, validation_alias=AliasChoices('poll_duration', 'pollDuration', 'poll_timeout')
    )
    max_records: Optional[int] = Field(None, validation_alias=AliasChoices('max_records', 'maxRecords'))
    max_duration: Optional[float] = Field(
        None, ge=0, validation_alias=AliasChoices('max_duration', 'maxDuration')
    )
    on_decode_error: DecodeErrorPolicy = Field(
        DecodeErrorPolicy.ABORT, validation_alias=AliasChoices('on_decode_error', 'onDecodeError')
    )

    @field_validator('subject', mode='before')
    def subject_not_blank(cls, v):
        if v is None or not str(v).strip():
            raise ValueError("subject must be a non-empty string")
        return str(v).strip()

    @field_validator('durable', mode='before')
    def blank_durable(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        return str(v)

    @field_validator('deliver_policy', mode='before')
    def coerce_policy(cls, v):
        return parse_deliver_policy(v)

    @field_validator('since', mode='before')
    def coerce_since(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        if isinstance(v, str):
            return parse_iso8601(v)
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @field_validator('poll_duration', 'max_duration', mode='before')
    def coerce_duration(cls, v):
        return parse_duration(v)

    @model_validator(mode='after')
    def check_start_position(self):
        if self.since is not None and self.deliver_policy == DeliverPolicy.ALL:
            self.deliver_policy = DeliverPolicy.BY_START_TIME
        if self.start_sequence is not None and self.deliver_policy == DeliverPolicy.ALL:
            self.deliver_policy = DeliverPolicy.BY_START_SEQUENCE
        if self.deliver_policy == DeliverPolicy.BY_START_TIME and self.since is None:
            raise ValueError("deliver_policy by_start_time requires 'since'")
        if self.deliver_policy == DeliverPolicy.BY_START_SEQUENCE and self.start_sequence is None:
            raise ValueError("deliver_policy by_start_sequence requires 'start_sequence'")
        return self

    @classmethod
    def from_task(cls, fields: Dict[str, Any], settings: Settings) -> "ConsumeOptions":
        """Build options from rendered task fields, falling back to settings defaults."""
        values = {k: v for k, v in fields.items() if v is not None}
        defaults = {
            'batch_size': ('batch_size', 'batchSize', settings.default_batch_size),
            'poll_duration': ('poll_duration', 'pollDuration', settings.default_poll_duration),
            'deliver_policy': ('deliver_policy', 'deliverPolicy', settings.default_deliver_policy),
        }
        for name, (snake, camel, default) in defaults.items():
            if snake not in values and camel not in values:
                values[name] = default
        return cls.model_validate(values)


class ConsumeResult(BaseModel):
    messages_count: int = 0
    skipped_count: int = 0
    stop_reason: Optional[StopReason] = None


@dataclass(frozen=True)
class OutboundMessage:
    """Canonical outbound record: multi-value headers and payload bytes."""

    headers: Dict[str, List[str]] = field(default_factory=dict)
    data: bytes = b""

    def wire_headers(self) -> Optional[Dict[str, str]]:
        """
        Headers in the single-value-per-key form the client library sends.

        Multiple values for one key are folded into a comma separated value.
        """
        if not self.headers:
            return None
        return {key: ", ".join(values) for key, values in self.headers.items()}
