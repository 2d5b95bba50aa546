"""
Bounded JetStream pull consumption.

A consume run subscribes with a durable or ephemeral pull consumer, fetches
batches until one of its stop conditions holds, writes every record to a JSON
Lines sink and acknowledges each message only after its record was flushed.

Stop conditions are checked after every batch, in this order:

1. the last fetch returned nothing (``exhausted``)
2. ``max_records`` records were written (``record_cap``)
3. more than ``max_duration`` seconds passed since polling started (``duration_cap``)
"""

import time
from typing import Any, Callable, Dict, List, Protocol

import nats.errors
from nats.js import api

from natspack.core.common import format_iso8601, format_rfc3339
from natspack.core.config import Settings
from natspack.core.errors import SerializationError, SubscriptionError
from natspack.core.logger import setup_logger
from natspack.core.logging_context import LoggingContext
from natspack.core.storage import RecordWriter
from natspack.tools.nats.models import (
    ConsumeOptions,
    ConsumeResult,
    DecodeErrorPolicy,
    DeliverPolicy,
    StopReason,
)

logger = setup_logger(__name__, include_location=True)

# Smallest fetch wait the client accepts; used for poll_duration 0
MIN_FETCH_TIMEOUT = 0.01


class RecordSink(Protocol):
    def write(self, record: Dict[str, Any]) -> None: ...


def consumer_config(options: ConsumeOptions) -> api.ConsumerConfig:
    config = api.ConsumerConfig(
        ack_policy=api.AckPolicy.EXPLICIT,
        deliver_policy=options.deliver_policy.to_nats(),
    )
    if options.deliver_policy == DeliverPolicy.BY_START_TIME and options.since is not None:
        config.opt_start_time = format_rfc3339(options.since)
    if options.deliver_policy == DeliverPolicy.BY_START_SEQUENCE and options.start_sequence is not None:
        config.opt_start_seq = options.start_sequence
    return config


async def subscribe_pull(js, options: ConsumeOptions):
    """Create the pull subscription for a run; any failure is a SubscriptionError."""
    try:
        return await js.pull_subscribe(
            options.subject,
            durable=options.durable,
            config=consumer_config(options),
        )
    except Exception as e:
        raise SubscriptionError(
            f"Failed to create pull subscription on '{options.subject}': {e or type(e).__name__}",
            subject=options.subject,
            durable=options.durable,
            cause=type(e).__name__,
        ) from e


async def unsubscribe_quietly(subscription) -> None:
    try:
        await subscription.unsubscribe()
    except Exception as e:
        logger.warning(f"NATS: Error unsubscribing: {e}")


async def fetch_batch(subscription, batch: int, timeout: float) -> List:
    """Fetch up to ``batch`` messages; a fetch timeout is an empty batch."""
    try:
        return await subscription.fetch(batch=batch, timeout=max(timeout, MIN_FETCH_TIMEOUT))
    except nats.errors.TimeoutError:
        return []


def _message_timestamp(msg):
    try:
        metadata = msg.metadata
    except nats.errors.NotJSMessageError:
        return None
    timestamp = getattr(metadata, 'timestamp', None)
    return format_iso8601(timestamp) if timestamp is not None else None


def message_to_record(msg) -> Dict[str, Any]:
    """
    Canonical record of a consumed message.

    Header values are promoted to one-element lists. The payload must be valid
    UTF-8, otherwise SerializationError is raised.
    """
    try:
        data = (msg.data or b"").decode('utf-8')
    except UnicodeDecodeError as e:
        raise SerializationError(
            f"Message on '{msg.subject}' is not valid UTF-8: {e.reason}",
            subject=msg.subject,
        ) from e
    headers = {key: [value] for key, value in (msg.headers or {}).items()}
    return {
        'subject': msg.subject,
        'headers': headers,
        'data': data,
        'timestamp': _message_timestamp(msg),
    }


class BoundedBatchConsumer:
    """Runs the polling loop of one consume task over an open pull subscription."""

    def __init__(self, options: ConsumeOptions, clock: Callable[[], float] = time.monotonic):
        self.options = options
        self.clock = clock

    def _stop_reason(self, fetched: int, total: int, poll_start: float):
        options = self.options
        if fetched == 0:
            return StopReason.EXHAUSTED
        if options.max_records is not None and total >= options.max_records:
            return StopReason.RECORD_CAP
        if options.max_duration is not None and self.clock() - poll_start > options.max_duration:
            return StopReason.DURATION_CAP
        return None

    async def run(self, subscription, sink: RecordSink) -> ConsumeResult:
        options = self.options
        result = ConsumeResult()

        if options.max_records is not None and options.max_records <= 0:
            result.stop_reason = StopReason.RECORD_CAP
            return result

        poll_start = self.clock()
        while result.stop_reason is None:
            batch = options.batch_size
            if options.max_records is not None:
                batch = min(batch, options.max_records - result.messages_count)

            messages = await fetch_batch(subscription, batch, options.poll_duration)
            logger.debug(f"NATS: Fetched {len(messages)} messages (batch={batch})")

            for msg in messages:
                try:
                    record = message_to_record(msg)
                except SerializationError as e:
                    if options.on_decode_error != DecodeErrorPolicy.SKIP:
                        raise
                    logger.warning(f"NATS: Skipping message: {e}")
                    await msg.term()
                    result.skipped_count += 1
                    continue
                sink.write(record)
                await msg.ack()
                result.messages_count += 1

            result.stop_reason = self._stop_reason(len(messages), result.messages_count, poll_start)

        return result


async def execute_consume(nc, fields: Dict[str, Any], settings: Settings, clock: Callable[[], float] = time.monotonic) -> Dict[str, Any]:
    """Consume task: bounded pull from a JetStream subject into a JSON Lines file."""
    options = ConsumeOptions.from_task(fields, settings)
    with LoggingContext(logger, operation='consume', subject=options.subject):
        js = nc.jetstream()
        subscription = await subscribe_pull(js, options)
        try:
            with RecordWriter(settings.storage_dir, prefix='consume') as writer:
                result = await BoundedBatchConsumer(options, clock).run(subscription, writer)
        finally:
            await unsubscribe_quietly(subscription)

        logger.success(
            f"NATS: Consumed {result.messages_count} messages from '{options.subject}' "
            f"(skipped={result.skipped_count}, stop_reason={result.stop_reason.value})"
        )
        return {
            'status': 'success',
            'messages_count': result.messages_count,
            'skipped_count': result.skipped_count,
            'stop_reason': result.stop_reason.value,
            'uri': writer.uri,
        }
