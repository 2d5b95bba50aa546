"""
NATS triggers.

PollingTrigger runs one bounded consume per evaluation and reports whether it
found anything. RealtimeTrigger keeps a pull subscription open and emits every
message to a callback until it is stopped.
"""

import asyncio
import threading
from typing import Any, Callable, Dict, Optional

from jinja2 import Environment

from natspack.core.common import parse_duration
from natspack.core.config import Settings, load_settings
from natspack.core.errors import SerializationError
from natspack.core.logger import setup_logger
from natspack.core.logging_context import LoggingContext
from natspack.core.render import create_environment
from natspack.tools.nats.auth import get_nats_connection_params, resolve_nats_auth
from natspack.tools.nats.connection import nats_connection
from natspack.tools.nats.consume import fetch_batch, message_to_record, subscribe_pull, unsubscribe_quietly
from natspack.tools.nats.executor import execute_nats_task, render_task_fields
from natspack.tools.nats.models import ConsumeOptions, DecodeErrorPolicy

logger = setup_logger(__name__, include_location=True)


class PollingTrigger:
    """
    Periodic bounded consume.

    The host calls ``evaluate`` every ``interval`` seconds. An evaluation that
    consumed nothing returns None; otherwise it returns the consume output
    (``messages_count`` and the ``uri`` of the records file).
    """

    def __init__(self, task_config: Dict[str, Any], settings: Optional[Settings] = None):
        self.task_config = {**task_config, 'operation': 'consume'}
        self.settings = settings

    @property
    def interval(self) -> float:
        value = parse_duration(self.task_config.get('interval'))
        if value is None:
            return (self.settings or load_settings()).trigger_interval
        return value

    def evaluate(
        self,
        context: Dict[str, Any],
        jinja_env: Environment,
        task_with: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        output = execute_nats_task(
            self.task_config, context, jinja_env, task_with=task_with, settings=self.settings
        )
        logger.debug(f"NATS: Found '{output['messages_count']}' messages from '{output.get('uri')}'")
        if output['messages_count'] == 0:
            return None
        return output


class RealtimeTrigger:
    """
    Unbounded pull consumption that emits each message as soon as it is acked.

    ``stop()`` asks the loop to finish after its current fetch and returns at
    once. ``kill()`` does the same and then waits until the loop has exited and
    released its connection. Both may be called any number of times.
    """

    def __init__(
        self,
        task_config: Dict[str, Any],
        context: Optional[Dict[str, Any]] = None,
        jinja_env: Optional[Environment] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or load_settings()
        self.context = context or {}
        fields = render_task_fields(task_config, self.context, jinja_env or create_environment())
        self.options = ConsumeOptions.from_task(fields, self.settings)
        self.conn_params = get_nats_connection_params(resolve_nats_auth(fields, self.context, self.settings))
        self.error: Optional[BaseException] = None

        self._active = threading.Event()
        self._active.set()
        self._started = threading.Event()
        self._terminated = threading.Event()
        self._state_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_active(self) -> bool:
        return self._active.is_set()

    @property
    def terminated(self) -> bool:
        return self._terminated.is_set()

    async def _handle(self, msg, emit: Callable[[Dict[str, Any]], None]) -> None:
        try:
            record = message_to_record(msg)
        except SerializationError as e:
            if self.options.on_decode_error != DecodeErrorPolicy.SKIP:
                raise
            logger.warning(f"NATS: Skipping message: {e}")
            await msg.term()
            return
        await msg.ack()
        emit(record)

    async def _loop(self, emit: Callable[[Dict[str, Any]], None]) -> None:
        options = self.options
        with LoggingContext(logger, operation='realtime', subject=options.subject):
            async with nats_connection(self.conn_params, self.settings) as nc:
                subscription = await subscribe_pull(nc.jetstream(), options)
                try:
                    while self._active.is_set():
                        messages = await fetch_batch(
                            subscription, options.batch_size, self.settings.realtime_fetch_timeout
                        )
                        for msg in messages:
                            await self._handle(msg, emit)
                finally:
                    await unsubscribe_quietly(subscription)
            logger.info(f"NATS: Realtime trigger on '{options.subject}' stopped")

    def _finish(self) -> None:
        self._active.clear()
        self._terminated.set()

    def run(self, emit: Callable[[Dict[str, Any]], None]) -> None:
        """Run the loop on the calling thread until stopped."""
        self._started.set()
        try:
            asyncio.run(self._loop(emit))
        finally:
            self._finish()

    def _run_in_thread(self, emit: Callable[[Dict[str, Any]], None]) -> None:
        try:
            asyncio.run(self._loop(emit))
        except Exception as e:
            self.error = e
            logger.error(f"NATS: Realtime trigger failed: {e}", exc_info=True)
        finally:
            self._finish()

    def start(self, emit: Callable[[Dict[str, Any]], None]) -> threading.Thread:
        """Run the loop on a daemon thread and return the thread."""
        self._started.set()
        self._thread = threading.Thread(
            target=self._run_in_thread, args=(emit,), name=f"nats-realtime-{self.options.subject}", daemon=True
        )
        self._thread.start()
        return self._thread

    def _deactivate(self) -> bool:
        with self._state_lock:
            if not self._active.is_set():
                return False
            self._active.clear()
            return True

    def stop(self) -> None:
        if self._deactivate():
            logger.debug(f"NATS: Stop requested for '{self.options.subject}'")

    def kill(self, timeout: Optional[float] = None) -> bool:
        """Stop and wait for the loop to release its connection; True once terminated."""
        self.stop()
        if not self._started.is_set():
            return True
        return self._terminated.wait(timeout)
