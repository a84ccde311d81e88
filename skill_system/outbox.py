import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt, wait_incrementing

from .errors import PersistenceError

logger = logging.getLogger(__name__)


@dataclass
class Effect:
    """A pending side effect: a coroutine factory plus the message shown if it finally fails."""

    label: str
    run: Callable[[], Awaitable[object]]
    failure_message: Optional[str] = None


class Outbox:
    """
    Queue of storage and broadcast effects drained after the local commit.

    Effects run one at a time in enqueue order. Each is retried up to
    `max_attempts` times; a final failure is reported through `on_failure`
    and never undoes the local mutation.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
        on_failure: Optional[Callable[[PersistenceError], None]] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.on_failure = on_failure
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None

    @property
    def queue(self) -> asyncio.Queue:
        # Created lazily so the queue binds to the running loop
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def enqueue(self, label: str, run: Callable[[], Awaitable[object]], failure_message: Optional[str] = None):
        """Adds an effect without waiting for it."""
        self.queue.put_nowait(Effect(label, run, failure_message))

    def start(self):
        """Starts the background worker on the running loop."""
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._drain_forever())

    async def flush(self):
        """Runs every queued effect now (used when no worker is running, and by tests)."""
        while not self.queue.empty():
            effect = self.queue.get_nowait()
            try:
                await self._execute(effect)
            finally:
                self.queue.task_done()

    async def join(self):
        """Waits until the worker has processed everything queued so far."""
        if self._worker is None:
            await self.flush()
        else:
            await self.queue.join()

    async def close(self):
        if self._worker is not None:
            await self.queue.join()
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    async def _drain_forever(self):
        while True:
            effect = await self.queue.get()
            try:
                await self._execute(effect)
            finally:
                self.queue.task_done()

    async def _execute(self, effect: Effect) -> bool:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(start=self.retry_delay, increment=self.retry_delay),
            before_sleep=self._log_retry(effect),
            reraise=True,
        )
        try:
            await retrying(effect.run)
        except Exception as exc:
            logger.warning("Effect %r gave up after %d attempts: %s", effect.label, self.max_attempts, exc)
            self._report(effect, exc)
            return False
        return True

    def _log_retry(self, effect: Effect):
        def log(retry_state: RetryCallState):
            logger.warning(
                "Effect %r failed (attempt %d/%d): %s",
                effect.label,
                retry_state.attempt_number,
                self.max_attempts,
                retry_state.outcome.exception(),
            )

        return log

    def _report(self, effect: Effect, exc: Exception):
        if self.on_failure is None or effect.failure_message is None:
            return
        self.on_failure(PersistenceError(effect.failure_message, exc))
