from __future__ import annotations
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any, Awaitable, Callable, Generic, Optional, Tuple, Type, TypeVar,
)

from .logger import logger

T = TypeVar("T")


@dataclass(frozen=True)
class Poll(Generic[T]):
    """Result of one fetch: keep going, or stop with a value."""
    done: bool
    value: Optional[T] = None

    @classmethod
    def pending(cls, value: Optional[T] = None) -> "Poll[T]":
        return cls(done=False, value=value)

    @classmethod
    def ready(cls, value: T) -> "Poll[T]":
        return cls(done=True, value=value)


class PollStatus(str, Enum):
    READY = "READY"
    EXHAUSTED = "EXHAUSTED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class PollOutcome(Generic[T]):
    status: PollStatus
    attempts: int
    value: Optional[T] = None
    # error from the last attempt, if it raised
    error: Optional[BaseException] = None


class AttemptTimeout(Exception):
    pass


Fetch = Callable[[], Awaitable[Poll[T]]]
OnAttempt = Callable[[int, Optional[Poll[T]], Optional[BaseException]], Any]


class Poller(Generic[T]):
    """Bounded, cancelable, single-flight polling loop.

    ``fetch`` is awaited at most ``max_attempts`` times, one call at a time,
    with ``interval`` seconds between the end of one attempt and the start
    of the next. The attempt counter only moves when an attempt completes
    (with a result, a retryable error or a timeout).

    Exceptions whose type is in ``retry_on`` count as a finished attempt and
    polling continues; anything else stops the loop with FAILED.

    ``cancel()`` may be called any number of times from anywhere on the
    loop. Once it has been called no further fetch starts, an in-flight
    fetch is abandoned, and neither its result nor ``on_attempt`` can reach
    the caller.
    """

    def __init__(
        self,
        fetch: Fetch[T],
        *,
        interval: float,
        max_attempts: int,
        retry_on: Tuple[Type[BaseException], ...] = (),
        attempt_timeout: Optional[float] = None,
        on_attempt: Optional[OnAttempt[T]] = None,
        name: str = "poll",
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.fetch = fetch
        self.interval = max(0.0, interval)
        self.max_attempts = max_attempts
        self.retry_on = retry_on
        self.attempt_timeout = attempt_timeout
        self.on_attempt = on_attempt
        self.name = name
        self._attempts = 0
        self._running = False
        self._stop = asyncio.Event()

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set()

    @property
    def running(self) -> bool:
        return self._running

    def cancel(self) -> None:
        if not self._stop.is_set():
            logger.debug("%s: cancelled after %d attempts",
                         self.name, self._attempts)
        self._stop.set()

    async def _unless_cancelled(
        self, aw: Awaitable[Any], timeout: Optional[float] = None
    ) -> Optional[asyncio.Future]:
        """Await ``aw`` racing cancel(). Returns the finished future, or
        None if cancel() or the timeout came first."""
        task = asyncio.ensure_future(aw)
        stop = asyncio.ensure_future(self._stop.wait())
        try:
            done, _ = await asyncio.wait(
                {task, stop}, timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stop.cancel()
            if not task.done():
                task.cancel()
        if self._stop.is_set() or task not in done:
            return None
        return task

    def _notify(self, result, error) -> None:
        if self.on_attempt is not None and not self.cancelled:
            self.on_attempt(self._attempts, result, error)

    async def run(self) -> PollOutcome[T]:
        if self._running:
            raise RuntimeError(f"{self.name}: already running")
        self._running = True
        last_error: Optional[BaseException] = None
        last_value: Optional[T] = None
        try:
            while True:
                if self.cancelled:
                    return PollOutcome(PollStatus.CANCELLED, self._attempts,
                                       last_value, last_error)
                if self._attempts >= self.max_attempts:
                    logger.debug("%s: exhausted %d attempts",
                                 self.name, self._attempts)
                    return PollOutcome(PollStatus.EXHAUSTED, self._attempts,
                                       last_value, last_error)

                finished = await self._unless_cancelled(
                    self.fetch(), timeout=self.attempt_timeout
                )
                if self.cancelled:
                    continue

                self._attempts += 1
                if finished is None:
                    last_error = AttemptTimeout(
                        f"{self.name}: attempt {self._attempts} timed out "
                        f"after {self.attempt_timeout}s"
                    )
                    logger.debug("%s", last_error)
                    self._notify(None, last_error)
                else:
                    exc = finished.exception()
                    if exc is not None:
                        last_error = exc
                        if not isinstance(exc, self.retry_on):
                            self._notify(None, exc)
                            return PollOutcome(PollStatus.FAILED,
                                               self._attempts, last_value, exc)
                        logger.debug("%s: attempt %d failed, retrying: %r",
                                     self.name, self._attempts, exc)
                        self._notify(None, exc)
                    else:
                        result: Poll[T] = finished.result()
                        last_error = None
                        last_value = result.value
                        self._notify(result, None)
                        if self.cancelled:
                            continue
                        if result.done:
                            return PollOutcome(PollStatus.READY,
                                               self._attempts, result.value)

                if self._attempts < self.max_attempts and self.interval:
                    await self._unless_cancelled(asyncio.sleep(self.interval))
        finally:
            self._running = False
