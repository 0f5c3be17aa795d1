import asyncio
from contextlib import suppress
from time import monotonic
from typing import Awaitable, Callable

from .errors import RunCancelledError

type IClock = Callable[[], float]


class CancellationSignal:
    """Single cancellation source threaded through a whole run.

    Fires either when `cancel()` is called or once the optional deadline
    (measured on `clock`) has passed.
    """

    def __init__(self, *, deadline: float | None = None, clock: IClock = monotonic):
        self._event = asyncio.Event()
        self._deadline = deadline
        self._clock = clock
        self._reason: str | None = None

    @classmethod
    def with_timeout(
        cls, seconds: float, *, clock: IClock = monotonic
    ) -> "CancellationSignal":
        return cls(deadline=clock() + seconds, clock=clock)

    @property
    def deadline(self) -> float | None:
        return self._deadline

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and self._clock() >= self._deadline:
            self._fire("deadline exceeded")
            return True
        return False

    def cancel(self, reason: str = "cancelled") -> None:
        self._fire(reason)

    def _fire(self, reason: str) -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RunCancelledError(self._reason or "cancelled")

    async def wait(self) -> None:
        """Block until the signal fires."""
        if self.cancelled:
            return
        if self._deadline is None:
            await self._event.wait()
            return
        remaining = max(self._deadline - self._clock(), 0.0)
        try:
            await asyncio.wait_for(self._event.wait(), timeout=remaining)
        except TimeoutError:
            self._fire("deadline exceeded")

    async def guard[T](self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable` unless the signal fires first.

        The awaited work is cancelled and RunCancelledError raised when the
        signal wins the race.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise RunCancelledError(self._reason or "cancelled")
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task.done():
            return task.result()

        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        raise RunCancelledError(self._reason or "cancelled")
