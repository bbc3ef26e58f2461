"""Timer primitives for the pairing and liveness screens.

Owns:
- periodic cadences that skip a tick while the previous call is still running
- timer groups that are acquired per screen and cancelled as one unit
- a deadline race between one awaitable and a cancellable timer
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from machinelink.exceptions import MachineLinkError

_logger = logging.getLogger(__name__)

T = TypeVar("T")

TickCallback = Callable[[], Awaitable[None]]


class PeriodicTask:
    """Run *callback* every *interval* seconds on the running loop.

    Ticks are anchored to the timer, not to the callback: a slow call
    does not stretch the period. A tick that fires while the previous
    invocation is still outstanding is skipped, never queued.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: TickCallback,
        *,
        immediate: bool = False,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.name = name
        self.interval = interval
        self._callback = callback
        self._immediate = immediate
        self._runner: asyncio.Task[None] | None = None
        self._inflight: asyncio.Task[None] | None = None
        self._cancelled = False
        self.fired = 0
        self.skipped = 0

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    @property
    def busy(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def start(self) -> None:
        if self._cancelled:
            raise MachineLinkError(f"timer {self.name!r} was cancelled and cannot be restarted")
        if self.running:
            return
        self._runner = asyncio.get_running_loop().create_task(self._run(), name=f"timer:{self.name}")

    def cancel(self) -> None:
        """Stop ticking and cancel an outstanding invocation. Idempotent."""
        self._cancelled = True
        current = asyncio.current_task()
        for task in (self._runner, self._inflight):
            if task is not None and task is not current and not task.done():
                task.cancel()

    async def wait_closed(self) -> None:
        current = asyncio.current_task()
        tasks = [task for task in (self._runner, self._inflight) if task is not None and task is not current]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self) -> None:
        if self._immediate:
            self._fire()
        while True:
            await asyncio.sleep(self.interval)
            self._fire()

    def _fire(self) -> None:
        if self._cancelled:
            return
        if self.busy:
            self.skipped += 1
            _logger.debug("Timer %s tick skipped: previous call still running", self.name)
            return
        self.fired += 1
        self._inflight = asyncio.get_running_loop().create_task(self._invoke(), name=f"tick:{self.name}")

    async def _invoke(self) -> None:
        try:
            await self._callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            # A failing tick must not stop the cadence.
            _logger.warning("Timer %s callback failed", self.name, exc_info=True)


class TimerGroup:
    """All timers belonging to one screen, cancelled together.

    Usage::

        async with TimerGroup("pairing") as timers:
            timers.periodic("poll", 20.0, poll_once)
            ...

    :meth:`cancel` is synchronous: every timer in the group is cancelled
    before it returns, so no member can observe a partially torn down
    group. Components check :attr:`active` before writing state so that a
    call completing in the same loop iteration as teardown is discarded.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._active = True
        self._timers: dict[str, PeriodicTask] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def active(self) -> bool:
        return self._active

    def __contains__(self, timer_name: str) -> bool:
        timer = self._timers.get(timer_name)
        return timer is not None and timer.running

    def get(self, timer_name: str) -> PeriodicTask | None:
        return self._timers.get(timer_name)

    def _require_active(self) -> None:
        if not self._active:
            raise MachineLinkError(f"timer group {self.name!r} is closed")

    def periodic(
        self,
        name: str,
        interval: float,
        callback: TickCallback,
        *,
        immediate: bool = False,
    ) -> PeriodicTask:
        """Start a named cadence, replacing any previous one with that name."""
        self._require_active()
        previous = self._timers.pop(name, None)
        if previous is not None:
            previous.cancel()
        timer = PeriodicTask(f"{self.name}.{name}", interval, callback, immediate=immediate)
        self._timers[name] = timer
        timer.start()
        return timer

    def stop(self, name: str) -> None:
        """Cancel one cadence without closing the group."""
        timer = self._timers.pop(name, None)
        if timer is not None:
            timer.cancel()

    def spawn(self, name: str, coro: Coroutine[Any, Any, T]) -> asyncio.Task[T]:
        """Run a one-shot coroutine owned by this group."""
        if not self._active:
            coro.close()
            self._require_active()
        task = asyncio.get_running_loop().create_task(coro, name=f"{self.name}.{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def cancel(self) -> None:
        """Cancel every timer and task in the group. Idempotent."""
        if not self._active:
            return
        self._active = False
        timers = list(self._timers.values())
        tasks = list(self._tasks)
        for timer in timers:
            timer.cancel()
        current = asyncio.current_task()
        for task in tasks:
            if task is not current and not task.done():
                task.cancel()
        _logger.debug("Timer group %s cancelled (%d timers, %d tasks)", self.name, len(timers), len(tasks))

    async def aclose(self) -> None:
        """Cancel the group and wait until every member has finished."""
        self.cancel()
        current = asyncio.current_task()
        waiters: list[Awaitable[Any]] = [timer.wait_closed() for timer in self._timers.values()]
        waiters.extend(task for task in self._tasks if task is not current)
        if waiters:
            await asyncio.gather(*waiters, return_exceptions=True)

    async def __aenter__(self) -> TimerGroup:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()


@dataclass(slots=True)
class RaceResult(Generic[T]):
    """Outcome of :func:`race_deadline`.

    Exactly one of these holds: ``timed_out`` is set, ``error`` is set,
    or ``value`` carries the awaitable's result.
    """

    timed_out: bool
    value: T | None = None
    error: Exception | None = None


async def race_deadline(awaitable: Awaitable[T], timeout: float) -> RaceResult[T]:
    """Race *awaitable* against a deadline; the first to settle wins.

    When the call settles first (with a value or an exception) the
    deadline handle is cancelled before this returns. When the deadline
    fires first the call is cancelled and awaited, so nothing from it can
    land afterwards.
    """
    loop = asyncio.get_running_loop()
    call: asyncio.Future[T] = asyncio.ensure_future(awaitable)
    settled: asyncio.Future[str] = loop.create_future()

    def _settle(winner: str) -> None:
        if not settled.done():
            settled.set_result(winner)

    deadline = loop.call_later(timeout, _settle, "deadline")
    call.add_done_callback(lambda _fut: _settle("call"))

    try:
        winner = await settled
    except asyncio.CancelledError:
        deadline.cancel()
        call.cancel()
        raise

    if winner == "call":
        deadline.cancel()
        if call.cancelled():
            raise asyncio.CancelledError()
        exc = call.exception()
        if exc is None:
            return RaceResult(timed_out=False, value=call.result())
        if not isinstance(exc, Exception):
            raise exc
        return RaceResult(timed_out=False, error=exc)

    call.cancel()
    await asyncio.gather(call, return_exceptions=True)
    return RaceResult(timed_out=True)
