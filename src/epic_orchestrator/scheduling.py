"""Timers and single-flight guards.

Each monitored resource (an epic, the session list, the agent list) gets its
own ``PeriodicTask`` and its own ``SingleFlight``. A tick that lands while the
previous fetch is still running is dropped, not queued.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

from rich.console import Console


console = Console()


class SingleFlight:
    """At most one in-flight call for a resource.

    ``run`` joins the call already in flight instead of starting a duplicate,
    so a forced refresh waits for the pending one and shares its result.
    ``try_start`` is for timers: it returns None when a call is in flight.
    """

    def __init__(self, name: str):
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    def try_start(self, factory: Callable[[], Awaitable[Any]]) -> Optional[asyncio.Task]:
        """Start a call unless one is already in flight."""
        if self.busy:
            return None
        self._task = asyncio.ensure_future(factory())
        return self._task

    async def run(self, factory: Callable[[], Awaitable[Any]]) -> Any:
        """Run a call, or wait for the one in flight and return its result."""
        task = self._task if self.busy else None
        if task is None:
            task = asyncio.ensure_future(factory())
            self._task = task
        # shield: a cancelled waiter must not abort the shared call
        return await asyncio.shield(task)

    async def wait(self) -> None:
        """Wait for the in-flight call, if any, ignoring its outcome."""
        if self._task is not None and not self._task.done():
            await asyncio.wait({self._task})


class PeriodicTask:
    """Fixed-cadence ticker that launches work through a ``SingleFlight``.

    ``stop`` cancels the timer only; work already in flight runs to
    completion and applies its result.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        work: Callable[[], Awaitable[Any]],
        flight: Optional[SingleFlight] = None,
        run_immediately: bool = True,
    ):
        """Initialize the ticker.

        Args:
            name: Name used in log lines
            interval: Seconds between ticks
            work: Coroutine factory run on every tick
            flight: Guard shared with ad-hoc callers of the same work
            run_immediately: Fire the first tick as soon as the timer starts
        """
        self.name = name
        self.interval = interval
        self.work = work
        self.flight = flight or SingleFlight(name)
        self.run_immediately = run_immediately
        self.dropped_ticks = 0
        self._timer: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def start(self) -> bool:
        """Start the timer. Returns False if it was already running."""
        if self.is_running:
            return False
        self._timer = asyncio.ensure_future(self._loop())
        return True

    def stop(self) -> bool:
        """Cancel the timer. Returns False if it wasn't running."""
        if not self.is_running:
            self._timer = None
            return False
        self._timer.cancel()
        self._timer = None
        return True

    def tick(self) -> Optional[asyncio.Task]:
        """Launch one unit of work unless one is in flight."""
        task = self.flight.try_start(self.work)
        if task is None:
            self.dropped_ticks += 1
            console.print(f"[dim]{self.name}: previous run still in flight, tick dropped[/dim]")
        else:
            task.add_done_callback(self._report_failure)
        return task

    def _report_failure(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            console.print(f"[red]{self.name}: {exc}[/red]")

    async def _loop(self) -> None:
        if self.run_immediately:
            self.tick()
        while True:
            await asyncio.sleep(self.interval)
            self.tick()
