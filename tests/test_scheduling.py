"""Tests for the timers and single-flight guards."""

import asyncio

import pytest

from epic_orchestrator.scheduling import PeriodicTask, SingleFlight


async def settle(rounds: int = 5) -> None:
    """Let scheduled tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class TestSingleFlight:
    """Tests for SingleFlight."""

    @pytest.mark.asyncio
    async def test_run_joins_call_in_flight(self):
        """A second caller should share the first caller's result."""
        flight = SingleFlight("test")
        gate = asyncio.Event()
        calls = []

        async def work():
            calls.append(1)
            await gate.wait()
            return len(calls)

        async def release():
            await settle()
            gate.set()

        first, second, _ = await asyncio.gather(flight.run(work), flight.run(work), release())

        assert calls == [1]
        assert first == second == 1

    @pytest.mark.asyncio
    async def test_try_start_returns_none_when_busy(self):
        flight = SingleFlight("test")
        gate = asyncio.Event()

        async def work():
            await gate.wait()

        task = flight.try_start(work)
        assert task is not None
        assert flight.busy
        assert flight.try_start(work) is None

        gate.set()
        await task
        assert not flight.busy
        assert flight.try_start(work) is not None
        await flight.wait()

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_abort_shared_call(self):
        """Cancelling one joined caller leaves the call running for the rest."""
        flight = SingleFlight("test")
        gate = asyncio.Event()

        async def work():
            await gate.wait()
            return "done"

        waiter = asyncio.ensure_future(flight.run(work))
        await settle()
        waiter.cancel()
        await settle()

        assert flight.busy
        gate.set()
        assert await flight.run(work) == "done"


class TestPeriodicTask:
    """Tests for PeriodicTask."""

    @pytest.mark.asyncio
    async def test_first_tick_runs_immediately(self):
        runs = []

        async def work():
            runs.append(1)

        ticker = PeriodicTask("test", interval=3600, work=work)
        assert ticker.start()
        assert not ticker.start()
        await settle()

        assert runs == [1]
        assert ticker.stop()
        assert not ticker.stop()

    @pytest.mark.asyncio
    async def test_tick_dropped_while_busy(self):
        """Ticks that land on an in-flight run are dropped, not queued."""
        gate = asyncio.Event()
        runs = []

        async def work():
            runs.append(1)
            await gate.wait()

        ticker = PeriodicTask("test", interval=3600, work=work, run_immediately=False)
        first = ticker.tick()
        assert ticker.tick() is None
        assert ticker.tick() is None
        assert ticker.dropped_ticks == 2

        gate.set()
        await first
        assert runs == [1]

    @pytest.mark.asyncio
    async def test_stop_leaves_work_in_flight(self):
        """Stopping the timer must not cancel a run already started."""
        gate = asyncio.Event()
        finished = []

        async def work():
            await gate.wait()
            finished.append(1)

        flight = SingleFlight("test")
        ticker = PeriodicTask("test", interval=3600, work=work, flight=flight)
        ticker.start()
        await settle()
        assert flight.busy

        ticker.stop()
        gate.set()
        await flight.wait()

        assert finished == [1]
        assert not ticker.is_running

    @pytest.mark.asyncio
    async def test_failed_run_does_not_stop_timer(self):
        async def work():
            raise RuntimeError("boom")

        ticker = PeriodicTask("test", interval=3600, work=work)
        ticker.start()
        await settle()

        assert ticker.is_running
        ticker.stop()
