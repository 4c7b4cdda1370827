"""Reconciliation loop for a monitored epic.

On a fixed cadence the loop pulls the epic from the tracker, replaces the
stored snapshot, hands the new sub-issues to the completion detector, and
publishes a fresh ``MonitorView``. The view is swapped in with a single
assignment at the end of the cycle, so readers never see new sub-issues
paired with old counts.

A failed fetch leaves the stored snapshot, the counts and ``last_check``
untouched; the next tick simply tries again.
"""

from datetime import datetime
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, Field
from rich.console import Console

from .completion import CompletionDetector, compute_counts
from .config import OrchestratorConfig
from .errors import ValidationError
from .event_log import EventLog, EventType
from .models import (
    CompletionEvent, EpicRef, EpicSnapshot, MonitorView,
)
from .phases import derive_phases, newly_completed_phases, next_startable_phase
from .protocols import TrackerGateway
from .scheduling import PeriodicTask, SingleFlight
from .store import StateStore


console = Console()


class SyncOutcome(BaseModel):
    """What one reconciliation cycle did."""
    ref: EpicRef
    success: bool
    stale: bool = False  # Finished after the monitor switched to another epic
    error: Optional[str] = None
    completions: list[CompletionEvent] = Field(default_factory=list)
    notify_failures: list[CompletionEvent] = Field(default_factory=list)
    completed_phases: list[int] = Field(default_factory=list)
    next_phase_ready: Optional[int] = None
    snapshot: Optional[EpicSnapshot] = None


MonitorListener = Callable[[str, Optional[SyncOutcome]], Awaitable[None]]


class EpicMonitor:
    """Polls one epic at a time and detects completions.

    Single Responsibility: own the reconciliation snapshot and the
    previous-state map of the monitored epic.

    Dependencies are injected for testability:
    - TrackerGateway: source of truth for the epic
    - StateStore: durable copy of the last good snapshot
    - EventLog: structured record of every cycle
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        tracker: TrackerGateway,
        store: Optional[StateStore] = None,
        event_log: Optional[EventLog] = None,
        listener: Optional[MonitorListener] = None,
    ):
        """Initialize the monitor.

        Args:
            config: Orchestrator configuration
            tracker: Tracker gateway
            store: Durable snapshot store
            event_log: Event log for sync records
            listener: Awaited after every state change with an event name
        """
        self.config = config
        self.tracker = tracker
        self.store = store
        self.event_log = event_log
        self.listener = listener

        self.detector = CompletionDetector(tracker, auto_notify=config.auto_notify)
        self.ref: Optional[EpicRef] = None
        self.view = MonitorView()

        self._snapshot: Optional[EpicSnapshot] = None
        self._timer: Optional[PeriodicTask] = None
        self._flights: dict[str, SingleFlight] = {}
        self._generation = 0

    # =========================================================================
    # State accessors
    # =========================================================================

    @property
    def is_monitoring(self) -> bool:
        return self._timer is not None and self._timer.is_running

    @property
    def snapshot(self) -> Optional[EpicSnapshot]:
        """Last-known-good snapshot of the selected epic."""
        return self._snapshot

    def _flight_for(self, ref: EpicRef) -> SingleFlight:
        flight = self._flights.get(ref.key)
        if flight is None:
            flight = SingleFlight(f"sync {ref.key}")
            self._flights[ref.key] = flight
        return flight

    # =========================================================================
    # Selection and lifecycle
    # =========================================================================

    def select(self, ref: EpicRef) -> bool:
        """Make ``ref`` the current epic.

        Switching epics reseeds the previous-state map from the stored
        snapshot of the new epic so nothing leaks across epics.

        Returns:
            True if the selection changed
        """
        if self.ref == ref:
            return False

        if self.is_monitoring:
            self._timer.stop()
            self._timer = None

        self._generation += 1
        self.ref = ref
        stored = self.store.load_snapshot(ref) if self.store else None
        self._snapshot = stored
        self.detector.reset(stored.sub_issues if stored else None)

        if stored is not None:
            phases = derive_phases(stored)
            self.view = MonitorView(
                epic=stored.epic.model_copy(update={"phases": phases}),
                sub_issues=list(stored.sub_issues),
                counts=compute_counts(stored.sub_issues),
            )
        else:
            self.view = MonitorView()
        return True

    async def start_monitoring(self, ref: EpicRef) -> bool:
        """Start polling ``ref``.

        Calling this again for the epic already being monitored is a no-op.

        Returns:
            True if a timer was started
        """
        if self.is_monitoring and self.ref == ref:
            return False

        self.select(ref)
        generation = self._generation
        self._timer = PeriodicTask(
            name=f"epic {ref.key}",
            interval=self.config.epic_poll_interval_seconds,
            work=lambda: self._sync(ref, generation),
            flight=self._flight_for(ref),
        )
        self.view = self.view.model_copy(update={
            "is_monitoring": True,
            "completed_since_start": 0,
            "consecutive_failures": 0,
        })
        self._timer.start()

        console.print(f"[green]Monitoring {ref.key} every {self.config.epic_poll_interval_seconds:g}s[/green]")
        self._log(EventType.MONITORING, epic=ref.key, action="started")
        await self._emit("monitoring.started", None)
        return True

    async def stop_monitoring(self, reason: Optional[str] = None) -> bool:
        """Stop the timer.

        A sync already in flight is left to finish and apply its result.

        Returns:
            False if monitoring wasn't running
        """
        if self._timer is None:
            return False

        self._timer.stop()
        self._timer = None
        self.view = self.view.model_copy(update={"is_monitoring": False})

        console.print(f"[yellow]Stopped monitoring {self.ref}{f': {reason}' if reason else ''}[/yellow]")
        self._log(EventType.MONITORING, epic=str(self.ref), action="stopped", reason=reason)
        await self._emit("monitoring.stopped", None)
        return True

    async def force_sync(self) -> SyncOutcome:
        """Sync now, outside the timer.

        Shares the single-flight guard with the timer: if a sync is already
        running this waits for it and returns its outcome.

        Raises:
            ValidationError: If no epic is selected
        """
        if self.ref is None:
            raise ValidationError("No epic selected - link or start monitoring an epic first")
        ref, generation = self.ref, self._generation
        return await self._flight_for(ref).run(lambda: self._sync(ref, generation))

    async def sync_once(self, ref: Optional[EpicRef] = None) -> SyncOutcome:
        """Run one cycle for ``ref`` (or the selected epic) without starting the timer."""
        if ref is not None:
            self.select(ref)
        return await self.force_sync()

    async def clear(self) -> None:
        """Stop monitoring and forget the selected epic."""
        await self.stop_monitoring(reason="epic unlinked")
        self._generation += 1
        self.ref = None
        self._snapshot = None
        self.detector.reset()
        self.view = MonitorView()

    # =========================================================================
    # One reconciliation cycle
    # =========================================================================

    async def _sync(self, ref: EpicRef, generation: int) -> SyncOutcome:
        try:
            snapshot = await self.tracker.fetch_epic_state(ref)
        except Exception as e:
            return await self._record_failure(ref, generation, str(e) or type(e).__name__)

        local_path = self.store.get_local_repo_path(ref) if self.store else None
        if local_path and not snapshot.epic.local_repo_path:
            snapshot.epic.local_repo_path = local_path

        if generation != self._generation:
            # Monitor moved to another epic while we were fetching
            if self.store:
                self.store.save_snapshot(ref, snapshot)
            return SyncOutcome(ref=ref, success=True, stale=True, snapshot=snapshot)

        # 1. Replace the reconciliation snapshot
        previous = self._snapshot
        self._snapshot = snapshot
        if self.store:
            self.store.save_snapshot(ref, snapshot)

        # 2. Detect completions against the states recorded before this sync
        detection = await self.detector.process(ref, snapshot.sub_issues)

        # 3. Derive phases and counts, then publish in one assignment
        phases = derive_phases(snapshot)
        completed_phases = (
            newly_completed_phases(derive_phases(previous), phases) if previous else []
        )
        next_ready = next_startable_phase(phases) if self.config.auto_start_next_phase else None

        if generation != self._generation:
            return SyncOutcome(ref=ref, success=True, stale=True, snapshot=snapshot)

        self.view = MonitorView(
            epic=snapshot.epic.model_copy(update={"phases": phases}),
            sub_issues=list(snapshot.sub_issues),
            counts=detection.counts,
            is_monitoring=self.is_monitoring,
            last_check=datetime.now(),
            last_error=None,
            consecutive_failures=0,
            completed_since_start=self.view.completed_since_start + len(detection.events),
            next_phase_ready=next_ready,
        )

        outcome = SyncOutcome(
            ref=ref,
            success=True,
            completions=detection.events,
            notify_failures=detection.notify_failures,
            completed_phases=completed_phases,
            next_phase_ready=next_ready,
            snapshot=snapshot,
        )
        self._log_success(outcome)
        await self._emit("epic.synced", outcome)
        return outcome

    async def _record_failure(self, ref: EpicRef, generation: int, error: str) -> SyncOutcome:
        outcome = SyncOutcome(ref=ref, success=False, error=error)
        if generation != self._generation:
            outcome.stale = True
            return outcome

        failures = self.view.consecutive_failures + 1
        self.view = self.view.model_copy(update={
            "last_error": error,
            "consecutive_failures": failures,
        })
        console.print(f"[red]Sync of {ref.key} failed ({failures}x): {error}[/red]")
        self._log(EventType.SYNC_FAILED, epic=ref.key, error=error, consecutive_failures=failures)
        await self._emit("epic.sync_failed", outcome)

        limit = self.config.max_consecutive_sync_failures
        if limit is not None and failures >= limit and self.is_monitoring:
            await self.stop_monitoring(reason=f"{failures} consecutive sync failures")
        return outcome

    # =========================================================================
    # Helpers
    # =========================================================================

    def _log_success(self, outcome: SyncOutcome) -> None:
        if self.event_log is None:
            return
        ref = outcome.ref.key
        self.event_log.write(
            EventType.SYNC,
            epic=ref,
            sub_issues=len(outcome.snapshot.sub_issues) if outcome.snapshot else 0,
            completions=[e.issue_number for e in outcome.completions],
        )
        for event in outcome.completions:
            self.event_log.write(EventType.COMPLETION, epic=ref, issue=event.issue_number, phase=event.phase)
        for event in outcome.notify_failures:
            self.event_log.write(EventType.NOTIFY_FAILED, epic=ref, issue=event.issue_number, error=event.notify_error)
        for phase in outcome.completed_phases:
            self.event_log.write(EventType.PHASE_COMPLETED, epic=ref, phase=phase)

    def _log(self, entry_type: EventType, **fields) -> None:
        if self.event_log is not None:
            self.event_log.write(entry_type, **fields)

    async def _emit(self, event: str, outcome: Optional[SyncOutcome]) -> None:
        if self.listener is not None:
            await self.listener(event, outcome)
