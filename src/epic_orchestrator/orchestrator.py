"""Composition root of the engine.

``Orchestrator`` wires the reconciliation loop, the session supervisor and
pipeline automation together around two injected gateways, and is the only
surface the presentation layer talks to: a read-only snapshot, a
subscription channel and the imperative operations.
"""

from pathlib import Path
from typing import Optional, Union

from rich.console import Console

from .config import OrchestratorConfig
from .errors import NotFoundError, ValidationError
from .event_log import EventLog, EventType
from .models import (
    AssignResult, EpicRef, KillResult, MergeBatchResult, MergeMethod, MergeResult,
    OrchestratorSnapshot, PhaseStatus, PipelineItem, RecoveryResult, WorkerSession,
)
from .pipeline import PipelineAutomation
from .protocols import SessionGateway, TrackerGateway, WorktreeGateway
from .reconciliation import EpicMonitor, SyncOutcome
from .store import EventBus, StateStore, Subscriber
from .supervisor import SessionSupervisor


console = Console()


class Orchestrator:
    """The engine instance.

    Constructed explicitly by the process entry point and passed to whoever
    needs it; there is no module-level instance.

    Dependencies are injected for testability:
    - TrackerGateway: issues, phases and pull requests
    - SessionGateway: worker processes
    - StateStore: durable epic snapshots (optional)
    - EventLog: JSONL activity log (optional)
    - WorktreeGateway: per-issue checkouts and branch pushes (optional)
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        tracker: TrackerGateway,
        sessions: SessionGateway,
        store: Optional[StateStore] = None,
        event_log: Optional[EventLog] = None,
        worktrees: Optional[WorktreeGateway] = None,
    ):
        self.config = config
        self.tracker = tracker
        self.store = store
        self.event_log = event_log
        self.bus = EventBus()

        self.monitor = EpicMonitor(config, tracker, store, event_log, listener=self._on_monitor_event)
        self.supervisor = SessionSupervisor(config, sessions, event_log, listener=self._on_supervisor_event)
        self.pipeline = PipelineAutomation(
            config, tracker, self.supervisor, event_log,
            listener=self._on_pipeline_event, worktrees=worktrees,
        )

    @classmethod
    def for_project(
        cls,
        project_path: Path,
        config: OrchestratorConfig,
        tracker: TrackerGateway,
        sessions: SessionGateway,
        worktrees: Optional[WorktreeGateway] = None,
    ) -> "Orchestrator":
        """Build an orchestrator whose store and event log live under the project."""
        state_dir = config.state_path(project_path)
        return cls(
            config,
            tracker,
            sessions,
            store=StateStore(state_dir),
            event_log=EventLog(state_dir, rotation_kb=config.event_log_rotation_kb),
            worktrees=worktrees,
        )

    # =========================================================================
    # Read surface
    # =========================================================================

    def snapshot(self) -> OrchestratorSnapshot:
        """Immutable view of the current engine state.

        Every record is a deep copy, so a subscriber that mutates what it
        receives never reaches the engine's own state.
        """
        view = self.monitor.view
        epic = view.epic.model_copy(deep=True) if view.epic else None
        return OrchestratorSnapshot(
            epic=epic,
            phases=list(epic.phases) if epic else [],
            sub_issues=[s.model_copy(deep=True) for s in view.sub_issues],
            pipeline_items=[i.model_copy(deep=True) for i in self.pipeline.state.all_items()],
            sessions=[
                s.model_copy(deep=True)
                for s in sorted(self.supervisor.sessions.values(), key=lambda s: s.name)
            ],
            agents=[a.model_copy(deep=True) for a in self.supervisor.agents],
            counts=view.counts.model_copy(),
            is_monitoring=self.monitor.is_monitoring,
            last_check=view.last_check,
            last_error=view.last_error,
            sessions_error=self.supervisor.last_error,
            completed_since_start=view.completed_since_start,
            next_phase_ready=view.next_phase_ready,
        )

    def subscribe(self, callback: Subscriber):
        """Register for change notifications. Returns an unsubscribe function."""
        return self.bus.subscribe(callback)

    def unsubscribe(self, callback: Subscriber) -> bool:
        return self.bus.unsubscribe(callback)

    async def publish(self, event: str) -> None:
        await self.bus.publish(event, self.snapshot())

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the session and agent timers."""
        self.supervisor.start()

    async def shutdown(self) -> None:
        """Stop every timer. Work in flight is left to finish."""
        await self.monitor.stop_monitoring(reason="shutdown")
        self.supervisor.stop()

    # =========================================================================
    # Epic selection and monitoring
    # =========================================================================

    @staticmethod
    def _parse_ref(ref: Union[EpicRef, str]) -> EpicRef:
        if isinstance(ref, EpicRef):
            return ref
        try:
            return EpicRef.parse(ref)
        except ValueError as e:
            raise ValidationError(str(e)) from e

    def current_ref(self) -> EpicRef:
        if self.monitor.ref is not None:
            return self.monitor.ref
        last = self.store.last_used() if self.store else None
        if last is not None:
            self.monitor.select(last.ref)
            return last.ref
        raise ValidationError("No epic linked - run link with owner/repo#N first")

    async def link_epic(self, ref: Union[EpicRef, str], local_repo_path: Optional[str] = None) -> EpicRef:
        """Select an epic, optionally recording the local repository used for it."""
        ref = self._parse_ref(ref)
        if local_repo_path is not None and not local_repo_path.strip():
            raise ValidationError("Local repository path must not be empty")
        if local_repo_path and self.store:
            self.store.set_local_repo_path(ref, local_repo_path)
        if self.monitor.select(ref):
            await self.publish("epic.linked")
        return ref

    async def unlink_epic(self, ref: Union[EpicRef, str, None] = None) -> bool:
        """Forget an epic and its stored snapshot."""
        ref = self._parse_ref(ref) if ref is not None else self.current_ref()
        if self.monitor.ref == ref:
            await self.monitor.clear()
        removed = self.store.remove(ref) if self.store else False
        await self.publish("epic.unlinked")
        return removed

    async def start_monitoring(self, ref: Union[EpicRef, str, None] = None) -> bool:
        ref = self._parse_ref(ref) if ref is not None else self.current_ref()
        return await self.monitor.start_monitoring(ref)

    async def stop_monitoring(self) -> bool:
        return await self.monitor.stop_monitoring()

    async def force_sync(self) -> SyncOutcome:
        self.current_ref()
        return await self.monitor.force_sync()

    async def mark_phase_status(self, phase_number: int, status: PhaseStatus) -> SyncOutcome:
        """Write a phase status override to the tracker and sync.

        Raises:
            ValidationError: No epic selected or phase number out of range
            NotFoundError: The epic has no phase with this number
        """
        ref = self.current_ref()
        if phase_number < 1:
            raise ValidationError(f"Invalid phase number: {phase_number}")
        status = PhaseStatus(status)
        snapshot = self.monitor.snapshot
        if snapshot is not None and snapshot.epic.phases and snapshot.epic.get_phase(phase_number) is None:
            raise NotFoundError(f"Epic {ref} has no phase {phase_number}")

        await self.tracker.set_phase_status(ref, phase_number, status)
        console.print(f"Phase {phase_number} of {ref} marked {status.value}")
        self._log(EventType.PHASE_STATUS, epic=ref.key, phase=phase_number, status=status.value)
        return await self.monitor.force_sync()

    # =========================================================================
    # Pipeline operations
    # =========================================================================

    async def assign(
        self,
        issue_number: int,
        agent_type: Optional[str] = None,
        repo_path: Optional[str] = None,
    ) -> AssignResult:
        """Assign a sub-issue to a new worker session.

        ``repo_path`` defaults to the path recorded for the epic; an empty
        string is rejected.
        """
        ref = self.monitor.ref
        if repo_path is None and self.store:
            repo_path = (
                (self.store.get_local_repo_path(ref) if ref else None)
                or self.store.last_used_repo_path()
            )
        result = await self.pipeline.assign(
            issue_number,
            agent_type or self.config.default_agent_type,
            repo_path or "",
            snapshot=self.monitor.snapshot,
        )
        if ref is not None and self.store:
            self.store.set_local_repo_path(ref, repo_path)
        return result

    async def open_pr(self, issue_number: int, title: Optional[str] = None) -> PipelineItem:
        return await self.pipeline.open_pr(issue_number, title)

    async def detect_prs(self) -> list[PipelineItem]:
        """Link PRs agents opened on their own issue branches."""
        return await self.pipeline.detect_prs()

    async def skip(self, issue_number: int) -> PipelineItem:
        return await self.pipeline.skip(issue_number, snapshot=self.monitor.snapshot)

    async def merge_one(
        self,
        issue_number: int,
        method: Optional[MergeMethod] = None,
        delete_branch: Optional[bool] = None,
    ) -> MergeResult:
        result = await self.pipeline.merge_one(
            issue_number, method, delete_branch, snapshot=self.monitor.snapshot,
        )
        if result.phase_complete:
            await self.publish("phase.completed")
        return result

    async def merge_all_ready(
        self,
        method: Optional[MergeMethod] = None,
        delete_branch: Optional[bool] = None,
    ) -> MergeBatchResult:
        batch = await self.pipeline.merge_all_ready(method, delete_branch, snapshot=self.monitor.snapshot)
        for _ in batch.completed_phases:
            await self.publish("phase.completed")
        return batch

    # =========================================================================
    # Session operations
    # =========================================================================

    async def list_sessions(self) -> list[WorkerSession]:
        return await self.supervisor.list_sessions()

    async def kill(self, name: str) -> KillResult:
        return await self.supervisor.kill(name)

    async def restart(self, name: str) -> WorkerSession:
        return await self.supervisor.restart(name)

    async def recover_all(self, dry_run: bool = False, cleanup_orphans: bool = False) -> list[RecoveryResult]:
        return await self.supervisor.recover_all(dry_run=dry_run, cleanup_orphans=cleanup_orphans)

    async def send_command(self, name: str, text: str) -> None:
        await self.supervisor.send_command(name, text)

    async def read_output(self, name: str, max_lines: int = 100) -> str:
        return await self.supervisor.read_output(name, max_lines)

    # =========================================================================
    # Component listeners
    # =========================================================================

    async def _on_monitor_event(self, event: str, outcome: Optional[SyncOutcome]) -> None:
        if event != "epic.synced" or outcome is None or outcome.snapshot is None:
            await self.publish(event)
            return

        pipeline_changed = self.pipeline.reconcile(
            outcome.snapshot, list(self.supervisor.sessions.values()),
        )
        await self.publish("epic.synced")
        for _ in outcome.completions:
            await self.publish("issue.completed")
        for _ in outcome.completed_phases:
            await self.publish("phase.completed")
        if pipeline_changed:
            await self.publish("pipeline.updated")

    async def _on_supervisor_event(self, event: str) -> None:
        if event == "sessions.updated" and self.monitor.snapshot is not None:
            await self.publish(event)
            if self.pipeline.reconcile(self.monitor.snapshot, list(self.supervisor.sessions.values())):
                await self.publish("pipeline.updated")
            return
        await self.publish(event)

    async def _on_pipeline_event(self, event: str) -> None:
        await self.publish(event)

    def _log(self, entry_type: EventType, **fields) -> None:
        if self.event_log is not None:
            self.event_log.write(entry_type, **fields)

