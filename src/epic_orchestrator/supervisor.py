"""Worker session supervision.

The supervisor owns the engine's view of worker sessions: it refreshes the
live list on its own timer, creates, kills and restarts sessions, and runs
recovery passes over sessions whose agent stopped while still bound to an
issue.

Session identity is the name. Two sessions never share a name: creating
one whose name is already running is rejected, and concurrent creates of
the same name are serialized out.
"""

from datetime import datetime
from typing import Awaitable, Callable, Optional

from rich.console import Console

from .config import OrchestratorConfig
from .errors import (
    SessionConflictError, SessionNotFoundError, SessionNotRestartableError, ValidationError,
)
from .event_log import EventLog, EventType
from .models import (
    AgentStatus, KillResult, RecoveryAction, RecoveryResult, SessionMetadata,
    SessionStatus, WorkerSession,
)
from .protocols import SessionGateway
from .scheduling import PeriodicTask, SingleFlight


console = Console()


SupervisorListener = Callable[[str], Awaitable[None]]


def resume_prompt(metadata: SessionMetadata) -> Optional[str]:
    """Prompt for an agent restarted on work it had already begun."""
    if not metadata.issue_ref:
        return None
    return (
        f"Continue working on GitHub issue {metadata.issue_ref}. "
        "Check git status and the issue to see what is left, then finish it."
    )


def recommend_action(session: WorkerSession) -> RecoveryAction:
    """Recommended recovery action for a session.

    Running sessions are resumed, stopped sessions still bound to an issue
    are restarted, and stopped sessions without issue metadata are orphans.
    """
    if session.status == SessionStatus.RUNNING:
        return RecoveryAction.RESUME
    if session.is_recoverable:
        return RecoveryAction.RESTART
    return RecoveryAction.CLEANUP


class SessionSupervisor:
    """Owns the set of worker sessions.

    Dependencies are injected for testability:
    - SessionGateway: the process manager (tmux in production)
    - EventLog: structured record of kills, restarts and recoveries
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        gateway: SessionGateway,
        event_log: Optional[EventLog] = None,
        listener: Optional[SupervisorListener] = None,
    ):
        """Initialize the supervisor.

        Args:
            config: Orchestrator configuration
            gateway: Session gateway
            event_log: Event log for session operations
            listener: Awaited with an event name whenever sessions or agents change
        """
        self.config = config
        self.gateway = gateway
        self.event_log = event_log
        self.listener = listener

        self.sessions: dict[str, WorkerSession] = {}
        self.agents: list[AgentStatus] = []
        self.last_error: Optional[str] = None
        self.agents_error: Optional[str] = None
        self.last_refresh: Optional[datetime] = None

        self._session_flight = SingleFlight("sessions")
        self._agent_flight = SingleFlight("agents")
        self._creating: set[str] = set()
        self._session_timer: Optional[PeriodicTask] = None
        self._agent_timer: Optional[PeriodicTask] = None

    # =========================================================================
    # Timers
    # =========================================================================

    def start(self) -> None:
        """Start the session (10s) and agent (12s) refresh timers."""
        if self._session_timer is None:
            self._session_timer = PeriodicTask(
                "sessions",
                self.config.session_poll_interval_seconds,
                self._refresh_sessions,
                flight=self._session_flight,
            )
        if self._agent_timer is None:
            self._agent_timer = PeriodicTask(
                "agents",
                self.config.agent_poll_interval_seconds,
                self._refresh_agents,
                flight=self._agent_flight,
            )
        self._session_timer.start()
        self._agent_timer.start()

    def stop(self) -> None:
        for timer in (self._session_timer, self._agent_timer):
            if timer is not None:
                timer.stop()

    @property
    def is_running(self) -> bool:
        return self._session_timer is not None and self._session_timer.is_running

    # =========================================================================
    # Refresh
    # =========================================================================

    async def refresh(self) -> list[WorkerSession]:
        """Refresh the session list now, joining a refresh already in flight."""
        return await self._session_flight.run(self._refresh_sessions)

    async def refresh_agents(self) -> list[AgentStatus]:
        """Refresh agent statuses now, joining a refresh already in flight."""
        return await self._agent_flight.run(self._refresh_agents)

    async def _refresh_sessions(self) -> list[WorkerSession]:
        try:
            live = await self.gateway.list_sessions()
        except Exception as e:
            self.last_error = str(e) or type(e).__name__
            console.print(f"[red]Session refresh failed: {self.last_error}[/red]")
            await self._emit("sessions.refresh_failed")
            return list(self.sessions.values())

        changed = {s.name: s for s in live} != self.sessions
        self.sessions = {s.name: s for s in live}
        self.last_error = None
        self.last_refresh = datetime.now()
        if changed:
            await self._emit("sessions.updated")
        return list(self.sessions.values())

    async def _refresh_agents(self) -> list[AgentStatus]:
        try:
            live = await self.gateway.list_sessions()
            machine_id = self.gateway.current_machine_id()
        except Exception as e:
            self.agents_error = str(e) or type(e).__name__
            console.print(f"[red]Agent refresh failed: {self.agents_error}[/red]")
            return list(self.agents)

        agents = [self._agent_status(s, machine_id) for s in live if s.metadata is not None]
        changed = agents != self.agents
        self.agents = agents
        self.agents_error = None
        if changed:
            await self._emit("agents.updated")
        return list(agents)

    @staticmethod
    def _agent_status(session: WorkerSession, machine_id: str) -> AgentStatus:
        meta = session.metadata or SessionMetadata()
        return AgentStatus(
            session=session.name,
            issue_ref=meta.issue_ref,
            issue_number=meta.issue_number,
            repo=meta.repo,
            worktree=meta.worktree,
            agent_type=meta.agent_type,
            machine_id=meta.machine_id,
            started_at=meta.started_at,
            status=session.status,
            is_attached=session.attached,
            is_local=meta.machine_id in (machine_id, "unknown"),
        )

    def local_agents(self) -> list[AgentStatus]:
        return [a for a in self.agents if a.is_local]

    def remote_agents(self) -> list[AgentStatus]:
        return [a for a in self.agents if not a.is_local]

    # =========================================================================
    # Queries
    # =========================================================================

    async def list_sessions(self) -> list[WorkerSession]:
        """Live sessions with their derived Running/Stopped status."""
        return await self.refresh()

    def get(self, name: str) -> Optional[WorkerSession]:
        """Cached session by name."""
        return self.sessions.get(name)

    def find_by_issue(self, issue_number: int) -> Optional[WorkerSession]:
        for session in self.sessions.values():
            if session.issue_number == issue_number:
                return session
        return None

    async def _require(self, name: str) -> WorkerSession:
        await self.refresh()
        session = self.sessions.get(name)
        if session is None:
            raise SessionNotFoundError(f"Session '{name}' not found")
        return session

    # =========================================================================
    # Operations
    # =========================================================================

    async def create(
        self,
        name: str,
        working_dir: Optional[str] = None,
        metadata: Optional[SessionMetadata] = None,
        prompt: Optional[str] = None,
    ) -> WorkerSession:
        """Create a session.

        A stopped leftover with the same name is replaced; a running one is
        left untouched and the request is rejected.

        Raises:
            ValidationError: If the name is empty
            SessionConflictError: If a session with this name is running or being created
        """
        if not name or not name.strip():
            raise ValidationError("Session name must not be empty")
        if name in self._creating:
            raise SessionConflictError(f"Session '{name}' is already being created")

        self._creating.add(name)
        try:
            await self.refresh()
            existing = self.sessions.get(name)
            if existing is not None:
                if existing.status == SessionStatus.RUNNING:
                    raise SessionConflictError(f"Session '{name}' is already running")
                await self.gateway.kill_session(name)

            await self.gateway.create_session(name, working_dir=working_dir, metadata=metadata, prompt=prompt)
            console.print(f"[green]Started session {name}[/green]")

            session = WorkerSession(
                name=name,
                status=SessionStatus.RUNNING,
                created=datetime.now(),
                metadata=metadata,
            )
            self.sessions[name] = session
            await self._emit("sessions.updated")
            return session
        finally:
            self._creating.discard(name)

    async def kill(self, name: str) -> KillResult:
        """Kill a session. Killing a session that is already gone succeeds."""
        await self.refresh()
        if name not in self.sessions:
            return KillResult(session=name, killed=False, already_gone=True)

        await self.gateway.kill_session(name)
        self.sessions.pop(name, None)
        console.print(f"[yellow]Killed session {name}[/yellow]")
        self._log(EventType.SESSION_KILLED, session=name)
        await self._emit("sessions.updated")
        return KillResult(session=name, killed=True)

    async def restart(self, name: str) -> WorkerSession:
        """Re-spawn the agent of a stopped session with the same metadata.

        Raises:
            SessionNotFoundError: If no session has this name
            SessionNotRestartableError: If it's running or carries no issue metadata
        """
        session = await self._require(name)
        if session.status == SessionStatus.RUNNING:
            raise SessionNotRestartableError(f"Session '{name}' is running; only stopped sessions can be restarted")
        if not session.is_recoverable:
            raise SessionNotRestartableError(
                f"Session '{name}' has no issue metadata; assign the issue again instead"
            )
        return await self._respawn(session)

    async def _respawn(self, session: WorkerSession) -> WorkerSession:
        metadata = session.metadata.model_copy(update={"started_at": datetime.now()})
        await self.gateway.kill_session(session.name)
        self.sessions.pop(session.name, None)
        try:
            await self.gateway.create_session(
                session.name,
                working_dir=metadata.worktree,
                metadata=metadata,
                prompt=resume_prompt(metadata),
            )
        except Exception:
            await self._restore_stopped(session)
            raise
        restarted = session.model_copy(update={
            "status": SessionStatus.RUNNING,
            "metadata": metadata,
            "created": datetime.now(),
        })
        self.sessions[session.name] = restarted
        console.print(f"[green]Restarted agent in {session.name}[/green]")
        self._log(EventType.SESSION_RESTARTED, session=session.name, issue=metadata.issue_ref)
        await self._emit("sessions.updated")
        return restarted

    async def _restore_stopped(self, session: WorkerSession) -> None:
        """Put back a bare session with the old metadata so a failed restart can be retried."""
        try:
            await self.gateway.create_session(session.name, metadata=session.metadata, start_agent=False)
        except Exception as e:
            console.print(f"[red]Could not restore {session.name} after a failed restart: {e}[/red]")
            return
        self.sessions[session.name] = session.model_copy(update={"status": SessionStatus.STOPPED})
        console.print(f"[yellow]Restart of {session.name} failed; left it stopped for another attempt[/yellow]")
        await self._emit("sessions.updated")

    async def recover_all(self, dry_run: bool = False, cleanup_orphans: bool = False) -> list[RecoveryResult]:
        """Restart every stopped session that still carries issue metadata.

        Each session is handled independently; one failed restart doesn't
        stop the others.

        Args:
            dry_run: Report what would happen without touching any session
            cleanup_orphans: Also kill stopped sessions with no issue metadata

        Returns:
            One result per stopped session considered
        """
        await self.refresh()
        results = []

        for session in sorted(self.sessions.values(), key=lambda s: s.name):
            action = recommend_action(session)
            if action == RecoveryAction.RESUME:
                continue
            if action == RecoveryAction.CLEANUP and not cleanup_orphans:
                continue

            if dry_run:
                results.append(RecoveryResult(session=session.name, action=action, success=True, dry_run=True))
                continue

            try:
                if action == RecoveryAction.RESTART:
                    await self._respawn(session)
                else:
                    await self.gateway.kill_session(session.name)
                    self.sessions.pop(session.name, None)
                results.append(RecoveryResult(session=session.name, action=action, success=True))
            except Exception as e:
                console.print(f"[red]Could not recover {session.name}: {e}[/red]")
                results.append(RecoveryResult(session=session.name, action=action, success=False, error=str(e)))

        if results and not dry_run:
            self._log(
                EventType.RECOVERY,
                succeeded=[r.session for r in results if r.success],
                failed={r.session: r.error for r in results if not r.success},
            )
            await self._emit("sessions.updated")
        return results

    async def send_command(self, name: str, text: str) -> None:
        """Type a command into a session.

        Raises:
            SessionNotFoundError: If no session has this name
        """
        await self._require(name)
        await self.gateway.send_command(name, text)

    async def read_output(self, name: str, max_lines: int = 100) -> str:
        """Read recent output from a session.

        Raises:
            ValidationError: If max_lines is not positive
            SessionNotFoundError: If no session has this name
        """
        if max_lines <= 0:
            raise ValidationError("max_lines must be positive")
        await self._require(name)
        return await self.gateway.read_output(name, max_lines)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _log(self, entry_type: EventType, **fields) -> None:
        if self.event_log is not None:
            self.event_log.write(entry_type, **fields)

    async def _emit(self, event: str) -> None:
        if self.listener is not None:
            await self.listener(event)
