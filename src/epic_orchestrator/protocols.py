"""Protocol definitions for the external collaborators.

The engine never talks to the tracker or the process manager directly; it
goes through these two narrow interfaces. Concrete implementations live in
``epic_orchestrator.gateways`` and tests substitute in-memory fakes.
"""

from typing import Optional, Protocol, runtime_checkable

from .models import (
    EpicRef, EpicSnapshot, MergeMethod, MergeResult, PhaseStatus,
    PullRequestRef, SessionMetadata, WorkerSession,
)


@runtime_checkable
class TrackerGateway(Protocol):
    """Issue and pull request operations against the remote tracker."""

    async def fetch_epic_state(self, ref: EpicRef) -> EpicSnapshot:
        """Fetch the epic, its phases and all of its sub-issues.

        Raises:
            GatewayError: If the tracker can't be reached
        """
        ...

    async def set_phase_status(self, ref: EpicRef, phase_number: int, status: PhaseStatus) -> None:
        """Write a phase status override to the tracker."""
        ...

    async def merge_pull_request(
        self,
        work_repo: str,
        issue_number: int,
        pr_number: Optional[int],
        method: MergeMethod,
        delete_branch: bool,
    ) -> MergeResult:
        """Merge the pull request for an issue.

        Failures are reported in the result rather than raised.
        """
        ...

    async def notify_item_complete(self, ref: EpicRef, issue_number: int, success: bool) -> None:
        """Tell the tracker a sub-issue finished (comment, progress update)."""
        ...

    async def mark_item_assigned(
        self,
        repo: str,
        issue_number: int,
        session_name: str,
        metadata: SessionMetadata,
        labels: list[str],
    ) -> None:
        """Record on the issue that an agent took it (metadata comment and labels)."""
        ...

    async def create_pull_request(
        self,
        work_repo: str,
        branch: str,
        base: str,
        title: str,
        body: str,
    ) -> PullRequestRef:
        """Open a pull request from ``branch`` into ``base``."""
        ...

    async def find_pull_request(self, work_repo: str, branch: str) -> Optional[PullRequestRef]:
        """Open pull request whose head is ``branch``, if any."""
        ...


@runtime_checkable
class SessionGateway(Protocol):
    """Worker process operations."""

    async def list_sessions(self) -> list[WorkerSession]:
        """List live sessions with their derived status."""
        ...

    async def create_session(
        self,
        name: str,
        working_dir: Optional[str] = None,
        metadata: Optional[SessionMetadata] = None,
        prompt: Optional[str] = None,
        start_agent: bool = True,
    ) -> None:
        """Create a session and start the agent for ``metadata.agent_type``.

        ``prompt`` is handed to the agent on startup. With ``start_agent``
        false the session is left at a shell, which lists as Stopped.
        """
        ...

    async def kill_session(self, name: str) -> None:
        """Kill a session."""
        ...

    async def send_command(self, name: str, text: str) -> None:
        """Type a line into the session followed by Enter."""
        ...

    async def read_output(self, name: str, max_lines: int = 100) -> str:
        """Read the last lines of the session's output."""
        ...

    def current_machine_id(self) -> str:
        """Identifier of the machine this engine runs on."""
        ...


@runtime_checkable
class WorktreeGateway(Protocol):
    """Git worktrees that isolate each agent's work."""

    async def create_worktree(self, repo_path: str, branch: str) -> str:
        """Create (or reuse) a worktree for ``branch`` and return its path.

        Raises:
            GatewayError: If git fails
        """
        ...

    async def push_branch(self, worktree_path: str, branch: str) -> None:
        """Push ``branch`` to origin from the worktree."""
        ...
