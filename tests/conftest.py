"""Shared fixtures: in-memory gateways and epic builders."""

import asyncio
from datetime import datetime
from typing import Optional

import pytest

from epic_orchestrator.config import OrchestratorConfig
from epic_orchestrator.errors import GatewayError
from epic_orchestrator.models import (
    Epic, EpicRef, EpicSnapshot, MergeMethod, MergeResult, Phase, PhaseStatus,
    PullRequestRef, SessionMetadata, SessionStatus, SubIssue, SubIssueState, WorkerSession,
)


# =============================================================================
# Mock Implementations for Testing
# =============================================================================

class MockTracker:
    """In-memory implementation of the TrackerGateway protocol."""

    def __init__(self, snapshot: Optional[EpicSnapshot] = None):
        self.snapshot = snapshot
        self.fetch_calls = 0
        self.fetch_error: Optional[Exception] = None
        self.fetch_gate: Optional[asyncio.Event] = None
        self.notified: list[int] = []
        self.notify_fail_for: set[int] = set()
        self.merge_calls: list[tuple] = []
        self.merge_fail_for: set[int] = set()
        self.phase_updates: list[tuple[int, PhaseStatus]] = []
        self.assigned: list[tuple] = []
        self.assign_error: Optional[Exception] = None
        self.created_prs: list[tuple] = []
        self.open_prs: dict[str, PullRequestRef] = {}
        self.find_fail_for: set[str] = set()

    def set_state(self, issue_number: int, state: str) -> None:
        self.snapshot.get_sub_issue(issue_number).state = SubIssueState(state)

    async def fetch_epic_state(self, ref: EpicRef) -> EpicSnapshot:
        self.fetch_calls += 1
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.snapshot.model_copy(deep=True)

    async def set_phase_status(self, ref: EpicRef, phase_number: int, status: PhaseStatus) -> None:
        self.phase_updates.append((phase_number, status))
        phase = self.snapshot.epic.get_phase(phase_number)
        if phase is not None:
            phase.status = status

    async def merge_pull_request(
        self,
        work_repo: str,
        issue_number: int,
        pr_number: Optional[int],
        method: MergeMethod,
        delete_branch: bool,
    ) -> MergeResult:
        self.merge_calls.append((work_repo, issue_number, pr_number, method, delete_branch))
        if issue_number in self.merge_fail_for:
            return MergeResult(issue_number=issue_number, success=False, error="Pull request is not mergeable")
        return MergeResult(issue_number=issue_number, success=True)

    async def notify_item_complete(self, ref: EpicRef, issue_number: int, success: bool) -> None:
        if issue_number in self.notify_fail_for:
            raise GatewayError("API rate limit exceeded")
        self.notified.append(issue_number)

    async def mark_item_assigned(
        self,
        repo: str,
        issue_number: int,
        session_name: str,
        metadata: SessionMetadata,
        labels: list[str],
    ) -> None:
        if self.assign_error is not None:
            raise self.assign_error
        self.assigned.append((repo, issue_number, session_name, list(labels)))

    async def create_pull_request(self, work_repo: str, branch: str, base: str, title: str, body: str) -> PullRequestRef:
        self.created_prs.append((work_repo, branch, base, title, body))
        number = 100 + len(self.created_prs)
        pr = PullRequestRef(number=number, url=f"https://github.com/{work_repo}/pull/{number}", branch=branch)
        self.open_prs[branch] = pr
        return pr

    async def find_pull_request(self, work_repo: str, branch: str) -> Optional[PullRequestRef]:
        if branch in self.find_fail_for:
            raise GatewayError("gh pr list failed")
        return self.open_prs.get(branch)


class MockSessions:
    """In-memory implementation of the SessionGateway protocol."""

    def __init__(self):
        self.sessions: dict[str, WorkerSession] = {}
        self.calls: list[tuple] = []
        self.list_error: Optional[Exception] = None
        self.create_fail_for: set[str] = set()
        self.prompts: dict[str, Optional[str]] = {}
        self.create_gate: Optional[asyncio.Event] = None

    def add(
        self,
        name: str,
        status: SessionStatus = SessionStatus.RUNNING,
        issue_ref: Optional[str] = None,
        agent_type: str = "claude",
        worktree: Optional[str] = "/work/repo",
        machine_id: str = "test-host",
    ) -> WorkerSession:
        metadata = None
        if issue_ref is not None:
            metadata = SessionMetadata(
                issue_ref=issue_ref,
                repo="org/work",
                worktree=worktree,
                agent_type=agent_type,
                machine_id=machine_id,
                started_at=datetime(2026, 1, 1, 12, 0),
            )
        session = WorkerSession(name=name, status=status, metadata=metadata)
        self.sessions[name] = session
        return session

    @property
    def mutating_calls(self) -> list[tuple]:
        return [c for c in self.calls if c[0] != "list"]

    async def list_sessions(self) -> list[WorkerSession]:
        self.calls.append(("list",))
        if self.list_error is not None:
            raise self.list_error
        return [s.model_copy(deep=True) for s in self.sessions.values()]

    async def create_session(
        self,
        name: str,
        working_dir: Optional[str] = None,
        metadata: Optional[SessionMetadata] = None,
        prompt: Optional[str] = None,
        start_agent: bool = True,
    ) -> None:
        if not start_agent:
            self.calls.append(("create_shell", name))
            self.sessions[name] = WorkerSession(name=name, status=SessionStatus.STOPPED, metadata=metadata)
            return
        self.calls.append(("create", name, working_dir))
        self.prompts[name] = prompt
        if self.create_gate is not None:
            await self.create_gate.wait()
        if name in self.create_fail_for:
            raise GatewayError(f"could not start {name}")
        self.sessions[name] = WorkerSession(name=name, status=SessionStatus.RUNNING, metadata=metadata)

    async def kill_session(self, name: str) -> None:
        self.calls.append(("kill", name))
        self.sessions.pop(name, None)

    async def send_command(self, name: str, text: str) -> None:
        self.calls.append(("send", name, text))

    async def read_output(self, name: str, max_lines: int = 100) -> str:
        self.calls.append(("read", name, max_lines))
        return "\n".join(f"line {i}" for i in range(max_lines))

    def current_machine_id(self) -> str:
        return "test-host"


class MockWorktrees:
    """In-memory implementation of the WorktreeGateway protocol."""

    def __init__(self):
        self.created: list[tuple[str, str]] = []
        self.pushed: list[tuple[str, str]] = []
        self.push_error: Optional[Exception] = None

    async def create_worktree(self, repo_path: str, branch: str) -> str:
        self.created.append((repo_path, branch))
        return f"/worktrees/{branch}"

    async def push_branch(self, worktree_path: str, branch: str) -> None:
        if self.push_error is not None:
            raise self.push_error
        self.pushed.append((worktree_path, branch))


# =============================================================================
# Builders
# =============================================================================

EPIC_REF = EpicRef(repo="org/tracker", number=1)


def sub_issue(
    number: int,
    phase: Optional[int] = 1,
    state: str = "open",
    agent: bool = False,
    pr: Optional[int] = None,
) -> SubIssue:
    return SubIssue(
        number=number,
        title=f"Issue {number}",
        url=f"https://github.com/org/tracker/issues/{number}",
        state=state,
        has_agent_working=agent,
        pr_number=pr,
        pr_url=f"https://github.com/org/work/pull/{pr}" if pr else None,
        phase=phase,
    )


def make_snapshot(sub_issues: list[SubIssue], phase_count: int = 2) -> EpicSnapshot:
    phases = [Phase(number=n, name=f"Phase {n}") for n in range(1, phase_count + 1)]
    epic = Epic(
        ref=EPIC_REF,
        title="Rewrite the scheduler",
        url="https://github.com/org/tracker/issues/1",
        work_repo="org/work",
        phases=phases,
    )
    return EpicSnapshot(epic=epic, sub_issues=sub_issues)


@pytest.fixture
def epic_ref() -> EpicRef:
    return EPIC_REF


@pytest.fixture
def config() -> OrchestratorConfig:
    # Long intervals: tests drive syncs explicitly
    return OrchestratorConfig(
        epic_poll_interval_seconds=3600,
        session_poll_interval_seconds=3600,
        agent_poll_interval_seconds=3600,
    )


@pytest.fixture
def scenario_snapshot() -> EpicSnapshot:
    """Phase 1 holds #10 and #11, phase 2 holds #12."""
    return make_snapshot([
        sub_issue(10, phase=1),
        sub_issue(11, phase=1, agent=True),
        sub_issue(12, phase=2),
    ])


@pytest.fixture
def tracker(scenario_snapshot) -> MockTracker:
    return MockTracker(scenario_snapshot)


@pytest.fixture
def sessions() -> MockSessions:
    return MockSessions()


@pytest.fixture
def worktrees() -> MockWorktrees:
    return MockWorktrees()
