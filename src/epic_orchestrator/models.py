"""Data models for the epic orchestration engine.

Uses Pydantic for validation. Every status field is a closed enumeration so
comparisons can't drift into free-form strings.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PhaseStatus(str, Enum):
    """Status of a phase within an epic."""
    NOT_STARTED = "not_started"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class SubIssueState(str, Enum):
    """Remote state of a sub-issue. The tracker reports it in any case."""
    OPEN = "open"
    CLOSED = "closed"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            lowered = value.strip().lower()
            for member in cls:
                if member.value == lowered:
                    return member
        return None


class PipelineStatus(str, Enum):
    """Status of a pipeline item."""
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    PR_PENDING = "pr_pending"
    PR_REVIEW = "pr_review"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class PrStatus(str, Enum):
    """Status of the pull request attached to a pipeline item."""
    NONE = "none"
    DRAFT = "draft"
    READY = "ready"
    NEEDS_REVIEW = "needs_review"
    APPROVED = "approved"
    MERGED = "merged"
    CLOSED = "closed"


class SessionStatus(str, Enum):
    """Liveness of a worker session."""
    RUNNING = "Running"
    STOPPED = "Stopped"


class MergeMethod(str, Enum):
    """How a pull request is merged."""
    SQUASH = "squash"
    MERGE = "merge"
    REBASE = "rebase"


class RecoveryAction(str, Enum):
    """Recommended action for a session found during recovery."""
    RESUME = "resume"      # Agent alive, keep monitoring
    RESTART = "restart"    # Agent stopped but the work is still bound to an issue
    CLEANUP = "cleanup"    # Orphan session with nothing to resume
    NONE = "none"


# Main chain of the pipeline state machine, in order.
PIPELINE_FORWARD_ORDER = [
    PipelineStatus.QUEUED,
    PipelineStatus.IN_PROGRESS,
    PipelineStatus.PR_PENDING,
    PipelineStatus.PR_REVIEW,
    PipelineStatus.COMPLETED,
]

TERMINAL_PIPELINE_STATUSES = {
    PipelineStatus.COMPLETED,
    PipelineStatus.SKIPPED,
    PipelineStatus.FAILED,
}

MERGEABLE_PR_STATUSES = {PrStatus.READY, PrStatus.NEEDS_REVIEW}


# =============================================================================
# Work hierarchy
# =============================================================================

class EpicRef(BaseModel):
    """Identity of an epic: tracking repository plus issue number."""
    model_config = ConfigDict(frozen=True)

    repo: str = Field(..., description="Tracking repository in owner/repo format")
    number: int = Field(..., gt=0, description="Epic issue number")

    @property
    def key(self) -> str:
        return f"{self.repo}#{self.number}"

    def __str__(self) -> str:
        return self.key

    @classmethod
    def parse(cls, value: str) -> "EpicRef":
        """Parse an ``owner/repo#N`` reference."""
        repo, sep, number = value.strip().rpartition("#")
        if not sep or not repo or "/" not in repo or not number.isdigit():
            raise ValueError(f"Invalid epic reference '{value}' (expected owner/repo#N)")
        return cls(repo=repo, number=int(number))


class Phase(BaseModel):
    """An ordered stage of an epic."""
    number: int = Field(..., ge=1, description="1-based ordinal; defines execution order")
    name: str
    status: PhaseStatus = Field(default=PhaseStatus.NOT_STARTED)
    approach: str = Field(default="manual", description="manual, agent-assisted or automated")
    completed_count: int = 0
    total_count: int = 0


class SubIssue(BaseModel):
    """A remote issue holding one unit of phase work."""
    number: int
    title: str
    url: str = ""
    state: SubIssueState = SubIssueState.OPEN
    has_agent_working: bool = False
    pr_url: Optional[str] = None
    pr_number: Optional[int] = None
    session_name: Optional[str] = None
    phase: Optional[int] = None
    labels: list[str] = Field(default_factory=list)

    @field_validator("state", mode="before")
    @classmethod
    def _normalize_state(cls, value):
        # GitHub reports OPEN/CLOSED in upper case
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @property
    def is_open(self) -> bool:
        return self.state == SubIssueState.OPEN

    @property
    def is_closed(self) -> bool:
        return self.state == SubIssueState.CLOSED

    @property
    def has_pr(self) -> bool:
        return bool(self.pr_url) or self.pr_number is not None


class Epic(BaseModel):
    """Top-level unit of work tracked as a remote issue."""
    ref: EpicRef
    title: str
    url: str = ""
    work_repo: str = Field(..., description="Repository where agents do the work")
    local_repo_path: Optional[str] = None
    phases: list[Phase] = Field(default_factory=list)

    def get_phase(self, number: int) -> Optional[Phase]:
        for phase in self.phases:
            if phase.number == number:
                return phase
        return None


class EpicSnapshot(BaseModel):
    """Authoritative state of an epic as returned by the tracker.

    Phase statuses here are the ones the tracker reports; the engine derives
    the displayed status from them plus the sub-issues.
    """
    epic: Epic
    sub_issues: list[SubIssue] = Field(default_factory=list)
    fetched_at: datetime = Field(default_factory=datetime.now)

    def sub_issues_for_phase(self, phase_number: int) -> list[SubIssue]:
        return [s for s in self.sub_issues if s.phase == phase_number]

    def get_sub_issue(self, number: int) -> Optional[SubIssue]:
        for sub in self.sub_issues:
            if sub.number == number:
                return sub
        return None


class EpicCounts(BaseModel):
    """Aggregate sub-issue counts for an epic."""
    queued: int = 0
    blocked: int = 0  # Unassigned work in a phase after the current one
    in_progress: int = 0
    ready: int = 0
    completed: int = 0
    total: int = 0

    @property
    def percentage(self) -> int:
        return (self.completed * 100) // self.total if self.total else 0


# =============================================================================
# Worker sessions
# =============================================================================

class SessionMetadata(BaseModel):
    """Metadata stored with each worker session."""
    issue_ref: Optional[str] = Field(default=None, description="owner/repo#N")
    repo: Optional[str] = None
    worktree: Optional[str] = None
    agent_type: str = "unknown"
    machine_id: str = "unknown"
    started_at: Optional[datetime] = None

    @property
    def issue_number(self) -> Optional[int]:
        if not self.issue_ref:
            return None
        tail = self.issue_ref.rsplit("#", 1)[-1]
        return int(tail) if tail.isdigit() else None


class WorkerSession(BaseModel):
    """A live worker process, keyed by its unique name."""
    name: str
    status: SessionStatus = SessionStatus.RUNNING
    attached: bool = False
    created: Optional[datetime] = None
    metadata: Optional[SessionMetadata] = None

    @property
    def issue_number(self) -> Optional[int]:
        return self.metadata.issue_number if self.metadata else None

    @property
    def is_recoverable(self) -> bool:
        """Stopped while still bound to an issue (as opposed to deliberately killed)."""
        return (
            self.status == SessionStatus.STOPPED
            and self.metadata is not None
            and self.metadata.issue_ref is not None
        )


class AgentStatus(BaseModel):
    """Agent view of a session that carries metadata."""
    session: str
    issue_ref: Optional[str] = None
    issue_number: Optional[int] = None
    repo: Optional[str] = None
    worktree: Optional[str] = None
    agent_type: str = "unknown"
    machine_id: str = "unknown"
    started_at: Optional[datetime] = None
    status: SessionStatus = SessionStatus.RUNNING
    is_attached: bool = False
    is_local: bool = True


# =============================================================================
# Pipeline
# =============================================================================

class PipelineItem(BaseModel):
    """Tracks one sub-issue from assignment through merge.

    Transitions only move forward along queued -> in_progress -> pr_pending ->
    pr_review -> completed. ``skip`` is only legal from queued and ``fail``
    from any non-terminal state. Callers get ``False`` back for a transition
    that isn't allowed; the orchestrator turns that into a typed error where
    the caller asked for it explicitly.
    """
    id: str
    tracking_repo: str
    work_repo: str
    issue_number: int
    issue_title: str = ""
    issue_url: str = ""
    phase: Optional[int] = None
    agent_type: Optional[str] = None
    session_name: Optional[str] = None
    worktree_path: Optional[str] = None
    pr_number: Optional[int] = None
    pr_url: Optional[str] = None
    pr_status: PrStatus = PrStatus.NONE
    status: PipelineStatus = PipelineStatus.QUEUED
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    def can_advance_to(self, target: PipelineStatus) -> bool:
        """Whether ``target`` lies strictly ahead on the main chain."""
        if self.status in TERMINAL_PIPELINE_STATUSES:
            return False
        if target not in PIPELINE_FORWARD_ORDER:
            return False
        return PIPELINE_FORWARD_ORDER.index(target) > PIPELINE_FORWARD_ORDER.index(self.status)

    def _advance(self, target: PipelineStatus) -> bool:
        if not self.can_advance_to(target):
            return False
        self.status = target
        if target == PipelineStatus.COMPLETED:
            self.completed_at = datetime.now()
        return True

    def start_work(self, session_name: str, agent_type: str, worktree_path: Optional[str] = None) -> bool:
        """queued -> in_progress with session details."""
        if self.status != PipelineStatus.QUEUED:
            return False
        self.session_name = session_name
        self.agent_type = agent_type
        self.worktree_path = worktree_path
        self.started_at = datetime.now()
        return self._advance(PipelineStatus.IN_PROGRESS)

    def mark_pr_pending(self) -> bool:
        return self._advance(PipelineStatus.PR_PENDING)

    def link_pr(self, pr_number: Optional[int], pr_url: Optional[str], is_draft: bool = False) -> bool:
        """Attach a PR and move to pr_review."""
        if self.status in TERMINAL_PIPELINE_STATUSES:
            return False
        self.pr_number = pr_number
        self.pr_url = pr_url
        if self.pr_status in (PrStatus.NONE, PrStatus.DRAFT, PrStatus.READY):
            self.pr_status = PrStatus.DRAFT if is_draft else PrStatus.READY
        if self.status == PipelineStatus.PR_REVIEW:
            return True
        return self._advance(PipelineStatus.PR_REVIEW)

    def update_pr_status(self, pr_status: PrStatus) -> bool:
        """Apply a PR status; merged completes the item, closed fails it."""
        if self.status in TERMINAL_PIPELINE_STATUSES:
            return False
        self.pr_status = pr_status
        if pr_status == PrStatus.MERGED:
            return self._advance(PipelineStatus.COMPLETED)
        if pr_status == PrStatus.CLOSED:
            return self.fail("Pull request was closed without merging")
        if self.status != PipelineStatus.PR_REVIEW:
            return self._advance(PipelineStatus.PR_REVIEW)
        return True

    def complete(self) -> bool:
        if self.pr_status != PrStatus.NONE:
            self.pr_status = PrStatus.MERGED
        return self._advance(PipelineStatus.COMPLETED)

    def skip(self) -> bool:
        if self.status != PipelineStatus.QUEUED:
            return False
        self.status = PipelineStatus.SKIPPED
        self.completed_at = datetime.now()
        return True

    def fail(self, error: str) -> bool:
        if self.status in TERMINAL_PIPELINE_STATUSES:
            return False
        self.status = PipelineStatus.FAILED
        self.error = error
        self.completed_at = datetime.now()
        return True

    def is_active(self) -> bool:
        return self.status in (
            PipelineStatus.IN_PROGRESS,
            PipelineStatus.PR_PENDING,
            PipelineStatus.PR_REVIEW,
        )

    def is_complete(self) -> bool:
        return self.status in TERMINAL_PIPELINE_STATUSES

    def is_mergeable(self) -> bool:
        return (
            self.status == PipelineStatus.PR_REVIEW
            and self.pr_status in MERGEABLE_PR_STATUSES
        )


class PipelineSummary(BaseModel):
    """Counts of pipeline items by status."""
    queued: int = 0
    in_progress: int = 0
    pr_pending: int = 0
    pr_review: int = 0
    completed: int = 0
    skipped: int = 0
    failed: int = 0
    history: int = 0


# =============================================================================
# Events and operation results
# =============================================================================

class CompletionEvent(BaseModel):
    """A genuine open -> closed transition observed between two syncs."""
    issue_number: int
    title: str = ""
    phase: Optional[int] = None
    detected_at: datetime = Field(default_factory=datetime.now)
    notified: bool = False
    notify_error: Optional[str] = None


class MergeResult(BaseModel):
    """Outcome of merging one pull request."""
    issue_number: int
    success: bool
    phase_complete: bool = False
    phase: Optional[int] = None
    next_phase: Optional[int] = None
    error: Optional[str] = None


class MergeBatchResult(BaseModel):
    """Outcome of merging every ready pull request."""
    merges: list[MergeResult] = Field(default_factory=list)
    completed_phases: list[int] = Field(default_factory=list)

    @property
    def succeeded(self) -> list[MergeResult]:
        return [m for m in self.merges if m.success]

    @property
    def failed(self) -> list[MergeResult]:
        return [m for m in self.merges if not m.success]


class AssignResult(BaseModel):
    """Outcome of assigning a pipeline item to a worker."""
    issue_number: int
    session_name: str
    agent_type: str
    item: PipelineItem
    worktree_path: Optional[str] = None
    branch: Optional[str] = None
    tracker_error: Optional[str] = Field(
        default=None,
        description="Assignment comment or label failed; the session is running regardless"
    )


class PullRequestRef(BaseModel):
    """A pull request found or opened for a pipeline item."""
    number: Optional[int] = None
    url: str = ""
    is_draft: bool = False
    branch: Optional[str] = None


class KillResult(BaseModel):
    """Outcome of killing a session."""
    session: str
    killed: bool
    already_gone: bool = False


class RecoveryResult(BaseModel):
    """Per-session outcome of a recovery pass."""
    session: str
    action: RecoveryAction
    success: bool
    dry_run: bool = False
    error: Optional[str] = None


class MonitorView(BaseModel):
    """State published by the reconciliation loop after each cycle."""
    model_config = ConfigDict(frozen=True)

    epic: Optional[Epic] = None
    sub_issues: list[SubIssue] = Field(default_factory=list)
    counts: EpicCounts = Field(default_factory=EpicCounts)
    is_monitoring: bool = False
    last_check: Optional[datetime] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    completed_since_start: int = 0
    next_phase_ready: Optional[int] = None


class OrchestratorSnapshot(BaseModel):
    """Read-only view of everything the engine knows."""
    model_config = ConfigDict(frozen=True)

    epic: Optional[Epic] = None
    phases: list[Phase] = Field(default_factory=list)
    sub_issues: list[SubIssue] = Field(default_factory=list)
    pipeline_items: list[PipelineItem] = Field(default_factory=list)
    sessions: list[WorkerSession] = Field(default_factory=list)
    agents: list[AgentStatus] = Field(default_factory=list)
    counts: EpicCounts = Field(default_factory=EpicCounts)
    is_monitoring: bool = False
    last_check: Optional[datetime] = None
    last_error: Optional[str] = None
    sessions_error: Optional[str] = None
    completed_since_start: int = 0
    next_phase_ready: Optional[int] = None

    @field_validator("phases")
    @classmethod
    def _phases_in_order(cls, phases: list[Phase]) -> list[Phase]:
        return sorted(phases, key=lambda p: p.number)
