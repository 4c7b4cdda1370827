"""Pipeline and merge automation.

Each sub-issue the engine works on gets a ``PipelineItem`` that walks
forward from queued to completed. Items are rebuilt from the tracker and the
session list on every sync, so nothing here needs to be durable.
"""

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Optional

from rich.console import Console

from .config import OrchestratorConfig
from .errors import GatewayError, InvalidTransitionError, NotFoundError, ValidationError
from .event_log import EventLog, EventType
from .models import (
    AssignResult, EpicSnapshot, MergeBatchResult, MergeMethod, MergeResult,
    PipelineItem, PipelineStatus, PipelineSummary, PrStatus, SessionMetadata,
    SubIssue, WorkerSession,
)
from .phases import derive_phases, is_phase_cleared, next_phase_number
from .protocols import TrackerGateway, WorktreeGateway
from .supervisor import SessionSupervisor


console = Console()


PipelineListener = Callable[[str], Awaitable[None]]


def issue_reference(item: PipelineItem) -> str:
    """How a PR in the work repo refers to the item's issue."""
    if item.tracking_repo == item.work_repo:
        return f"#{item.issue_number}"
    return f"{item.tracking_repo}#{item.issue_number}"


def issue_prompt(item: PipelineItem, branch: str) -> str:
    """Starting prompt that gives the agent its issue."""
    title = f": {item.issue_title}" if item.issue_title else ""
    return (
        f"Work on GitHub issue {item.tracking_repo}#{item.issue_number}{title}. "
        f"Read it with `gh issue view {item.issue_number} --repo {item.tracking_repo}`. "
        f"Commit your changes on branch {branch} and open a pull request "
        f"against {item.work_repo} that closes {issue_reference(item)}."
    )


def item_id(tracking_repo: str, issue_number: int) -> str:
    return f"{tracking_repo}#{issue_number}"


class PipelineState:
    """Active pipeline items plus a bounded history of archived ones."""

    def __init__(self, history_limit: int = 100):
        self.history_limit = history_limit
        self.items: dict[str, PipelineItem] = {}
        self.history: list[PipelineItem] = []

    def add(self, item: PipelineItem) -> PipelineItem:
        self.items[item.id] = item
        return item

    def get(self, id: str) -> Optional[PipelineItem]:
        return self.items.get(id)

    def find_by_issue(self, issue_number: int, tracking_repo: Optional[str] = None) -> Optional[PipelineItem]:
        for item in self.items.values():
            if item.issue_number != issue_number:
                continue
            if tracking_repo is None or item.tracking_repo == tracking_repo:
                return item
        return None

    def find_by_session(self, session_name: str) -> Optional[PipelineItem]:
        for item in self.items.values():
            if item.session_name == session_name:
                return item
        return None

    def find_by_pr(self, pr_number: int) -> Optional[PipelineItem]:
        for item in self.items.values():
            if item.pr_number == pr_number:
                return item
        return None

    def all_items(self) -> list[PipelineItem]:
        return sorted(self.items.values(), key=lambda i: (i.phase or 0, i.issue_number))

    def active_items(self) -> list[PipelineItem]:
        return [i for i in self.all_items() if i.is_active()]

    def mergeable_items(self) -> list[PipelineItem]:
        return [i for i in self.all_items() if i.is_mergeable()]

    def merged_issues(self, tracking_repo: Optional[str] = None) -> set[int]:
        """Issue numbers whose PR was merged, including archived items."""
        return {
            item.issue_number
            for item in [*self.items.values(), *self.history]
            if (item.status == PipelineStatus.COMPLETED or item.pr_status == PrStatus.MERGED)
            and (tracking_repo is None or item.tracking_repo == tracking_repo)
        }

    def archive(self, id: str) -> Optional[PipelineItem]:
        """Remove an item from the active set, whatever its state.

        Items that reached a terminal state are kept in history.
        """
        item = self.items.pop(id, None)
        if item is None:
            return None
        if item.is_complete():
            self.history.append(item)
            if len(self.history) > self.history_limit:
                self.history = self.history[-self.history_limit:] if self.history_limit else []
        return item

    def archive_completed(self) -> int:
        """Archive every terminal item. Returns how many were moved."""
        done = [i.id for i in self.items.values() if i.is_complete()]
        for id in done:
            self.archive(id)
        return len(done)

    def summary(self) -> PipelineSummary:
        summary = PipelineSummary(history=len(self.history))
        for item in self.items.values():
            setattr(summary, item.status.value, getattr(summary, item.status.value) + 1)
        return summary


class PipelineAutomation:
    """Drives pipeline items through assignment, PR review and merge.

    Dependencies are injected for testability:
    - TrackerGateway: performs merges
    - SessionSupervisor: allocates worker sessions on assign
    - WorktreeGateway: optional; gives each assignment its own checkout

    Merges take ``_merge_lock`` so they run one at a time; assignment never
    takes it, so a long batch doesn't hold up new work.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        tracker: TrackerGateway,
        supervisor: SessionSupervisor,
        event_log: Optional[EventLog] = None,
        listener: Optional[PipelineListener] = None,
        worktrees: Optional[WorktreeGateway] = None,
    ):
        """Initialize pipeline automation.

        Args:
            config: Orchestrator configuration
            tracker: Tracker gateway used for merges
            supervisor: Session supervisor used for assignments
            event_log: Event log for assign/skip/merge records
            listener: Awaited with "pipeline.updated" after each change
            worktrees: Creates issue worktrees and pushes their branches (None = work in repo_path)
        """
        self.config = config
        self.tracker = tracker
        self.supervisor = supervisor
        self.event_log = event_log
        self.listener = listener
        self.worktrees = worktrees
        self.state = PipelineState(history_limit=config.pipeline_history_limit)
        self._merge_lock = asyncio.Lock()

    # =========================================================================
    # Item lifecycle
    # =========================================================================

    def enqueue(self, sub_issue: SubIssue, tracking_repo: str, work_repo: str) -> PipelineItem:
        """Queue a sub-issue. Returns the existing item if there is one."""
        existing = self.state.get(item_id(tracking_repo, sub_issue.number))
        if existing is not None:
            return existing
        return self.state.add(PipelineItem(
            id=item_id(tracking_repo, sub_issue.number),
            tracking_repo=tracking_repo,
            work_repo=work_repo,
            issue_number=sub_issue.number,
            issue_title=sub_issue.title,
            issue_url=sub_issue.url,
            phase=sub_issue.phase,
        ))

    def _resolve(self, issue_number: int, snapshot: Optional[EpicSnapshot] = None) -> PipelineItem:
        tracking_repo = snapshot.epic.ref.repo if snapshot else None
        item = self.state.find_by_issue(issue_number, tracking_repo)
        if item is not None:
            return item
        sub = snapshot.get_sub_issue(issue_number) if snapshot else None
        if sub is None:
            raise NotFoundError(f"Issue #{issue_number} is not a sub-issue of the selected epic")
        return self.enqueue(sub, snapshot.epic.ref.repo, snapshot.epic.work_repo)

    async def assign(
        self,
        issue_number: int,
        agent_type: str,
        repo_path: str,
        snapshot: Optional[EpicSnapshot] = None,
    ) -> AssignResult:
        """Start a worker session for a queued item.

        Args:
            issue_number: Sub-issue to work on
            agent_type: Agent to run in the session
            repo_path: Local repository the agent works in
            snapshot: Current epic snapshot, used to queue the issue if needed

        Raises:
            ValidationError: Missing repo path, agent type or issue number
            NotFoundError: Issue is not part of the epic
            InvalidTransitionError: Item isn't queued
            SessionConflictError: A session for the issue is already running
        """
        if not repo_path or not str(repo_path).strip():
            raise ValidationError("A local repository path is required to assign work")
        if not agent_type or not agent_type.strip():
            raise ValidationError("An agent type is required to assign work")
        if issue_number <= 0:
            raise ValidationError(f"Invalid issue number: {issue_number}")

        item = self._resolve(issue_number, snapshot)
        if item.status != PipelineStatus.QUEUED:
            raise InvalidTransitionError(
                f"Issue #{issue_number} is {item.status.value}; only queued items can be assigned"
            )

        session_name = self.config.session_name_for_issue(issue_number)
        branch = self.config.branch_for_issue(issue_number)
        worktree = str(Path(repo_path).expanduser())
        if self.worktrees is not None and self.config.use_worktrees:
            worktree = await self.worktrees.create_worktree(worktree, branch)
        metadata = SessionMetadata(
            issue_ref=item_id(item.tracking_repo, issue_number),
            repo=item.work_repo,
            worktree=worktree,
            agent_type=agent_type,
            machine_id=self.supervisor.gateway.current_machine_id(),
            started_at=datetime.now(),
        )
        await self.supervisor.create(
            session_name,
            working_dir=worktree,
            metadata=metadata,
            prompt=issue_prompt(item, branch),
        )

        # A session refresh may already have picked the new session up
        if item.status == PipelineStatus.QUEUED:
            item.start_work(session_name, agent_type, worktree)

        # The session is running either way; a tracker failure is reported, not raised
        tracker_error = None
        try:
            await self.tracker.mark_item_assigned(
                item.tracking_repo, issue_number, session_name, metadata, self.config.assigned_labels,
            )
        except GatewayError as e:
            tracker_error = str(e)
            console.print(f"[yellow]Could not mark #{issue_number} as assigned: {e}[/yellow]")

        console.print(f"[green]Assigned #{issue_number} to {agent_type} in {session_name}[/green]")
        self._log(
            EventType.ASSIGN, issue=issue_number, session=session_name,
            agent_type=agent_type, worktree=worktree, tracker_error=tracker_error,
        )
        await self._emit()
        return AssignResult(
            issue_number=issue_number,
            session_name=session_name,
            agent_type=agent_type,
            item=item.model_copy(),
            worktree_path=worktree,
            branch=branch,
            tracker_error=tracker_error,
        )

    async def skip(self, issue_number: int, snapshot: Optional[EpicSnapshot] = None) -> PipelineItem:
        """Skip a queued item."""
        item = self._resolve(issue_number, snapshot)
        if not item.skip():
            raise InvalidTransitionError(
                f"Issue #{issue_number} is {item.status.value}; only queued items can be skipped"
            )
        self._log(EventType.SKIP, issue=issue_number)
        await self._emit()
        return item

    async def fail(self, issue_number: int, error: str) -> PipelineItem:
        item = self.state.find_by_issue(issue_number)
        if item is None:
            raise NotFoundError(f"No pipeline item for #{issue_number}")
        if not item.fail(error):
            raise InvalidTransitionError(f"Issue #{issue_number} is already {item.status.value}")
        await self._emit()
        return item

    async def link_pr(
        self,
        issue_number: int,
        pr_number: Optional[int],
        pr_url: Optional[str],
        is_draft: bool = False,
    ) -> PipelineItem:
        item = self.state.find_by_issue(issue_number)
        if item is None:
            raise NotFoundError(f"No pipeline item for #{issue_number}")
        if not item.link_pr(pr_number, pr_url, is_draft):
            raise InvalidTransitionError(f"Issue #{issue_number} is already {item.status.value}")
        await self._emit()
        return item

    async def open_pr(self, issue_number: int, title: Optional[str] = None) -> PipelineItem:
        """Push an agent's branch and open a pull request for it.

        The item moves to pr_pending before the push, so a failed push or
        PR creation leaves it there and the call can simply be repeated.

        Raises:
            NotFoundError: No pipeline item for the issue
            InvalidTransitionError: Item isn't being worked on
            GatewayError: Push or PR creation failed
        """
        item = self.state.find_by_issue(issue_number)
        if item is None:
            raise NotFoundError(f"No pipeline item for #{issue_number}")
        if item.status not in (PipelineStatus.IN_PROGRESS, PipelineStatus.PR_PENDING):
            raise InvalidTransitionError(
                f"Issue #{issue_number} is {item.status.value}; a PR can only be opened for work in progress"
            )

        branch = self.config.branch_for_issue(issue_number)
        item.mark_pr_pending()
        await self._emit()

        if self.worktrees is not None and self.config.use_worktrees and item.worktree_path:
            await self.worktrees.push_branch(item.worktree_path, branch)
        pr = await self.tracker.create_pull_request(
            item.work_repo,
            branch,
            self.config.pr_base_branch,
            title or f"{item.issue_title or 'Issue'} (#{issue_number})",
            f"Closes {issue_reference(item)}\n\nOpened from `{branch}` by epic-orchestrator.",
        )
        item.link_pr(pr.number, pr.url, pr.is_draft)

        console.print(f"[green]Opened PR for #{issue_number}: {pr.url}[/green]")
        self._log(EventType.PR_OPENED, issue=issue_number, pr=pr.number, url=pr.url)
        await self._emit()
        return item.model_copy()

    async def detect_prs(self) -> list[PipelineItem]:
        """Link open PRs that agents opened themselves from their issue branches.

        Lookup failures are reported per item and skipped; the remaining
        items are still checked.
        """
        linked = []
        for item in self.state.active_items():
            if item.pr_number is not None or item.status not in (
                PipelineStatus.IN_PROGRESS, PipelineStatus.PR_PENDING,
            ):
                continue
            branch = self.config.branch_for_issue(item.issue_number)
            try:
                pr = await self.tracker.find_pull_request(item.work_repo, branch)
            except GatewayError as e:
                console.print(f"[yellow]PR lookup for #{item.issue_number} failed: {e}[/yellow]")
                continue
            if pr is None or not item.link_pr(pr.number, pr.url, pr.is_draft):
                continue
            self._log(EventType.PR_DETECTED, issue=item.issue_number, pr=pr.number, url=pr.url)
            linked.append(item.model_copy())

        if linked:
            console.print(f"[green]Linked {len(linked)} agent PR(s)[/green]")
            await self._emit()
        return linked

    def archive(self, issue_number: int) -> Optional[PipelineItem]:
        item = self.state.find_by_issue(issue_number)
        return self.state.archive(item.id) if item else None

    def summary(self) -> PipelineSummary:
        return self.state.summary()

    # =========================================================================
    # Reconciliation
    # =========================================================================

    def reconcile(self, snapshot: EpicSnapshot, sessions: list[WorkerSession]) -> bool:
        """Bring items in line with the tracker and the live sessions.

        Every sub-issue of the epic gets an item. Items only ever move
        forward: a session found for a queued item starts it, a PR moves it
        to review, and a closed sub-issue completes it.

        Returns:
            True if any item changed
        """
        tracking_repo = snapshot.epic.ref.repo
        changed = False

        for sub in snapshot.sub_issues:
            item = self.state.get(item_id(tracking_repo, sub.number))
            if item is None:
                if sub.is_closed:
                    continue
                item = self.enqueue(sub, tracking_repo, snapshot.epic.work_repo)
                changed = True
            if item.is_complete():
                continue

            before = item.model_dump()
            item.issue_title = sub.title
            item.phase = sub.phase

            if sub.is_closed:
                item.complete()
            else:
                session = self._session_for(sub.number, tracking_repo, sessions)
                if session is not None and item.status == PipelineStatus.QUEUED:
                    meta = session.metadata or SessionMetadata()
                    item.start_work(session.name, meta.agent_type, meta.worktree)
                if sub.has_pr and (item.pr_number != sub.pr_number or item.status != PipelineStatus.PR_REVIEW):
                    item.link_pr(sub.pr_number, sub.pr_url)

            if item.model_dump() != before:
                changed = True

        return changed

    def _session_for(
        self,
        issue_number: int,
        tracking_repo: str,
        sessions: list[WorkerSession],
    ) -> Optional[WorkerSession]:
        expected_name = self.config.session_name_for_issue(issue_number)
        expected_ref = item_id(tracking_repo, issue_number)
        for session in sessions:
            if session.name == expected_name:
                return session
            if session.metadata and session.metadata.issue_ref == expected_ref:
                return session
        return None

    # =========================================================================
    # Merging
    # =========================================================================

    async def merge_one(
        self,
        issue_number: int,
        method: Optional[MergeMethod] = None,
        delete_branch: Optional[bool] = None,
        snapshot: Optional[EpicSnapshot] = None,
    ) -> MergeResult:
        """Merge the PR of one item.

        Raises:
            ValidationError: If the issue number is not positive
            NotFoundError: If no pipeline item exists for the issue
            InvalidTransitionError: If the item has no PR or is already finished
        """
        if not isinstance(issue_number, int) or issue_number <= 0:
            raise ValidationError(f"Invalid issue number: {issue_number}")

        item = self.state.find_by_issue(issue_number, snapshot.epic.ref.repo if snapshot else None)
        if item is None:
            raise NotFoundError(f"No pipeline item for #{issue_number}")
        if item.is_complete():
            raise InvalidTransitionError(f"Issue #{issue_number} is already {item.status.value}")
        if item.pr_number is None and not item.pr_url:
            raise InvalidTransitionError(f"Issue #{issue_number} has no pull request to merge")

        async with self._merge_lock:
            result = await self._merge(item, method, delete_branch, snapshot, merged=set())
        await self._emit()
        return result

    async def merge_all_ready(
        self,
        method: Optional[MergeMethod] = None,
        delete_branch: Optional[bool] = None,
        snapshot: Optional[EpicSnapshot] = None,
    ) -> MergeBatchResult:
        """Merge every item whose PR is ready or needs review.

        Merges run one after another. A failure is recorded for that item
        and the batch moves on.

        Returns:
            Per-item results and the phases this batch completed
        """
        batch = MergeBatchResult()
        merged: set[int] = set()

        async with self._merge_lock:
            candidates = self.state.mergeable_items()
            if not candidates:
                console.print("[dim]No pull requests ready to merge[/dim]")
                return batch

            for item in candidates:
                result = await self._merge(item, method, delete_branch, snapshot, merged)
                batch.merges.append(result)
                if result.success:
                    merged.add(item.issue_number)

        phases = {r.phase for r in batch.succeeded if r.phase is not None}
        sub_issues = snapshot.sub_issues if snapshot else []
        # Items merged one at a time since the last sync count as cleared too
        cleared = merged | self.state.merged_issues(snapshot.epic.ref.repo if snapshot else None)
        batch.completed_phases = sorted(
            p for p in phases if is_phase_cleared(p, sub_issues, cleared)
        )

        console.print(
            f"Merged {len(batch.succeeded)}/{len(batch.merges)} pull requests"
            + (f", {len(batch.failed)} failed" if batch.failed else "")
        )
        await self._emit()
        return batch

    async def _merge(
        self,
        item: PipelineItem,
        method: Optional[MergeMethod],
        delete_branch: Optional[bool],
        snapshot: Optional[EpicSnapshot],
        merged: set[int],
    ) -> MergeResult:
        method = method or self.config.default_merge_method
        if delete_branch is None:
            delete_branch = self.config.delete_branch_on_merge

        try:
            remote = await self.tracker.merge_pull_request(
                item.work_repo, item.issue_number, item.pr_number, method, delete_branch,
            )
        except Exception as e:
            remote = MergeResult(issue_number=item.issue_number, success=False, error=str(e) or type(e).__name__)

        result = MergeResult(
            issue_number=item.issue_number,
            success=remote.success,
            phase=item.phase,
            error=remote.error,
        )

        if not result.success:
            item.error = result.error
            console.print(f"[red]Merge of #{item.issue_number} failed: {result.error}[/red]")
        else:
            item.error = None
            item.update_pr_status(PrStatus.MERGED)
            if item.phase is not None:
                if snapshot is not None:
                    cleared = is_phase_cleared(
                        item.phase,
                        snapshot.sub_issues,
                        merged | self.state.merged_issues(item.tracking_repo) | {item.issue_number},
                    )
                else:
                    cleared = remote.phase_complete
                if cleared:
                    result.phase_complete = True
                    phases = derive_phases(snapshot) if snapshot else []
                    result.next_phase = next_phase_number(phases, item.phase) or remote.next_phase

        self._log(
            EventType.MERGE,
            issue=item.issue_number,
            success=result.success,
            phase_complete=result.phase_complete,
            error=result.error,
        )
        return result

    # =========================================================================
    # Helpers
    # =========================================================================

    def _log(self, entry_type: EventType, **fields) -> None:
        if self.event_log is not None:
            self.event_log.write(entry_type, **fields)

    async def _emit(self) -> None:
        if self.listener is not None:
            await self.listener("pipeline.updated")
