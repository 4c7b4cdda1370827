"""Tests for pipeline state and merge automation."""

import pytest

from conftest import MockTracker, make_snapshot, sub_issue
from epic_orchestrator.errors import (
    GatewayError, InvalidTransitionError, NotFoundError, SessionConflictError, ValidationError,
)
from epic_orchestrator.event_log import EventLog, EventType
from epic_orchestrator.models import (
    MergeMethod, PipelineItem, PipelineStatus, PrStatus, PullRequestRef, SessionStatus, SubIssueState,
)
from epic_orchestrator.pipeline import PipelineAutomation, PipelineState, issue_reference, item_id
from epic_orchestrator.supervisor import SessionSupervisor


@pytest.fixture
def pipeline(config, tracker, sessions):
    return PipelineAutomation(config, tracker, SessionSupervisor(config, sessions))


def review_snapshot():
    """Three open PRs: #10 and #11 in phase 1, #12 in phase 2."""
    return make_snapshot([
        sub_issue(10, phase=1, pr=20),
        sub_issue(11, phase=1, pr=21),
        sub_issue(12, phase=2, pr=22),
    ])


class TestPipelineState:
    """Tests for PipelineState."""

    def make(self, number, status=PipelineStatus.QUEUED, phase=1):
        return PipelineItem(
            id=item_id("org/tracker", number),
            tracking_repo="org/tracker",
            work_repo="org/work",
            issue_number=number,
            phase=phase,
            status=status,
        )

    def test_lookups(self):
        state = PipelineState()
        item = state.add(self.make(5))
        item.start_work("epicorch-agent-5", "claude")
        item.link_pr(50, None)

        assert state.get("org/tracker#5") is item
        assert state.find_by_issue(5) is item
        assert state.find_by_issue(5, "other/repo") is None
        assert state.find_by_session("epicorch-agent-5") is item
        assert state.find_by_pr(50) is item

    def test_all_items_ordered_by_phase(self):
        state = PipelineState()
        state.add(self.make(3, phase=2))
        state.add(self.make(9, phase=1))
        state.add(self.make(1, phase=2))
        assert [i.issue_number for i in state.all_items()] == [9, 1, 3]

    def test_history_bounded(self):
        state = PipelineState(history_limit=2)
        for n in (1, 2, 3):
            state.add(self.make(n, status=PipelineStatus.COMPLETED))

        assert state.archive_completed() == 3
        assert [i.issue_number for i in state.history] == [2, 3]
        assert state.items == {}

    def test_archive_active_item_not_kept(self):
        state = PipelineState()
        state.add(self.make(1))
        assert state.archive("org/tracker#1") is not None
        assert state.history == []
        assert state.archive("org/tracker#1") is None

    def test_summary(self):
        state = PipelineState()
        state.add(self.make(1))
        state.add(self.make(2, status=PipelineStatus.FAILED))
        summary = state.summary()
        assert (summary.queued, summary.failed, summary.completed) == (1, 1, 0)


class TestReconcile:
    """Tests for PipelineAutomation.reconcile."""

    def test_items_follow_tracker_and_sessions(self, pipeline, scenario_snapshot, sessions):
        running = sessions.add("epicorch-agent-11", issue_ref="org/tracker#11")

        assert pipeline.reconcile(scenario_snapshot, [running])

        statuses = {i.issue_number: i.status for i in pipeline.state.all_items()}
        assert statuses == {
            10: PipelineStatus.QUEUED,
            11: PipelineStatus.IN_PROGRESS,
            12: PipelineStatus.QUEUED,
        }
        assert not pipeline.reconcile(scenario_snapshot, [running])

    def test_pr_and_close_move_items_forward(self, pipeline):
        snapshot = make_snapshot([sub_issue(10)])
        pipeline.reconcile(snapshot, [])

        snapshot.sub_issues[0].pr_number = 20
        pipeline.reconcile(snapshot, [])
        item = pipeline.state.find_by_issue(10)
        assert item.status == PipelineStatus.PR_REVIEW
        assert item.pr_number == 20

        snapshot.sub_issues[0].state = SubIssueState.CLOSED
        pipeline.reconcile(snapshot, [])
        assert item.status == PipelineStatus.COMPLETED

    def test_never_moves_backward(self, pipeline):
        """A sub-issue losing its PR link leaves the item in review."""
        pipeline.reconcile(make_snapshot([sub_issue(10, pr=20)]), [])

        assert not pipeline.reconcile(make_snapshot([sub_issue(10)]), [])
        assert pipeline.state.find_by_issue(10).status == PipelineStatus.PR_REVIEW

    def test_closed_without_item_not_queued(self, pipeline):
        pipeline.reconcile(make_snapshot([sub_issue(10, state="closed")]), [])
        assert pipeline.state.all_items() == []


class TestAssign:
    """Tests for PipelineAutomation.assign."""

    @pytest.mark.asyncio
    async def test_assign_starts_session(self, pipeline, scenario_snapshot, sessions, tracker, tmp_path):
        pipeline.event_log = EventLog(tmp_path)

        result = await pipeline.assign(10, "claude", "/work/repo", scenario_snapshot)

        assert result.session_name == "epicorch-agent-10"
        assert result.item.status == PipelineStatus.IN_PROGRESS
        assert ("create", "epicorch-agent-10", "/work/repo") in sessions.calls
        meta = sessions.sessions["epicorch-agent-10"].metadata
        assert meta.issue_ref == "org/tracker#10"
        assert meta.repo == "org/work"
        assert meta.machine_id == "test-host"
        assert pipeline.event_log.read_recent(entry_type=EventType.ASSIGN)[0]["issue"] == 10
        assert tracker.assigned == [("org/tracker", 10, "epicorch-agent-10", ["agent-assigned"])]
        assert result.tracker_error is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("repo_path,agent_type,issue", [
        ("", "claude", 10),
        ("   ", "claude", 10),
        ("/work/repo", "", 10),
        ("/work/repo", "claude", 0),
    ])
    async def test_invalid_input_makes_no_calls(self, pipeline, scenario_snapshot, sessions, repo_path, agent_type, issue):
        with pytest.raises(ValidationError):
            await pipeline.assign(issue, agent_type, repo_path, scenario_snapshot)
        assert sessions.calls == []
        assert pipeline.state.all_items() == []

    @pytest.mark.asyncio
    async def test_assign_only_queued(self, pipeline, scenario_snapshot, sessions):
        await pipeline.assign(10, "claude", "/work/repo", scenario_snapshot)

        with pytest.raises(InvalidTransitionError):
            await pipeline.assign(10, "claude", "/work/repo", scenario_snapshot)
        assert len([c for c in sessions.calls if c[0] == "create"]) == 1

    @pytest.mark.asyncio
    async def test_assign_unknown_issue(self, pipeline, scenario_snapshot):
        with pytest.raises(NotFoundError):
            await pipeline.assign(99, "claude", "/work/repo", scenario_snapshot)

    @pytest.mark.asyncio
    async def test_running_session_conflicts(self, pipeline, scenario_snapshot, sessions):
        sessions.add("epicorch-agent-10", SessionStatus.RUNNING, issue_ref="org/tracker#10")

        with pytest.raises(SessionConflictError):
            await pipeline.assign(10, "claude", "/work/repo", scenario_snapshot)
        assert pipeline.state.find_by_issue(10).status == PipelineStatus.QUEUED

    @pytest.mark.asyncio
    async def test_skip(self, pipeline, scenario_snapshot):
        item = await pipeline.skip(12, scenario_snapshot)
        assert item.status == PipelineStatus.SKIPPED

        with pytest.raises(InvalidTransitionError):
            await pipeline.skip(12, scenario_snapshot)


class TestWorktreesAndPullRequests:
    """Tests for issue worktrees, assignment marking, open_pr and detect_prs."""

    @pytest.fixture
    def pipeline(self, config, tracker, sessions, worktrees):
        return PipelineAutomation(config, tracker, SessionSupervisor(config, sessions), worktrees=worktrees)

    @pytest.mark.asyncio
    async def test_assign_in_issue_worktree(self, pipeline, scenario_snapshot, sessions, worktrees):
        result = await pipeline.assign(10, "claude", "/work/repo", scenario_snapshot)

        assert worktrees.created == [("/work/repo", "issue-10")]
        assert ("create", "epicorch-agent-10", "/worktrees/issue-10") in sessions.calls
        assert (result.worktree_path, result.branch) == ("/worktrees/issue-10", "issue-10")
        assert result.item.worktree_path == "/worktrees/issue-10"
        assert sessions.sessions["epicorch-agent-10"].metadata.worktree == "/worktrees/issue-10"

    @pytest.mark.asyncio
    async def test_agent_started_with_issue_context(self, pipeline, scenario_snapshot, sessions):
        await pipeline.assign(10, "claude", "/work/repo", scenario_snapshot)

        prompt = sessions.prompts["epicorch-agent-10"]
        assert "org/tracker#10" in prompt
        assert "Issue 10" in prompt
        assert "issue-10" in prompt
        assert "closes org/tracker#10" in prompt

    @pytest.mark.asyncio
    async def test_worktrees_disabled(self, config, tracker, sessions, worktrees, scenario_snapshot):
        config = config.model_copy(update={"use_worktrees": False})
        pipeline = PipelineAutomation(config, tracker, SessionSupervisor(config, sessions), worktrees=worktrees)

        result = await pipeline.assign(10, "claude", "/work/repo", scenario_snapshot)

        assert worktrees.created == []
        assert result.worktree_path == "/work/repo"

    @pytest.mark.asyncio
    async def test_tracker_failure_does_not_fail_assign(self, pipeline, scenario_snapshot, sessions, tracker):
        tracker.assign_error = GatewayError("label not found")

        result = await pipeline.assign(10, "claude", "/work/repo", scenario_snapshot)

        assert result.tracker_error == "label not found"
        assert result.item.status == PipelineStatus.IN_PROGRESS
        assert sessions.sessions["epicorch-agent-10"].status == SessionStatus.RUNNING

    @pytest.mark.asyncio
    async def test_open_pr(self, pipeline, scenario_snapshot, tracker, worktrees):
        await pipeline.assign(10, "claude", "/work/repo", scenario_snapshot)

        item = await pipeline.open_pr(10)

        assert worktrees.pushed == [("/worktrees/issue-10", "issue-10")]
        work_repo, branch, base, title, body = tracker.created_prs[0]
        assert (work_repo, branch, base, title) == ("org/work", "issue-10", "main", "Issue 10 (#10)")
        assert "Closes org/tracker#10" in body
        assert item.status == PipelineStatus.PR_REVIEW
        assert item.pr_number == 101
        assert item.pr_url == "https://github.com/org/work/pull/101"

    @pytest.mark.asyncio
    async def test_failed_push_can_be_retried(self, pipeline, scenario_snapshot, tracker, worktrees):
        await pipeline.assign(10, "claude", "/work/repo", scenario_snapshot)
        worktrees.push_error = GatewayError("rejected")

        with pytest.raises(GatewayError):
            await pipeline.open_pr(10)
        assert pipeline.state.find_by_issue(10).status == PipelineStatus.PR_PENDING
        assert tracker.created_prs == []

        worktrees.push_error = None
        item = await pipeline.open_pr(10, title="Faster scheduler")
        assert item.status == PipelineStatus.PR_REVIEW
        assert tracker.created_prs[0][3] == "Faster scheduler"

    @pytest.mark.asyncio
    async def test_open_pr_needs_work_in_progress(self, pipeline, scenario_snapshot, tracker):
        pipeline.reconcile(scenario_snapshot, [])

        with pytest.raises(InvalidTransitionError):
            await pipeline.open_pr(10)
        with pytest.raises(NotFoundError):
            await pipeline.open_pr(99)
        assert tracker.created_prs == []

    @pytest.mark.asyncio
    async def test_detect_prs(self, pipeline, scenario_snapshot, tracker):
        await pipeline.assign(10, "claude", "/work/repo", scenario_snapshot)
        await pipeline.assign(11, "claude", "/work/repo", scenario_snapshot)
        tracker.open_prs["issue-10"] = PullRequestRef(
            number=40, url="https://github.com/org/work/pull/40", is_draft=True,
        )
        tracker.find_fail_for = {"issue-11"}

        linked = await pipeline.detect_prs()

        assert [i.issue_number for i in linked] == [10]
        item = pipeline.state.find_by_issue(10)
        assert (item.status, item.pr_number, item.pr_status) == (PipelineStatus.PR_REVIEW, 40, PrStatus.DRAFT)
        assert pipeline.state.find_by_issue(11).pr_number is None
        assert await pipeline.detect_prs() == []

    def test_issue_reference(self):
        item = PipelineItem(id="org/work#5", tracking_repo="org/work", work_repo="org/work", issue_number=5)
        assert issue_reference(item) == "#5"
        item.tracking_repo = "org/tracker"
        assert issue_reference(item) == "org/tracker#5"


class TestMerge:
    """Tests for merge_one and merge_all_ready."""

    @pytest.mark.asyncio
    async def test_merge_one(self, config, sessions):
        snapshot = review_snapshot()
        tracker = MockTracker(snapshot)
        pipeline = PipelineAutomation(config, tracker, SessionSupervisor(config, sessions))
        pipeline.reconcile(snapshot, [])

        result = await pipeline.merge_one(12, snapshot=snapshot)

        assert result.success
        assert result.phase_complete
        assert result.next_phase is None
        assert tracker.merge_calls == [("org/work", 12, 22, MergeMethod.SQUASH, True)]
        assert pipeline.state.find_by_issue(12).status == PipelineStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_sequential_merges_complete_phase(self, config, sessions):
        """Merging the last open item of a phase reports the phase, even before a sync."""
        snapshot = review_snapshot()
        tracker = MockTracker(snapshot)
        pipeline = PipelineAutomation(config, tracker, SessionSupervisor(config, sessions))
        pipeline.reconcile(snapshot, [])

        first = await pipeline.merge_one(10, snapshot=snapshot)
        second = await pipeline.merge_one(11, snapshot=snapshot)

        assert not first.phase_complete
        assert second.phase_complete
        assert second.next_phase == 2

    @pytest.mark.asyncio
    async def test_batch_after_single_merge_completes_phase(self, config, sessions):
        snapshot = review_snapshot()
        tracker = MockTracker(snapshot)
        pipeline = PipelineAutomation(config, tracker, SessionSupervisor(config, sessions))
        pipeline.reconcile(snapshot, [])

        await pipeline.merge_one(10, snapshot=snapshot)
        batch = await pipeline.merge_all_ready(snapshot=snapshot)

        assert [r.issue_number for r in batch.merges] == [11, 12]
        assert batch.completed_phases == [1, 2]
        assert pipeline.state.merged_issues("org/tracker") == {10, 11, 12}

    @pytest.mark.asyncio
    async def test_merge_one_without_pr(self, pipeline, scenario_snapshot, tracker):
        pipeline.reconcile(scenario_snapshot, [])

        with pytest.raises(InvalidTransitionError):
            await pipeline.merge_one(10, snapshot=scenario_snapshot)
        assert tracker.merge_calls == []

    @pytest.mark.asyncio
    async def test_merge_one_validation(self, pipeline, tracker):
        with pytest.raises(ValidationError):
            await pipeline.merge_one(0)
        with pytest.raises(NotFoundError):
            await pipeline.merge_one(10)
        assert tracker.merge_calls == []

    @pytest.mark.asyncio
    async def test_partial_batch(self, config, sessions):
        """One failed merge is reported without stopping the others."""
        snapshot = review_snapshot()
        tracker = MockTracker(snapshot)
        tracker.merge_fail_for = {11}
        pipeline = PipelineAutomation(config, tracker, SessionSupervisor(config, sessions))
        pipeline.reconcile(snapshot, [])

        batch = await pipeline.merge_all_ready(method=MergeMethod.REBASE, delete_branch=False, snapshot=snapshot)

        assert [(r.issue_number, r.success) for r in batch.merges] == [(10, True), (11, False), (12, True)]
        assert "not mergeable" in batch.failed[0].error
        assert batch.completed_phases == [2]
        assert [c[3] for c in tracker.merge_calls] == [MergeMethod.REBASE] * 3
        assert pipeline.state.find_by_issue(11).status == PipelineStatus.PR_REVIEW
        assert pipeline.state.find_by_issue(11).error is not None

    @pytest.mark.asyncio
    async def test_batch_completes_phase_and_names_next(self, config, sessions):
        snapshot = review_snapshot()
        tracker = MockTracker(snapshot)
        pipeline = PipelineAutomation(config, tracker, SessionSupervisor(config, sessions))
        pipeline.reconcile(snapshot, [])

        batch = await pipeline.merge_all_ready(snapshot=snapshot)

        assert batch.completed_phases == [1, 2]
        first, second, third = batch.merges
        assert not first.phase_complete
        assert second.phase_complete and second.next_phase == 2
        assert third.phase_complete and third.next_phase is None

    @pytest.mark.asyncio
    async def test_draft_prs_not_merged(self, pipeline, tracker):
        pipeline.reconcile(make_snapshot([sub_issue(10)]), [])
        await pipeline.link_pr(10, 20, None, is_draft=True)

        batch = await pipeline.merge_all_ready()

        assert batch.merges == []
        assert tracker.merge_calls == []
        assert pipeline.state.find_by_issue(10).pr_status == PrStatus.DRAFT
