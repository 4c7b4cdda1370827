"""Tracker gateway backed by the GitHub CLI.

Epics and sub-issues are plain GitHub issues. The epic body carries the
work repository and the phase list; each sub-issue body names its epic
(``**Epic**: #N``) and its phase (``**Phase**: N``).
"""

import asyncio
import json
import re
from datetime import datetime
from typing import Optional

from rich.console import Console

from ..errors import GatewayError
from ..models import (
    Epic, EpicRef, EpicSnapshot, MergeMethod, MergeResult, Phase, PhaseStatus,
    PullRequestRef, SessionMetadata, SubIssue,
)


console = Console()

PHASE_HEADING = re.compile(r"^###\s+(?:Phase\s+(\d+)\s*:\s*)?(.*)$", re.IGNORECASE)
PR_URL_NUMBER = re.compile(r"/pull/(\d+)")
METADATA_MARKER = "EPICORCH_AGENT_METADATA"
ISSUE_LIST_LIMIT = 500


# =============================================================================
# Body parsing
# =============================================================================

def _field_value(line: str, field: str) -> Optional[str]:
    marker = f"**{field}**:"
    stripped = line.strip()
    if not stripped.startswith(marker):
        return None
    return stripped[len(marker):].strip()


def parse_work_repo(body: str) -> Optional[str]:
    """Repository named on the ``**Work Repository**:`` line, if any."""
    for line in (body or "").splitlines():
        value = _field_value(line, "Work Repository")
        if value:
            return value
    return None


def parse_phases(body: str) -> list[Phase]:
    """Phases listed under ``## Phases``.

    Headings look like ``### Phase 2: Name``; a heading without a number
    takes its position. ``**Approach**:`` and ``**Status**:`` lines under a
    heading apply to that phase.
    """
    phases: list[Phase] = []
    in_phases = False

    for line in (body or "").splitlines():
        stripped = line.strip()
        if stripped == "## Phases":
            in_phases = True
            continue
        if not in_phases:
            continue
        if stripped.startswith("## "):
            break

        match = PHASE_HEADING.match(stripped)
        if match:
            number = int(match.group(1)) if match.group(1) else len(phases) + 1
            phases.append(Phase(number=number, name=match.group(2).strip()))
            continue
        if not phases:
            continue

        approach = _field_value(stripped, "Approach")
        if approach:
            phases[-1].approach = approach.lower()
            continue
        status = _field_value(stripped, "Status")
        if status:
            try:
                phases[-1].status = PhaseStatus(status.lower().replace(" ", "_"))
            except ValueError:
                console.print(f"[yellow]Ignoring unknown status '{status}' for phase {phases[-1].number}[/yellow]")

    return phases


def parse_phase_number(body: str) -> Optional[int]:
    """Phase assignment from a ``**Phase**: N`` line."""
    for line in (body or "").splitlines():
        if "**Phase**:" not in line:
            continue
        value = line.split("**Phase**:", 1)[1].strip()
        digits = re.match(r"\d+", value)
        if digits:
            return int(digits.group(0))
    return None


def references_epic(body: str, epic_number: int) -> bool:
    """Whether the body names this epic on an ``**Epic**: #N`` line (#1 never matches #12)."""
    return re.search(rf"\*\*Epic\*\*:\s*#{epic_number}\b", body or "") is not None


def update_progress_section(body: str, completed: int, total: int) -> str:
    """Rewrite the line under ``## Progress`` (appending the section if absent)."""
    percentage = (completed * 100) // total if total else 0
    progress = f"{completed}/{total} sub-issues completed ({percentage}%)"

    lines = (body or "").splitlines()
    for index, line in enumerate(lines):
        if not line.startswith("## Progress"):
            continue
        # Replace the first non-blank line of the section, stopping at the next heading
        for target in range(index + 1, len(lines)):
            stripped = lines[target].strip()
            if stripped.startswith("#"):
                lines.insert(target, progress)
                return "\n".join(lines)
            if stripped:
                lines[target] = progress
                return "\n".join(lines)
        lines.append(progress)
        return "\n".join(lines)

    return "\n".join(lines + ["", "## Progress", progress])


def set_phase_status_in_body(body: str, phase_number: int, status: PhaseStatus) -> str:
    """Set the ``**Status**:`` line of one phase, inserting it under the heading if needed.

    Raises:
        ValueError: If the body has no heading for the phase
    """
    lines = (body or "").splitlines()
    status_line = f"**Status**: {status.value}"
    in_phases = False
    seen = 0
    heading_index: Optional[int] = None

    for index, line in enumerate(lines):
        stripped = line.strip()
        if stripped == "## Phases":
            in_phases = True
            continue
        if not in_phases:
            continue
        if stripped.startswith("## "):
            break

        match = PHASE_HEADING.match(stripped)
        if match:
            if heading_index is not None:
                break
            seen += 1
            number = int(match.group(1)) if match.group(1) else seen
            if number == phase_number:
                heading_index = index
            continue

        if heading_index is not None and _field_value(stripped, "Status") is not None:
            lines[index] = status_line
            return "\n".join(lines)

    if heading_index is None:
        raise ValueError(f"Phase {phase_number} not found in epic body")

    lines.insert(heading_index + 1, status_line)
    return "\n".join(lines)


def reported_phase_statuses(phases: list[Phase], sub_issues: list[SubIssue]) -> list[Phase]:
    """Phases with the status the tracker reports.

    An explicit ``**Status**`` line wins; otherwise a phase whose
    sub-issues are all closed is reported completed.
    """
    reported = []
    for phase in phases:
        members = [s for s in sub_issues if s.phase == phase.number]
        if phase.status == PhaseStatus.NOT_STARTED and members and all(s.is_closed for s in members):
            phase = phase.model_copy(update={"status": PhaseStatus.COMPLETED})
        reported.append(phase)
    return reported


def format_assignment_comment(metadata: SessionMetadata, session_name: str) -> str:
    """Issue comment announcing an agent, with the metadata as a hidden JSON block."""
    started = metadata.started_at or datetime.now()
    payload = metadata.model_dump(mode="json")
    payload["session"] = session_name
    return "\n".join([
        f"<!-- {METADATA_MARKER}",
        json.dumps(payload, indent=2),
        "-->",
        "",
        "**Agent Assigned**",
        f"- **Session**: `{session_name}`",
        f"- **Type**: {metadata.agent_type}",
        f"- **Worktree**: `{metadata.worktree or 'unknown'}`",
        f"- **Machine**: {metadata.machine_id}",
        f"- **Started**: {started.isoformat(timespec='seconds')}",
    ])


def parse_pr_number(url: str) -> Optional[int]:
    match = PR_URL_NUMBER.search(url or "")
    return int(match.group(1)) if match else None


# =============================================================================
# Gateway
# =============================================================================

class GhTrackerGateway:
    """``TrackerGateway`` implementation over ``gh``."""

    def __init__(self, working_labels: Optional[list[str]] = None, gh_path: str = "gh"):
        """Initialize the gateway.

        Args:
            working_labels: Labels meaning an agent is working on an issue
            gh_path: GitHub CLI executable
        """
        self.working_labels = set(working_labels or ["staging"])
        self.gh_path = gh_path

    async def _run(self, *args: str) -> str:
        """Run a gh command and return stdout."""
        command = [self.gh_path, *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise GatewayError(f"GitHub CLI not found: {self.gh_path}", command=command) from e

        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            error = stderr.decode(errors="replace").strip()
            raise GatewayError(f"gh {args[0]} {args[1]} failed: {error}", command=command, stderr=error)
        return stdout.decode(errors="replace")

    async def _json(self, *args: str):
        output = await self._run(*args)
        try:
            return json.loads(output or "null")
        except json.JSONDecodeError as e:
            raise GatewayError(f"Unexpected output from gh {args[0]} {args[1]}: {e}") from e

    async def _get_issue(self, repo: str, number: int) -> dict:
        return await self._json(
            "issue", "view", str(number), "--repo", repo, "--json", "number,title,body,url,state",
        )

    async def _list_issues(self, repo: str) -> list[dict]:
        return await self._json(
            "issue", "list", "--repo", repo, "--state", "all", "--limit", str(ISSUE_LIST_LIMIT),
            "--json", "number,title,body,url,state,labels",
        ) or []

    async def _find_pr(self, work_repo: str, issue_number: int) -> Optional[dict]:
        """Most recent open PR in the work repo that mentions the issue."""
        prs = await self._json(
            "pr", "list", "--repo", work_repo, "--state", "open",
            "--search", f"#{issue_number} in:body,title",
            "--json", "number,url,isDraft",
        ) or []
        return prs[0] if prs else None

    async def _edit_body(self, repo: str, number: int, body: str) -> None:
        await self._run("issue", "edit", str(number), "--repo", repo, "--body", body)

    async def fetch_epic_state(self, ref: EpicRef) -> EpicSnapshot:
        issue = await self._get_issue(ref.repo, ref.number)
        body = issue.get("body") or ""
        work_repo = parse_work_repo(body) or ref.repo

        sub_issues = []
        for raw in await self._list_issues(ref.repo):
            raw_body = raw.get("body") or ""
            if raw.get("number") == ref.number or not references_epic(raw_body, ref.number):
                continue
            labels = [label.get("name", "") for label in raw.get("labels") or []]
            sub = SubIssue(
                number=raw["number"],
                title=raw.get("title", ""),
                url=raw.get("url", ""),
                state=raw.get("state", "open"),
                has_agent_working=any(label in self.working_labels for label in labels),
                phase=parse_phase_number(raw_body),
                labels=labels,
            )
            # Closed issues are done; only open ones can be waiting on a PR
            if sub.is_open:
                try:
                    pr = await self._find_pr(work_repo, sub.number)
                except GatewayError as e:
                    console.print(f"[yellow]PR lookup for #{sub.number} failed: {e}[/yellow]")
                    pr = None
                if pr:
                    sub.pr_number = pr.get("number")
                    sub.pr_url = pr.get("url")
            sub_issues.append(sub)

        sub_issues.sort(key=lambda s: s.number)
        epic = Epic(
            ref=ref,
            title=issue.get("title", ""),
            url=issue.get("url", ""),
            work_repo=work_repo,
            phases=reported_phase_statuses(parse_phases(body), sub_issues),
        )
        return EpicSnapshot(epic=epic, sub_issues=sub_issues)

    async def set_phase_status(self, ref: EpicRef, phase_number: int, status: PhaseStatus) -> None:
        issue = await self._get_issue(ref.repo, ref.number)
        try:
            body = set_phase_status_in_body(issue.get("body") or "", phase_number, status)
        except ValueError as e:
            raise GatewayError(str(e)) from e
        await self._edit_body(ref.repo, ref.number, body)

    async def merge_pull_request(
        self,
        work_repo: str,
        issue_number: int,
        pr_number: Optional[int],
        method: MergeMethod,
        delete_branch: bool,
    ) -> MergeResult:
        try:
            if pr_number is None:
                pr = await self._find_pr(work_repo, issue_number)
                if pr is None:
                    return MergeResult(
                        issue_number=issue_number,
                        success=False,
                        error=f"No open pull request found for #{issue_number}",
                    )
                pr_number = pr["number"]

            args = ["pr", "merge", str(pr_number), "--repo", work_repo, f"--{MergeMethod(method).value}"]
            if delete_branch:
                args.append("--delete-branch")
            await self._run(*args)
        except GatewayError as e:
            return MergeResult(issue_number=issue_number, success=False, error=e.message)

        return MergeResult(issue_number=issue_number, success=True)

    async def notify_item_complete(self, ref: EpicRef, issue_number: int, success: bool) -> None:
        message = (
            f"Completed as part of epic #{ref.number}."
            if success else
            f"Work on this issue failed (epic #{ref.number})."
        )
        await self._run("issue", "comment", str(issue_number), "--repo", ref.repo, "--body", message)

        epic = await self._get_issue(ref.repo, ref.number)
        subs = [
            raw for raw in await self._list_issues(ref.repo)
            if raw.get("number") != ref.number and references_epic(raw.get("body") or "", ref.number)
        ]
        completed = sum(1 for raw in subs if str(raw.get("state", "")).lower() == "closed")
        body = update_progress_section(epic.get("body") or "", completed, len(subs))
        await self._edit_body(ref.repo, ref.number, body)

    async def mark_item_assigned(
        self,
        repo: str,
        issue_number: int,
        session_name: str,
        metadata: SessionMetadata,
        labels: list[str],
    ) -> None:
        comment = format_assignment_comment(metadata, session_name)
        await self._run("issue", "comment", str(issue_number), "--repo", repo, "--body", comment)
        if labels:
            await self._run("issue", "edit", str(issue_number), "--repo", repo, "--add-label", ",".join(labels))

    async def create_pull_request(
        self,
        work_repo: str,
        branch: str,
        base: str,
        title: str,
        body: str,
    ) -> PullRequestRef:
        output = await self._run(
            "pr", "create", "--repo", work_repo, "--head", branch, "--base", base,
            "--title", title, "--body", body,
        )
        url = output.strip().splitlines()[-1] if output.strip() else ""
        return PullRequestRef(number=parse_pr_number(url), url=url, branch=branch)

    async def find_pull_request(self, work_repo: str, branch: str) -> Optional[PullRequestRef]:
        prs = await self._json(
            "pr", "list", "--repo", work_repo, "--state", "open", "--head", branch,
            "--json", "number,url,isDraft",
        ) or []
        if not prs:
            return None
        pr = prs[0]
        return PullRequestRef(
            number=pr.get("number"),
            url=pr.get("url", ""),
            is_draft=bool(pr.get("isDraft")),
            branch=branch,
        )
