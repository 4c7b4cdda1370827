"""Phase status derivation.

A phase's displayed status is derived from what the tracker reports plus the
state of its sub-issues; it is never stored as the source of truth.
"""

from typing import Iterable, Optional

from .models import EpicSnapshot, Phase, PhaseStatus, SubIssue


def derive_phase_status(reported: PhaseStatus, sub_issues: list[SubIssue]) -> PhaseStatus:
    """Derive the displayed status of one phase.

    Args:
        reported: Status the tracker reports for the phase
        sub_issues: Sub-issues assigned to the phase

    Returns:
        completed/skipped when the tracker says so; ready when an open
        sub-issue has a PR; in_progress when an open sub-issue has an agent
        and no PR; otherwise not_started.
    """
    if reported in (PhaseStatus.COMPLETED, PhaseStatus.SKIPPED):
        return reported

    open_issues = [s for s in sub_issues if s.is_open]
    if any(s.has_pr for s in open_issues):
        return PhaseStatus.READY
    if any(s.has_agent_working and not s.has_pr for s in open_issues):
        return PhaseStatus.IN_PROGRESS
    return PhaseStatus.NOT_STARTED


def derive_phases(snapshot: EpicSnapshot) -> list[Phase]:
    """Derived copies of the epic's phases, in ordinal order, with counts."""
    phases = []
    for phase in sorted(snapshot.epic.phases, key=lambda p: p.number):
        members = snapshot.sub_issues_for_phase(phase.number)
        phases.append(phase.model_copy(update={
            "status": derive_phase_status(phase.status, members),
            "completed_count": sum(1 for s in members if s.is_closed),
            "total_count": len(members),
        }))
    return phases


def completed_phase_numbers(phases: Iterable[Phase]) -> set[int]:
    return {p.number for p in phases if p.status == PhaseStatus.COMPLETED}


def newly_completed_phases(before: Iterable[Phase], after: Iterable[Phase]) -> list[int]:
    """Phases completed in ``after`` that were not completed in ``before``."""
    return sorted(completed_phase_numbers(after) - completed_phase_numbers(before))


def next_startable_phase(phases: list[Phase]) -> Optional[int]:
    """The phase eligible to start once its predecessor completed.

    Advisory only: starting a phase spawns sessions and worktrees, so the
    caller decides whether to act on it.
    """
    ordered = sorted(phases, key=lambda p: p.number)
    for previous, current in zip(ordered, ordered[1:]):
        if previous.status == PhaseStatus.COMPLETED and current.status == PhaseStatus.NOT_STARTED:
            return current.number
    return None


def next_phase_number(phases: list[Phase], phase_number: int) -> Optional[int]:
    later = sorted(p.number for p in phases if p.number > phase_number)
    return later[0] if later else None


def is_phase_cleared(
    phase_number: int,
    sub_issues: list[SubIssue],
    merged: set[int],
) -> bool:
    """Whether every sub-issue of a phase is closed or was just merged."""
    members = [s for s in sub_issues if s.phase == phase_number]
    if not members:
        return False
    return all(s.is_closed or s.number in merged for s in members)
