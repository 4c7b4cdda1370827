"""Completion detection for sub-issues.

Compares each sync's sub-issue states against the states recorded on the
previous sync. Only an observed open -> closed transition counts, so a
sub-issue that stays closed across many polls yields exactly one event.
"""

from typing import Optional

from pydantic import BaseModel, Field
from rich.console import Console

from .models import (
    CompletionEvent, EpicCounts, EpicRef, SubIssue, SubIssueState,
)
from .protocols import TrackerGateway


console = Console()


def current_phase_number(sub_issues: list[SubIssue]) -> Optional[int]:
    """Lowest phase that still has open sub-issues."""
    open_phases = [s.phase for s in sub_issues if s.is_open and s.phase is not None]
    return min(open_phases) if open_phases else None


def compute_counts(sub_issues: list[SubIssue]) -> EpicCounts:
    """Aggregate counts for a list of sub-issues.

    In progress: open, agent working, no PR yet.
    Ready: open with a PR attached (work done, awaiting merge).
    Queued: open, no agent, no PR, in the current phase (or in no phase).
    Blocked: like queued, but in a phase after the current one.
    Completed: closed.
    """
    counts = EpicCounts(total=len(sub_issues))
    current = current_phase_number(sub_issues)
    for sub in sub_issues:
        if sub.is_closed:
            counts.completed += 1
        elif sub.has_pr:
            counts.ready += 1
        elif sub.has_agent_working:
            counts.in_progress += 1
        elif sub.phase is not None and current is not None and sub.phase > current:
            counts.blocked += 1
        else:
            counts.queued += 1
    return counts


class DetectionOutcome(BaseModel):
    """Result of processing one sync."""
    events: list[CompletionEvent] = Field(default_factory=list)
    notify_failures: list[CompletionEvent] = Field(default_factory=list)
    counts: EpicCounts = Field(default_factory=EpicCounts)


class CompletionDetector:
    """Turns consecutive sub-issue observations into completion events.

    The previous-state map belongs to the monitoring session of a single
    epic. ``reset`` reseeds it when the monitored epic changes.
    """

    def __init__(self, tracker: Optional[TrackerGateway] = None, auto_notify: bool = True):
        """Initialize the detector.

        Args:
            tracker: Gateway used for completion notifications
            auto_notify: Whether to call the tracker for each completion
        """
        self.tracker = tracker
        self.auto_notify = auto_notify
        self.previous_states: dict[int, SubIssueState] = {}

    def reset(self, seed: Optional[list[SubIssue]] = None) -> None:
        """Forget all recorded states, optionally seeding from known sub-issues."""
        self.previous_states = {s.number: s.state for s in (seed or [])}

    def detect(self, sub_issues: list[SubIssue]) -> list[CompletionEvent]:
        """Record the new states and return the genuine completions.

        A first observation never produces an event: there is nothing to
        compare against.
        """
        events = []
        for sub in sub_issues:
            previous = self.previous_states.get(sub.number)
            if (
                previous is not None
                and previous != SubIssueState.CLOSED
                and sub.state == SubIssueState.CLOSED
            ):
                events.append(CompletionEvent(
                    issue_number=sub.number,
                    title=sub.title,
                    phase=sub.phase,
                ))
            # Updated unconditionally, including first observations
            self.previous_states[sub.number] = sub.state
        return events

    async def process(self, ref: EpicRef, sub_issues: list[SubIssue]) -> DetectionOutcome:
        """Detect completions, notify the tracker, then recount.

        A failed notification is recorded on its event and does not stop the
        rest of the batch.
        """
        outcome = DetectionOutcome(events=self.detect(sub_issues))

        if self.auto_notify and self.tracker is not None:
            for event in outcome.events:
                try:
                    await self.tracker.notify_item_complete(ref, event.issue_number, True)
                    event.notified = True
                except Exception as e:
                    event.notify_error = str(e)
                    outcome.notify_failures.append(event)
                    console.print(
                        f"[yellow]Could not notify tracker about #{event.issue_number}: {e}[/yellow]"
                    )

        outcome.counts = compute_counts(sub_issues)
        return outcome
