"""Epic selection, monitoring and phase endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from ...models import OrchestratorSnapshot, PhaseStatus
from ...orchestrator import Orchestrator
from ...reconciliation import SyncOutcome
from ..deps import get_orchestrator

router = APIRouter()


class LinkRequest(BaseModel):
    """Request body for linking an epic."""
    ref: str
    local_repo_path: Optional[str] = None


class MonitorRequest(BaseModel):
    """Request body for starting monitoring."""
    ref: Optional[str] = None


class MonitorResponse(BaseModel):
    """Response for monitoring start/stop."""
    changed: bool
    is_monitoring: bool
    epic: Optional[str] = None


class PhaseStatusRequest(BaseModel):
    """Request body for a phase status override."""
    status: PhaseStatus = PhaseStatus.COMPLETED


def _monitor_response(orchestrator: Orchestrator, changed: bool) -> MonitorResponse:
    ref = orchestrator.monitor.ref
    return MonitorResponse(
        changed=changed,
        is_monitoring=orchestrator.monitor.is_monitoring,
        epic=ref.key if ref else None,
    )


@router.get("/snapshot", response_model=OrchestratorSnapshot)
async def get_snapshot(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Current engine state."""
    return orchestrator.snapshot()


@router.post("/epic/link", response_model=MonitorResponse)
async def link_epic(body: LinkRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Select an epic and record its local repository path."""
    await orchestrator.link_epic(body.ref, body.local_repo_path)
    return _monitor_response(orchestrator, changed=True)


@router.delete("/epic", response_model=MonitorResponse)
async def unlink_epic(ref: Optional[str] = None, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Forget an epic (the selected one by default)."""
    removed = await orchestrator.unlink_epic(ref)
    return _monitor_response(orchestrator, changed=removed)


@router.post("/monitor/start", response_model=MonitorResponse)
async def start_monitoring(
    body: MonitorRequest = MonitorRequest(),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Start polling the epic. A no-op if it's already being monitored."""
    started = await orchestrator.start_monitoring(body.ref)
    return _monitor_response(orchestrator, changed=started)


@router.post("/monitor/stop", response_model=MonitorResponse)
async def stop_monitoring(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Stop polling. A sync already in flight still completes."""
    stopped = await orchestrator.stop_monitoring()
    return _monitor_response(orchestrator, changed=stopped)


@router.post("/sync", response_model=SyncOutcome)
async def force_sync(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Sync now, joining a sync already in flight."""
    return await orchestrator.force_sync()


@router.post("/phases/{phase_number}/status", response_model=SyncOutcome)
async def mark_phase_status(
    phase_number: int,
    body: PhaseStatusRequest = PhaseStatusRequest(),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Override a phase status on the tracker, then sync."""
    return await orchestrator.mark_phase_status(phase_number, body.status)


@router.get("/events")
async def recent_events(
    count: int = Query(50, ge=1, le=1000),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Newest entries of the event log."""
    if orchestrator.event_log is None:
        return {"events": []}
    return {"events": orchestrator.event_log.read_recent(count)}
