"""Worker session endpoints."""

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel

from ...errors import ErrorCategory
from ...models import AgentStatus, KillResult, RecoveryResult, WorkerSession
from ...orchestrator import Orchestrator
from ..deps import STATUS_BY_CATEGORY, get_orchestrator

router = APIRouter()


class RecoverRequest(BaseModel):
    """Request body for a recovery pass."""
    dry_run: bool = False
    cleanup_orphans: bool = False


class RecoverResponse(BaseModel):
    """Per-session recovery results."""
    results: list[RecoveryResult]
    succeeded: int
    failed: int


class CommandRequest(BaseModel):
    """Request body for sending a command to a session."""
    text: str


class OutputResponse(BaseModel):
    """Recent output of a session."""
    session: str
    output: str


@router.get("/sessions", response_model=list[WorkerSession])
async def list_sessions(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Live worker sessions."""
    return await orchestrator.list_sessions()


@router.get("/agents", response_model=list[AgentStatus])
async def list_agents(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Agent status of every session that carries metadata."""
    return await orchestrator.supervisor.refresh_agents()


@router.post("/sessions/recover", response_model=RecoverResponse)
async def recover_sessions(
    response: Response,
    body: RecoverRequest = RecoverRequest(),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Restart every stopped session still bound to an issue."""
    results = await orchestrator.recover_all(dry_run=body.dry_run, cleanup_orphans=body.cleanup_orphans)
    succeeded = sum(1 for r in results if r.success)
    failed = len(results) - succeeded
    if succeeded and failed:
        response.status_code = STATUS_BY_CATEGORY[ErrorCategory.PARTIAL_BATCH]
    return RecoverResponse(results=results, succeeded=succeeded, failed=failed)


@router.delete("/sessions/{name}", response_model=KillResult)
async def kill_session(name: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Kill a session. Succeeds if it's already gone."""
    return await orchestrator.kill(name)


@router.post("/sessions/{name}/restart", response_model=WorkerSession)
async def restart_session(name: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Re-spawn the agent of a stopped session."""
    return await orchestrator.restart(name)


@router.post("/sessions/{name}/command")
async def send_command(
    name: str,
    body: CommandRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Type a command into a session."""
    await orchestrator.send_command(name, body.text)
    return {"success": True}


@router.get("/sessions/{name}/output", response_model=OutputResponse)
async def read_output(
    name: str,
    lines: int = Query(100, ge=1, le=10000),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Recent output of a session."""
    return OutputResponse(session=name, output=await orchestrator.read_output(name, lines))
