"""Pipeline endpoints: assignment, skipping, pull requests and merging."""

from typing import Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel

from ...errors import ErrorCategory
from ...models import (
    AssignResult, MergeMethod, MergeResult, PipelineItem, PipelineSummary,
)
from ...orchestrator import Orchestrator
from ..deps import STATUS_BY_CATEGORY, get_orchestrator

router = APIRouter()


class AssignRequest(BaseModel):
    """Request body for assigning an issue."""
    agent_type: Optional[str] = None
    repo_path: Optional[str] = None


class OpenPrRequest(BaseModel):
    """Request body for opening a PR."""
    title: Optional[str] = None


class MergeRequest(BaseModel):
    """Request body for merge endpoints."""
    method: Optional[MergeMethod] = None
    delete_branch: Optional[bool] = None


class PipelineResponse(BaseModel):
    """Pipeline items with a summary."""
    items: list[PipelineItem]
    summary: PipelineSummary


class MergeBatchResponse(BaseModel):
    """Per-item merge results plus the phases completed by the batch."""
    merges: list[MergeResult]
    completed_phases: list[int]
    succeeded: int
    failed: int


@router.get("/pipeline", response_model=PipelineResponse)
async def get_pipeline(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Active pipeline items."""
    return PipelineResponse(
        items=orchestrator.pipeline.state.all_items(),
        summary=orchestrator.pipeline.summary(),
    )


@router.post("/pipeline/merge-ready", response_model=MergeBatchResponse)
async def merge_all_ready(
    response: Response,
    body: MergeRequest = MergeRequest(),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Merge every ready PR. Failures are reported per item, with 207 for a mixed batch."""
    batch = await orchestrator.merge_all_ready(body.method, body.delete_branch)
    if batch.succeeded and batch.failed:
        response.status_code = STATUS_BY_CATEGORY[ErrorCategory.PARTIAL_BATCH]
    return MergeBatchResponse(
        merges=batch.merges,
        completed_phases=batch.completed_phases,
        succeeded=len(batch.succeeded),
        failed=len(batch.failed),
    )


@router.post("/pipeline/detect-prs", response_model=list[PipelineItem])
async def detect_prs(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Link PRs agents opened on their issue branches. Returns the newly linked items."""
    return await orchestrator.detect_prs()


@router.post("/pipeline/{issue_number}/assign", response_model=AssignResult)
async def assign(
    issue_number: int,
    body: AssignRequest = AssignRequest(),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Start a worker session for a queued sub-issue."""
    return await orchestrator.assign(issue_number, body.agent_type, body.repo_path)


@router.post("/pipeline/{issue_number}/pr", response_model=PipelineItem)
async def open_pr(
    issue_number: int,
    body: OpenPrRequest = OpenPrRequest(),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Push the issue branch and open its pull request."""
    return await orchestrator.open_pr(issue_number, body.title)


@router.post("/pipeline/{issue_number}/skip", response_model=PipelineItem)
async def skip(issue_number: int, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Skip a queued sub-issue."""
    return await orchestrator.skip(issue_number)


@router.post("/pipeline/{issue_number}/merge", response_model=MergeResult)
async def merge_one(
    issue_number: int,
    body: MergeRequest = MergeRequest(),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Merge the PR of one sub-issue."""
    return await orchestrator.merge_one(issue_number, body.method, body.delete_branch)
