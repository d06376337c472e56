"""
POST /api/runs/{run_id}/approval
Records the human decision for a run suspended at the manual publish stage.
Approval resumes only the suspended stage; rejection fails it with
PublishRejected. 409 when the run is not awaiting approval.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from release_orchestrator.agents.orchestrator import PipelineOrchestrator
from release_orchestrator.api.deps import get_orchestrator
from release_orchestrator.core.errors import RunNotFound, RunStateError
from release_orchestrator.models.pipeline_run import PipelineRun

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/runs", tags=["Approvals"])


class ApprovalRequest(BaseModel):
    approved: bool
    approver: str = ""
    reason: str = ""


@router.post("/{run_id}/approval", response_model=PipelineRun)
async def decide_approval(
    run_id: str,
    request: ApprovalRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    logger.info(
        "Approval decision for %s: %s by %s",
        run_id, "approved" if request.approved else "rejected", request.approver or "unknown",
    )
    try:
        if request.approved:
            return await orchestrator.approve(run_id, approver=request.approver, reason=request.reason)
        return await orchestrator.reject(run_id, approver=request.approver, reason=request.reason)
    except RunNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    except RunStateError as e:
        raise HTTPException(status_code=409, detail=e.message)
