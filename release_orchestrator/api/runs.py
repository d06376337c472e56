"""
Pipeline Run Endpoints
======================
POST /api/runs                  — submit a TriggerEvent
GET  /api/runs                  — list runs (optional ?status= filter)
GET  /api/runs/{run_id}         — one run with every StageResult
POST /api/runs/{run_id}/cancel  — request cancellation

A trigger that does not satisfy the activation rule is acknowledged with
202 {"status": "ignored"} and creates no run.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from release_orchestrator.agents.orchestrator import PipelineOrchestrator
from release_orchestrator.api.deps import get_orchestrator
from release_orchestrator.core.errors import RunNotFound, RunStateError
from release_orchestrator.models.pipeline_run import PipelineRun
from release_orchestrator.models.trigger import TriggerEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/runs", tags=["Runs"])


@router.post("", response_model=PipelineRun)
async def submit_run(
    trigger: TriggerEvent,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    run = await orchestrator.submit(trigger)
    if run is None:
        return JSONResponse(status_code=202, content={"status": "ignored"})
    return run


@router.get("", response_model=List[PipelineRun])
async def list_runs(
    status: Optional[str] = None,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.list_runs(status=status)


@router.get("/{run_id}", response_model=PipelineRun)
async def get_run(run_id: str, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    try:
        return orchestrator.get_run(run_id)
    except RunNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)


@router.post("/{run_id}/cancel", response_model=PipelineRun)
async def cancel_run(run_id: str, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    try:
        return orchestrator.cancel(run_id)
    except RunNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    except RunStateError as e:
        raise HTTPException(status_code=409, detail=e.message)
