"""
Pipeline Run Model
==================
Pydantic models tracking one execution of the release pipeline.

PipelineRun fields:
    run_id          — short unique id
    revision        — commit hash being released (immutable)
    trigger         — the TriggerEvent that created the run
    status          — "pending" | "running" | "succeeded" | "failed" | "awaiting-approval"
    stages          — one StageResult per stage, in STAGE_ORDER
    image           — Image built by docker_build (None until then)
    publish_decision — gate verdict: AUTO_PUBLISH / MANUAL_APPROVAL / BLOCK
    approval        — approval request / decision for the manual path
    commit          — descriptor CommitResult from update-k8s
    error           — summary of the failing stage ("<stage>: <kind>: <message>")

StageResult fields:
    status          — "pending" | "running" | "succeeded" | "failed" | "skipped"
    error_kind / error_message — recorded on failure (see core/errors.py)
    artifact        — ArtifactRef produced by the stage, if any
    attempts        — calls made to the collaborator (push retries count here)

Ownership:
    Only the PipelineOrchestrator mutates a run. A StageResult that reached a
    terminal status is never rewritten.
"""
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel

from release_orchestrator.core.constants import STAGE_ORDER
from release_orchestrator.models.artifact import ArtifactRef
from release_orchestrator.models.commit_result import CommitResult
from release_orchestrator.models.image import Image
from release_orchestrator.models.trigger import TriggerEvent

RunStatus = Literal["pending", "running", "succeeded", "failed", "awaiting-approval"]
StageStatus = Literal["pending", "running", "succeeded", "failed", "skipped"]

TERMINAL_RUN_STATUSES = frozenset({"succeeded", "failed"})
TERMINAL_STAGE_STATUSES = frozenset({"succeeded", "failed", "skipped"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StageResult(BaseModel):
    name: str
    status: StageStatus = "pending"
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    artifact: Optional[ArtifactRef] = None
    error_kind: str = ""
    error_message: str = ""
    log_excerpt: str = ""
    attempts: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STAGE_STATUSES


class ApprovalRecord(BaseModel):
    stage: str
    environment: str
    requested_at: datetime
    decided_at: Optional[datetime] = None
    approved: Optional[bool] = None
    approver: str = ""
    reason: str = ""


class PipelineRun(BaseModel):
    run_id: str
    revision: str
    trigger: TriggerEvent
    status: RunStatus = "pending"
    stages: List[StageResult] = []
    image: Optional[Image] = None
    publish_decision: Optional[str] = None
    approval: Optional[ApprovalRecord] = None
    commit: Optional[CommitResult] = None
    error: str = ""
    cancel_requested: bool = False
    workspace_path: str = ""
    created_at: datetime
    finished_at: Optional[datetime] = None

    @classmethod
    def create(cls, run_id: str, trigger: TriggerEvent) -> "PipelineRun":
        return cls(
            run_id=run_id,
            revision=trigger.revision,
            trigger=trigger,
            stages=[StageResult(name=name) for name in STAGE_ORDER],
            created_at=utcnow(),
        )

    @property
    def trigger_kind(self) -> str:
        return self.trigger.event

    @property
    def target_branch(self) -> str:
        return self.trigger.branch

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    def stage(self, name: str) -> StageResult:
        for result in self.stages:
            if result.name == name:
                return result
        raise KeyError(f"Unknown stage: {name}")

    def failed_stage(self) -> Optional[StageResult]:
        for result in self.stages:
            if result.status == "failed":
                return result
        return None
