"""
Publish Gate
============
Routes a scanned image onto exactly one publish path.

    scan clean          → AUTO_PUBLISH     → docker_push_auto
    scan vulnerable     → MANUAL_APPROVAL  → docker_push_manual (suspends
                                             until a human approves)
    ScannerUnavailable  → BLOCK            → nothing is published, run fails

Both push paths share one publish implementation in the Orchestrator; the
decision only selects the stage and whether an approval is required first.
"""
import logging
from enum import Enum
from typing import Optional, Union

from release_orchestrator.core.constants import (
    APPROVAL_ENVIRONMENT,
    STAGE_PUSH_AUTO,
    STAGE_PUSH_MANUAL,
)
from release_orchestrator.core.errors import ScannerUnavailable
from release_orchestrator.models.image import ScanResult

logger = logging.getLogger(__name__)


class PublishDecision(str, Enum):
    AUTO_PUBLISH = "AUTO_PUBLISH"
    MANUAL_APPROVAL = "MANUAL_APPROVAL"
    BLOCK = "BLOCK"


_STAGE_FOR_DECISION = {
    PublishDecision.AUTO_PUBLISH: STAGE_PUSH_AUTO,
    PublishDecision.MANUAL_APPROVAL: STAGE_PUSH_MANUAL,
}


class PublishGate:
    """Stateless decision component."""

    def __init__(self, approval_environment: str = APPROVAL_ENVIRONMENT) -> None:
        self.approval_environment = approval_environment

    def decide(self, scan_result: Union[ScanResult, ScannerUnavailable]) -> PublishDecision:
        if isinstance(scan_result, ScannerUnavailable):
            decision = PublishDecision.BLOCK
        elif scan_result.outcome == "clean":
            decision = PublishDecision.AUTO_PUBLISH
        elif scan_result.outcome == "vulnerable":
            decision = PublishDecision.MANUAL_APPROVAL
        else:
            # Unknown verdicts are treated like a missing scan
            decision = PublishDecision.BLOCK

        logger.info("Publish gate decision: %s", decision.value)
        return decision

    @staticmethod
    def stage_for(decision: PublishDecision) -> Optional[str]:
        """Push stage that runs for ``decision`` (None when blocked)."""
        return _STAGE_FOR_DECISION.get(decision)

    @staticmethod
    def skipped_stages(decision: PublishDecision) -> list[str]:
        """Push stages that must NOT run for ``decision``."""
        chosen = _STAGE_FOR_DECISION.get(decision)
        return [stage for stage in (STAGE_PUSH_AUTO, STAGE_PUSH_MANUAL) if stage != chosen]

    @staticmethod
    def requires_approval(decision: PublishDecision) -> bool:
        return decision == PublishDecision.MANUAL_APPROVAL
