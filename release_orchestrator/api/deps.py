"""
Shared API dependencies.

The orchestrator is a process-wide singleton; tests swap it out through
``app.dependency_overrides[get_orchestrator]``.
"""
from typing import Optional

from release_orchestrator.agents.orchestrator import PipelineOrchestrator

_orchestrator: Optional[PipelineOrchestrator] = None


def get_orchestrator() -> PipelineOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = PipelineOrchestrator()
    return _orchestrator
