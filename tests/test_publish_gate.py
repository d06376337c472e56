import pytest

from release_orchestrator.agents.publish_gate import PublishDecision, PublishGate
from release_orchestrator.core.errors import ScannerUnavailable
from release_orchestrator.models.image import Finding, ScanResult


@pytest.fixture
def gate():
    return PublishGate()

def test_clean_scan_auto_publishes(gate):
    decision = gate.decide(ScanResult(outcome="clean"))
    assert decision == PublishDecision.AUTO_PUBLISH
    assert gate.stage_for(decision) == "docker_push_auto"
    assert gate.skipped_stages(decision) == ["docker_push_manual"]
    assert gate.requires_approval(decision) is False

def test_vulnerable_scan_needs_manual_approval(gate):
    scan = ScanResult(outcome="vulnerable", findings=[Finding(vulnerability_id="CVE-2024-3094", severity="CRITICAL")])
    decision = gate.decide(scan)
    assert decision == PublishDecision.MANUAL_APPROVAL
    assert gate.stage_for(decision) == "docker_push_manual"
    assert gate.skipped_stages(decision) == ["docker_push_auto"]
    assert gate.requires_approval(decision) is True
    assert gate.approval_environment == "security-review"

def test_unavailable_scanner_blocks(gate):
    decision = gate.decide(ScannerUnavailable("trivy crashed"))
    assert decision == PublishDecision.BLOCK
    assert gate.stage_for(decision) is None
    assert gate.skipped_stages(decision) == ["docker_push_auto", "docker_push_manual"]
