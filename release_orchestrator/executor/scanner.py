"""
Vulnerability Scanner
=====================
Scanner collaborator backed by the Trivy CLI.

Contract:
    scan(image, severity_threshold, ignore_unfixed) → ScanResult
        clean       — no finding at or above the threshold
        vulnerable  — at least one such finding

    Missing binary, non-zero exit, unparsable output or timeout raise
    ScannerUnavailable. They are NEVER reported as 'vulnerable': the publish
    gate blocks on an unavailable scanner but routes 'vulnerable' to manual
    approval.

Trivy runs with --exit-code 0 so a finding is not confused with a crash;
the verdict comes from the JSON report only.
"""
import json
import logging
import subprocess
from typing import List

from release_orchestrator.core.config import (
    IGNORE_UNFIXED,
    SEVERITY_THRESHOLD,
    STAGE_TIMEOUTS,
    TRIVY_BINARY,
    VULN_TYPES,
)
from release_orchestrator.core.errors import ScannerUnavailable
from release_orchestrator.models.image import Finding, Image, ScanResult

logger = logging.getLogger(__name__)


def parse_trivy_report(report: dict, severity_threshold: str, ignore_unfixed: bool) -> ScanResult:
    """Convert a Trivy JSON report into a ScanResult."""
    severities = {s.strip().upper() for s in severity_threshold.split(",") if s.strip()}
    findings: List[Finding] = []

    for target in report.get("Results") or []:
        for vuln in target.get("Vulnerabilities") or []:
            severity = str(vuln.get("Severity", "UNKNOWN")).upper()
            if severities and severity not in severities:
                continue
            fixed_version = vuln.get("FixedVersion") or ""
            if ignore_unfixed and not fixed_version:
                continue
            findings.append(Finding(
                vulnerability_id=vuln.get("VulnerabilityID", ""),
                pkg_name=vuln.get("PkgName", ""),
                installed_version=vuln.get("InstalledVersion", ""),
                fixed_version=fixed_version,
                severity=severity,
                title=vuln.get("Title", "") or "",
            ))

    return ScanResult(outcome="vulnerable" if findings else "clean", findings=findings)


class TrivyScanner:
    """Runs ``trivy image`` against a locally built image."""

    def __init__(
        self,
        binary: str = TRIVY_BINARY,
        vuln_types: str = VULN_TYPES,
        timeout_seconds: float = STAGE_TIMEOUTS["docker_build"],
    ) -> None:
        self.binary = binary
        self.vuln_types = vuln_types
        self.timeout_seconds = timeout_seconds

    def build_command(self, image: Image, severity_threshold: str, ignore_unfixed: bool) -> List[str]:
        cmd = [
            self.binary, "image",
            "--format", "json",
            "--quiet",
            "--exit-code", "0",
            "--severity", severity_threshold,
            "--vuln-type", self.vuln_types,
        ]
        if ignore_unfixed:
            cmd.append("--ignore-unfixed")
        cmd.append(image.reference)
        return cmd

    def scan(
        self,
        image: Image,
        severity_threshold: str = SEVERITY_THRESHOLD,
        ignore_unfixed: bool = IGNORE_UNFIXED,
    ) -> ScanResult:
        cmd = self.build_command(image, severity_threshold, ignore_unfixed)
        logger.info("Scanning %s (severity=%s, ignore_unfixed=%s)", image.reference, severity_threshold, ignore_unfixed)

        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except FileNotFoundError as e:
            raise ScannerUnavailable(f"Scanner binary '{self.binary}' not found") from e
        except subprocess.TimeoutExpired as e:
            raise ScannerUnavailable(f"Scanner timed out after {self.timeout_seconds:.0f}s") from e

        if proc.returncode != 0:
            raise ScannerUnavailable(
                f"Scanner exited with {proc.returncode}: {(proc.stderr or '').strip()[:500]}"
            )

        try:
            report = json.loads(proc.stdout or "")
        except json.JSONDecodeError as e:
            raise ScannerUnavailable(f"Scanner produced unparsable output: {e}") from e
        if not isinstance(report, dict):
            raise ScannerUnavailable("Scanner report is not a JSON object")

        result = parse_trivy_report(report, severity_threshold, ignore_unfixed)
        logger.info("Scan of %s: %s (%d finding(s))", image.reference, result.outcome, len(result.findings))
        return result
