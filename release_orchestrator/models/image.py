"""
Image & Scan Models
===================
Pydantic models for the container image produced by docker_build and the
verdict attached to it by the vulnerability scanner.

Tag rules:
    tag        — "sha-<full revision hash>", the only reference ever written
                 to the deployment descriptor
    short tag  — first 7 hex chars of the revision, commit messages only
"""
from typing import List, Literal

from pydantic import BaseModel

from release_orchestrator.core.constants import IMAGE_TAG_PREFIX, SHORT_TAG_LENGTH

ScanOutcome = Literal["unknown", "clean", "vulnerable"]


def image_tag_for(revision: str) -> str:
    """Authoritative image tag for a revision: ``sha-<full hash>``."""
    return f"{IMAGE_TAG_PREFIX}{revision}"


def short_tag_for(revision: str) -> str:
    """Display-only short tag (first 7 hex characters)."""
    return revision[:SHORT_TAG_LENGTH]


def short_tag_from_reference(image_ref: str) -> str:
    """
    Derive the short tag from a full image reference.

    ``ghcr.io/org/repo:sha-abc1234ffff`` → ``abc1234``. Falls back to the
    first 7 characters of whatever tag is present.
    """
    tag = image_ref.rsplit(":", 1)[-1] if ":" in image_ref.rsplit("/", 1)[-1] else ""
    if tag.startswith(IMAGE_TAG_PREFIX):
        tag = tag[len(IMAGE_TAG_PREFIX):]
    return tag[:SHORT_TAG_LENGTH]


def registry_host_of(image_ref: str) -> str:
    """Registry host prefix of a reference (``ghcr.io/org/repo:tag`` → ``ghcr.io``)."""
    return image_ref.split("/", 1)[0] if "/" in image_ref else ""


class Finding(BaseModel):
    vulnerability_id: str
    pkg_name: str = ""
    installed_version: str = ""
    fixed_version: str = ""
    severity: str = "UNKNOWN"
    title: str = ""


class ScanResult(BaseModel):
    outcome: Literal["clean", "vulnerable"]
    findings: List[Finding] = []


class Image(BaseModel):
    registry: str
    repository: str              # lowercased owner/name
    tag: str                     # sha-<revision>
    extra_tags: List[str] = []   # branch / latest
    digest: str = ""
    labels: dict[str, str] = {}
    scan_outcome: ScanOutcome = "unknown"
    findings: List[Finding] = []
    published: bool = False

    @property
    def name(self) -> str:
        return f"{self.registry}/{self.repository}"

    @property
    def reference(self) -> str:
        return f"{self.name}:{self.tag}"

    @property
    def all_tags(self) -> List[str]:
        return [self.tag] + [t for t in self.extra_tags if t != self.tag]

    def attach_scan(self, result: ScanResult) -> None:
        """Record the scan verdict. Allowed once, and never after publish."""
        if self.published:
            raise ValueError(f"Image {self.reference} already published; scan outcome is frozen")
        if self.scan_outcome != "unknown":
            raise ValueError(f"Image {self.reference} already has scan outcome {self.scan_outcome}")
        self.scan_outcome = result.outcome
        self.findings = list(result.findings)
