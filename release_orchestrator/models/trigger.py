"""
Trigger Event Model
===================
Pydantic model for the event that may start a pipeline run.

Fields:
    event           — "push" or "pull_request"
    revision        — full 40-hex commit hash being released
    branch          — target branch (pushed branch, or PR base branch)
    repository      — "owner/name" as reported by the VCS host (any case)
    changed_paths   — repo-relative paths touched by the push (empty = unknown)
    head_commit_message — message of the head commit (push only)
    actor           — user or bot that caused the event
"""
import re
from typing import List, Literal

from pydantic import BaseModel, field_validator

_REVISION_RE = re.compile(r"^[0-9a-f]{40}$")

TriggerKind = Literal["push", "pull_request"]


class TriggerEvent(BaseModel):
    event: TriggerKind
    revision: str
    branch: str
    repository: str
    changed_paths: List[str] = []
    head_commit_message: str = ""
    actor: str = ""

    @field_validator("revision")
    @classmethod
    def validate_revision(cls, v: str) -> str:
        v = v.strip().lower()
        if not _REVISION_RE.match(v):
            raise ValueError("revision must be a full 40-character hex commit hash")
        return v

    @field_validator("branch")
    @classmethod
    def strip_ref_prefix(cls, v: str) -> str:
        v = v.strip()
        if v.startswith("refs/heads/"):
            v = v[len("refs/heads/"):]
        return v

    @field_validator("changed_paths")
    @classmethod
    def normalise_paths(cls, v: List[str]) -> List[str]:
        normalised = []
        for path in v:
            path = path.replace("\\", "/")
            while path.startswith("./"):
                path = path[2:]
            normalised.append(path)
        return normalised
