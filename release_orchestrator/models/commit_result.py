"""
Commit Result Model
Pydantic model for the outcome of a DeploymentRecordUpdater.update() call.
"""
from typing import Literal

from pydantic import BaseModel


class CommitResult(BaseModel):
    status: Literal["committed", "no_change"]
    descriptor_path: str
    image_ref: str
    commit_sha: str = ""
    message: str = ""
    attempts: int = 1
