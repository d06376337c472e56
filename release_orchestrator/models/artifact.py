"""
Artifact Reference Model
Pydantic model pointing at a blob held by a run-scoped ArtifactStore.
Downstream stages hold the reference, never a copy of the bytes.
"""
from pydantic import BaseModel


class ArtifactRef(BaseModel):
    run_id: str
    name: str
    digest: str      # sha256 hex of the content
    size: int = 0
