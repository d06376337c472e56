"""
Artifact Store
==============
Content-addressed hand-off of build outputs between stages of ONE run.

Layout:
    <ARTIFACTS_DIR>/<run_id>/<sha256 digest>

Lifecycle:
    - Created when the run starts executing stages.
    - put() returns an ArtifactRef; downstream stages hold the ref only.
    - release() deletes the run's blobs; called when the run is terminal.

Misuse (ref from another run, released store, tampered blob) raises
NotFound. It is a programming/config error and is never retried.
"""
import logging
import os
import shutil
from typing import Dict

from release_orchestrator.core.config import ARTIFACTS_DIR
from release_orchestrator.core.errors import NotFound
from release_orchestrator.models.artifact import ArtifactRef
from release_orchestrator.utils.content_hash import compute_digest

logger = logging.getLogger(__name__)


class ArtifactStore:
    """
    Run-scoped blob store.

    Usage:
        store = ArtifactStore("run123")
        ref = store.put("build-artifacts", data)
        data = store.get(ref)
        store.release()
    """

    def __init__(self, run_id: str, root: str = ARTIFACTS_DIR) -> None:
        self.run_id = run_id
        self.root = os.path.abspath(os.path.join(root, run_id))
        self._released = False
        # name → digest of the latest put under that name
        self._names: Dict[str, str] = {}

    def _blob_path(self, digest: str) -> str:
        return os.path.join(self.root, digest)

    def put(self, name: str, data: bytes) -> ArtifactRef:
        """
        Store ``data`` under ``name``.

        Identical content is stored once; the ref is stable for that content.
        """
        if self._released:
            raise NotFound(f"Artifact store for run {self.run_id} has been released")

        digest = compute_digest(data)
        os.makedirs(self.root, exist_ok=True)
        path = self._blob_path(digest)
        if not os.path.exists(path):
            tmp_path = f"{path}.tmp"
            with open(tmp_path, "wb") as f:
                f.write(data)
            os.replace(tmp_path, path)

        self._names[name] = digest
        logger.info("Stored artifact '%s' for run %s (%d bytes, %s)", name, self.run_id, len(data), digest[:12])
        return ArtifactRef(run_id=self.run_id, name=name, digest=digest, size=len(data))

    def get(self, ref: ArtifactRef) -> bytes:
        """Return the bytes behind ``ref``."""
        if ref.run_id != self.run_id:
            raise NotFound(
                f"Artifact '{ref.name}' belongs to run {ref.run_id}, not {self.run_id}"
            )
        if self._released:
            raise NotFound(f"Artifact store for run {self.run_id} has been released")

        path = self._blob_path(ref.digest)
        if not os.path.exists(path):
            raise NotFound(f"Artifact '{ref.name}' ({ref.digest[:12]}) not found for run {self.run_id}")

        with open(path, "rb") as f:
            data = f.read()
        if compute_digest(data) != ref.digest:
            raise NotFound(f"Artifact '{ref.name}' content does not match digest {ref.digest[:12]}")
        return data

    def names(self) -> list[str]:
        return sorted(self._names)

    def release(self) -> None:
        """Discard every blob of this run. Idempotent."""
        if self._released:
            return
        self._released = True
        self._names.clear()
        if os.path.exists(self.root):
            shutil.rmtree(self.root, ignore_errors=True)
        logger.debug("Artifact store released for run %s", self.run_id)

    @property
    def released(self) -> bool:
        return self._released
