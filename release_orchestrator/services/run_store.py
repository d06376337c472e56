"""
Run Store
=========
Durable persistence of PipelineRun records as JSON files.

One file per run: <RUNS_DIR>/<run_id>.json

The orchestrator saves after every state change, so a run suspended in
'awaiting-approval' survives a process restart and can be resumed by an
approval signal that arrives much later.

Writes go to a temp file first and are renamed into place, so a reader
never observes a half-written run.
"""
import logging
import os
import threading
from typing import List, Optional

from release_orchestrator.core.config import RUNS_DIR
from release_orchestrator.core.errors import RunNotFound
from release_orchestrator.models.pipeline_run import PipelineRun

logger = logging.getLogger(__name__)


class RunStore:
    """File-backed store of PipelineRun records."""

    def __init__(self, root: str = RUNS_DIR) -> None:
        self.root = os.path.abspath(root)
        self._lock = threading.Lock()
        os.makedirs(self.root, exist_ok=True)

    def _path(self, run_id: str) -> str:
        if not run_id or "/" in run_id or "\\" in run_id or run_id.startswith("."):
            raise RunNotFound(f"Invalid run id: {run_id!r}")
        return os.path.join(self.root, f"{run_id}.json")

    def save(self, run: PipelineRun) -> None:
        path = self._path(run.run_id)
        tmp_path = f"{path}.{threading.get_ident()}.tmp"
        payload = run.model_dump_json(indent=2)
        with self._lock:
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_path, path)

    def load(self, run_id: str) -> PipelineRun:
        path = self._path(run_id)
        if not os.path.exists(path):
            raise RunNotFound(f"Run {run_id} not found")
        with open(path, "r", encoding="utf-8") as f:
            return PipelineRun.model_validate_json(f.read())

    def exists(self, run_id: str) -> bool:
        try:
            return os.path.exists(self._path(run_id))
        except RunNotFound:
            return False

    def list_runs(self, status: Optional[str] = None) -> List[PipelineRun]:
        """All stored runs, oldest first, optionally filtered by status."""
        runs: List[PipelineRun] = []
        for entry in sorted(os.listdir(self.root)):
            if not entry.endswith(".json"):
                continue
            try:
                run = self.load(entry[: -len(".json")])
            except (OSError, ValueError) as exc:
                logger.warning("Skipping unreadable run file %s: %s", entry, exc)
                continue
            if status is None or run.status == status:
                runs.append(run)
        runs.sort(key=lambda r: r.created_at)
        return runs

    def __len__(self) -> int:
        return sum(1 for entry in os.listdir(self.root) if entry.endswith(".json"))
