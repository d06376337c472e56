"""
Descriptor Store
================
Git-backed storage for the deployment descriptor.

Each read() is a FRESH shallow clone of the main branch into a private temp
directory, so concurrent updaters never share a working tree. The HEAD sha of
that clone is the storage "version" used for optimistic concurrency:

    read()  → DescriptorSnapshot(content, version=HEAD sha, workdir)
    write() → commit on top of that HEAD and push WITHOUT force
              push rejected (remote moved) → StaleDescriptor
    discard() → remove the temp clone

The updater retries read-modify-write on StaleDescriptor; nothing here ever
force-pushes, so a concurrent writer's commit is never lost.

Every git command is bounded by ``command_timeout`` (STAGE_TIMEOUT_UPDATE_K8S by
default). A command that overruns is killed and surfaces as DescriptorError,
which the updater does not retry.
"""
import logging
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from typing import List, Optional

from release_orchestrator.core.config import (
    COMMIT_AUTHOR_EMAIL,
    COMMIT_AUTHOR_NAME,
    GITHUB_TOKEN,
    MAIN_BRANCH,
    STAGE_TIMEOUTS,
)
from release_orchestrator.core.errors import DescriptorError, StaleDescriptor
from release_orchestrator.services.repo_service import authenticated_url

logger = logging.getLogger(__name__)

# stderr fragments git prints when the remote moved since our clone
_REJECTION_MARKERS = ("rejected", "non-fast-forward", "fetch first", "stale info")


@dataclass
class DescriptorSnapshot:
    """Content of the descriptor at a specific storage version."""
    path: str          # repo-relative
    content: str
    version: str       # HEAD sha the content was read at
    workdir: str = ""


class GitDescriptorStore:
    """
    Reads and writes the descriptor through plain git commands.
    """

    def __init__(
        self,
        repo_url: str,
        branch: str = MAIN_BRANCH,
        github_token: str = GITHUB_TOKEN,
        author_name: str = COMMIT_AUTHOR_NAME,
        author_email: str = COMMIT_AUTHOR_EMAIL,
        work_root: Optional[str] = None,
        command_timeout: Optional[float] = STAGE_TIMEOUTS["update-k8s"],
    ) -> None:
        self.repo_url = repo_url
        self.branch = branch
        self.github_token = github_token
        self.author_name = author_name
        self.author_email = author_email
        self.work_root = work_root
        self.command_timeout = command_timeout

    def _git(self, args: List[str], cwd: Optional[str] = None) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                ["git", *args],
                cwd=cwd,
                check=True,
                capture_output=True,
                text=True,
                timeout=self.command_timeout,
            )
        except subprocess.TimeoutExpired as e:
            # clone URLs carry the token
            command = " ".join(a for a in args if "://" not in a)
            raise DescriptorError(f"git {command} timed out after {self.command_timeout:g}s") from e

    def _resolve(self, workdir: str, path: str) -> str:
        abs_path = os.path.normpath(os.path.join(workdir, path))
        if not abs_path.startswith(os.path.abspath(workdir) + os.sep):
            raise DescriptorError(f"Descriptor path escapes the repository: {path}")
        return abs_path

    def read(self, path: str) -> DescriptorSnapshot:
        workdir = tempfile.mkdtemp(prefix="descriptor-", dir=self.work_root)
        try:
            self._git([
                "clone", "--depth", "1", "--branch", self.branch,
                authenticated_url(self.repo_url, self.github_token), workdir,
            ])
            version = self._git(["rev-parse", "HEAD"], cwd=workdir).stdout.strip()
        except subprocess.CalledProcessError as e:
            shutil.rmtree(workdir, ignore_errors=True)
            raise DescriptorError(f"Could not clone descriptor repository: {e.stderr}") from e
        except DescriptorError:
            shutil.rmtree(workdir, ignore_errors=True)
            raise

        try:
            abs_path = self._resolve(workdir, path)
            if not os.path.exists(abs_path):
                raise DescriptorError(f"Descriptor {path} does not exist on {self.branch}")
        except DescriptorError:
            shutil.rmtree(workdir, ignore_errors=True)
            raise

        # newline="" keeps CRLF files byte-identical on write-back
        with open(abs_path, "r", encoding="utf-8", newline="") as f:
            content = f.read()

        logger.debug("Read %s at %s", path, version[:7])
        return DescriptorSnapshot(path=path, content=content, version=version, workdir=workdir)

    def write(self, snapshot: DescriptorSnapshot, content: str, message: str) -> str:
        """Commit ``content`` on top of ``snapshot.version`` and push. Returns the new sha."""
        abs_path = self._resolve(snapshot.workdir, snapshot.path)
        with open(abs_path, "w", encoding="utf-8", newline="") as f:
            f.write(content)

        try:
            self._git(["add", snapshot.path], cwd=snapshot.workdir)
            self._git(
                [
                    "-c", f"user.name={self.author_name}",
                    "-c", f"user.email={self.author_email}",
                    "commit", "-m", message,
                ],
                cwd=snapshot.workdir,
            )
        except subprocess.CalledProcessError as e:
            raise DescriptorError(f"Could not commit descriptor: {e.stderr}") from e

        try:
            self._git(["push", "origin", f"HEAD:{self.branch}"], cwd=snapshot.workdir)
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").lower()
            if any(marker in stderr for marker in _REJECTION_MARKERS):
                raise StaleDescriptor(
                    f"{self.branch} moved since {snapshot.version[:7]}"
                ) from e
            raise DescriptorError(f"Could not push descriptor commit: {e.stderr}") from e

        return self._git(["rev-parse", "HEAD"], cwd=snapshot.workdir).stdout.strip()

    def discard(self, snapshot: DescriptorSnapshot) -> None:
        if snapshot.workdir and os.path.exists(snapshot.workdir):
            shutil.rmtree(snapshot.workdir, ignore_errors=True)
