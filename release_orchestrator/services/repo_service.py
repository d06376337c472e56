"""
Repo Service
============
Source checkout collaborator: materialises a revision on the host machine.

Philosophy:
    - One workspace per run: <WORKSPACE_DIR>/<run_id>/
    - Concurrent source stages work on private copies: <WORKSPACE_DIR>/<run_id>-<stage>/
    - The workspace is pinned to the run's revision (detached HEAD).
    - Workspaces are removed once the run is terminal.
"""
import os
import shutil
import subprocess
import logging
from typing import Optional

from release_orchestrator.core.config import GITHUB_TOKEN, WORKSPACE_DIR

logger = logging.getLogger(__name__)


def repository_url(repository: str) -> str:
    """Build a clone URL from an 'owner/name' slug (full URLs pass through)."""
    if "://" in repository or repository.startswith("git@"):
        return repository
    return f"https://github.com/{repository}.git"


def authenticated_url(repo_url: str, github_token: str = "") -> str:
    """Insert an access token into an https GitHub URL."""
    if github_token and "github.com" in repo_url and repo_url.startswith("https://"):
        return repo_url.replace("https://", f"https://x-access-token:{github_token}@", 1)
    return repo_url


def checkout_revision(
    repo_url: str,
    revision: str,
    run_id: str,
    github_token: str = GITHUB_TOKEN,
    workspace_root: str = WORKSPACE_DIR,
) -> str:
    """
    Clone a repository and check out ``revision``.

    Returns
    -------
    str
        Absolute path to the run's workspace.
    """
    dest_path = os.path.abspath(os.path.join(workspace_root, run_id))
    if os.path.exists(dest_path):
        shutil.rmtree(dest_path)
    os.makedirs(os.path.dirname(dest_path), exist_ok=True)

    logger.info("Checking out %s@%s into %s", repo_url, revision[:7], dest_path)
    try:
        subprocess.run(
            ["git", "clone", "--no-checkout", authenticated_url(repo_url, github_token), dest_path],
            check=True,
            capture_output=True,
            text=True,
        )
        subprocess.run(
            ["git", "checkout", "--detach", revision],
            cwd=dest_path,
            check=True,
            capture_output=True,
            text=True,
        )
    except subprocess.CalledProcessError as e:
        logger.error("Failed to check out %s: %s", revision[:7], e.stderr)
        raise RuntimeError(f"Checkout failed: {e.stderr}")

    return dest_path


def stage_workspace(workspace_path: str, stage: str) -> str:
    """
    Copy a run workspace into ``<workspace>-<stage>/`` for a stage that runs
    alongside others. The caller removes the copy when the stage ends.
    """
    dest_path = f"{workspace_path.rstrip(os.sep)}-{stage}"
    if os.path.exists(dest_path):
        shutil.rmtree(dest_path)
    shutil.copytree(workspace_path, dest_path, symlinks=True)
    logger.debug("Prepared %s workspace %s", stage, dest_path)
    return dest_path


def detect_project_type(workspace_path: str) -> Optional[str]:
    """
    Detect the project type from marker files.

    Priority:
        1. Node (package.json)
        2. Python (pyproject.toml, requirements.txt, setup.py)
        3. Go (go.mod)
        4. Rust (Cargo.toml)
        5. Java (pom.xml)
        6. None
    """
    markers = [
        ("node", ["package.json"]),
        ("python", ["pyproject.toml", "requirements.txt", "setup.py"]),
        ("go", ["go.mod"]),
        ("rust", ["Cargo.toml"]),
        ("java", ["pom.xml"]),
    ]
    for project_type, files in markers:
        for marker in files:
            if os.path.exists(os.path.join(workspace_path, marker)):
                return project_type
    return None


def remove_workspace(workspace_path: str) -> None:
    """Delete a run workspace (no-op if already gone)."""
    if workspace_path and os.path.exists(workspace_path):
        logger.info("Removing workspace %s", workspace_path)
        shutil.rmtree(workspace_path, ignore_errors=True)
