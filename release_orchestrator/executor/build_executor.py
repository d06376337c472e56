"""
Build Executor
==============
Runs the source stages (test, lint, build) inside an ephemeral Docker
sandbox container and hands build output over as a tar.gz blob.

BOUNDARY RULES:
    - Executor ONLY executes and observes.
    - Executor NEVER decides stage ordering — that is the Orchestrator's job.
    - Executor NEVER stores artifacts — it returns bytes, the ArtifactStore keeps them.

DOCKER STRATEGY:
    - One container per stage execution (ephemeral).
    - Workspace mounted as volume at /workspace.
    - Container destroyed after execution.

Never raises for build errors: a non-zero exit code or infrastructure error is
reported in ExecutionResult and turned into BuildFailure by the Orchestrator.
"""
import io
import os
import tarfile
import time
import logging
from dataclasses import dataclass, field
from typing import Optional

import docker
from docker.errors import (
    ContainerError,
    ImageNotFound,
    APIError,
)

from release_orchestrator.core.config import (
    BUILD_OUTPUT_DIR,
    DEFAULT_DOCKER_IMAGE,
    DOCKER_IMAGE_MAP,
    STAGE_TIMEOUTS,
)
from release_orchestrator.executor.command_resolver import resolve_commands, ResolvedCommands
from release_orchestrator.services.repo_service import detect_project_type

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Execution Result (returned to Orchestrator)
# ---------------------------------------------------------------------------
@dataclass
class ExecutionResult:
    """
    Structured output from a single stage execution.

    Fields
    ------
    exit_code : int
        Process exit code (0 = success, non-zero = failure).
    full_log : str
        Full combined stdout + stderr from the container.
    log_excerpt : str
        Abbreviated log (first + last N lines) recorded on the StageResult.
    execution_time_seconds : float
        Wall clock duration of the execution.
    stage : str
        Stage that was executed.
    environment_metadata : dict
        Runtime info: image used, container ID, timeout applied.
    error : str | None
        Error message if execution infrastructure failed (not build errors).
    """
    exit_code: int = -1
    full_log: str = ""
    log_excerpt: str = ""
    execution_time_seconds: float = 0.0
    stage: str = ""
    environment_metadata: dict = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and self.error is None


# ---------------------------------------------------------------------------
# Log Excerpt Helper
# ---------------------------------------------------------------------------
_EXCERPT_HEAD_LINES = 30
_EXCERPT_TAIL_LINES = 30


def create_log_excerpt(full_log: str,
                       head: int = _EXCERPT_HEAD_LINES,
                       tail: int = _EXCERPT_TAIL_LINES) -> str:
    """
    Create an abbreviated log showing the first and last N lines.

    If the log is short enough, returns it as-is.
    """
    lines = full_log.splitlines()
    total = len(lines)

    if total <= head + tail:
        return full_log

    head_lines = lines[:head]
    tail_lines = lines[-tail:]
    omitted = total - head - tail

    return "\n".join(
        head_lines
        + [f"\n... ({omitted} lines omitted) ...\n"]
        + tail_lines
    )


# ---------------------------------------------------------------------------
# Container Execution
# ---------------------------------------------------------------------------
_MEMORY_LIMIT = "2g"
_CPU_COUNT = 2


def _build_shell_command(commands: ResolvedCommands, stage: str) -> str:
    """
    Combine install + stage command into a single shell command string.

    ``set -e`` makes the shell exit on the first failing command.
    """
    return " && ".join([
        "set -e",
        f"echo '>>> INSTALL' && {commands.install_command}",
        f"echo '>>> {stage.upper()}' && {commands.for_stage(stage)}",
    ])


def run_in_container(
    workspace_path: str,
    shell_command: str,
    docker_image: str = DEFAULT_DOCKER_IMAGE,
    timeout_seconds: float = 600,
    stage: str = "",
) -> ExecutionResult:
    """
    Execute ``shell_command`` inside an ephemeral Docker container.

    Lifecycle:
        1. Create container with workspace mounted at /workspace
        2. Wait for completion (bounded by timeout)
        3. Capture logs and exit code
        4. Destroy container

    Returns
    -------
    ExecutionResult
        Always returned — never raises. On infrastructure failure exit_code
        is -1 and error is set.
    """
    result = ExecutionResult(stage=stage)
    start_time = time.monotonic()
    container = None

    try:
        client = docker.from_env()

        logger.info(
            "Starting container | stage=%s | image=%s | timeout=%ds",
            stage, docker_image, int(timeout_seconds),
        )

        container = client.containers.run(
            image=docker_image,
            command=["bash", "-c", shell_command],
            volumes={
                workspace_path: {"bind": "/workspace", "mode": "rw"},
            },
            environment={"CI": "true"},
            working_dir="/workspace",
            mem_limit=_MEMORY_LIMIT,
            nano_cpus=_CPU_COUNT * 1_000_000_000,
            labels={"project": "release-orchestrator", "role": "sandbox", "stage": stage},
            detach=True,
            stdout=True,
            stderr=True,
        )

        wait_result = container.wait(timeout=timeout_seconds)
        result.exit_code = wait_result.get("StatusCode", -1)

        log_bytes = container.logs(stdout=True, stderr=True)
        result.full_log = log_bytes.decode("utf-8", errors="replace")

        result.environment_metadata = {
            "image": docker_image,
            "container_id": container.short_id,
            "timeout_applied": timeout_seconds,
        }

    except ImageNotFound:
        result.error = f"Docker image '{docker_image}' not found"
        logger.error(result.error)

    except ContainerError as e:
        result.error = f"Container execution error: {e}"
        result.exit_code = getattr(e, "exit_status", -1)
        result.full_log = str(e)
        logger.error(result.error)

    except APIError as e:
        result.error = f"Docker API error: {e}"
        logger.error(result.error)

    except Exception as e:
        # Catch-all: orchestrator must always receive a result
        result.error = f"Unexpected executor error: {type(e).__name__}: {e}"
        result.exit_code = -1
        logger.exception(result.error)

    finally:
        if container is not None:
            try:
                container.remove(force=True)
            except Exception:
                logger.warning("Failed to remove container", exc_info=True)

    result.execution_time_seconds = round(time.monotonic() - start_time, 3)
    result.log_excerpt = create_log_excerpt(result.full_log)

    logger.info(
        "Execution complete | stage=%s | exit=%d | time=%.2fs",
        stage, result.exit_code, result.execution_time_seconds,
    )
    return result


def run_stage(workspace_path: str, stage: str, project_type: Optional[str] = None) -> ExecutionResult:
    """
    Run a source stage ("test", "lint", "build") for the workspace's project type.
    """
    if project_type is None:
        project_type = detect_project_type(workspace_path)
    commands = resolve_commands(project_type)
    docker_image = DOCKER_IMAGE_MAP.get(commands.project_type, DEFAULT_DOCKER_IMAGE)

    return run_in_container(
        workspace_path=workspace_path,
        shell_command=_build_shell_command(commands, stage),
        docker_image=docker_image,
        timeout_seconds=STAGE_TIMEOUTS.get(stage, 600),
        stage=stage,
    )


# ---------------------------------------------------------------------------
# Build output hand-off
# ---------------------------------------------------------------------------
def pack_build_output(workspace_path: str, output_dir: str = BUILD_OUTPUT_DIR) -> bytes:
    """
    Pack ``<workspace>/<output_dir>`` into a gzip'd tarball.

    Entries are stored relative to the output directory, sorted, with
    zeroed mtimes so the same output always yields the same bytes (and
    therefore the same artifact digest).
    """
    source = os.path.join(workspace_path, output_dir)
    if not os.path.isdir(source):
        raise FileNotFoundError(f"Build output directory '{output_dir}' was not produced")

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz", compresslevel=6) as tar:
        for root, dirs, files in os.walk(source):
            dirs.sort()
            for name in sorted(files):
                abs_path = os.path.join(root, name)
                arcname = os.path.relpath(abs_path, source).replace(os.sep, "/")
                info = tar.gettarinfo(abs_path, arcname=arcname)
                info.mtime = 0
                info.uid = info.gid = 0
                info.uname = info.gname = ""
                with open(abs_path, "rb") as f:
                    tar.addfile(info, f)
    # gzip header embeds a timestamp; normalise it for determinism
    data = bytearray(buffer.getvalue())
    data[4:8] = b"\x00\x00\x00\x00"
    return bytes(data)


def unpack_build_output(data: bytes, workspace_path: str, output_dir: str = BUILD_OUTPUT_DIR) -> str:
    """
    Extract an artifact produced by pack_build_output into ``<workspace>/<output_dir>``.

    Only regular files and directories inside ``output_dir`` are accepted;
    links, devices and escaping paths raise ValueError before anything is
    written.
    """
    dest = os.path.abspath(os.path.join(workspace_path, output_dir))
    os.makedirs(dest, exist_ok=True)
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        for member in tar.getmembers():
            target = os.path.abspath(os.path.join(dest, member.name))
            if not target.startswith(dest + os.sep):
                raise ValueError(f"Refusing to extract '{member.name}' outside {output_dir}")
            if not (member.isfile() or member.isdir()):
                raise ValueError(f"Refusing to extract non-regular member '{member.name}'")
        # extraction filters exist only on 3.10.12+ / 3.11.4+
        if hasattr(tarfile, "data_filter"):
            tar.extractall(dest, filter="data")
        else:
            tar.extractall(dest)
    return dest
