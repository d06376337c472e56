"""
Pipeline Orchestrator
=====================
The state machine that takes a revision from trigger to deployment.

    test ─┐
          ├─→ build ─→ docker_build ─┬─→ docker_push_auto ───┐
    lint ─┘              (scan)      └─→ docker_push_manual ─┴─→ update-k8s
                                          (approval gate)

Core Features:
    - Activation rule check before any run is created (self-trigger suppression)
    - Needs-graph scheduling: independent stages run concurrently, joins wait
      for ALL predecessors, a failure skips every dependent not yet started
    - Publish gate: exactly one push branch runs, the other is skipped
    - Manual approval is a persisted 'awaiting-approval' run state; approve()
      resumes only the suspended stage, even after a process restart
    - Bounded registry push retries
    - Conflict-safe descriptor update (see DeploymentRecordUpdater)
    - Per-stage timeouts (a timeout is a stage failure)
    - Cooperative cancellation between stages; pushes and commits are never
      interrupted once started

Fault Tolerance:
    Every stage failure is recorded on its StageResult (kind + message) and
    surfaces as run status 'failed'. Nothing is swallowed.
"""
import asyncio
import logging
import uuid
from typing import Callable, Dict, List, Optional

from release_orchestrator.agents.deployment_updater import DeploymentRecordUpdater
from release_orchestrator.agents.publish_gate import PublishDecision, PublishGate
from release_orchestrator.core.config import (
    ARTIFACTS_DIR,
    BUILD_OUTPUT_DIR,
    DEPLOYMENT_NAME,
    DESCRIPTOR_PATH,
    GITHUB_TOKEN,
    IGNORE_UNFIXED,
    MAIN_BRANCH,
    REGISTRY_HOST,
    REGISTRY_PUSH_BACKOFF_SECONDS,
    REGISTRY_PUSH_RETRY_LIMIT,
    SEVERITY_THRESHOLD,
    STAGE_TIMEOUTS,
)
from release_orchestrator.core.constants import (
    ANY_OF_STAGES,
    ARROW,
    BUILD_ARTIFACT_NAME,
    ISOLATED_STAGES,
    SIDE_EFFECT_STAGES,
    SOURCE_STAGES,
    STAGE_BUILD,
    STAGE_DOCKER_BUILD,
    STAGE_NEEDS,
    STAGE_PUSH_AUTO,
    STAGE_PUSH_MANUAL,
    STAGE_UPDATE_K8S,
)
from release_orchestrator.core.errors import (
    BuildFailure,
    PipelineError,
    PublishRejected,
    RegistryPushFailure,
    RunCancelled,
    RunStateError,
    ScannerUnavailable,
    StageTimeout,
    UNEXPECTED_ERROR,
)
from release_orchestrator.executor.build_executor import (
    pack_build_output,
    run_stage,
    unpack_build_output,
)
from release_orchestrator.executor.image_builder import DockerImageBuilder, plan_image
from release_orchestrator.executor.registry import DockerRegistry
from release_orchestrator.executor.scanner import TrivyScanner
from release_orchestrator.models.pipeline_run import (
    ApprovalRecord,
    PipelineRun,
    StageResult,
    utcnow,
)
from release_orchestrator.models.trigger import TriggerEvent
from release_orchestrator.services.artifact_store import ArtifactStore
from release_orchestrator.services.descriptor_store import GitDescriptorStore
from release_orchestrator.services.repo_service import (
    checkout_revision,
    remove_workspace,
    repository_url,
    stage_workspace,
)
from release_orchestrator.services.run_store import RunStore
from release_orchestrator.utils.trigger_rules import should_activate

logger = logging.getLogger(__name__)


def _default_checkout(trigger: TriggerEvent, run_id: str) -> str:
    return checkout_revision(repository_url(trigger.repository), trigger.revision, run_id)


def _default_updater(trigger: TriggerEvent, command_timeout: Optional[float] = None) -> DeploymentRecordUpdater:
    store = GitDescriptorStore(
        repository_url(trigger.repository),
        github_token=GITHUB_TOKEN,
        command_timeout=command_timeout,
    )
    return DeploymentRecordUpdater(store)


class PipelineOrchestrator:
    """
    Runs the fixed release topology for each activated trigger.

    Collaborators are injected; defaults talk to git, Docker, Trivy and the
    registry configured in core/config.py.
    """

    def __init__(
        self,
        run_store: Optional[RunStore] = None,
        checkout: Optional[Callable[[TriggerEvent, str], str]] = None,
        stage_runner: Optional[Callable] = None,
        image_builder=None,
        scanner=None,
        registry=None,
        updater: Optional[DeploymentRecordUpdater] = None,
        publish_gate: Optional[PublishGate] = None,
        artifacts_root: str = ARTIFACTS_DIR,
        build_output_dir: str = BUILD_OUTPUT_DIR,
        registry_host: str = REGISTRY_HOST,
        main_branch: str = MAIN_BRANCH,
        descriptor_path: str = DESCRIPTOR_PATH,
        deployment_name: str = DEPLOYMENT_NAME,
        severity_threshold: str = SEVERITY_THRESHOLD,
        ignore_unfixed: bool = IGNORE_UNFIXED,
        stage_timeouts: Optional[Dict[str, float]] = None,
        push_retry_limit: int = REGISTRY_PUSH_RETRY_LIMIT,
        push_backoff_seconds: float = REGISTRY_PUSH_BACKOFF_SECONDS,
        cleanup_workspaces: bool = True,
    ) -> None:
        self.stage_timeouts = dict(STAGE_TIMEOUTS if stage_timeouts is None else stage_timeouts)
        self.run_store = run_store or RunStore()
        self.checkout = checkout or _default_checkout
        self.stage_runner = stage_runner or run_stage
        self.image_builder = image_builder or DockerImageBuilder()
        self.scanner = scanner or TrivyScanner()
        # push stage timeout bounds each daemon call
        self.registry = registry or DockerRegistry(timeout=self.stage_timeouts.get(STAGE_PUSH_AUTO))
        self.updater = updater
        self.publish_gate = publish_gate or PublishGate()
        self.artifacts_root = artifacts_root
        self.build_output_dir = build_output_dir
        self.registry_host = registry_host
        self.main_branch = main_branch
        self.descriptor_path = descriptor_path
        self.deployment_name = deployment_name
        self.severity_threshold = severity_threshold
        self.ignore_unfixed = ignore_unfixed
        self.push_retry_limit = max(1, push_retry_limit)
        self.push_backoff_seconds = push_backoff_seconds
        self.cleanup_workspaces = cleanup_workspaces

        # Runs currently executing in this process (suspended runs live only in the store)
        self._active: Dict[str, PipelineRun] = {}
        self._artifact_stores: Dict[str, ArtifactStore] = {}

    # ===================================================================
    # Public API
    # ===================================================================
    async def submit(self, trigger: TriggerEvent) -> Optional[PipelineRun]:
        """
        Create and execute a run for ``trigger``.

        Returns None (and creates nothing) when the trigger does not satisfy
        the activation rule. Otherwise returns the run once it is terminal or
        suspended awaiting approval.
        """
        if not should_activate(trigger, self.main_branch, self.descriptor_path):
            return None

        run = PipelineRun.create(str(uuid.uuid4())[:12], trigger)
        run.status = "running"
        self._active[run.run_id] = run
        self._save(run)
        logger.info(
            "[RUN:%s] Created for %s %s@%s",
            run.run_id, trigger.event, trigger.repository, trigger.revision[:7],
        )

        try:
            run.workspace_path = await asyncio.to_thread(self.checkout, trigger, run.run_id)
        except Exception as exc:
            logger.error("[RUN:%s] Checkout failed: %s", run.run_id, exc)
            for stage in run.stages:
                self._finish_stage(run, stage, "skipped")
            run.error = f"checkout: {type(exc).__name__}: {exc}"
            self._finalize(run)
            return run

        await self._drive(run)
        return run

    async def approve(self, run_id: str, approver: str = "", reason: str = "") -> PipelineRun:
        """Record approval and resume the suspended manual push stage."""
        run = self._load_suspended(run_id)
        run.approval.approved = True
        run.approval.approver = approver
        run.approval.reason = reason
        run.approval.decided_at = utcnow()
        run.status = "running"
        self._active[run.run_id] = run
        self._save(run)
        logger.info("[RUN:%s] Publish approved by %s, resuming %s", run_id, approver or "unknown", run.approval.stage)

        await self._drive(run)
        return run

    async def reject(self, run_id: str, approver: str = "", reason: str = "") -> PipelineRun:
        """Record rejection: the suspended stage fails with PublishRejected."""
        run = self._load_suspended(run_id)
        run.approval.approved = False
        run.approval.approver = approver
        run.approval.reason = reason
        run.approval.decided_at = utcnow()
        run.status = "running"
        self._active[run.run_id] = run
        error = PublishRejected(f"Publish rejected by {approver or 'unknown'}" + (f": {reason}" if reason else ""))
        self._finish_stage(run, run.stage(run.approval.stage), "failed", error)
        logger.warning("[RUN:%s] %s", run_id, error.message)

        await self._drive(run)
        return run

    def cancel(self, run_id: str) -> PipelineRun:
        """
        Request cancellation.

        Executing runs stop before their next stage starts; a stage already
        in flight finishes first. Suspended runs are cancelled immediately.
        """
        run = self._active.get(run_id)
        if run is not None:
            run.cancel_requested = True
            self._save(run)
            logger.info("[RUN:%s] Cancellation requested", run_id)
            return run

        run = self.run_store.load(run_id)
        if run.is_terminal:
            raise RunStateError(f"Run {run_id} already {run.status}")
        run.cancel_requested = True
        self._cancel_pending(run)
        self._finalize(run)
        return run

    def get_run(self, run_id: str) -> PipelineRun:
        run = self._active.get(run_id)
        if run is not None:
            return run
        return self.run_store.load(run_id)

    def list_runs(self, status: Optional[str] = None) -> List[PipelineRun]:
        stored = {run.run_id: run for run in self.run_store.list_runs()}
        stored.update(self._active)
        runs = sorted(stored.values(), key=lambda r: r.created_at)
        if status is not None:
            runs = [r for r in runs if r.status == status]
        return runs

    # ===================================================================
    # Scheduling
    # ===================================================================
    def _predecessors_done(self, run: PipelineRun, name: str) -> bool:
        needs = [run.stage(n) for n in STAGE_NEEDS[name]]
        if name in ANY_OF_STAGES:
            return all(s.is_terminal for s in needs) and any(s.status == "succeeded" for s in needs)
        return all(s.status == "succeeded" for s in needs)

    def _predecessors_blocked(self, run: PipelineRun, name: str) -> bool:
        needs = [run.stage(n) for n in STAGE_NEEDS[name]]
        if name in ANY_OF_STAGES:
            return all(s.is_terminal for s in needs) and not any(s.status == "succeeded" for s in needs)
        return any(s.status in ("failed", "skipped") for s in needs)

    def _propagate_skips(self, run: PipelineRun) -> None:
        changed = True
        while changed:
            changed = False
            for stage in run.stages:
                if stage.status == "pending" and self._predecessors_blocked(run, stage.name):
                    self._finish_stage(run, stage, "skipped")
                    logger.info("[RUN:%s] %s skipped (upstream did not succeed)", run.run_id, stage.name)
                    changed = True

    def _ready_stages(self, run: PipelineRun) -> List[str]:
        return [
            stage.name for stage in run.stages
            if stage.status == "pending" and self._predecessors_done(run, stage.name)
        ]

    def _needs_approval(self, run: PipelineRun, name: str) -> bool:
        return name == STAGE_PUSH_MANUAL and not (run.approval and run.approval.approved is True)

    async def _drive(self, run: PipelineRun) -> None:
        """_advance, but a scheduler crash still leaves the run terminal."""
        try:
            await self._advance(run)
        except Exception as exc:
            logger.exception("[RUN:%s] Scheduler crashed", run.run_id)
            self._abort(run, exc)

    def _abort(self, run: PipelineRun, exc: Exception) -> None:
        for stage in run.stages:
            if stage.status == "running":
                self._finish_stage(run, stage, "failed", exc)
            elif stage.status == "pending":
                self._finish_stage(run, stage, "skipped")
        run.error = f"{UNEXPECTED_ERROR}: {type(exc).__name__}: {exc}"
        self._finalize(run)

    async def _advance(self, run: PipelineRun) -> None:
        """Run every stage that can run, until the run is terminal or suspended."""
        while True:
            if run.cancel_requested:
                self._cancel_pending(run)
                break

            self._propagate_skips(run)
            ready = self._ready_stages(run)
            if not ready:
                break

            runnable = []
            for name in ready:
                if name == STAGE_UPDATE_K8S and run.trigger.event != "push":
                    self._finish_stage(run, run.stage(name), "skipped")
                    logger.info("[RUN:%s] %s skipped for %s events", run.run_id, name, run.trigger.event)
                elif self._needs_approval(run, name):
                    continue
                else:
                    runnable.append(name)

            if not runnable:
                if any(self._needs_approval(run, name) for name in ready):
                    self._suspend(run, STAGE_PUSH_MANUAL)
                    return
                continue

            logger.info("[RUN:%s] Starting stage(s): %s", run.run_id, ", ".join(runnable))
            # let every sibling settle before surfacing a crash
            results = await asyncio.gather(
                *(self._execute_stage(run, name) for name in runnable),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, Exception):
                    raise result

        self._finalize(run)

    def _suspend(self, run: PipelineRun, stage_name: str) -> None:
        if run.approval is None:
            run.approval = ApprovalRecord(
                stage=stage_name,
                environment=self.publish_gate.approval_environment,
                requested_at=utcnow(),
            )
        run.status = "awaiting-approval"
        self._save(run)
        self._active.pop(run.run_id, None)
        if self.cleanup_workspaces:
            remove_workspace(run.workspace_path)
        logger.warning(
            "[RUN:%s] Image %s has vulnerabilities; %s awaits approval in environment '%s'",
            run.run_id, run.image.reference if run.image else "?", stage_name, run.approval.environment,
        )

    def _cancel_pending(self, run: PipelineRun) -> None:
        error = RunCancelled("Run cancelled before this stage started")
        for stage in run.stages:
            if stage.status == "pending":
                self._finish_stage(run, stage, "skipped", error)
        logger.info("[RUN:%s] Cancelled; remaining stages skipped", run.run_id)

    # ===================================================================
    # Stage execution
    # ===================================================================
    async def _execute_stage(self, run: PipelineRun, name: str) -> None:
        stage = run.stage(name)
        stage.status = "running"
        stage.started_at = utcnow()
        self._save(run)

        handlers = {
            STAGE_DOCKER_BUILD: self._docker_build,
            STAGE_PUSH_AUTO: self._publish,
            STAGE_PUSH_MANUAL: self._publish,
            STAGE_UPDATE_K8S: self._update_descriptor,
        }
        handler = handlers.get(name, self._run_source_stage)

        try:
            await self._run_bounded(name, handler(run, stage))
        except PipelineError as exc:
            logger.error("[RUN:%s] Stage %s failed: %s: %s", run.run_id, name, exc.kind, exc.message)
            if isinstance(exc, BuildFailure) and exc.log_excerpt and not stage.log_excerpt:
                stage.log_excerpt = exc.log_excerpt
            self._finish_stage(run, stage, "failed", exc)
        except Exception as exc:
            logger.exception("[RUN:%s] Stage %s crashed", run.run_id, name)
            self._finish_stage(run, stage, "failed", exc)
        else:
            self._finish_stage(run, stage, "succeeded")
            logger.info("[RUN:%s] Stage %s succeeded", run.run_id, name)

    async def _run_bounded(self, name: str, coro) -> None:
        """
        Await a stage handler under its configured timeout.

        Side-effect stages always run to completion; their collaborators are
        built with per-call timeouts instead. Only the stage's own deadline
        becomes StageTimeout: a TimeoutError raised by a collaborator
        propagates unchanged.
        """
        timeout = self.stage_timeouts.get(name)
        if name in SIDE_EFFECT_STAGES or not timeout:
            await coro
            return

        task = asyncio.ensure_future(coro)
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if not done:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise StageTimeout(f"{name} exceeded {timeout:g}s")
        task.result()

    async def _run_source_stage(self, run: PipelineRun, stage: StageResult) -> None:
        """test / lint / build inside the sandbox; build also hands off dist/."""
        if stage.name not in SOURCE_STAGES:
            raise RunStateError(f"No handler for stage {stage.name}")

        stage.attempts += 1
        workspace = run.workspace_path
        if stage.name in ISOLATED_STAGES:
            workspace = await asyncio.to_thread(stage_workspace, run.workspace_path, stage.name)
        try:
            result = await asyncio.to_thread(self.stage_runner, workspace, stage.name)
        finally:
            if workspace != run.workspace_path:
                remove_workspace(workspace)
        stage.log_excerpt = result.log_excerpt
        if not result.succeeded:
            detail = f": {result.error}" if result.error else ""
            raise BuildFailure(
                f"{stage.name} exited with code {result.exit_code}{detail}",
                exit_code=result.exit_code,
                log_excerpt=result.log_excerpt,
            )

        if stage.name == STAGE_BUILD:
            try:
                data = await asyncio.to_thread(pack_build_output, run.workspace_path, self.build_output_dir)
            except FileNotFoundError as exc:
                raise BuildFailure(str(exc)) from exc
            stage.artifact = self._artifacts(run).put(BUILD_ARTIFACT_NAME, data)

    async def _docker_build(self, run: PipelineRun, stage: StageResult) -> None:
        """Build the image from the build artifact, scan it, and apply the gate."""
        build_artifact = run.stage(STAGE_BUILD).artifact
        if build_artifact is None:
            raise BuildFailure("build stage produced no artifact")
        data = self._artifacts(run).get(build_artifact)
        await asyncio.to_thread(unpack_build_output, data, run.workspace_path, self.build_output_dir)

        stage.attempts += 1
        image = plan_image(run.trigger, self.registry_host)
        image = await asyncio.to_thread(self.image_builder.build, run.workspace_path, image)
        run.image = image
        self._save(run)

        try:
            verdict = await asyncio.to_thread(
                self.scanner.scan, image, self.severity_threshold, self.ignore_unfixed
            )
        except ScannerUnavailable as exc:
            verdict = exc

        decision = self.publish_gate.decide(verdict)
        run.publish_decision = decision.value
        if decision == PublishDecision.BLOCK:
            if isinstance(verdict, ScannerUnavailable):
                raise verdict
            raise ScannerUnavailable("Scanner returned no usable verdict")

        image.attach_scan(verdict)
        for name in self.publish_gate.skipped_stages(decision):
            self._finish_stage(run, run.stage(name), "skipped")
        logger.info(
            "[RUN:%s] %s scanned %s %s %s",
            run.run_id, image.reference, image.scan_outcome, ARROW, self.publish_gate.stage_for(decision),
        )

    async def _publish(self, run: PipelineRun, stage: StageResult) -> None:
        """Single publish implementation for both gate branches."""
        decision = PublishDecision(run.publish_decision)
        if self.publish_gate.stage_for(decision) != stage.name:
            raise RunStateError(f"Gate decision {decision.value} does not select {stage.name}")
        if self.publish_gate.requires_approval(decision) and not (run.approval and run.approval.approved):
            raise PublishRejected("Manual publish attempted without approval")

        digest = ""
        for attempt in range(1, self.push_retry_limit + 1):
            stage.attempts = attempt
            try:
                digest = await asyncio.to_thread(self.registry.push, run.image)
                break
            except RegistryPushFailure as exc:
                if attempt >= self.push_retry_limit:
                    raise RegistryPushFailure(
                        f"{exc.message} (gave up after {attempt} attempts)"
                    ) from exc
                delay = self.push_backoff_seconds * attempt
                logger.warning(
                    "[RUN:%s] Push attempt %d/%d failed: %s; retrying in %.1fs",
                    run.run_id, attempt, self.push_retry_limit, exc.message, delay,
                )
                await asyncio.sleep(delay)

        if digest:
            run.image.digest = digest
        run.image.published = True

    async def _update_descriptor(self, run: PipelineRun, stage: StageResult) -> None:
        updater = self.updater or _default_updater(run.trigger, self.stage_timeouts.get(STAGE_UPDATE_K8S))
        result = await asyncio.to_thread(
            updater.update, self.descriptor_path, self.deployment_name, run.image.reference
        )
        stage.attempts = result.attempts
        run.commit = result

    # ===================================================================
    # Bookkeeping
    # ===================================================================
    def _artifacts(self, run: PipelineRun) -> ArtifactStore:
        store = self._artifact_stores.get(run.run_id)
        if store is None:
            store = ArtifactStore(run.run_id, root=self.artifacts_root)
            self._artifact_stores[run.run_id] = store
        return store

    def _finish_stage(
        self,
        run: PipelineRun,
        stage: StageResult,
        status: str,
        error: Optional[Exception] = None,
    ) -> None:
        if stage.is_terminal:
            raise RunStateError(f"Stage {stage.name} of run {run.run_id} is already {stage.status}")
        stage.status = status
        stage.finished_at = utcnow()
        if error is not None:
            stage.error_kind = getattr(error, "kind", UNEXPECTED_ERROR)
            stage.error_message = getattr(error, "message", None) or str(error)
        self._save(run)

    def _load_suspended(self, run_id: str) -> PipelineRun:
        if run_id in self._active:
            raise RunStateError(f"Run {run_id} is {self._active[run_id].status}, not awaiting approval")
        run = self.run_store.load(run_id)
        if run.status != "awaiting-approval" or run.approval is None:
            raise RunStateError(f"Run {run_id} is {run.status}, not awaiting approval")
        if run.cancel_requested:
            raise RunStateError(f"Run {run_id} has been cancelled")
        return run

    def _finalize(self, run: PipelineRun) -> None:
        failed = run.failed_stage()
        cancelled = next((s for s in run.stages if s.error_kind == RunCancelled.kind), None)

        if failed is not None:
            run.status = "failed"
            run.error = f"{failed.name}: {failed.error_kind}: {failed.error_message}"
        elif cancelled is not None:
            run.status = "failed"
            run.error = f"{RunCancelled.kind}: {cancelled.error_message}"
        elif run.error:
            run.status = "failed"
        elif all(stage.is_terminal for stage in run.stages):
            run.status = "succeeded"
        else:
            self._save(run)
            return

        run.finished_at = utcnow()
        self._save(run)
        self._active.pop(run.run_id, None)

        store = self._artifact_stores.pop(run.run_id, None) or ArtifactStore(run.run_id, root=self.artifacts_root)
        store.release()
        if self.cleanup_workspaces:
            remove_workspace(run.workspace_path)

        if run.status == "succeeded":
            logger.info(
                "[RUN:%s] Succeeded: %s%s",
                run.run_id, run.image.reference if run.image else "",
                f" {ARROW} {run.commit.status}" if run.commit else "",
            )
        else:
            logger.error("[RUN:%s] Failed: %s", run.run_id, run.error)

    def _save(self, run: PipelineRun) -> None:
        self.run_store.save(run)

