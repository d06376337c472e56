"""
Orchestrator Tests
==================
Drives the full release topology with every external collaborator mocked:
no git, Docker, Trivy or registry is touched. Workspaces, the artifact store
and the run store live under tmp_path.
"""
import asyncio
import os
import threading
import time

import pytest
from unittest.mock import MagicMock, patch

from release_orchestrator.agents.deployment_updater import DeploymentRecordUpdater
from release_orchestrator.agents.orchestrator import PipelineOrchestrator
from release_orchestrator.core.errors import (
    RegistryPushFailure,
    RunNotFound,
    RunStateError,
    ScannerUnavailable,
)
from release_orchestrator.executor.build_executor import ExecutionResult
from release_orchestrator.models.image import Finding, ScanResult
from release_orchestrator.models.trigger import TriggerEvent
from release_orchestrator.services.run_store import RunStore

REV = "3f9c2a1be47d5c60a8f1d2e3b4c5d6e7f8091a2b"
REV2 = "9b8a7c6d5e4f30211f2e3d4c5b6a79880716253f"
DESCRIPTOR = "kubernetes/deployment.yaml"


def make_trigger(event="push", branch="main", revision=REV, **kwargs):
    return TriggerEvent(
        event=event,
        revision=revision,
        branch=branch,
        repository="Acme/Shop",
        **kwargs,
    )


def _ok(stage=""):
    return ExecutionResult(exit_code=0, full_log="ok", log_excerpt="ok", stage=stage)


def _build_image(workspace_path, image):
    image.digest = "sha256:" + "1" * 64
    return image


class Harness:
    """Bundles an orchestrator with the mocks behind it."""

    def __init__(self, tmp_path, descriptor_store, with_dist=True, **overrides):
        self.tmp_path = tmp_path
        self.with_dist = with_dist
        self.descriptor_store = descriptor_store
        self.run_store = overrides.pop("run_store", None) or RunStore(str(tmp_path / "runs"))

        self.checkout = MagicMock(side_effect=self._checkout)
        self.stage_runner = MagicMock(side_effect=lambda ws, stage: _ok(stage))
        self.image_builder = MagicMock()
        self.image_builder.build.side_effect = _build_image
        self.scanner = MagicMock()
        self.scanner.scan.return_value = ScanResult(outcome="clean")
        self.registry = MagicMock()
        self.registry.push.return_value = "sha256:" + "2" * 64
        self.updater = DeploymentRecordUpdater(descriptor_store, retry_delay=0)

        options = dict(
            run_store=self.run_store,
            checkout=self.checkout,
            stage_runner=self.stage_runner,
            image_builder=self.image_builder,
            scanner=self.scanner,
            registry=self.registry,
            updater=self.updater,
            artifacts_root=str(tmp_path / "artifacts"),
            registry_host="ghcr.io",
            main_branch="main",
            descriptor_path=DESCRIPTOR,
            deployment_name="web",
            stage_timeouts={},
            push_retry_limit=3,
            push_backoff_seconds=0,
        )
        options.update(overrides)
        self.orchestrator = PipelineOrchestrator(**options)

    def _checkout(self, trigger, run_id):
        workspace = self.tmp_path / "workspaces" / run_id
        workspace.mkdir(parents=True)
        (workspace / "Dockerfile").write_text("FROM nginx:alpine\nCOPY dist /usr/share/nginx/html\n")
        if self.with_dist:
            (workspace / "dist").mkdir()
            (workspace / "dist" / "app.js").write_text("console.log('shop');\n")
        return str(workspace)


@pytest.fixture
def harness(tmp_path, descriptor_store):
    return Harness(tmp_path, descriptor_store)


def _statuses(run):
    return {stage.name: stage.status for stage in run.stages}


# ===================================================================
# Happy path
# ===================================================================
def test_clean_push_to_main_publishes_and_updates_descriptor(harness, descriptor_store):
    """Clean scan → auto push → descriptor points at sha-<revision>."""
    async def run_test():
        run = await harness.orchestrator.submit(make_trigger())

        assert run.status == "succeeded"
        assert _statuses(run) == {
            "test": "succeeded",
            "lint": "succeeded",
            "build": "succeeded",
            "docker_build": "succeeded",
            "docker_push_auto": "succeeded",
            "docker_push_manual": "skipped",
            "update-k8s": "succeeded",
        }
        assert run.publish_decision == "AUTO_PUBLISH"
        assert run.image.reference == f"ghcr.io/acme/shop:sha-{REV}"
        assert run.image.published is True
        assert run.image.scan_outcome == "clean"
        assert run.image.extra_tags == ["main", "latest"]

        assert len(descriptor_store.commits) == 1
        commit = descriptor_store.commits[0]
        assert commit["message"] == f"Update Kubernetes deployment with new image tag: {REV[:7]} [skip ci]"
        assert f"image: ghcr.io/acme/shop:sha-{REV}  # bumped by CI" in descriptor_store.content
        assert "image: docker.io/envoyproxy/envoy:v1.29" in descriptor_store.content
        assert run.commit.status == "committed"
        assert run.commit.commit_sha == commit["sha"]

    asyncio.run(run_test())


def test_build_artifact_is_handed_to_docker_build_and_released(harness, tmp_path):
    async def run_test():
        seen = {}

        def _build(workspace_path, image):
            with open(os.path.join(workspace_path, "dist", "app.js")) as f:
                seen["app.js"] = f.read()
            return _build_image(workspace_path, image)

        harness.image_builder.build.side_effect = _build
        run = await harness.orchestrator.submit(make_trigger())

        assert run.status == "succeeded"
        artifact = run.stage("build").artifact
        assert artifact.name == "build-artifacts"
        assert artifact.run_id == run.run_id
        assert seen["app.js"] == "console.log('shop');\n"
        # terminal run → artifacts and workspace gone
        assert not (tmp_path / "artifacts" / run.run_id).exists()
        assert not (tmp_path / "workspaces" / run.run_id).exists()

    asyncio.run(run_test())


def test_test_and_lint_run_concurrently_before_build(harness):
    """Both source checks must be in flight at once; build waits for both."""
    async def run_test():
        barrier = threading.Barrier(2, timeout=5)

        def _runner(workspace, stage):
            if stage in ("test", "lint"):
                barrier.wait()
            return _ok(stage)

        harness.stage_runner.side_effect = _runner
        run = await harness.orchestrator.submit(make_trigger())

        assert run.status == "succeeded"
        build = run.stage("build")
        assert build.started_at >= run.stage("test").finished_at
        assert build.started_at >= run.stage("lint").finished_at

    asyncio.run(run_test())


def test_concurrent_source_stages_never_share_a_workspace(harness, tmp_path):
    """test and lint install in place; each must see only its own writes."""
    async def run_test():
        barrier = threading.Barrier(2, timeout=5)
        seen = {}

        def _runner(workspace, stage):
            if stage in ("test", "lint"):
                modules = os.path.join(workspace, "node_modules")
                os.makedirs(modules, exist_ok=True)
                open(os.path.join(modules, stage), "w").close()
                barrier.wait()
                seen[stage] = {
                    "workspace": workspace,
                    "modules": sorted(os.listdir(modules)),
                    "dockerfile": os.path.exists(os.path.join(workspace, "Dockerfile")),
                }
            else:
                seen[stage] = {
                    "workspace": workspace,
                    "has_modules": os.path.exists(os.path.join(workspace, "node_modules")),
                }
            return _ok(stage)

        harness.stage_runner.side_effect = _runner
        run = await harness.orchestrator.submit(make_trigger())

        assert run.status == "succeeded"
        assert seen["test"]["workspace"] != seen["lint"]["workspace"]
        assert run.workspace_path not in (seen["test"]["workspace"], seen["lint"]["workspace"])
        assert seen["test"]["modules"] == ["test"]
        assert seen["lint"]["modules"] == ["lint"]
        assert seen["test"]["dockerfile"] and seen["lint"]["dockerfile"]
        # build runs alone on the checkout itself, untouched by test/lint installs
        assert seen["build"]["workspace"] == run.workspace_path
        assert seen["build"]["has_modules"] is False
        assert os.listdir(tmp_path / "workspaces") == []

    asyncio.run(run_test())


def test_run_is_persisted(harness):
    async def run_test():
        run = await harness.orchestrator.submit(make_trigger())
        stored = harness.run_store.load(run.run_id)
        assert stored.status == "succeeded"
        assert stored.revision == REV
        assert stored.finished_at is not None
        assert [s.status for s in stored.stages] == [s.status for s in run.stages]

    asyncio.run(run_test())


# ===================================================================
# Activation
# ===================================================================
@pytest.mark.parametrize("trigger", [
    make_trigger(branch="feature/x"),
    make_trigger(event="pull_request", branch="release"),
    make_trigger(changed_paths=[DESCRIPTOR]),
    make_trigger(head_commit_message="docs tweak [skip ci]"),
])
def test_non_activating_trigger_creates_no_run(harness, trigger):
    async def run_test():
        assert await harness.orchestrator.submit(trigger) is None
        assert len(harness.run_store) == 0
        harness.checkout.assert_not_called()

    asyncio.run(run_test())


def test_pull_request_publishes_but_skips_descriptor_update(harness, descriptor_store):
    async def run_test():
        run = await harness.orchestrator.submit(make_trigger(event="pull_request"))

        assert run.status == "succeeded"
        assert run.stage("docker_push_auto").status == "succeeded"
        assert run.stage("update-k8s").status == "skipped"
        assert run.image.extra_tags == []
        assert descriptor_store.commits == []

    asyncio.run(run_test())


# ===================================================================
# Failures halt dependents
# ===================================================================
def test_test_failure_skips_everything_downstream(harness, descriptor_store):
    async def run_test():
        def _runner(workspace, stage):
            if stage == "test":
                return ExecutionResult(exit_code=1, full_log="FAILED test_cart", log_excerpt="FAILED test_cart")
            return _ok(stage)

        harness.stage_runner.side_effect = _runner
        run = await harness.orchestrator.submit(make_trigger())

        assert run.status == "failed"
        assert run.stage("test").status == "failed"
        assert run.stage("test").error_kind == "BuildFailure"
        assert run.stage("test").log_excerpt == "FAILED test_cart"
        assert run.stage("lint").status == "succeeded"
        for name in ("build", "docker_build", "docker_push_auto", "docker_push_manual", "update-k8s"):
            assert run.stage(name).status == "skipped"
        assert run.error.startswith("test: BuildFailure")
        harness.registry.push.assert_not_called()
        assert descriptor_store.commits == []

    asyncio.run(run_test())


def test_missing_build_output_fails_build(tmp_path, descriptor_store):
    async def run_test():
        h = Harness(tmp_path, descriptor_store, with_dist=False)
        run = await h.orchestrator.submit(make_trigger())

        assert run.status == "failed"
        assert run.stage("build").error_kind == "BuildFailure"
        assert run.stage("docker_build").status == "skipped"
        h.image_builder.build.assert_not_called()

    asyncio.run(run_test())


def test_stage_timeout_is_a_failure(tmp_path, descriptor_store):
    async def run_test():
        h = Harness(tmp_path, descriptor_store, stage_timeouts={"lint": 0.05})

        def _runner(workspace, stage):
            if stage == "lint":
                time.sleep(0.3)
            return _ok(stage)

        h.stage_runner.side_effect = _runner
        run = await h.orchestrator.submit(make_trigger())

        assert run.status == "failed"
        assert run.stage("lint").error_kind == "StageTimeout"
        assert run.stage("lint").error_message == "lint exceeded 0.05s"
        assert run.stage("build").status == "skipped"

    asyncio.run(run_test())


def test_collaborator_timeout_in_unbounded_stage_fails_run(harness, descriptor_store):
    """A TimeoutError raised by the registry itself is an ordinary crash, not a stage timeout."""
    async def run_test():
        harness.registry.push.side_effect = TimeoutError("socket read timed out")
        run = await harness.orchestrator.submit(make_trigger())

        assert run.status == "failed"
        push = run.stage("docker_push_auto")
        assert push.status == "failed"
        assert push.error_kind == "UnexpectedError"
        assert "socket read timed out" in push.error_message
        assert run.stage("update-k8s").status == "skipped"
        assert harness.run_store.load(run.run_id).status == "failed"
        assert descriptor_store.commits == []

    asyncio.run(run_test())


def test_collaborator_timeout_in_bounded_stage_keeps_its_own_message(tmp_path, descriptor_store):
    async def run_test():
        h = Harness(tmp_path, descriptor_store, stage_timeouts={"docker_build": 30})
        h.scanner.scan.side_effect = TimeoutError("trivy db download timed out")
        run = await h.orchestrator.submit(make_trigger())

        assert run.status == "failed"
        stage = run.stage("docker_build")
        assert stage.error_kind == "UnexpectedError"
        assert "trivy db download timed out" in stage.error_message
        assert "exceeded" not in stage.error_message

    asyncio.run(run_test())


def test_scheduler_crash_still_ends_run(harness):
    async def run_test():
        with patch.object(harness.orchestrator, "_ready_stages", side_effect=RuntimeError("graph corrupted")):
            run = await harness.orchestrator.submit(make_trigger())

        assert run.status == "failed"
        assert run.error.startswith("UnexpectedError: RuntimeError: graph corrupted")
        assert all(stage.status == "skipped" for stage in run.stages)
        assert harness.run_store.load(run.run_id).status == "failed"
        assert harness.orchestrator.list_runs(status="running") == []

    asyncio.run(run_test())


def test_scanner_unavailable_blocks_publish(harness, descriptor_store):
    async def run_test():
        harness.scanner.scan.side_effect = ScannerUnavailable("trivy not found")
        run = await harness.orchestrator.submit(make_trigger())

        assert run.status == "failed"
        assert run.publish_decision == "BLOCK"
        assert run.stage("docker_build").error_kind == "ScannerUnavailable"
        assert run.stage("docker_push_auto").status == "skipped"
        assert run.stage("docker_push_manual").status == "skipped"
        assert run.stage("update-k8s").status == "skipped"
        assert run.image.published is False
        harness.registry.push.assert_not_called()
        assert descriptor_store.commits == []

    asyncio.run(run_test())


# ===================================================================
# Registry retries
# ===================================================================
def test_push_is_retried_on_transient_failure(harness):
    async def run_test():
        harness.registry.push.side_effect = [
            RegistryPushFailure("502 Bad Gateway"),
            RegistryPushFailure("502 Bad Gateway"),
            "sha256:" + "3" * 64,
        ]
        run = await harness.orchestrator.submit(make_trigger())

        assert run.status == "succeeded"
        assert run.stage("docker_push_auto").attempts == 3
        assert run.image.digest == "sha256:" + "3" * 64

    asyncio.run(run_test())


def test_push_retry_exhaustion_fails_without_descriptor_change(harness, descriptor_store):
    async def run_test():
        harness.registry.push.side_effect = RegistryPushFailure("connection reset")
        run = await harness.orchestrator.submit(make_trigger())

        assert run.status == "failed"
        assert harness.registry.push.call_count == 3
        assert run.stage("docker_push_auto").error_kind == "RegistryPushFailure"
        assert run.stage("update-k8s").status == "skipped"
        assert run.image.published is False
        assert descriptor_store.commits == []

    asyncio.run(run_test())


def test_descriptor_conflict_exhaustion_fails_run(tmp_path, descriptor_store):
    async def run_test():
        h = Harness(tmp_path, descriptor_store)
        h.orchestrator.updater = DeploymentRecordUpdater(descriptor_store, retry_limit=2, retry_delay=0)

        def _someone_else_commits():
            descriptor_store.version += 1

        descriptor_store.before_write = [_someone_else_commits, _someone_else_commits]
        run = await h.orchestrator.submit(make_trigger())

        assert run.status == "failed"
        assert run.stage("update-k8s").error_kind == "UpdateConflict"
        assert run.image.published is True
        assert descriptor_store.commits == []

    asyncio.run(run_test())


# ===================================================================
# Manual approval
# ===================================================================
def _vulnerable():
    return ScanResult(outcome="vulnerable", findings=[
        Finding(vulnerability_id="CVE-2024-0001", pkg_name="openssl", severity="CRITICAL", fixed_version="3.0.14"),
    ])


def test_vulnerable_image_suspends_for_approval(harness, descriptor_store):
    async def run_test():
        harness.scanner.scan.return_value = _vulnerable()
        run = await harness.orchestrator.submit(make_trigger())

        assert run.status == "awaiting-approval"
        assert run.publish_decision == "MANUAL_APPROVAL"
        assert run.stage("docker_push_auto").status == "skipped"
        assert run.stage("docker_push_manual").status == "pending"
        assert run.stage("update-k8s").status == "pending"
        assert run.approval.environment == "security-review"
        assert run.approval.approved is None
        assert run.image.scan_outcome == "vulnerable"
        harness.registry.push.assert_not_called()
        assert descriptor_store.commits == []
        assert harness.run_store.load(run.run_id).status == "awaiting-approval"

    asyncio.run(run_test())


def test_approval_resumes_manual_push(harness, descriptor_store):
    async def run_test():
        harness.scanner.scan.return_value = _vulnerable()
        run = await harness.orchestrator.submit(make_trigger())
        source_calls = harness.stage_runner.call_count

        run = await harness.orchestrator.approve(run.run_id, approver="sec-lead", reason="accepted risk")

        assert run.status == "succeeded"
        assert run.stage("docker_push_manual").status == "succeeded"
        assert run.stage("docker_push_auto").status == "skipped"
        assert run.approval.approved is True
        assert run.approval.approver == "sec-lead"
        assert harness.registry.push.call_count == 1
        assert harness.stage_runner.call_count == source_calls
        assert len(descriptor_store.commits) == 1

    asyncio.run(run_test())


def test_rejection_fails_run(harness, descriptor_store):
    async def run_test():
        harness.scanner.scan.return_value = _vulnerable()
        run = await harness.orchestrator.submit(make_trigger())

        run = await harness.orchestrator.reject(run.run_id, approver="sec-lead", reason="critical CVE")

        assert run.status == "failed"
        assert run.stage("docker_push_manual").error_kind == "PublishRejected"
        assert run.stage("update-k8s").status == "skipped"
        assert "critical CVE" in run.error
        harness.registry.push.assert_not_called()
        assert descriptor_store.commits == []

    asyncio.run(run_test())


def test_approval_survives_restart(tmp_path, descriptor_store):
    """A fresh orchestrator on the same run store resumes only the pending stages."""
    async def run_test():
        first = Harness(tmp_path, descriptor_store)
        first.scanner.scan.return_value = _vulnerable()
        run = await first.orchestrator.submit(make_trigger())
        assert run.status == "awaiting-approval"

        second = Harness(tmp_path, descriptor_store, run_store=RunStore(str(tmp_path / "runs")))
        resumed = await second.orchestrator.approve(run.run_id, approver="sec-lead")

        assert resumed.status == "succeeded"
        second.checkout.assert_not_called()
        second.stage_runner.assert_not_called()
        second.image_builder.build.assert_not_called()
        second.scanner.scan.assert_not_called()
        second.registry.push.assert_called_once()
        pushed = second.registry.push.call_args.args[0]
        assert pushed.reference == f"ghcr.io/acme/shop:sha-{REV}"
        assert len(descriptor_store.commits) == 1
        assert not (tmp_path / "artifacts" / run.run_id).exists()

    asyncio.run(run_test())


def test_approve_requires_suspended_run(harness):
    async def run_test():
        run = await harness.orchestrator.submit(make_trigger())
        with pytest.raises(RunStateError):
            await harness.orchestrator.approve(run.run_id)
        with pytest.raises(RunNotFound):
            await harness.orchestrator.approve("doesnotexist")

    asyncio.run(run_test())


def test_double_approval_is_rejected(harness):
    async def run_test():
        harness.scanner.scan.return_value = _vulnerable()
        run = await harness.orchestrator.submit(make_trigger())
        await harness.orchestrator.approve(run.run_id)
        with pytest.raises(RunStateError):
            await harness.orchestrator.approve(run.run_id)
        assert harness.registry.push.call_count == 1

    asyncio.run(run_test())


# ===================================================================
# Cancellation
# ===================================================================
def test_cancel_suspended_run(harness, descriptor_store):
    async def run_test():
        harness.scanner.scan.return_value = _vulnerable()
        run = await harness.orchestrator.submit(make_trigger())

        cancelled = harness.orchestrator.cancel(run.run_id)

        assert cancelled.status == "failed"
        assert cancelled.stage("docker_push_manual").status == "skipped"
        assert cancelled.stage("docker_push_manual").error_kind == "RunCancelled"
        assert cancelled.error.startswith("RunCancelled")
        with pytest.raises(RunStateError):
            await harness.orchestrator.approve(run.run_id)
        with pytest.raises(RunStateError):
            harness.orchestrator.cancel(run.run_id)
        harness.registry.push.assert_not_called()
        assert descriptor_store.commits == []

    asyncio.run(run_test())


def test_cancel_takes_effect_before_next_stage(harness, descriptor_store):
    """In-flight stages finish; nothing new starts."""
    async def run_test():
        def _runner(workspace, stage):
            if stage == "test":
                (active,) = harness.orchestrator.list_runs(status="running")
                harness.orchestrator.cancel(active.run_id)
            return _ok(stage)

        harness.stage_runner.side_effect = _runner
        run = await harness.orchestrator.submit(make_trigger())

        assert run.status == "failed"
        assert run.stage("test").status == "succeeded"
        assert run.stage("lint").status == "succeeded"
        assert run.stage("build").status == "skipped"
        assert run.stage("build").error_kind == "RunCancelled"
        harness.image_builder.build.assert_not_called()
        assert descriptor_store.commits == []

    asyncio.run(run_test())


# ===================================================================
# Concurrency & self-trigger suppression
# ===================================================================
def test_concurrent_runs_both_commit(harness, descriptor_store):
    async def run_test():
        first, second = await asyncio.gather(
            harness.orchestrator.submit(make_trigger(revision=REV)),
            harness.orchestrator.submit(make_trigger(revision=REV2)),
        )

        assert first.status == "succeeded"
        assert second.status == "succeeded"
        assert len(descriptor_store.commits) == 2
        final = descriptor_store.content
        assert (f"sha-{REV}  #" in final) != (f"sha-{REV2}  #" in final)
        assert "image: docker.io/envoyproxy/envoy:v1.29" in final
        assert "replicas: 3" in final

    asyncio.run(run_test())


def test_descriptor_commits_never_start_new_runs(harness, descriptor_store):
    """N qualifying pushes → exactly N runs, never more."""
    async def run_test():
        revisions = [REV, REV2, "c" * 40]
        for revision in revisions:
            run = await harness.orchestrator.submit(make_trigger(revision=revision))
            assert run.status == "succeeded"

        for commit in descriptor_store.commits:
            self_trigger = make_trigger(
                revision=commit["sha"],
                changed_paths=[DESCRIPTOR],
                head_commit_message=commit["message"],
                actor="github-actions[bot]",
            )
            assert await harness.orchestrator.submit(self_trigger) is None

        assert len(harness.run_store) == len(revisions)
        assert len(harness.orchestrator.list_runs()) == len(revisions)

    asyncio.run(run_test())


def test_get_and_list_runs(harness):
    async def run_test():
        run = await harness.orchestrator.submit(make_trigger())
        assert harness.orchestrator.get_run(run.run_id).run_id == run.run_id
        assert [r.run_id for r in harness.orchestrator.list_runs(status="succeeded")] == [run.run_id]
        assert harness.orchestrator.list_runs(status="failed") == []
        with pytest.raises(RunNotFound):
            harness.orchestrator.get_run("missing")

    asyncio.run(run_test())
