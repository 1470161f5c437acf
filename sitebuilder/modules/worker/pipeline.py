import asyncio
import logging
import time
from typing import Dict, Optional, Set

from sitebuilder.errors import BuildFailure, InfrastructureError, ValidationError, VerificationError
from sitebuilder.modules.api.models import BuildJob, DeploymentStatus
from sitebuilder.modules.artifacts import ArtifactStore
from sitebuilder.modules.deployments import DeploymentSink, ProjectReader
from sitebuilder.modules.executor import BuildContext, BuildExecutor
from sitebuilder.modules.notifications import (
    BUILD_FAILED,
    BUILD_STARTED,
    BUILD_SUCCEEDED,
    Notifier,
    NullNotifier,
)
from sitebuilder.modules.queue import BuildQueue
from sitebuilder.modules.sandbox import CommandPolicy, LogCallback, validate_build_config

logger = logging.getLogger("sitebuilder.worker")

CANCEL_WAIT = 60


def format_bytes(size: int) -> str:
    """Human readable byte count."""
    if size <= 0:
        return "0 Bytes"
    value = float(size)
    for unit in ("Bytes", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{round(value, 2):g} {unit}"
        value /= 1024
    return f"{size} Bytes"


class PipelineWorker:
    def __init__(
        self,
        sink: DeploymentSink,
        projects: ProjectReader,
        executor: BuildExecutor,
        store: ArtifactStore,
        queue: BuildQueue,
        base_domain: str,
        notifier: Optional[Notifier] = None,
        policy: Optional[CommandPolicy] = None,
    ):
        """
        Initialize the pipeline worker.

        Args:
            sink: Deployment status/log writer
            projects: Project settings reader
            executor: Build backend
            store: Artifact store used for verification
            queue: Build queue (cancellation of not-yet-started builds)
            base_domain: Domain deployments are published under
            notifier: Best-effort build notifications
            policy: Command policy used for validation
        """
        self.sink = sink
        self.projects = projects
        self.executor = executor
        self.store = store
        self.queue = queue
        self.base_domain = base_domain
        self.notifier = notifier or NullNotifier()
        self.policy = policy or CommandPolicy()
        self._running: Dict[str, asyncio.Task] = {}
        self._cancel_requested: Set[str] = set()

    def log_callback(self, deployment_id: str) -> LogCallback:
        async def on_log(level: str, message: str) -> None:
            await self.sink.append_log(deployment_id, level, message)

        return on_log

    def deployment_url(self, site_slug: str) -> str:
        return f"https://{site_slug}.{self.base_domain}"

    def is_running(self, deployment_id: str) -> bool:
        return deployment_id in self._running

    async def run(self, job: BuildJob) -> None:
        """
        Run the pipeline for one dequeued job.

        BuildFailure, the pipeline timeout and any unexpected exception end the
        deployment in ERROR and are not re-raised.
        InfrastructureError marks ERROR when it still can, then propagates.
        """
        deployment_id = job.deployment_id
        self._running[deployment_id] = asyncio.current_task()
        on_log = self.log_callback(deployment_id)
        started = time.monotonic()
        ctx: Optional[BuildContext] = None

        try:
            if not await self.sink.set_status(deployment_id, DeploymentStatus.BUILDING):
                logger.info(f"Deployment {deployment_id} is already final, skipping build")
                return

            ctx = await self._prepare(job, on_log)
            async with asyncio.timeout(self.executor.pipeline_timeout):
                await self._execute(ctx, on_log, started)

        except BuildFailure as e:
            await self._fail(deployment_id, ctx, e, on_log)
        except TimeoutError:
            error = BuildFailure(f"Build exceeded the {self.executor.pipeline_timeout:g}s time limit")
            await self._fail(deployment_id, ctx, error, on_log, halt=True)
        except InfrastructureError as e:
            logger.error(f"Infrastructure failure in build {deployment_id}: {e}")
            await self._mark_error(deployment_id, f"Build failed: {e}")
            raise
        except Exception as e:
            logger.exception(f"Unexpected failure in build {deployment_id}")
            await self._fail(deployment_id, ctx, BuildFailure(f"Build failed: {e}"), on_log, halt=True)
        except asyncio.CancelledError:
            await self._stop(deployment_id, ctx, on_log)
            raise
        finally:
            self._running.pop(deployment_id, None)
            self._cancel_requested.discard(deployment_id)

    async def _prepare(self, job: BuildJob, on_log: LogCallback) -> BuildContext:
        project = await self.projects.get_project(job.project_id)
        if project is None:
            raise BuildFailure("Project not found")
        if not project.repo_url:
            raise BuildFailure("No repository URL configured")

        branch = await self.sink.get_branch(job.deployment_id)
        config = project.build_config(branch)
        site_slug = self.executor.site_slug_for(project.slug, job.deployment_id, job.production)

        await on_log("info", f"=== Build Pipeline Started ({self.executor.name}) ===")
        await on_log("info", f"Project: {project.name}")
        await on_log("info", f"Framework: {project.framework or 'unknown'}")
        await on_log("info", f"Node.js version: {config.node_version}")
        await on_log("info", f"Branch: {config.branch}")
        await on_log("info", f"Site slug: {site_slug}")
        if config.env_vars:
            await on_log("info", f"Loaded {len(config.env_vars)} environment variables")

        return BuildContext(
            deployment_id=job.deployment_id,
            project_id=job.project_id,
            project_slug=project.slug,
            production=job.production,
            site_slug=site_slug,
            config=config,
        )

    async def _execute(self, ctx: BuildContext, on_log: LogCallback, started: float) -> None:
        result = validate_build_config(ctx.config, self.policy)
        if not result.valid:
            for error in result.errors:
                await on_log("error", error)
            raise ValidationError(result.errors)

        await self.notifier.notify(
            BUILD_STARTED, {"deployment_id": ctx.deployment_id, "project_id": ctx.project_id}
        )

        await self.executor.build(ctx, on_log)

        await self.sink.set_status(ctx.deployment_id, DeploymentStatus.DEPLOYING)
        await on_log("info", "Deploying build artifacts...")
        artifact_path = await self.executor.collect(ctx, on_log)

        await on_log("info", "Verifying build artifacts...")
        if not await self.store.artifacts_exist(ctx.site_slug):
            raise VerificationError("Build artifacts not found in storage")
        size = await self.store.get_artifacts_size(ctx.site_slug)
        await on_log("info", f"Build artifacts: {format_bytes(size)}")

        await self.executor.cleanup(ctx, on_log)

        build_time = round(time.monotonic() - started)
        url = self.deployment_url(ctx.site_slug)
        await on_log("success", f"Deployment ready at: {url}")
        await on_log("info", f"Total build time: {build_time}s")

        written = await self.sink.set_status(
            ctx.deployment_id,
            DeploymentStatus.READY,
            url=url,
            build_time=build_time,
            artifact_path=artifact_path,
            site_slug=ctx.site_slug,
        )
        if not written:
            return

        await self.sink.activate(ctx.project_id, ctx.deployment_id)
        await self.notifier.notify(
            BUILD_SUCCEEDED,
            {"deployment_id": ctx.deployment_id, "project_id": ctx.project_id, "url": url},
        )

    async def _fail(
        self,
        deployment_id: str,
        ctx: Optional[BuildContext],
        error: BuildFailure,
        on_log: LogCallback,
        halt: bool = False,
    ) -> None:
        """
        Record a failed build and release its resources.

        halt stops backend work that may still be running (containers, Jobs)
        instead of only cleaning up after it.
        """
        logger.info(f"Build {deployment_id} failed at {error.step}: {error.message}")
        await on_log("error", error.message)
        if ctx is not None:
            if halt:
                await self.executor.cancel(ctx, on_log)
            else:
                await self.executor.cleanup(ctx, on_log)
        await self.sink.set_status(deployment_id, DeploymentStatus.ERROR)
        await self.notifier.notify(
            BUILD_FAILED,
            {"deployment_id": deployment_id, "step": error.step, "error": error.message},
        )

    async def _mark_error(self, deployment_id: str, message: str) -> None:
        try:
            await self.sink.append_log(deployment_id, "error", message)
            await self.sink.set_status(deployment_id, DeploymentStatus.ERROR)
        except InfrastructureError as e:
            logger.error(f"Could not record failure for {deployment_id}: {e}")

    async def _stop(self, deployment_id: str, ctx: Optional[BuildContext], on_log: LogCallback) -> None:
        """Clean up after the build task was cancelled."""
        requested = deployment_id in self._cancel_requested
        if ctx is not None:
            await self.executor.cancel(ctx, on_log)

        if requested:
            await self.sink.set_status(deployment_id, DeploymentStatus.CANCELLED)
            await on_log("info", "Build cancelled")
        else:
            await self._mark_error(deployment_id, "Build interrupted by service shutdown")

    async def cancel(self, deployment_id: str) -> bool:
        """
        Cancel a queued or running build.

        Returns:
            False when the deployment was already final

        Logic:
        1. Queued: remove it from the queue and mark CANCELLED
        2. Running here: cancel the task; it cleans up and marks CANCELLED
        3. Otherwise (never started, or running in another replica): tear down
           backend resources by deployment ID, then mark CANCELLED unless final
        """
        on_log = self.log_callback(deployment_id)

        if await self.queue.remove_from_queue(deployment_id):
            await on_log("info", "Build cancelled before it started")
            return await self.sink.set_status(deployment_id, DeploymentStatus.CANCELLED)

        task = self._running.get(deployment_id)
        if task is not None and not task.done():
            await on_log("info", "Cancelling build...")
            self._cancel_requested.add(deployment_id)
            task.cancel()
            await asyncio.wait({task}, timeout=CANCEL_WAIT)
            return (await self.sink.get_status(deployment_id)) == DeploymentStatus.CANCELLED

        status = await self.sink.get_status(deployment_id)
        if status is not None and status.is_terminal:
            return False

        await self.executor.teardown(deployment_id, on_log)
        written = await self.sink.set_status(deployment_id, DeploymentStatus.CANCELLED)
        if written:
            await on_log("info", "Build cancelled")
        return written
