#!/usr/bin/env python3
"""
Sitebuilder - Main Entry Point

This is the thin orchestration layer that:
1. Loads configuration
2. Initializes modules
3. Runs the dispatch loop and the HTTP API

All business logic is in the modules, following black box principles.
"""

import logging
import logging.config as log_config
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Response
from fastapi.responses import JSONResponse

from sitebuilder import __version__
from sitebuilder.config.provider import ConfigProvider, EnvConfigProvider
from sitebuilder.errors import InfrastructureError
from sitebuilder.logging_config import get_logging_config

# Import modules through their black box interfaces
from sitebuilder.modules.api import (
    DeploymentResponse,
    EnqueueBuildRequest,
    EnqueueBuildResponse,
    HealthResponse,
    JobPhase,
    QueueStatsResponse,
)
from sitebuilder.modules.artifacts import ArtifactStore, create_artifact_store
from sitebuilder.modules.config import get_config
from sitebuilder.modules.deployments import RedisDeploymentStore, RedisProjectStore
from sitebuilder.modules.executor import BuildExecutor, create_executor
from sitebuilder.modules.notifications import create_notifier
from sitebuilder.modules.queue import BuildDispatcher, BuildQueue, RedisQueueStore, process_build_queue
from sitebuilder.modules.sandbox import CommandPolicy, is_valid_branch
from sitebuilder.modules.storage import StorageModule
from sitebuilder.modules.worker import PipelineWorker

# Get configuration
config = get_config()

# Configure logging with health check suppression
log_config.dictConfig(get_logging_config(config.get("log_level")))
logger = logging.getLogger("sitebuilder.main")

# Configuration provider (centralized config access)
config_provider: ConfigProvider = EnvConfigProvider()

# Module instances (initialized at startup)
storage: Optional[StorageModule] = None
build_queue: Optional[BuildQueue] = None
deployments: Optional[RedisDeploymentStore] = None
projects: Optional[RedisProjectStore] = None
artifact_store: Optional[ArtifactStore] = None
executor: Optional[BuildExecutor] = None
worker: Optional[PipelineWorker] = None
dispatcher: Optional[BuildDispatcher] = None


def _on_dispatcher_exit(task) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.critical(f"Build dispatcher stopped: {error}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle - initialize and cleanup resources.
    """
    global storage, build_queue, deployments, projects, artifact_store, executor, worker, dispatcher

    # Startup
    logger.info("Starting Sitebuilder...")

    storage = StorageModule.from_config(config)
    redis_client = await storage.connect()

    build_queue = BuildQueue(
        RedisQueueStore(redis_client),
        concurrency=config.get("build_concurrency"),
        job_ttl=config.get("build_job_ttl"),
    )
    deployments = RedisDeploymentStore(redis_client)
    projects = RedisProjectStore(redis_client)

    policy = CommandPolicy.from_file(config.get("command_policy_path"))

    artifact_store = create_artifact_store(config_provider.get_artifact_config())
    try:
        await artifact_store.ensure_bucket()
    except InfrastructureError as e:
        logger.warning(f"Artifact store not ready at startup: {e}")

    executor = create_executor(config.get("build_backend"), config_provider, artifact_store, policy)
    logger.info(f"Build backend: {executor.name}")

    worker = PipelineWorker(
        sink=deployments,
        projects=projects,
        executor=executor,
        store=artifact_store,
        queue=build_queue,
        base_domain=config.get("base_domain"),
        notifier=create_notifier(config.get("notify_webhook_url")),
        policy=policy,
    )

    dispatcher = process_build_queue(build_queue, worker.run, config.get("build_poll_interval"))
    dispatcher.start().add_done_callback(_on_dispatcher_exit)

    logger.info("Sitebuilder started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Sitebuilder...")
    dispatcher.stop()
    await dispatcher.cancel_in_flight()
    try:
        await dispatcher.wait()
    except InfrastructureError as e:
        logger.error(f"Dispatcher exited with error: {e}")

    await storage.disconnect()
    logger.info("Sitebuilder shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Sitebuilder API",
    description="Sitebuilder - Build pipeline orchestration",
    version=__version__,
    lifespan=lifespan,
)


def _require_ready():
    if not all([build_queue, deployments, projects, worker]):
        raise HTTPException(503, "Service not initialized")


# Build Endpoints


@app.post("/builds", response_model=EnqueueBuildResponse, status_code=201)
async def enqueue_build(request: EnqueueBuildRequest):
    """
    Queue a build for a deployment.

    Returns:
        201: Build queued
        400: Invalid branch override
        404: Unknown project
        409: Deployment already final or already building
    """
    _require_ready()

    if request.branch is not None and not is_valid_branch(request.branch):
        raise HTTPException(400, "Invalid branch name - contains forbidden characters")

    if await projects.get_project(request.project_id) is None:
        raise HTTPException(404, f"Project '{request.project_id}' not found")

    status = await deployments.get_status(request.deployment_id)
    if status is not None and status.is_terminal:
        raise HTTPException(409, f"Deployment '{request.deployment_id}' is already {status.value}")
    if status is None:
        await deployments.create_deployment(request.deployment_id, request.project_id, request.branch)

    queued = await build_queue.enqueue_build(
        request.deployment_id, request.project_id, request.priority
    )
    if not queued:
        raise HTTPException(409, f"Deployment '{request.deployment_id}' is already building")

    return EnqueueBuildResponse(
        deployment_id=request.deployment_id,
        queued=True,
        queue_length=await build_queue.get_queue_length(),
    )


@app.delete("/builds/{deployment_id}", status_code=204)
async def cancel_build(deployment_id: str):
    """
    Cancel a queued or running build.

    Returns:
        204: Build cancelled
        404: Unknown deployment
        409: Deployment already final
    """
    _require_ready()

    if await deployments.get_status(deployment_id) is None:
        raise HTTPException(404, f"Deployment '{deployment_id}' not found")

    if not await worker.cancel(deployment_id):
        raise HTTPException(409, f"Deployment '{deployment_id}' is already final")
    return Response(status_code=204)


@app.get("/builds/queue", response_model=QueueStatsResponse)
async def queue_stats():
    """Queue length and running build count."""
    _require_ready()
    return QueueStatsResponse(
        queue_length=await build_queue.get_queue_length(),
        active_builds=await build_queue.get_active_build_count(),
        concurrency=build_queue.concurrency,
    )


@app.get("/builds/{deployment_id}", response_model=DeploymentResponse)
async def get_build(deployment_id: str, logs: int = 200):
    """Current status of a deployment with its most recent log lines."""
    _require_ready()

    record = await deployments.get_deployment(deployment_id)
    if record is None:
        raise HTTPException(404, f"Deployment '{deployment_id}' not found")

    job_status = await executor.job_status(deployment_id)
    return DeploymentResponse(
        deployment_id=deployment_id,
        status=record.get("status"),
        job_status=JobPhase(job_status) if job_status else None,
        url=record.get("url"),
        site_slug=record.get("site_slug"),
        build_time=int(record["build_time"]) if record.get("build_time") else None,
        artifact_path=record.get("artifact_path"),
        finished_at=float(record["finished_at"]) if record.get("finished_at") else None,
        logs=await deployments.get_logs(deployment_id, limit=logs) if logs > 0 else [],
    )


# Health/Monitoring Endpoints


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Health check endpoint.

    Returns:
        200: Service healthy (or degraded: Redis up, dispatcher stopped)
        503: Service unhealthy
    """
    redis_ok = bool(storage) and await storage.ping()
    dispatcher_ok = bool(dispatcher) and dispatcher.running

    if redis_ok and dispatcher_ok:
        status = "healthy"
    elif redis_ok:
        status = "degraded"
    else:
        status = "unhealthy"

    body = HealthResponse(
        status=status,
        redis="connected" if redis_ok else "disconnected",
        dispatcher="running" if dispatcher_ok else "stopped",
        version=__version__,
    )
    if status == "unhealthy":
        return JSONResponse(status_code=503, content=body.model_dump())
    return body


@app.get("/metrics")
async def metrics():
    """
    Prometheus-compatible metrics endpoint.
    """
    if not build_queue:
        return Response(content="", status_code=503)

    queue_length = await build_queue.get_queue_length()
    active = await build_queue.get_active_build_count()

    metrics_text = f"""# HELP sitebuilder_queued_builds Number of builds waiting in the queue
# TYPE sitebuilder_queued_builds gauge
sitebuilder_queued_builds {queue_length}
# HELP sitebuilder_active_builds Number of builds holding a slot
# TYPE sitebuilder_active_builds gauge
sitebuilder_active_builds {active}
# HELP sitebuilder_build_concurrency Configured build concurrency
# TYPE sitebuilder_build_concurrency gauge
sitebuilder_build_concurrency {build_queue.concurrency}
"""

    return Response(content=metrics_text, media_type="text/plain")


# Error handlers


@app.exception_handler(InfrastructureError)
async def infrastructure_error_handler(request, exc):
    """Handle queue and object store outages."""
    logger.error(f"Infrastructure error: {exc}")
    return JSONResponse(status_code=503, content={"error": "Backing store unavailable"})


@app.exception_handler(ValueError)
async def validation_error_handler(request, exc):
    """Handle validation errors."""
    logger.error(f"Validation error: {exc}")
    return JSONResponse(status_code=400, content={"error": str(exc)})


if __name__ == "__main__":
    # Use dict config for logging, not file path
    uvicorn.run(
        "sitebuilder.main:app",
        host=config.get("host"),
        port=config.get("port"),
        log_level=config.get("log_level").lower(),
        log_config=get_logging_config(config.get("log_level")),
    )
