"""
Kubernetes build executor.

Each build is a Job in the builds namespace:
- init container "build" clones, installs and builds into an emptyDir
- main container "uploader" waits for the completion marker and mirrors the
  artifacts into the object store under the site slug

The cluster is driven through kubectl; manifests are passed as JSON on stdin.
Per-build values reach the build script only through container environment
variables and are always expanded inside double quotes.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from sitebuilder.config.provider import ArtifactConfig, KubernetesConfig
from sitebuilder.errors import BackendError, SandboxError
from sitebuilder.modules.api.models import JobPhase
from sitebuilder.modules.artifacts import ArtifactStore
from sitebuilder.modules.sandbox import (
    CapturedOutput,
    LogCallback,
    capture_command,
    is_valid_env_key,
    run_command,
    sanitize_env_value,
    sanitize_slug,
    split_command,
)
from sitebuilder.modules.sandbox.validation import ROOT_OUTPUT_DIRS

from .base import BuildContext, BuildExecutor, preview_slug

logger = logging.getLogger("sitebuilder.executor.k8s")

LABEL_PREFIX = "sitebuild.io"
POLL_INTERVAL = 5
POD_WAIT_INTERVAL = 2
LOG_TAIL_ATTEMPTS = 30
DEADLINE_GRACE = 120
WORKSPACE_SIZE_LIMIT = "5Gi"

BUILD_RESOURCES = {
    "requests": {"memory": "512Mi", "cpu": "500m"},
    "limits": {"memory": "2Gi", "cpu": "2"},
}
UPLOADER_RESOURCES = {
    "requests": {"memory": "64Mi", "cpu": "50m"},
    "limits": {"memory": "256Mi", "cpu": "200m"},
}

# Fixed script text. Every value arrives through BUILD_* variables; commands
# arrive as newline-separated argv and are run as arrays, never re-parsed.
BUILD_SCRIPT = """\
set -euf -o pipefail
echo "=== Build Started ==="
echo "Deployment ID: $BUILD_DEPLOYMENT_ID"
echo "Site Slug: $BUILD_SITE_SLUG"
echo "Branch: $BUILD_BRANCH"
echo "Node Version: $(node --version)"
echo ""

echo ">>> Cloning repository..."
git clone --depth 1 --single-branch --branch "$BUILD_BRANCH" -- "$BUILD_REPO_URL" /workspace/repo
cd /workspace/repo

if [ -n "$BUILD_ROOT_DIR" ]; then
  echo ">>> Changing to root directory: $BUILD_ROOT_DIR"
  cd -- "$BUILD_ROOT_DIR"
fi

if [ -n "$BUILD_INSTALL_ARGV" ]; then
  echo ""
  echo ">>> Installing dependencies..."
  mapfile -t install_argv <<< "$BUILD_INSTALL_ARGV"
  "${install_argv[@]}"
fi

if [ -n "$BUILD_BUILD_ARGV" ]; then
  echo ""
  echo ">>> Running build..."
  mapfile -t build_argv <<< "$BUILD_BUILD_ARGV"
  NODE_ENV=production "${build_argv[@]}"
fi

echo ""
echo ">>> Copying build output..."
mkdir -p /workspace/artifacts
if [ ! -d "$BUILD_OUTPUT_DIR" ]; then
  echo "ERROR: Output directory '$BUILD_OUTPUT_DIR' not found!"
  exit 1
fi
cp -r -- "$BUILD_OUTPUT_DIR"/. /workspace/artifacts/
if [ "$BUILD_OUTPUT_IS_ROOT" = "true" ]; then
  for excluded in $BUILD_EXCLUDED_DIRS; do
    rm -rf -- "/workspace/artifacts/$excluded"
  done
fi

touch /workspace/artifacts/.build-complete
echo ""
echo "=== Build Completed Successfully ==="
"""

UPLOAD_SCRIPT = """\
set -eu
echo "Waiting for build to complete..."
while [ ! -f /workspace/artifacts/.build-complete ]; do
  sleep 2
done
rm -f /workspace/artifacts/.build-complete

echo "Uploading artifacts..."
mc alias set store "$STORE_ENDPOINT" "$STORE_ACCESS_KEY" "$STORE_SECRET_KEY"
mc mb --ignore-existing "store/$STORE_BUCKET"
mc mirror --overwrite --remove /workspace/artifacts/ "store/$STORE_BUCKET/$BUILD_SITE_SLUG/"
echo "Upload complete! Artifacts at: $STORE_BUCKET/$BUILD_SITE_SLUG/"
"""

EXCLUDED_ROOT_DIRS = (".git", "node_modules", ".next", ".cache", ".turbo")


def job_name_for(deployment_id: str) -> str:
    return f"build-{sanitize_slug(deployment_id[:20])}"


def secret_name_for(deployment_id: str) -> str:
    return f"env-vars-{sanitize_slug(deployment_id)}"


def job_phase(job: Dict[str, Any]) -> JobPhase:
    """Map a Job's status block to a JobPhase."""
    status = job.get("status") or {}
    if (status.get("succeeded") or 0) > 0:
        return JobPhase.SUCCEEDED
    if (status.get("failed") or 0) > 0:
        return JobPhase.FAILED
    for condition in status.get("conditions") or []:
        if condition.get("type") == "Failed" and condition.get("status") == "True":
            return JobPhase.FAILED
    if (status.get("active") or 0) > 0:
        return JobPhase.RUNNING
    return JobPhase.PENDING


class KubernetesExecutor(BuildExecutor):
    """Build backend that schedules each build as a cluster Job."""

    name = "kubernetes"

    def __init__(
        self,
        config: KubernetesConfig,
        artifact_config: ArtifactConfig,
        store: ArtifactStore,
        poll_interval: float = POLL_INTERVAL,
    ):
        """
        Initialize the executor.

        Args:
            config: Namespace, deadlines, uploader image and credentials secret
            artifact_config: Bucket the uploader writes to
            store: Artifact store the uploaded files are read back from
            poll_interval: Seconds between Job status reads
        """
        self.config = config
        self.artifact_config = artifact_config
        self.store = store
        self.poll_interval = poll_interval

    @property
    def pipeline_timeout(self) -> float:
        return self.config.deadline_seconds + DEADLINE_GRACE

    def site_slug_for(self, project_slug: str, deployment_id: str, production: bool) -> str:
        if production:
            return sanitize_slug(project_slug)
        return preview_slug(project_slug, deployment_id)

    async def _kubectl(self, *args: str, input_data: Optional[str] = None, timeout: float = 30) -> CapturedOutput:
        return await capture_command(
            self.config.kubectl_path,
            ["--namespace", self.config.namespace, *args],
            input_data=input_data,
            timeout=timeout,
        )

    def _labels(self, ctx: BuildContext, component: str) -> Dict[str, str]:
        return {
            f"{LABEL_PREFIX}/component": component,
            f"{LABEL_PREFIX}/deployment-id": sanitize_slug(ctx.deployment_id),
            f"{LABEL_PREFIX}/project-id": sanitize_slug(ctx.project_id),
            f"{LABEL_PREFIX}/site-slug": ctx.site_slug,
        }

    # Manifests

    def build_secret_manifest(self, ctx: BuildContext, env_vars: Dict[str, str]) -> Dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {
                "name": secret_name_for(ctx.deployment_id),
                "namespace": self.config.namespace,
                "labels": self._labels(ctx, "build-env"),
            },
            "type": "Opaque",
            "stringData": env_vars,
        }

    def build_job_manifest(self, ctx: BuildContext, has_env_secret: bool) -> Dict[str, Any]:
        """Job manifest for one build attempt."""
        config = ctx.config
        output_is_root = config.output_dir in ROOT_OUTPUT_DIRS
        root_dir = "" if config.root_dir in ROOT_OUTPUT_DIRS else config.root_dir

        build_env = [
            {"name": "CI", "value": "true"},
            {"name": "BUILD_DEPLOYMENT_ID", "value": ctx.deployment_id},
            {"name": "BUILD_SITE_SLUG", "value": ctx.site_slug},
            {"name": "BUILD_REPO_URL", "value": config.repo_url},
            {"name": "BUILD_BRANCH", "value": config.branch},
            {"name": "BUILD_ROOT_DIR", "value": root_dir},
            {"name": "BUILD_INSTALL_ARGV", "value": "\n".join(split_command(config.install_cmd))},
            {"name": "BUILD_BUILD_ARGV", "value": "\n".join(split_command(config.build_cmd))},
            {"name": "BUILD_OUTPUT_DIR", "value": "." if output_is_root else config.output_dir},
            {"name": "BUILD_OUTPUT_IS_ROOT", "value": "true" if output_is_root else "false"},
            {"name": "BUILD_EXCLUDED_DIRS", "value": " ".join(EXCLUDED_ROOT_DIRS)},
        ]

        build_container: Dict[str, Any] = {
            "name": "build",
            "image": f"node:{config.node_version}-slim",
            "command": ["/bin/bash", "-c"],
            "args": [BUILD_SCRIPT],
            "env": build_env,
            "volumeMounts": [{"name": "workspace", "mountPath": "/workspace"}],
            "resources": BUILD_RESOURCES,
            "securityContext": {"allowPrivilegeEscalation": False},
        }
        if has_env_secret:
            build_container["envFrom"] = [
                {"secretRef": {"name": secret_name_for(ctx.deployment_id), "optional": True}}
            ]

        def credential(key: str) -> Dict[str, Any]:
            return {"secretKeyRef": {"name": self.config.credentials_secret, "key": key}}

        uploader_container = {
            "name": "uploader",
            "image": self.config.uploader_image,
            "command": ["/bin/sh", "-c"],
            "args": [UPLOAD_SCRIPT],
            "env": [
                {"name": "STORE_ENDPOINT", "value": self.config.store_endpoint},
                {"name": "STORE_BUCKET", "value": self.artifact_config.bucket},
                {"name": "BUILD_SITE_SLUG", "value": ctx.site_slug},
                {"name": "STORE_ACCESS_KEY", "valueFrom": credential("root-user")},
                {"name": "STORE_SECRET_KEY", "valueFrom": credential("root-password")},
            ],
            "volumeMounts": [{"name": "workspace", "mountPath": "/workspace"}],
            "resources": UPLOADER_RESOURCES,
        }

        return {
            "apiVersion": "batch/v1",
            "kind": "Job",
            "metadata": {
                "name": job_name_for(ctx.deployment_id),
                "namespace": self.config.namespace,
                "labels": self._labels(ctx, "build"),
            },
            "spec": {
                "backoffLimit": 0,
                "ttlSecondsAfterFinished": self.config.ttl_after_finished,
                "activeDeadlineSeconds": self.config.deadline_seconds,
                "template": {
                    "metadata": {
                        "labels": {
                            f"{LABEL_PREFIX}/component": "build-pod",
                            f"{LABEL_PREFIX}/deployment-id": sanitize_slug(ctx.deployment_id),
                        }
                    },
                    "spec": {
                        "restartPolicy": "Never",
                        "automountServiceAccountToken": False,
                        "initContainers": [build_container],
                        "containers": [uploader_container],
                        "volumes": [
                            {"name": "workspace", "emptyDir": {"sizeLimit": WORKSPACE_SIZE_LIMIT}}
                        ],
                    },
                },
            },
        }

    # Operations

    async def create_build_job(self, ctx: BuildContext, on_log: LogCallback) -> str:
        """
        Create the env Secret and the build Job.

        Returns:
            Job name

        Raises:
            BackendError: If the cluster refused either object
        """
        job_name = job_name_for(ctx.deployment_id)
        secret_name = secret_name_for(ctx.deployment_id)
        await on_log("info", f"Creating K8s build job: {job_name}")

        env_vars: Dict[str, str] = {}
        for key, value in ctx.config.env_vars.items():
            sanitized = sanitize_env_value(value) if is_valid_env_key(key) else None
            if sanitized is None:
                await on_log("error", f"Skipping invalid env var: {key}")
                continue
            env_vars[key] = sanitized

        # Recreated on every attempt
        await self._kubectl("delete", "secret", secret_name, "--ignore-not-found")
        if env_vars:
            result = await self._kubectl(
                "create", "-f", "-",
                input_data=json.dumps(self.build_secret_manifest(ctx, env_vars)),
            )
            if not result.success:
                await on_log("error", f"Failed to create env secret: {result.stderr.strip()}")
                raise BackendError(f"Failed to create env secret {secret_name}")

        await self._kubectl(
            "delete", "job", job_name,
            "--ignore-not-found", "--cascade=background", "--timeout=60s",
            timeout=90,
        )

        result = await self._kubectl(
            "create", "-f", "-",
            input_data=json.dumps(self.build_job_manifest(ctx, bool(env_vars))),
        )
        if not result.success:
            await on_log("error", f"Failed to create build job: {result.stderr.strip()}")
            raise BackendError(f"Failed to create build job {job_name}")

        await on_log("info", f"Build job created: {job_name}")
        return job_name

    async def read_job(self, job_name: str) -> Optional[Dict[str, Any]]:
        """Current Job object, or None when it cannot be read."""
        result = await self._kubectl("get", "job", job_name, "-o", "json")
        if not result.success:
            return None
        try:
            return json.loads(result.stdout)
        except ValueError:
            logger.warning(f"Unparseable job status for {job_name}")
            return None

    async def watch_build_job(
        self,
        job_name: str,
        deployment_id: str,
        on_log: LogCallback,
        timeout: Optional[float] = None,
    ) -> None:
        """
        Poll the Job until it succeeds, fails or the timeout fires.

        Raises:
            SandboxError: If the Job failed or did not finish in time
        """
        timeout = timeout if timeout is not None else self.config.deadline_seconds
        await on_log("info", f"Watching build job: {job_name}")

        log_task = asyncio.create_task(self.tail_build_logs(deployment_id, on_log))
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            while True:
                job = await self.read_job(job_name)
                phase = job_phase(job) if job else JobPhase.PENDING

                if phase == JobPhase.SUCCEEDED:
                    await on_log("success", "Build job completed successfully")
                    return
                if phase == JobPhase.FAILED:
                    await on_log("error", "Build job failed")
                    raise SandboxError("build", "Build job failed")
                if loop.time() >= deadline:
                    await on_log("error", "Build timed out")
                    raise SandboxError("build", f"Build job did not finish within {timeout:g}s")

                await asyncio.sleep(self.poll_interval)
        finally:
            log_task.cancel()
            await asyncio.gather(log_task, return_exceptions=True)

    async def _find_build_pod(self, deployment_id: str) -> Optional[str]:
        selector = f"{LABEL_PREFIX}/deployment-id={sanitize_slug(deployment_id)}"
        result = await self._kubectl(
            "get", "pods", "-l", selector, "-o", "jsonpath={.items[0].metadata.name}"
        )
        name = result.stdout.strip()
        return name if result.success and name else None

    async def _build_container_started(self, pod: str) -> bool:
        """True once the build init container is running or has finished."""
        result = await self._kubectl("get", "pod", pod, "-o", "json")
        if not result.success:
            return False
        try:
            status = json.loads(result.stdout).get("status", {})
        except ValueError:
            return False
        for container in status.get("initContainerStatuses", []):
            if container.get("name") == "build":
                state = container.get("state", {})
                return "running" in state or "terminated" in state
        return False

    async def tail_build_logs(self, deployment_id: str, on_log: LogCallback) -> None:
        """
        Follow the build container's output once its pod is running.

        Best-effort: failures are logged and never affect the build outcome.
        """

        async def relay(level: str, line: str) -> None:
            await on_log("info" if level == "info" else "warn", line)

        try:
            for _ in range(LOG_TAIL_ATTEMPTS):
                pod = await self._find_build_pod(deployment_id)
                # kubectl logs fails noisily while the container is still waiting
                if pod and await self._build_container_started(pod):
                    await run_command(
                        self.config.kubectl_path,
                        ["--namespace", self.config.namespace, "logs", "-f", pod, "-c", "build"],
                        on_log=relay,
                        timeout=self.config.deadline_seconds,
                    )
                    return
                await asyncio.sleep(POD_WAIT_INTERVAL)
            await on_log("info", "Log streaming unavailable, polling for status...")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Log streaming for {deployment_id} failed: {e}")

    async def cleanup_build_resources(self, deployment_id: str, on_log: LogCallback) -> None:
        """Delete the Job and its Secret. Missing objects are not an error."""
        job_name = job_name_for(deployment_id)
        secret_name = secret_name_for(deployment_id)

        result = await self._kubectl(
            "delete", "job", job_name, "--ignore-not-found", "--cascade=background", "--wait=false"
        )
        if result.success:
            await on_log("info", f"Cleaned up build job: {job_name}")
        else:
            logger.warning(f"Failed to delete job {job_name}: {result.stderr.strip()}")

        result = await self._kubectl("delete", "secret", secret_name, "--ignore-not-found", "--wait=false")
        if result.success:
            await on_log("info", f"Cleaned up env secret: {secret_name}")
        else:
            logger.warning(f"Failed to delete secret {secret_name}: {result.stderr.strip()}")

    async def get_build_job_status(self, deployment_id: str) -> JobPhase:
        """Stateless status read; a Job that cannot be found is pending."""
        job = await self.read_job(job_name_for(deployment_id))
        return job_phase(job) if job else JobPhase.PENDING

    # BuildExecutor interface

    async def build(self, ctx: BuildContext, on_log: LogCallback) -> None:
        job_name = await self.create_build_job(ctx, on_log)
        await on_log("info", "Waiting for build to complete...")
        await self.watch_build_job(job_name, ctx.deployment_id, on_log)

    async def collect(self, ctx: BuildContext, on_log: LogCallback) -> str:
        # The uploader container has already published the artifacts
        await on_log("info", "Build artifacts uploaded by the build job")
        return self.store.location(ctx.site_slug)

    async def cleanup(self, ctx: BuildContext, on_log: LogCallback) -> None:
        await self.cleanup_build_resources(ctx.deployment_id, on_log)

    async def teardown(self, deployment_id: str, on_log: LogCallback) -> None:
        await self.cleanup_build_resources(deployment_id, on_log)

    async def job_status(self, deployment_id: str) -> Optional[str]:
        return (await self.get_build_job_status(deployment_id)).value
