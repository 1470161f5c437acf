"""
Docker build executor.

Runs clone, install and build on the local host. Install and build run in
throwaway node containers with resource caps; the validated command is passed
to the container as argv, so no shell inside the container ever parses it.
"""

import asyncio
import logging
import os
import shutil
import uuid
from typing import Dict, List, Optional

from sitebuilder.config.provider import DockerConfig
from sitebuilder.errors import SandboxError
from sitebuilder.modules.artifacts import ArtifactStore
from sitebuilder.modules.sandbox import (
    CommandPolicy,
    LogCallback,
    capture_command,
    is_valid_branch,
    is_valid_env_key,
    is_valid_github_url,
    is_valid_https_url,
    resolve_secure_path,
    run_command,
    sanitize_env_value,
    sanitize_slug,
    split_command,
)
from sitebuilder.modules.sandbox.validation import ROOT_OUTPUT_DIRS

from .base import BuildContext, BuildExecutor, preview_slug

logger = logging.getLogger("sitebuilder.executor.docker")

CLONE_TIMEOUT = 2 * 60
INSTALL_TIMEOUT = 5 * 60
BUILD_TIMEOUT = 8 * 60
COPY_TIMEOUT = 60

CONTAINER_WORKDIR = "/build"
TMPFS_MOUNT = "/tmp:rw,noexec,nosuid,size=512m"

# Never published when the output directory is the project root
EXCLUDED_ROOT_DIRS = (".git", "node_modules", ".next", ".cache", ".turbo")

INSTALL_LIMITS = {"memory": "2g", "cpus": "2", "pids": "512"}
BUILD_LIMITS = {"memory": "4g", "cpus": "4", "pids": "1024"}


class DockerExecutor(BuildExecutor):
    """Build backend for hosts with a local container runtime."""

    name = "docker"

    def __init__(
        self,
        config: DockerConfig,
        policy: Optional[CommandPolicy] = None,
        remote_store: Optional[ArtifactStore] = None,
        docker_bin: str = "docker",
    ):
        """
        Initialize the executor.

        Args:
            config: Host directories, isolation switch and build network
            policy: Command policy re-checked before every container start
            remote_store: Object store the copied output is uploaded to, if any
            docker_bin: Container CLI to invoke
        """
        self.config = config
        self.policy = policy or CommandPolicy()
        self.remote_store = remote_store
        self.docker_bin = docker_bin

    @property
    def pipeline_timeout(self) -> float:
        return self.config.pipeline_timeout

    def site_slug_for(self, project_slug: str, deployment_id: str, production: bool) -> str:
        # Local serving directories are per deployment, production included
        return preview_slug(project_slug, deployment_id)

    def work_dir(self, deployment_id: str) -> str:
        work_dir = resolve_secure_path(self.config.repos_dir, deployment_id)
        if work_dir is None or work_dir == os.path.abspath(self.config.repos_dir):
            raise SandboxError("clone", f"Invalid deployment id: {deployment_id!r}")
        return work_dir

    def container_name(self, deployment_id: str, step: str) -> str:
        return f"sitebuild-{sanitize_slug(deployment_id)}-{step}"

    # Pipeline steps

    async def clone_repo(self, url: str, branch: str, target_dir: str, on_log: LogCallback) -> None:
        """Shallow single-branch clone into a fresh target directory."""
        if not (is_valid_github_url(url) or is_valid_https_url(url)):
            await on_log("error", "Invalid repository URL")
            raise SandboxError("clone", "Invalid repository URL")
        if not is_valid_branch(branch):
            await on_log("error", "Invalid branch name")
            raise SandboxError("clone", "Invalid branch name")

        await asyncio.to_thread(os.makedirs, self.config.repos_dir, exist_ok=True)
        await asyncio.to_thread(shutil.rmtree, target_dir, True)

        await on_log("info", f"Cloning {url} (branch: {branch})...")
        result = await run_command(
            "git",
            ["clone", "--depth", "1", "--single-branch", "--branch", branch, "--", url, target_dir],
            on_log=on_log,
            timeout=CLONE_TIMEOUT,
        )
        if not result.success:
            await on_log("error", f"Git clone failed with code {result.exit_code}")
            raise SandboxError("clone", "Failed to clone repository", result.tail)

        await on_log("success", "Repository cloned successfully")

    async def run_install(
        self,
        work_dir: str,
        install_cmd: str,
        node_version: str,
        on_log: LogCallback,
        project_id: Optional[str] = None,
        container_name: Optional[str] = None,
        root_dir: str = "",
    ) -> None:
        """Install dependencies with no network access."""
        argv = await self._command_argv("install", install_cmd, node_version, on_log)
        if not argv:
            await on_log("info", "No install command configured, skipping")
            return

        await on_log("info", f"Running: {install_cmd}")
        await self._run_step(
            step="install",
            argv=argv,
            work_dir=work_dir,
            root_dir=root_dir,
            node_version=node_version,
            network="none",
            limits=INSTALL_LIMITS,
            env={},
            cache_mounts=await self._cache_mounts(project_id, root_dir, ["node_modules"], on_log),
            container_name=container_name,
            timeout=INSTALL_TIMEOUT,
            on_log=on_log,
        )
        await on_log("success", "Dependencies installed successfully")

    async def run_build(
        self,
        work_dir: str,
        build_cmd: str,
        node_version: str,
        env_vars: Dict[str, str],
        on_log: LogCallback,
        project_id: Optional[str] = None,
        container_name: Optional[str] = None,
        root_dir: str = "",
    ) -> None:
        """Run the build command with sanitized environment variables."""
        argv = await self._command_argv("build", build_cmd, node_version, on_log)
        if not argv:
            await on_log("info", "No build command configured, skipping")
            return

        await on_log("info", f"Running: {build_cmd}")

        env: Dict[str, str] = {}
        for key, value in env_vars.items():
            if not is_valid_env_key(key):
                await on_log("error", f"Skipping invalid env var: {key}")
                continue
            sanitized = sanitize_env_value(value)
            if sanitized is None:
                await on_log("error", f"Skipping env var with unsafe value: {key}")
                continue
            env[key] = sanitized

        await self._run_step(
            step="build",
            argv=argv,
            work_dir=work_dir,
            root_dir=root_dir,
            node_version=node_version,
            network=self.config.build_network,
            limits=BUILD_LIMITS,
            env=env,
            cache_mounts=await self._cache_mounts(
                project_id, root_dir, ["node_modules", ".next/cache"], on_log
            ),
            container_name=container_name,
            timeout=BUILD_TIMEOUT,
            on_log=on_log,
        )
        await on_log("success", "Build completed successfully")

    async def copy_output(
        self, work_dir: str, output_dir: str, site_slug: str, on_log: LogCallback
    ) -> str:
        """
        Copy the build output into the serving directory for the slug.

        The previous directory for the slug is replaced in one rename, so a
        reader never sees a half-copied site.

        Returns:
            Path of the published directory
        """
        is_root = output_dir in ROOT_OUTPUT_DIRS
        source = resolve_secure_path(work_dir, "." if is_root else output_dir)
        if source is None:
            await on_log("error", "Invalid output directory: path traversal detected")
            raise SandboxError("copy", "Output directory escapes the work directory")

        slug = sanitize_slug(site_slug)
        dest = resolve_secure_path(self.config.builds_dir, slug) if slug else None
        if dest is None or dest == os.path.abspath(self.config.builds_dir):
            await on_log("error", "Invalid site slug")
            raise SandboxError("copy", "Invalid site slug")

        if not os.path.exists(source):
            await on_log("error", f"Output directory {output_dir} does not exist")
            raise SandboxError("copy", f"Output directory {output_dir} does not exist")
        if not os.path.isdir(source):
            await on_log("error", f"Output directory {output_dir} is not a directory")
            raise SandboxError("copy", f"Output directory {output_dir} is not a directory")

        await on_log("info", f"Copying build output from {output_dir or '.'} to {dest}...")

        def _replace() -> None:
            os.makedirs(self.config.builds_dir, exist_ok=True)
            suffix = uuid.uuid4().hex[:8]
            staging = f"{dest}.tmp-{suffix}"
            retired = f"{dest}.old-{suffix}"
            ignore = shutil.ignore_patterns(*EXCLUDED_ROOT_DIRS) if is_root else None
            try:
                shutil.copytree(source, staging, symlinks=True, ignore=ignore)
                if os.path.exists(dest):
                    os.rename(dest, retired)
                os.rename(staging, dest)
            finally:
                shutil.rmtree(staging, ignore_errors=True)
                shutil.rmtree(retired, ignore_errors=True)

        try:
            await asyncio.wait_for(asyncio.to_thread(_replace), timeout=COPY_TIMEOUT)
        except asyncio.TimeoutError:
            await on_log("error", f"Copying build output timed out after {COPY_TIMEOUT}s")
            raise SandboxError("copy", "Copying build output timed out")
        except OSError as e:
            await on_log("error", f"Failed to copy build output: {e}")
            raise SandboxError("copy", f"Failed to copy build output: {e}") from e

        if is_root:
            await on_log("info", f"Excluded non-deployable directories ({', '.join(EXCLUDED_ROOT_DIRS)})")
        await on_log("success", f"Build artifacts copied to {dest}")
        return dest

    async def cleanup_repo(self, work_dir: str, on_log: LogCallback) -> None:
        """Best-effort removal of the working copy."""
        try:
            await asyncio.to_thread(shutil.rmtree, work_dir)
            await on_log("info", "Cleaned up temporary files")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove {work_dir}: {e}")
            await on_log("error", f"Failed to cleanup: {e}")

    # BuildExecutor interface

    async def build(self, ctx: BuildContext, on_log: LogCallback) -> None:
        config = ctx.config
        work_dir = self.work_dir(ctx.deployment_id)

        await self.clone_repo(config.repo_url, config.branch, work_dir, on_log)
        root_dir = self._root_dir(work_dir, config.root_dir)
        if root_dir is None:
            await on_log("error", "Invalid root directory: path traversal detected")
            raise SandboxError("build", "Root directory escapes the work directory")

        await self.run_install(
            work_dir,
            config.install_cmd,
            config.node_version,
            on_log,
            project_id=ctx.project_id,
            container_name=self.container_name(ctx.deployment_id, "install"),
            root_dir=root_dir,
        )
        await self.run_build(
            work_dir,
            config.build_cmd,
            config.node_version,
            config.env_vars,
            on_log,
            project_id=ctx.project_id,
            container_name=self.container_name(ctx.deployment_id, "build"),
            root_dir=root_dir,
        )

    async def collect(self, ctx: BuildContext, on_log: LogCallback) -> str:
        work_dir = self.work_dir(ctx.deployment_id)
        project_dir = os.path.join(work_dir, self._root_dir(work_dir, ctx.config.root_dir) or "")
        dest = await self.copy_output(project_dir, ctx.config.output_dir, ctx.site_slug, on_log)

        if self.remote_store is None:
            return dest

        await on_log("info", "Uploading build artifacts to object storage...")
        count = await self.remote_store.upload_tree(ctx.site_slug, dest)
        await on_log("success", f"Uploaded {count} files")
        return self.remote_store.location(ctx.site_slug)

    async def cleanup(self, ctx: BuildContext, on_log: LogCallback) -> None:
        await self.cleanup_repo(self.work_dir(ctx.deployment_id), on_log)

    async def teardown(self, deployment_id: str, on_log: LogCallback) -> None:
        if self.config.use_isolation:
            for step in ("install", "build"):
                await self._remove_container(self.container_name(deployment_id, step))
        await self.cleanup_repo(self.work_dir(deployment_id), on_log)

    # Helpers

    def _root_dir(self, work_dir: str, root_dir: str) -> Optional[str]:
        """Relative project directory inside the work dir ("" for the root)."""
        if not root_dir or root_dir in ROOT_OUTPUT_DIRS:
            return ""
        resolved = resolve_secure_path(work_dir, root_dir)
        if resolved is None:
            return None
        return os.path.relpath(resolved, work_dir) if resolved != os.path.abspath(work_dir) else ""

    async def _command_argv(
        self, step: str, command: str, node_version: str, on_log: LogCallback
    ) -> List[str]:
        ok, reason = self.policy.validate_command(command)
        if not ok:
            await on_log("error", f"{step.capitalize()} command rejected: {reason}")
            raise SandboxError(step, f"{step.capitalize()} command rejected: {reason}")
        if not self.policy.is_allowed_node_version(node_version):
            await on_log("error", f"Invalid Node.js version: {node_version}")
            raise SandboxError(step, f"Invalid Node.js version: {node_version}")
        return split_command(command)

    async def _cache_mounts(
        self,
        project_id: Optional[str],
        root_dir: str,
        targets: List[str],
        on_log: LogCallback,
    ) -> List[str]:
        """Per-project cache volumes for faster rebuilds."""
        if not project_id or not self.config.cache_dir or not self.config.use_isolation:
            return []

        project_cache = resolve_secure_path(self.config.cache_dir, sanitize_slug(project_id))
        if project_cache is None or project_cache == os.path.abspath(self.config.cache_dir):
            return []

        mounts: List[str] = []
        container_root = "/".join(p for p in (CONTAINER_WORKDIR, root_dir) if p)
        for target in targets:
            host_dir = os.path.join(project_cache, target.replace("/", "-").lstrip("."))
            await asyncio.to_thread(os.makedirs, host_dir, exist_ok=True)
            mounts.extend(["-v", f"{host_dir}:{container_root}/{target}:rw"])

        await on_log("info", "Using cached dependency volumes")
        return mounts

    async def _run_step(
        self,
        *,
        step: str,
        argv: List[str],
        work_dir: str,
        root_dir: str,
        node_version: str,
        network: str,
        limits: Dict[str, str],
        env: Dict[str, str],
        cache_mounts: List[str],
        container_name: Optional[str],
        timeout: float,
        on_log: LogCallback,
    ) -> None:
        if not self.config.use_isolation:
            await on_log("warn", "Running without Docker isolation")
            result = await run_command(
                argv[0],
                argv[1:],
                on_log=on_log,
                cwd=os.path.join(work_dir, root_dir),
                env=env,
                timeout=timeout,
            )
        else:
            docker_args = [
                "run",
                "--rm",
                "--network", network,
                "--memory", limits["memory"],
                "--cpus", limits["cpus"],
                "--pids-limit", limits["pids"],
                "--read-only",
                "--tmpfs", TMPFS_MOUNT,
                "--security-opt", "no-new-privileges",
                "-e", "HOME=/tmp",
                "-v", f"{work_dir}:{CONTAINER_WORKDIR}:rw",
                *cache_mounts,
                "-w", "/".join(p for p in (CONTAINER_WORKDIR, root_dir) if p),
            ]
            if container_name:
                docker_args[2:2] = ["--name", container_name]
            for key, value in env.items():
                docker_args.extend(["-e", f"{key}={value}"])
            docker_args.append(f"node:{node_version}-alpine")
            docker_args.extend(argv)

            result = await run_command(self.docker_bin, docker_args, on_log=on_log, timeout=timeout)
            if result.timed_out and container_name:
                await self._remove_container(container_name)

        if not result.success:
            await on_log("error", f"{step.capitalize()} failed with code {result.exit_code}")
            message = "Failed to install dependencies" if step == "install" else "Build failed"
            raise SandboxError(step, message, result.tail)

    async def _remove_container(self, name: str) -> None:
        result = await capture_command(self.docker_bin, ["rm", "-f", name], timeout=30)
        if not result.success and "No such container" not in result.stderr:
            logger.warning(f"Failed to remove container {name}: {result.stderr.strip()}")
