"""
Executor Module - Black Box Interface

Purpose: Run one validated build and publish its output
Interface: BuildExecutor.build(), collect(), cleanup(), cancel(), create_executor()
Hidden: Container runtime flags, Job manifests, log streaming

Backends are interchangeable; the worker only ever sees BuildExecutor.
"""

from typing import Optional

from sitebuilder.config.provider import ConfigProvider
from sitebuilder.modules.artifacts import ArtifactStore
from sitebuilder.modules.sandbox import CommandPolicy

from .base import BuildContext, BuildExecutor, preview_slug
from .docker_executor import DockerExecutor
from .k8s_executor import KubernetesExecutor


def create_executor(
    backend: str,
    provider: ConfigProvider,
    store: ArtifactStore,
    policy: Optional[CommandPolicy] = None,
) -> BuildExecutor:
    """
    Create the executor for a configured backend.

    Args:
        backend: "docker" or "kubernetes"
        provider: Source of backend settings
        store: Artifact store builds are published to
        policy: Command policy for the Docker backend

    Raises:
        ValueError: For an unknown backend
    """
    if backend == "docker":
        artifact_config = provider.get_artifact_config()
        return DockerExecutor(
            provider.get_docker_config(),
            policy=policy,
            remote_store=store if artifact_config.is_remote else None,
        )
    if backend == "kubernetes":
        return KubernetesExecutor(
            provider.get_kubernetes_config(), provider.get_artifact_config(), store
        )
    raise ValueError(f"Unknown build backend: {backend}")


__all__ = [
    "BuildContext",
    "BuildExecutor",
    "DockerExecutor",
    "KubernetesExecutor",
    "create_executor",
    "preview_slug",
]
