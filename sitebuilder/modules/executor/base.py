"""Build executor interface shared by the Docker and Kubernetes backends."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from sitebuilder.modules.api.models import BuildConfig
from sitebuilder.modules.sandbox import LogCallback, sanitize_slug

DEPLOYMENT_SUFFIX_LENGTH = 7


@dataclass
class BuildContext:
    """Everything one pipeline run needs to know about its deployment."""

    deployment_id: str
    project_id: str
    project_slug: str
    production: bool
    site_slug: str
    config: BuildConfig


def preview_slug(project_slug: str, deployment_id: str) -> str:
    """Project slug plus a short deterministic deployment suffix."""
    return sanitize_slug(f"{project_slug}-{deployment_id[:DEPLOYMENT_SUFFIX_LENGTH]}")


class BuildExecutor(ABC):
    """
    One backend able to turn a BuildContext into published artifacts.

    Implementations raise BuildFailure subclasses (SandboxError,
    BackendError, VerificationError) for per-build problems and
    InfrastructureError when the substrate itself is unavailable.
    """

    name = "executor"

    @property
    @abstractmethod
    def pipeline_timeout(self) -> float:
        """Overall wall-clock ceiling for one pipeline run, in seconds."""

    @abstractmethod
    def site_slug_for(self, project_slug: str, deployment_id: str, production: bool) -> str:
        """Derive the site slug this backend publishes a deployment under."""

    @abstractmethod
    async def build(self, ctx: BuildContext, on_log: LogCallback) -> None:
        """Clone, install and build. Returns only when the build succeeded."""

    @abstractmethod
    async def collect(self, ctx: BuildContext, on_log: LogCallback) -> str:
        """
        Publish the build output under the site slug.

        Returns:
            Location of the published artifacts
        """

    @abstractmethod
    async def cleanup(self, ctx: BuildContext, on_log: LogCallback) -> None:
        """Release temporary resources. Never raises."""

    @abstractmethod
    async def teardown(self, deployment_id: str, on_log: LogCallback) -> None:
        """
        Stop and delete everything the backend holds for a deployment.

        Keyed by deployment ID alone so any replica can run it. Never raises.
        """

    async def cancel(self, ctx: BuildContext, on_log: LogCallback) -> None:
        """Stop any work still running for the deployment, then clean up."""
        await self.teardown(ctx.deployment_id, on_log)

    async def job_status(self, deployment_id: str) -> Optional[str]:
        """Out-of-band status of the backend's work, when the backend tracks one."""
        return None
