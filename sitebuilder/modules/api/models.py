"""
Sitebuilder shared data models.

These models define the structure of all data passed between
components in the build pipeline.
"""

import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Enums


class BuildPriority(str, Enum):
    """Queue tier. Production builds are high, previews are low."""

    HIGH = "high"
    LOW = "low"


class DeploymentStatus(str, Enum):
    """Lifecycle of a deployment as driven by the pipeline worker."""

    QUEUED = "QUEUED"
    BUILDING = "BUILDING"
    DEPLOYING = "DEPLOYING"
    READY = "READY"
    ERROR = "ERROR"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {DeploymentStatus.READY, DeploymentStatus.ERROR, DeploymentStatus.CANCELLED}
)


class LogLevel(str, Enum):
    """Level attached to each deployment log line."""

    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    SUCCESS = "success"


class LogEntry(BaseModel):
    """One line of a deployment's build log."""

    level: LogLevel
    message: str
    timestamp: float


class JobPhase(str, Enum):
    """Status of a cluster build Job."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# Internal Models (Used between modules)


class BuildJob(BaseModel):
    """Queue payload for one requested build."""

    deployment_id: str = Field(..., min_length=1)
    project_id: str = Field(..., min_length=1)
    priority: BuildPriority = BuildPriority.HIGH
    enqueued_at: float = Field(default_factory=time.time)

    @property
    def production(self) -> bool:
        return self.priority == BuildPriority.HIGH


class BuildConfig(BaseModel):
    """Immutable configuration for one build attempt."""

    model_config = ConfigDict(frozen=True)

    repo_url: str
    branch: str = "main"
    install_cmd: str = "npm install"
    build_cmd: str = "npm run build"
    output_dir: str = "dist"
    root_dir: str = "./"
    node_version: str = "20"
    env_vars: Dict[str, str] = Field(default_factory=dict)


class ProjectConfig(BaseModel):
    """Project settings the pipeline derives a BuildConfig from."""

    id: str
    name: str
    slug: str
    repo_url: Optional[str] = None
    branch: str = "main"
    install_cmd: str = "npm install"
    build_cmd: str = "npm run build"
    output_dir: str = "dist"
    root_dir: str = "./"
    node_version: str = "20"
    framework: Optional[str] = None
    env_vars: Dict[str, str] = Field(default_factory=dict)

    @field_validator("env_vars", mode="before")
    @classmethod
    def normalize_env_vars(cls, v: Any) -> Dict[str, str]:
        """Accept a mapping or a list of {key, value} entries."""
        if v is None:
            return {}
        if isinstance(v, list):
            return {str(item["key"]): str(item.get("value", "")) for item in v}
        return v

    def build_config(self, branch: Optional[str] = None) -> BuildConfig:
        """
        Derive the build configuration for one attempt.

        Args:
            branch: Per-deployment branch override

        Returns:
            Frozen BuildConfig
        """
        return BuildConfig(
            repo_url=self.repo_url or "",
            branch=branch or self.branch,
            install_cmd=self.install_cmd,
            build_cmd=self.build_cmd,
            output_dir=self.output_dir,
            root_dir=self.root_dir,
            node_version=self.node_version,
            env_vars=dict(self.env_vars),
        )


# Request Models (API Input)


class EnqueueBuildRequest(BaseModel):
    """Request to queue a build for a deployment."""

    deployment_id: str = Field(..., min_length=1, max_length=100, pattern="^[A-Za-z0-9_-]+$")
    project_id: str = Field(..., min_length=1, max_length=100)
    priority: BuildPriority = Field(
        default=BuildPriority.HIGH, description="high for production, low for preview"
    )
    branch: Optional[str] = Field(None, description="Branch override for this deployment")


# Response Models (API Output)


class EnqueueBuildResponse(BaseModel):
    """Response after queueing a build."""

    deployment_id: str
    queued: bool
    queue_length: int


class QueueStatsResponse(BaseModel):
    """Queue introspection for dashboards and health checks."""

    queue_length: int
    active_builds: int
    concurrency: int


class DeploymentResponse(BaseModel):
    """Current state of a deployment."""

    deployment_id: str
    status: Optional[DeploymentStatus] = None
    job_status: Optional[JobPhase] = None
    url: Optional[str] = None
    site_slug: Optional[str] = None
    build_time: Optional[int] = None
    artifact_path: Optional[str] = None
    finished_at: Optional[float] = None
    logs: List[LogEntry] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Health status", pattern="^(healthy|unhealthy|degraded)$")
    redis: str = Field(..., description="Redis connection status")
    dispatcher: str = Field(..., description="Dispatch loop status")
    version: str = Field(default="1.0.0", description="API version")
