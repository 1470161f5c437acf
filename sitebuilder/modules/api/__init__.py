"""
API Module - Black Box Interface

Purpose: Data models shared by the HTTP layer and the pipeline modules
Interface: pydantic models and enums
Hidden: Field validation details

The API module only describes data - it contains no business logic.
"""

from .models import (
    TERMINAL_STATUSES,
    BuildConfig,
    BuildJob,
    BuildPriority,
    DeploymentResponse,
    DeploymentStatus,
    EnqueueBuildRequest,
    EnqueueBuildResponse,
    HealthResponse,
    JobPhase,
    LogEntry,
    LogLevel,
    ProjectConfig,
    QueueStatsResponse,
)

__all__ = [
    "BuildConfig",
    "BuildJob",
    "BuildPriority",
    "DeploymentResponse",
    "DeploymentStatus",
    "EnqueueBuildRequest",
    "EnqueueBuildResponse",
    "HealthResponse",
    "JobPhase",
    "LogEntry",
    "LogLevel",
    "ProjectConfig",
    "QueueStatsResponse",
    "TERMINAL_STATUSES",
]
