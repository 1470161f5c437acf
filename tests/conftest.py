"""
Shared pytest fixtures for Sitebuilder tests.

This module provides common fixtures including:
- InMemoryDeploymentSink: Deployment status/log sink with terminal-status enforcement
- InMemoryProjectReader: Project settings lookup
- FakeExecutor: Scripted build backend recording every call
- In-memory build queue
"""

import asyncio
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sitebuilder.modules.api.models import (
    TERMINAL_STATUSES,
    BuildJob,
    BuildPriority,
    DeploymentStatus,
    ProjectConfig,
)
from sitebuilder.modules.executor import BuildContext, BuildExecutor, preview_slug
from sitebuilder.modules.queue import BuildQueue, InMemoryQueueStore


# =============================================================================
# Deployment/Project Fakes
# =============================================================================


class InMemoryDeploymentSink:
    """DeploymentSink keeping everything in dicts."""

    def __init__(self):
        self.statuses: Dict[str, DeploymentStatus] = {}
        self.history: Dict[str, List[DeploymentStatus]] = {}
        self.extras: Dict[str, Dict[str, Any]] = {}
        self.logs: Dict[str, List[Tuple[str, str]]] = {}
        self.branches: Dict[str, str] = {}
        self.active: Dict[str, str] = {}

    def create(self, deployment_id: str, branch: Optional[str] = None) -> None:
        self.statuses[deployment_id] = DeploymentStatus.QUEUED
        self.history[deployment_id] = [DeploymentStatus.QUEUED]
        if branch:
            self.branches[deployment_id] = branch

    async def append_log(self, deployment_id: str, level: str, message: str) -> None:
        self.logs.setdefault(deployment_id, []).append((level, message))

    async def set_status(self, deployment_id: str, status: DeploymentStatus, **extras: Any) -> bool:
        if self.statuses.get(deployment_id) in TERMINAL_STATUSES:
            return False
        self.statuses[deployment_id] = status
        self.history.setdefault(deployment_id, []).append(status)
        self.extras.setdefault(deployment_id, {}).update(extras)
        return True

    async def get_status(self, deployment_id: str) -> Optional[DeploymentStatus]:
        return self.statuses.get(deployment_id)

    async def get_branch(self, deployment_id: str) -> Optional[str]:
        return self.branches.get(deployment_id)

    async def activate(self, project_id: str, deployment_id: str) -> Optional[str]:
        previous = self.active.get(project_id)
        self.active[project_id] = deployment_id
        return previous

    def messages(self, deployment_id: str, level: Optional[str] = None) -> List[str]:
        return [m for lvl, m in self.logs.get(deployment_id, []) if level is None or lvl == level]


class InMemoryProjectReader:
    def __init__(self, *projects: ProjectConfig):
        self.projects = {p.id: p for p in projects}

    async def get_project(self, project_id: str) -> Optional[ProjectConfig]:
        return self.projects.get(project_id)


# =============================================================================
# Executor Fake
# =============================================================================


@dataclass
class FakeExecutor(BuildExecutor):
    """
    Scripted executor.

    build_error is raised from build(); build_delay keeps build() busy so
    cancellation can be exercised.
    """

    build_error: Optional[Exception] = None
    build_delay: float = 0.0
    timeout: float = 30.0
    calls: List[str] = field(default_factory=list)

    name = "fake"

    @property
    def pipeline_timeout(self) -> float:
        return self.timeout

    def site_slug_for(self, project_slug: str, deployment_id: str, production: bool) -> str:
        return project_slug if production else preview_slug(project_slug, deployment_id)

    async def build(self, ctx: BuildContext, on_log) -> None:
        self.calls.append("build")
        await on_log("info", "building")
        if self.build_delay:
            await asyncio.sleep(self.build_delay)
        if self.build_error is not None:
            raise self.build_error

    async def collect(self, ctx: BuildContext, on_log) -> str:
        self.calls.append("collect")
        return f"/builds/{ctx.site_slug}"

    async def cleanup(self, ctx: BuildContext, on_log) -> None:
        self.calls.append("cleanup")

    async def cancel(self, ctx: BuildContext, on_log) -> None:
        self.calls.append("cancel")

    async def teardown(self, deployment_id: str, on_log) -> None:
        self.calls.append(f"teardown {deployment_id}")


# =============================================================================
# Fixtures
# =============================================================================


def make_project(**overrides) -> ProjectConfig:
    data = {
        "id": "proj-1",
        "name": "Marketing Site",
        "slug": "marketing",
        "repo_url": "https://github.com/acme/marketing",
        "framework": "nextjs",
    }
    data.update(overrides)
    return ProjectConfig(**data)


def make_job(deployment_id: str = "dep-abcdef123", production: bool = True) -> BuildJob:
    return BuildJob(
        deployment_id=deployment_id,
        project_id="proj-1",
        priority=BuildPriority.HIGH if production else BuildPriority.LOW,
    )


@pytest.fixture
def sink():
    return InMemoryDeploymentSink()


@pytest.fixture
def projects():
    return InMemoryProjectReader(make_project())


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def artifact_store():
    """Artifact store reporting a present, 2 KB build."""
    store = AsyncMock()
    store.artifacts_exist = AsyncMock(return_value=True)
    store.get_artifacts_size = AsyncMock(return_value=2048)
    return store


@pytest.fixture
def build_queue():
    return BuildQueue(InMemoryQueueStore(), concurrency=2, job_ttl=60)
