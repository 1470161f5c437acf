import json
import os
import sys
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import ConnectionError as RedisConnectionError

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from sitebuilder.errors import InfrastructureError
from sitebuilder.modules.api.models import DeploymentStatus, ProjectConfig
from sitebuilder.modules.deployments import RedisDeploymentStore, RedisProjectStore
from sitebuilder.modules.deployments.store import LOG_TTL, SET_STATUS_SCRIPT


@pytest_asyncio.fixture
async def redis_mock():
    """Create a mock Redis client"""
    redis = AsyncMock()

    redis.hset = AsyncMock()
    redis.hget = AsyncMock()
    redis.hgetall = AsyncMock(return_value={})
    redis.rpush = AsyncMock()
    redis.expire = AsyncMock()
    redis.lrange = AsyncMock(return_value=[])
    redis.eval = AsyncMock(return_value=1)
    redis.set = AsyncMock()
    redis.get = AsyncMock()

    return redis


@pytest_asyncio.fixture
async def store(redis_mock):
    return RedisDeploymentStore(redis_mock)


@pytest.mark.asyncio
async def test_create_deployment(store, redis_mock):
    await store.create_deployment("dep-1", "proj-1", branch="feature/x")

    key = redis_mock.hset.call_args[0][0]
    fields = redis_mock.hset.call_args.kwargs["mapping"]
    assert key == "deployment:dep-1"
    assert fields["status"] == "QUEUED"
    assert fields["project_id"] == "proj-1"
    assert fields["branch"] == "feature/x"


@pytest.mark.asyncio
async def test_append_log(store, redis_mock):
    await store.append_log("dep-1", "warn", "npm WARN deprecated")

    key, raw = redis_mock.rpush.call_args[0]
    entry = json.loads(raw)
    assert key == "deployment:dep-1:logs"
    assert entry["level"] == "warn"
    assert entry["message"] == "npm WARN deprecated"
    assert "timestamp" in entry
    redis_mock.expire.assert_called_once_with("deployment:dep-1:logs", LOG_TTL)


@pytest.mark.asyncio
async def test_set_status_passes_extras(store, redis_mock):
    written = await store.set_status(
        "dep-1", DeploymentStatus.READY, url="https://site.example.com", build_time=42, artifact_path=None
    )

    assert written is True
    args = redis_mock.eval.call_args[0]
    assert args[0] == SET_STATUS_SCRIPT
    assert args[1:4] == (1, "deployment:dep-1", "READY")
    assert args[4] != ""
    assert list(args[5:]) == ["url", "https://site.example.com", "build_time", "42"]


@pytest.mark.asyncio
async def test_non_terminal_status_has_no_finish_time(store, redis_mock):
    await store.set_status("dep-1", DeploymentStatus.BUILDING)

    assert redis_mock.eval.call_args[0][4] == ""


@pytest.mark.asyncio
async def test_set_status_refused_when_final(store, redis_mock):
    redis_mock.eval.return_value = 0

    assert await store.set_status("dep-1", DeploymentStatus.ERROR) is False


@pytest.mark.asyncio
async def test_get_status(store, redis_mock):
    redis_mock.hget.return_value = "BUILDING"
    assert await store.get_status("dep-1") == DeploymentStatus.BUILDING

    redis_mock.hget.return_value = None
    assert await store.get_status("dep-1") is None


@pytest.mark.asyncio
async def test_get_deployment_missing(store):
    assert await store.get_deployment("nope") is None


@pytest.mark.asyncio
async def test_append_log_rejects_unknown_level(store, redis_mock):
    with pytest.raises(PydanticValidationError):
        await store.append_log("dep-1", "verbose", "hello")

    redis_mock.rpush.assert_not_called()


@pytest.mark.asyncio
async def test_get_logs(store, redis_mock):
    redis_mock.lrange.return_value = [json.dumps({"level": "info", "message": "hi", "timestamp": 1.0})]

    logs = await store.get_logs("dep-1", limit=50)

    assert logs == [{"level": "info", "message": "hi", "timestamp": 1.0}]
    redis_mock.lrange.assert_called_once_with("deployment:dep-1:logs", -50, -1)


@pytest.mark.asyncio
async def test_activate_swaps_pointer(store, redis_mock):
    redis_mock.set.return_value = "dep-old"

    previous = await store.activate("proj-1", "dep-new")

    assert previous == "dep-old"
    redis_mock.set.assert_called_once_with("project:proj-1:active", "dep-new", get=True)
    redis_mock.hset.assert_any_call("deployment:dep-old", "active", "0")
    redis_mock.hset.assert_any_call("deployment:dep-new", "active", "1")


@pytest.mark.asyncio
async def test_activate_first_deployment(store, redis_mock):
    redis_mock.set.return_value = None

    assert await store.activate("proj-1", "dep-1") is None
    redis_mock.hset.assert_called_once_with("deployment:dep-1", "active", "1")


@pytest.mark.asyncio
async def test_redis_failure_is_infrastructure_error(store, redis_mock):
    redis_mock.rpush.side_effect = RedisConnectionError("connection lost")

    with pytest.raises(InfrastructureError):
        await store.append_log("dep-1", "info", "x")


@pytest.mark.asyncio
async def test_project_store_round_trip(redis_mock):
    projects = RedisProjectStore(redis_mock)
    project = ProjectConfig(
        id="proj-1",
        name="Docs",
        slug="docs",
        repo_url="https://github.com/acme/docs",
        env_vars=[{"key": "API_URL", "value": "https://api"}],
    )

    await projects.save_project(project)
    key, raw = redis_mock.set.call_args[0]
    assert key == "project:proj-1"

    redis_mock.get.return_value = raw
    loaded = await projects.get_project("proj-1")

    assert loaded.slug == "docs"
    assert loaded.env_vars == {"API_URL": "https://api"}


@pytest.mark.asyncio
async def test_project_store_missing(redis_mock):
    redis_mock.get.return_value = None
    assert await RedisProjectStore(redis_mock).get_project("nope") is None
