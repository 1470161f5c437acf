import json
import logging
import time
from typing import Any, Dict, List, Optional, Protocol

from redis.exceptions import RedisError

from sitebuilder.errors import InfrastructureError
from sitebuilder.modules.api.models import TERMINAL_STATUSES, DeploymentStatus, LogEntry, ProjectConfig

logger = logging.getLogger("sitebuilder.deployments")

LOG_TTL = 7 * 24 * 3600

# KEYS: deployment hash. ARGV: status, finished_at ("" unless terminal), field/value pairs...
SET_STATUS_SCRIPT = """
local current = redis.call('HGET', KEYS[1], 'status')
if current == 'READY' or current == 'ERROR' or current == 'CANCELLED' then
  return 0
end
redis.call('HSET', KEYS[1], 'status', ARGV[1])
for i = 3, #ARGV, 2 do
  redis.call('HSET', KEYS[1], ARGV[i], ARGV[i + 1])
end
if ARGV[2] ~= '' and redis.call('HEXISTS', KEYS[1], 'finished_at') == 0 then
  redis.call('HSET', KEYS[1], 'finished_at', ARGV[2])
end
return 1
"""


class ProjectReader(Protocol):
    """Read access to project build settings."""

    async def get_project(self, project_id: str) -> Optional[ProjectConfig]:
        ...


class DeploymentSink(Protocol):
    """Durable status and log writes for deployments."""

    async def append_log(self, deployment_id: str, level: str, message: str) -> None:
        ...

    async def set_status(self, deployment_id: str, status: DeploymentStatus, **extras: Any) -> bool:
        """Write a status; False when the deployment is already terminal."""
        ...

    async def get_status(self, deployment_id: str) -> Optional[DeploymentStatus]:
        ...

    async def get_branch(self, deployment_id: str) -> Optional[str]:
        ...

    async def activate(self, project_id: str, deployment_id: str) -> Optional[str]:
        """Make the deployment the project's active one; returns the previous id."""
        ...


class RedisDeploymentStore:
    """
    Deployment records in Redis.

    Keys:
        deployment:{id}          hash of status fields
        deployment:{id}:logs     list of JSON log entries, in arrival order
        project:{pid}:active     id of the project's active deployment
    """

    def __init__(self, redis_client):
        self.redis = redis_client

    @staticmethod
    def deployment_key(deployment_id: str) -> str:
        return f"deployment:{deployment_id}"

    @staticmethod
    def logs_key(deployment_id: str) -> str:
        return f"deployment:{deployment_id}:logs"

    @staticmethod
    def active_key(project_id: str) -> str:
        return f"project:{project_id}:active"

    async def create_deployment(
        self, deployment_id: str, project_id: str, branch: Optional[str] = None
    ) -> None:
        """Record a new deployment in QUEUED state."""
        fields = {
            "project_id": project_id,
            "status": DeploymentStatus.QUEUED.value,
            "created_at": str(time.time()),
        }
        if branch:
            fields["branch"] = branch
        try:
            await self.redis.hset(self.deployment_key(deployment_id), mapping=fields)
        except RedisError as e:
            raise InfrastructureError(f"Failed to create deployment {deployment_id}: {e}") from e

    async def append_log(self, deployment_id: str, level: str, message: str) -> None:
        entry = LogEntry(level=level, message=message, timestamp=time.time()).model_dump_json()
        key = self.logs_key(deployment_id)
        try:
            await self.redis.rpush(key, entry)
            await self.redis.expire(key, LOG_TTL)
        except RedisError as e:
            raise InfrastructureError(f"Failed to append log for {deployment_id}: {e}") from e

    async def set_status(self, deployment_id: str, status: DeploymentStatus, **extras: Any) -> bool:
        status = DeploymentStatus(status)
        finished_at = str(time.time()) if status in TERMINAL_STATUSES else ""

        args: List[str] = [status.value, finished_at]
        for field, value in extras.items():
            if value is not None:
                args.extend([field, str(value)])

        try:
            written = await self.redis.eval(
                SET_STATUS_SCRIPT, 1, self.deployment_key(deployment_id), *args
            )
        except RedisError as e:
            raise InfrastructureError(f"Failed to set status for {deployment_id}: {e}") from e

        if not int(written):
            logger.info(f"Deployment {deployment_id} is final, ignoring {status.value}")
            return False
        return True

    async def get_deployment(self, deployment_id: str) -> Optional[Dict[str, str]]:
        try:
            data = await self.redis.hgetall(self.deployment_key(deployment_id))
        except RedisError as e:
            raise InfrastructureError(f"Failed to read deployment {deployment_id}: {e}") from e
        return data or None

    async def get_status(self, deployment_id: str) -> Optional[DeploymentStatus]:
        try:
            status = await self.redis.hget(self.deployment_key(deployment_id), "status")
        except RedisError as e:
            raise InfrastructureError(f"Failed to read deployment {deployment_id}: {e}") from e
        return DeploymentStatus(status) if status else None

    async def get_branch(self, deployment_id: str) -> Optional[str]:
        try:
            return await self.redis.hget(self.deployment_key(deployment_id), "branch")
        except RedisError as e:
            raise InfrastructureError(f"Failed to read deployment {deployment_id}: {e}") from e

    async def get_logs(self, deployment_id: str, limit: int = 500) -> List[Dict[str, Any]]:
        """Most recent log entries, oldest first."""
        try:
            raw = await self.redis.lrange(self.logs_key(deployment_id), -limit, -1)
        except RedisError as e:
            raise InfrastructureError(f"Failed to read logs for {deployment_id}: {e}") from e
        return [json.loads(entry) for entry in raw]

    async def activate(self, project_id: str, deployment_id: str) -> Optional[str]:
        """
        Swap the project's active pointer to this deployment.

        The pointer swap is a single SET ... GET, so two deployments finishing
        together can never both end up as the project's active one. The
        per-deployment "active" flag is a denormalized copy that follows it.
        """
        try:
            previous = await self.redis.set(self.active_key(project_id), deployment_id, get=True)
            if previous and previous != deployment_id:
                await self.redis.hset(self.deployment_key(previous), "active", "0")
            await self.redis.hset(self.deployment_key(deployment_id), "active", "1")
        except RedisError as e:
            raise InfrastructureError(f"Failed to activate deployment {deployment_id}: {e}") from e

        if previous and previous != deployment_id:
            logger.info(f"Project {project_id}: deployment {previous} replaced by {deployment_id}")
        return previous


class RedisProjectStore:
    """Project build settings stored as JSON under project:{id}."""

    def __init__(self, redis_client):
        self.redis = redis_client

    @staticmethod
    def project_key(project_id: str) -> str:
        return f"project:{project_id}"

    async def get_project(self, project_id: str) -> Optional[ProjectConfig]:
        try:
            raw = await self.redis.get(self.project_key(project_id))
        except RedisError as e:
            raise InfrastructureError(f"Failed to read project {project_id}: {e}") from e
        if not raw:
            return None
        return ProjectConfig.model_validate_json(raw)

    async def save_project(self, project: ProjectConfig) -> None:
        try:
            await self.redis.set(self.project_key(project.id), project.model_dump_json())
        except RedisError as e:
            raise InfrastructureError(f"Failed to save project {project.id}: {e}") from e
