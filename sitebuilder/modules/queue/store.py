"""
Queue store capability.

The build queue only needs a handful of primitive operations; each one is a
single indivisible step against the backing store. The two steps that
combine a check with a write (admitting a job, claiming a build slot) are
Lua scripts on Redis.
"""

import functools
import time
from collections import deque
from typing import Deque, Dict, Optional, Protocol, Set, Tuple

from redis.exceptions import RedisError

from sitebuilder.errors import InfrastructureError
from sitebuilder.modules.api.models import BuildJob, BuildPriority

SLOT_ACQUIRED = 1
SLOT_FULL = 0
SLOT_TAKEN = -1

# KEYS: active set, high list, low list, job key, target list
# ARGV: deployment id, payload, ttl seconds
ADD_JOB_SCRIPT = """
if redis.call('SISMEMBER', KEYS[1], ARGV[1]) == 1 then
  return 0
end
redis.call('LREM', KEYS[2], 0, ARGV[1])
redis.call('LREM', KEYS[3], 0, ARGV[1])
redis.call('SET', KEYS[4], ARGV[2], 'EX', tonumber(ARGV[3]))
redis.call('RPUSH', KEYS[5], ARGV[1])
return 1
"""

# KEYS: active set. ARGV: deployment id, concurrency limit
ACQUIRE_SLOT_SCRIPT = """
if redis.call('SISMEMBER', KEYS[1], ARGV[1]) == 1 then
  return -1
end
if redis.call('SCARD', KEYS[1]) >= tonumber(ARGV[2]) then
  return 0
end
redis.call('SADD', KEYS[1], ARGV[1])
return 1
"""


class QueueStore(Protocol):
    """Primitive operations the build queue is built from."""

    async def add_job(self, job: BuildJob, ttl: int) -> bool:
        """Store metadata and append to the job's tier; False if the id is active."""
        ...

    async def get_job(self, deployment_id: str) -> Optional[BuildJob]:
        ...

    async def delete_job(self, deployment_id: str) -> None:
        ...

    async def push_front(self, priority: BuildPriority, deployment_id: str) -> None:
        ...

    async def pop_front(self, priority: BuildPriority) -> Optional[str]:
        ...

    async def remove(self, priority: BuildPriority, deployment_id: str) -> int:
        ...

    async def length(self, priority: BuildPriority) -> int:
        ...

    async def try_acquire_slot(self, deployment_id: str, limit: int) -> int:
        """Atomically claim a slot: SLOT_ACQUIRED, SLOT_FULL or SLOT_TAKEN."""
        ...

    async def release_slot(self, deployment_id: str) -> bool:
        ...

    async def slot_count(self) -> int:
        ...

    async def is_active(self, deployment_id: str) -> bool:
        ...


def wraps_redis_errors(func):
    """Re-raise Redis failures as InfrastructureError."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except RedisError as e:
            raise InfrastructureError(f"Queue store {func.__name__} failed: {e}") from e

    return wrapper


class RedisQueueStore:
    """
    Redis-backed queue store.

    Keys:
        build:queue:high  production deployments (list, FIFO via RPUSH/LPOP)
        build:queue:low   preview deployments (list)
        build:active      deployment ids currently building (set)
        build:job:{id}    JSON job metadata with a TTL
    """

    def __init__(self, redis_client, prefix: str = "build"):
        self.redis = redis_client
        self.prefix = prefix
        self.active_key = f"{prefix}:active"

    def queue_key(self, priority: BuildPriority) -> str:
        return f"{self.prefix}:queue:{BuildPriority(priority).value}"

    def job_key(self, deployment_id: str) -> str:
        return f"{self.prefix}:job:{deployment_id}"

    @wraps_redis_errors
    async def add_job(self, job: BuildJob, ttl: int) -> bool:
        added = await self.redis.eval(
            ADD_JOB_SCRIPT,
            5,
            self.active_key,
            self.queue_key(BuildPriority.HIGH),
            self.queue_key(BuildPriority.LOW),
            self.job_key(job.deployment_id),
            self.queue_key(job.priority),
            job.deployment_id,
            job.model_dump_json(),
            ttl,
        )
        return int(added) == 1

    @wraps_redis_errors
    async def get_job(self, deployment_id: str) -> Optional[BuildJob]:
        raw = await self.redis.get(self.job_key(deployment_id))
        if not raw:
            return None
        return BuildJob.model_validate_json(raw)

    @wraps_redis_errors
    async def delete_job(self, deployment_id: str) -> None:
        await self.redis.delete(self.job_key(deployment_id))

    @wraps_redis_errors
    async def push_front(self, priority: BuildPriority, deployment_id: str) -> None:
        await self.redis.lpush(self.queue_key(priority), deployment_id)

    @wraps_redis_errors
    async def pop_front(self, priority: BuildPriority) -> Optional[str]:
        return await self.redis.lpop(self.queue_key(priority))

    @wraps_redis_errors
    async def remove(self, priority: BuildPriority, deployment_id: str) -> int:
        return int(await self.redis.lrem(self.queue_key(priority), 0, deployment_id))

    @wraps_redis_errors
    async def length(self, priority: BuildPriority) -> int:
        return int(await self.redis.llen(self.queue_key(priority)))

    @wraps_redis_errors
    async def try_acquire_slot(self, deployment_id: str, limit: int) -> int:
        return int(
            await self.redis.eval(ACQUIRE_SLOT_SCRIPT, 1, self.active_key, deployment_id, limit)
        )

    @wraps_redis_errors
    async def release_slot(self, deployment_id: str) -> bool:
        return int(await self.redis.srem(self.active_key, deployment_id)) > 0

    @wraps_redis_errors
    async def slot_count(self) -> int:
        return int(await self.redis.scard(self.active_key))

    @wraps_redis_errors
    async def is_active(self, deployment_id: str) -> bool:
        return bool(await self.redis.sismember(self.active_key, deployment_id))


class InMemoryQueueStore:
    """
    Single-process queue store.

    None of the methods await, so each one runs without suspension on the
    event loop and is indivisible with respect to other tasks.
    """

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._queues: Dict[BuildPriority, Deque[str]] = {
            BuildPriority.HIGH: deque(),
            BuildPriority.LOW: deque(),
        }
        self._active: Set[str] = set()
        self._jobs: Dict[str, Tuple[BuildJob, float]] = {}

    async def add_job(self, job: BuildJob, ttl: int) -> bool:
        if job.deployment_id in self._active:
            return False
        for queue in self._queues.values():
            while job.deployment_id in queue:
                queue.remove(job.deployment_id)
        self._jobs[job.deployment_id] = (job, self._clock() + ttl)
        self._queues[BuildPriority(job.priority)].append(job.deployment_id)
        return True

    async def get_job(self, deployment_id: str) -> Optional[BuildJob]:
        entry = self._jobs.get(deployment_id)
        if entry is None:
            return None
        job, expires_at = entry
        if self._clock() >= expires_at:
            del self._jobs[deployment_id]
            return None
        return job

    async def delete_job(self, deployment_id: str) -> None:
        self._jobs.pop(deployment_id, None)

    async def push_front(self, priority: BuildPriority, deployment_id: str) -> None:
        self._queues[BuildPriority(priority)].appendleft(deployment_id)

    async def pop_front(self, priority: BuildPriority) -> Optional[str]:
        queue = self._queues[BuildPriority(priority)]
        return queue.popleft() if queue else None

    async def remove(self, priority: BuildPriority, deployment_id: str) -> int:
        queue = self._queues[BuildPriority(priority)]
        removed = 0
        while deployment_id in queue:
            queue.remove(deployment_id)
            removed += 1
        return removed

    async def length(self, priority: BuildPriority) -> int:
        return len(self._queues[BuildPriority(priority)])

    async def try_acquire_slot(self, deployment_id: str, limit: int) -> int:
        if deployment_id in self._active:
            return SLOT_TAKEN
        if len(self._active) >= limit:
            return SLOT_FULL
        self._active.add(deployment_id)
        return SLOT_ACQUIRED

    async def release_slot(self, deployment_id: str) -> bool:
        if deployment_id in self._active:
            self._active.remove(deployment_id)
            return True
        return False

    async def slot_count(self) -> int:
        return len(self._active)

    async def is_active(self, deployment_id: str) -> bool:
        return deployment_id in self._active
