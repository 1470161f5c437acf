import logging
from typing import Optional

from sitebuilder.modules.api.models import BuildJob, BuildPriority

from .store import SLOT_ACQUIRED, SLOT_FULL, QueueStore

logger = logging.getLogger("sitebuilder.queue")

DEFAULT_CONCURRENCY = 3
DEFAULT_JOB_TTL = 30 * 60
TIERS = (BuildPriority.HIGH, BuildPriority.LOW)


class BuildQueue:
    def __init__(
        self,
        store: QueueStore,
        concurrency: int = DEFAULT_CONCURRENCY,
        job_ttl: int = DEFAULT_JOB_TTL,
    ):
        """
        Initialize build queue.

        Args:
            store: Queue store backend
            concurrency: Maximum number of builds running at once
            job_ttl: Seconds a queued job survives if never claimed
        """
        self.store = store
        self.concurrency = concurrency
        self.job_ttl = job_ttl

    async def enqueue_build(
        self,
        deployment_id: str,
        project_id: str,
        priority: BuildPriority = BuildPriority.HIGH,
    ) -> bool:
        """
        Add a build to the queue.

        Args:
            deployment_id: The deployment to build
            project_id: The owning project
            priority: HIGH for production, LOW for preview

        Returns:
            False if the deployment is already building

        Logic:
        1. Refuse ids that hold a build slot
        2. Drop any earlier queue entry for the id
        3. Store metadata with a TTL and append to the tier
        """
        job = BuildJob(deployment_id=deployment_id, project_id=project_id, priority=priority)
        added = await self.store.add_job(job, self.job_ttl)

        if added:
            logger.info(f"Queued build {deployment_id} (priority: {job.priority.value})")
        else:
            logger.warning(f"Build {deployment_id} is already running, not queued")
        return added

    async def dequeue_build(self) -> Optional[BuildJob]:
        """
        Try to claim the next build, respecting the concurrency limit.

        Returns:
            The claimed job, or None when at capacity or nothing is queued

        Logic:
        1. Cheap capacity check before popping anything
        2. Pop from the high tier, then the low tier
        3. Skip ids whose metadata expired or was removed
        4. Claim a slot atomically; on losing the race for the last slot,
           put the id back at the head of its tier
        """
        if await self.store.slot_count() >= self.concurrency:
            return None

        while True:
            popped = await self._pop_next()
            if popped is None:
                return None
            priority, deployment_id = popped

            job = await self.store.get_job(deployment_id)
            if job is None:
                logger.info(f"Skipping stale queue entry {deployment_id}")
                continue

            outcome = await self.store.try_acquire_slot(deployment_id, self.concurrency)
            if outcome == SLOT_ACQUIRED:
                logger.info(f"Dequeued build {deployment_id} (priority: {priority.value})")
                return job
            if outcome == SLOT_FULL:
                await self.store.push_front(priority, deployment_id)
                return None

            logger.warning(f"Skipping queue entry {deployment_id}: already building")

    async def _pop_next(self):
        for priority in TIERS:
            deployment_id = await self.store.pop_front(priority)
            if deployment_id:
                return priority, deployment_id
        return None

    async def complete_build(self, deployment_id: str) -> None:
        """
        Release the build slot and job metadata.

        Safe to call more than once.
        """
        released = await self.store.release_slot(deployment_id)
        await self.store.delete_job(deployment_id)
        if released:
            logger.info(f"Completed build {deployment_id}")

    async def remove_from_queue(self, deployment_id: str) -> bool:
        """
        Remove a queued build that has not started.

        Returns:
            True if the id was waiting in a queue; False when it was not
            queued or is already running (running builds are untouched)
        """
        if await self.store.is_active(deployment_id):
            return False

        removed = 0
        for priority in TIERS:
            removed += await self.store.remove(priority, deployment_id)
        await self.store.delete_job(deployment_id)

        if removed:
            logger.info(f"Removed build {deployment_id} from queue")
        return removed > 0

    async def is_active(self, deployment_id: str) -> bool:
        return await self.store.is_active(deployment_id)

    async def get_queue_length(self) -> int:
        """Total number of queued builds across both tiers."""
        total = 0
        for priority in TIERS:
            total += await self.store.length(priority)
        return total

    async def get_active_build_count(self) -> int:
        return await self.store.slot_count()
