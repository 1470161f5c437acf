"""
Dispatch loop.

Dequeues builds while slots are free and runs each in its own task. Every
dequeued build has its slot released exactly once, whatever way its task
ends. A queue or object store outage stops the loop and is re-raised to
whoever awaits it.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

from sitebuilder.errors import InfrastructureError
from sitebuilder.modules.api.models import BuildJob

from .queue import BuildQueue

logger = logging.getLogger("sitebuilder.queue.dispatcher")

BuildFn = Callable[[BuildJob], Awaitable[None]]

DEFAULT_POLL_INTERVAL = 2.0


class BuildDispatcher:
    """Supervised dispatch loop over a BuildQueue."""

    def __init__(self, queue: BuildQueue, build_fn: BuildFn, poll_interval: float = DEFAULT_POLL_INTERVAL):
        self.queue = queue
        self.build_fn = build_fn
        self.poll_interval = poll_interval
        self.in_flight: Dict[str, asyncio.Task] = {}
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self._wake = asyncio.Event()
        self._failure: Optional[InfrastructureError] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def failure(self) -> Optional[InfrastructureError]:
        return self._failure

    def start(self) -> asyncio.Task:
        """Start the loop on the running event loop."""
        if self.running:
            return self._task
        self._stopping = False
        self._wake.clear()
        self._task = asyncio.create_task(self._loop(), name="build-dispatcher")
        logger.info(
            f"Build dispatcher started (concurrency: {self.queue.concurrency}, "
            f"poll interval: {self.poll_interval}s)"
        )
        return self._task

    def stop(self) -> None:
        """Ask the loop to exit. In-flight builds keep running."""
        self._stopping = True
        self._wake.set()

    async def wait(self) -> None:
        """Wait for the loop to exit, re-raising the failure that stopped it."""
        if self._task is not None:
            await self._task

    async def cancel_in_flight(self) -> None:
        """Cancel every running build and wait until their slots are released."""
        tasks = list(self.in_flight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _loop(self) -> None:
        while not self._stopping:
            if self._failure is not None:
                raise self._failure

            try:
                job = await self.queue.dequeue_build()
            except InfrastructureError as e:
                logger.error(f"Build queue unavailable: {e}")
                self._failure = e
                raise

            if job is not None:
                self._spawn(job)
                # A slot may still be free
                continue

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

        if self._failure is not None:
            raise self._failure
        logger.info("Build dispatcher stopped")

    def _spawn(self, job: BuildJob) -> None:
        task = asyncio.create_task(self._run(job), name=f"build-{job.deployment_id}")
        self.in_flight[job.deployment_id] = task

    def _record_failure(self, error: InfrastructureError) -> None:
        if self._failure is None:
            self._failure = error
        self._wake.set()

    async def _run(self, job: BuildJob) -> None:
        try:
            await self.build_fn(job)
        except InfrastructureError as e:
            logger.error(f"Infrastructure failure during build {job.deployment_id}: {e}")
            self._record_failure(e)
        except asyncio.CancelledError:
            logger.info(f"Build {job.deployment_id} cancelled")
            raise
        except Exception:
            logger.exception(f"Build failed for deployment {job.deployment_id}")
        finally:
            self.in_flight.pop(job.deployment_id, None)
            try:
                await self.queue.complete_build(job.deployment_id)
            except InfrastructureError as e:
                logger.error(f"Failed to release build slot for {job.deployment_id}: {e}")
                self._record_failure(e)


def process_build_queue(
    queue: BuildQueue, build_fn: BuildFn, poll_interval: float = DEFAULT_POLL_INTERVAL
) -> BuildDispatcher:
    """
    Process the build queue continuously.

    Returns:
        The started dispatcher; call stop() on it to end the loop
    """
    dispatcher = BuildDispatcher(queue, build_fn, poll_interval)
    dispatcher.start()
    return dispatcher
