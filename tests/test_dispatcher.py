"""Tests for the build dispatch loop."""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from sitebuilder.errors import BuildFailure, InfrastructureError
from sitebuilder.modules.api.models import BuildPriority
from sitebuilder.modules.queue import BuildDispatcher, BuildQueue, InMemoryQueueStore, process_build_queue


async def wait_until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


@pytest.fixture
def queue():
    return BuildQueue(InMemoryQueueStore(), concurrency=2, job_ttl=60)


@pytest.mark.asyncio
async def test_runs_queued_builds_and_releases_slots(queue):
    seen = []

    async def build(job):
        seen.append(job.deployment_id)

    await queue.enqueue_build("d1", "p")
    await queue.enqueue_build("d2", "p")

    dispatcher = process_build_queue(queue, build, poll_interval=0.05)
    await wait_until(lambda: len(seen) == 2 and not dispatcher.in_flight)

    assert seen == ["d1", "d2"]
    assert await queue.get_active_build_count() == 0

    dispatcher.stop()
    await dispatcher.wait()
    assert dispatcher.running is False


@pytest.mark.asyncio
async def test_respects_concurrency_limit(queue):
    release = asyncio.Event()
    started = []

    async def build(job):
        started.append(job.deployment_id)
        await release.wait()

    for name in ("d1", "d2", "d3"):
        await queue.enqueue_build(name, "p")

    dispatcher = process_build_queue(queue, build, poll_interval=0.05)
    await wait_until(lambda: len(started) == 2)
    await asyncio.sleep(0.1)

    assert started == ["d1", "d2"]
    assert await queue.get_active_build_count() == 2

    release.set()
    await wait_until(lambda: len(started) == 3)

    dispatcher.stop()
    await dispatcher.cancel_in_flight()
    await dispatcher.wait()
    assert await queue.get_active_build_count() == 0


@pytest.mark.asyncio
async def test_production_build_overtakes_queued_preview():
    queue = BuildQueue(InMemoryQueueStore(), concurrency=1, job_ttl=60)
    events = []

    async def build(job):
        events.append(f"start {job.deployment_id}")
        await asyncio.sleep(0.05)
        events.append(f"end {job.deployment_id}")

    await queue.enqueue_build("d2", "p1", BuildPriority.LOW)
    await queue.enqueue_build("d1", "p1", BuildPriority.HIGH)

    dispatcher = process_build_queue(queue, build, poll_interval=0.01)
    await wait_until(lambda: len(events) == 4)

    assert events == ["start d1", "end d1", "start d2", "end d2"]

    dispatcher.stop()
    await dispatcher.wait()


@pytest.mark.asyncio
async def test_build_errors_do_not_stop_the_loop(queue):
    seen = []

    async def build(job):
        seen.append(job.deployment_id)
        if job.deployment_id == "bad":
            raise BuildFailure("boom")
        if job.deployment_id == "worse":
            raise RuntimeError("unexpected")

    for name in ("bad", "worse", "good"):
        await queue.enqueue_build(name, "p")

    dispatcher = process_build_queue(queue, build, poll_interval=0.05)
    await wait_until(lambda: len(seen) == 3 and not dispatcher.in_flight)

    assert dispatcher.running is True
    assert await queue.get_active_build_count() == 0

    dispatcher.stop()
    await dispatcher.wait()


@pytest.mark.asyncio
async def test_infrastructure_error_stops_loop(queue):
    async def build(job):
        raise InfrastructureError("object store down")

    await queue.enqueue_build("d1", "p")

    dispatcher = BuildDispatcher(queue, build, poll_interval=0.05)
    dispatcher.start()

    with pytest.raises(InfrastructureError):
        await asyncio.wait_for(dispatcher.wait(), timeout=2)

    assert isinstance(dispatcher.failure, InfrastructureError)
    assert await queue.get_active_build_count() == 0


@pytest.mark.asyncio
async def test_queue_outage_propagates(queue):
    async def broken_dequeue():
        raise InfrastructureError("redis unavailable")

    queue.dequeue_build = broken_dequeue

    async def build(job):
        pass

    dispatcher = process_build_queue(queue, build, poll_interval=0.05)

    with pytest.raises(InfrastructureError):
        await asyncio.wait_for(dispatcher.wait(), timeout=2)


@pytest.mark.asyncio
async def test_cancel_in_flight_releases_slots(queue):
    started = asyncio.Event()

    async def build(job):
        started.set()
        await asyncio.sleep(60)

    await queue.enqueue_build("d1", "p")
    dispatcher = process_build_queue(queue, build, poll_interval=0.05)
    await asyncio.wait_for(started.wait(), timeout=2)

    dispatcher.stop()
    await dispatcher.cancel_in_flight()
    await dispatcher.wait()

    assert dispatcher.in_flight == {}
    assert await queue.get_active_build_count() == 0
