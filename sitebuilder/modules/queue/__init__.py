"""
Queue Module - Black Box Interface

Purpose: Admit builds under a cluster-wide concurrency cap, production first
Interface: enqueue_build(), dequeue_build(), complete_build(), remove_from_queue(),
           process_build_queue()
Hidden: Queue store layout, atomic slot claiming, dispatch loop supervision

Can be replaced with RabbitMQ, Kafka, or any store offering the QueueStore operations.
"""

from .dispatcher import BuildDispatcher, process_build_queue
from .queue import BuildQueue
from .store import InMemoryQueueStore, QueueStore, RedisQueueStore

__all__ = [
    "BuildDispatcher",
    "BuildQueue",
    "InMemoryQueueStore",
    "QueueStore",
    "RedisQueueStore",
    "process_build_queue",
]
