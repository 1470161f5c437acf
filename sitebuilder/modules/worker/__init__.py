"""
Worker Module - Black Box Interface

Purpose: Drive one deployment from BUILDING to READY, ERROR or CANCELLED
Interface: PipelineWorker.run(job), PipelineWorker.cancel(deployment_id)
Hidden: Step sequencing, failure recovery, cleanup ordering

run() is the build function handed to the queue's dispatch loop.
"""

from .pipeline import PipelineWorker, format_bytes

__all__ = ["PipelineWorker", "format_bytes"]
