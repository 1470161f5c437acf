"""
Error taxonomy for the build pipeline.

BuildFailure subclasses describe a defect in one build (bad config, failing
command, backend refusing the job, missing artifacts). They are recovered by
the worker into an ERROR status and never escape it.

InfrastructureError means the orchestration substrate itself (queue store,
object store) is degraded. It propagates to the dispatch loop's supervisor.
"""

from typing import List, Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class BuildFailure(PipelineError):
    """A single build failed; the deployment ends in ERROR."""

    step = "build"

    def __init__(self, message: str, tail: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.tail = tail or []


class ValidationError(BuildFailure):
    """Build configuration rejected before any subprocess ran."""

    step = "validate"

    def __init__(self, errors: List[str]):
        super().__init__("Build configuration rejected: " + "; ".join(errors))
        self.errors = list(errors)


class SandboxError(BuildFailure):
    """A sandboxed subprocess exited non-zero or was killed on timeout."""

    def __init__(self, step: str, message: str, tail: Optional[List[str]] = None):
        super().__init__(message, tail)
        self.step = step


class BackendError(BuildFailure):
    """Container runtime or cluster API failed to start execution."""

    step = "backend"


class VerificationError(BuildFailure):
    """Artifacts are absent after a reported-successful build."""

    step = "verify"


class InfrastructureError(PipelineError):
    """Queue store or object store unavailable."""
