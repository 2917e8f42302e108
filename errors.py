"""Infrastructure errors that halt a pipeline run."""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for failures that must stop the run."""


class CacheError(PipelineError):
    """Chunk cache could not be read or written."""


class CheckpointError(PipelineError):
    """Checkpoint file could not be read or written."""


class InvalidTransitionError(PipelineError):
    """Run controller was asked to move to a state it cannot reach."""
