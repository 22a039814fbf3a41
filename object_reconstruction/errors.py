"""Exceptions raised by the reconstruction pipeline."""
from __future__ import annotations


class ReconstructionError(Exception):
    """Base class for all pipeline errors."""

    #: Short name stored in per-candidate results and reports.
    kind = "ReconstructionError"


class InsufficientFrames(ReconstructionError):
    """The frame stream ended or timed out before enough frames arrived."""

    kind = "InsufficientFrames"

    def __init__(self, requested: int, received: int, reason: str = "timeout"):
        self.requested = requested
        self.received = received
        self.reason = reason
        super().__init__(
            f"Accumulated {received}/{requested} frames before {reason}"
        )


class DegenerateCandidate(ReconstructionError):
    """A candidate is too sparse or too flat to carry a surface."""

    kind = "DegenerateCandidate"

    def __init__(self, candidate_index: int, point_count: int, detail: str = ""):
        self.candidate_index = candidate_index
        self.point_count = point_count
        message = f"Candidate {candidate_index} ({point_count} points) cannot be meshed"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class UnrepairableOcclusion(ReconstructionError):
    """An occlusion hole could not be closed."""

    kind = "UnrepairableOcclusion"


class PipelineBusy(ReconstructionError):
    """A reconstruction run is already in flight."""

    kind = "PipelineBusy"


class RunTimeout(ReconstructionError):
    """The run deadline passed before the work finished."""

    kind = "Timeout"
