"""Object Reconstruction Package.

Reconstructs complete object meshes from accumulated, partially occluded
point-cloud scans: plane removal, candidate clustering, meshing and
occlusion hole repair.
"""
from .config import PipelineConfig, RepairMode, create_config, load_config
from .errors import (
    DegenerateCandidate,
    InsufficientFrames,
    PipelineBusy,
    ReconstructionError,
    RunTimeout,
    UnrepairableOcclusion,
)
from .frames import Frame, QueueFrameSource, SequenceFrameSource, DirectoryFrameSource
from .pipeline import ReconstructionPipeline, run_pipeline
from .results import CandidateResult, CandidateStage, PipelineState, ReconstructionReport
from .service import ReconstructionService, TriggerResponse

__all__ = [
    "PipelineConfig",
    "RepairMode",
    "create_config",
    "load_config",
    "ReconstructionError",
    "InsufficientFrames",
    "DegenerateCandidate",
    "UnrepairableOcclusion",
    "PipelineBusy",
    "RunTimeout",
    "Frame",
    "QueueFrameSource",
    "SequenceFrameSource",
    "DirectoryFrameSource",
    "ReconstructionPipeline",
    "run_pipeline",
    "CandidateResult",
    "CandidateStage",
    "PipelineState",
    "ReconstructionReport",
    "ReconstructionService",
    "TriggerResponse",
]
__version__ = "1.0.0"
