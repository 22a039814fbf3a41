"""
Reconstruction Results Module

Per-candidate results and the run report that reduces them.
"""
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

import open3d as o3d

from .mesh_builder import mesh_summary
from .occlusion_repair import OcclusionMap

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    """States of one pipeline run"""
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    EXTRACTING = "extracting"
    PER_CANDIDATE = "per_candidate"
    REDUCING = "reducing"
    SUCCESS = "success"
    NO_CANDIDATES = "no_candidates"
    FAILED = "failed"


class CandidateStage(str, Enum):
    """Stages of one candidate; the last three are terminal"""
    MESHING = "meshing"
    DETECTING_OCCLUSION = "detecting_occlusion"
    REPAIRING = "repairing"
    MESH_BUILT = "mesh_built"
    REPAIRED = "repaired"
    CANDIDATE_FAILED = "candidate_failed"


@dataclass(frozen=True)
class CandidateResult:
    """
    Outcome of processing one object candidate

    Error detail is kept even when the candidate reached a usable terminal
    stage (e.g. a mesh was built but a hole could not be repaired).
    """
    candidate_index: int
    point_count: int
    stage: CandidateStage
    mesh: Optional[o3d.geometry.TriangleMesh] = None
    occlusion_map: Optional[OcclusionMap] = None
    repaired_mesh: Optional[o3d.geometry.TriangleMesh] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    failed_at: Optional[CandidateStage] = None

    @property
    def succeeded(self) -> bool:
        return self.stage in (CandidateStage.MESH_BUILT, CandidateStage.REPAIRED)

    def to_dict(self) -> Dict:
        """Convert to dictionary (mesh geometry is summarized, not embedded)"""
        return {
            'candidate_index': self.candidate_index,
            'point_count': self.point_count,
            'stage': self.stage.value,
            'succeeded': self.succeeded,
            'mesh': mesh_summary(self.mesh),
            'occlusion_map': self.occlusion_map.to_dict() if self.occlusion_map is not None else None,
            'repaired_mesh': mesh_summary(self.repaired_mesh) if self.repaired_mesh is not None else None,
            'error_kind': self.error_kind,
            'error_message': self.error_message,
            'failed_at': self.failed_at.value if self.failed_at is not None else None
        }


def reduce_outcome(results: List[CandidateResult]) -> PipelineState:
    """
    Reduce per-candidate results to the run outcome

    No candidates at all is its own outcome; otherwise one usable candidate
    is enough for success.
    """
    if not results:
        return PipelineState.NO_CANDIDATES
    if any(r.succeeded for r in results):
        return PipelineState.SUCCESS
    return PipelineState.FAILED


@dataclass
class ReconstructionReport:
    """
    Complete record of one pipeline run
    """
    timestamp: str
    outcome: PipelineState
    output_dir: Optional[str] = None
    frame_count: int = 0
    accumulated_point_count: int = 0
    planes_removed: int = 0
    candidates: List[CandidateResult] = field(default_factory=list)
    state_trace: List[PipelineState] = field(default_factory=list)
    artifacts: List[str] = field(default_factory=list)
    failure_reason: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.outcome == PipelineState.SUCCESS

    @property
    def failed_candidates(self) -> List[CandidateResult]:
        return [c for c in self.candidates if not c.succeeded]

    def to_dict(self) -> Dict:
        """Convert to dictionary"""
        return {
            'timestamp': self.timestamp,
            'outcome': self.outcome.value,
            'success': self.success,
            'output_dir': self.output_dir,
            'frame_count': self.frame_count,
            'accumulated_point_count': self.accumulated_point_count,
            'planes_removed': self.planes_removed,
            'candidate_count': len(self.candidates),
            'candidates': [c.to_dict() for c in self.candidates],
            'state_trace': [s.value for s in self.state_trace],
            'artifacts': self.artifacts,
            'failure_reason': self.failure_reason
        }

    def save_json(self, path: str) -> None:
        """Save report to JSON file"""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.info(f"Saved reconstruction report to {path}")

    def print_summary(self) -> None:
        """Print human-readable summary"""
        print("\n" + "="*60)
        print("OBJECT RECONSTRUCTION REPORT")
        print("="*60)
        print(f"Timestamp: {self.timestamp}")
        print(f"Outcome: {self.outcome.value.upper()}")
        if self.failure_reason:
            print(f"Reason: {self.failure_reason}")
        print(f"Frames: {self.frame_count}")
        print(f"Accumulated Points: {self.accumulated_point_count:,}")
        print(f"Planes Removed: {self.planes_removed}")
        print(f"Candidates: {len(self.candidates)}")
        print("-"*60)

        for result in self.candidates:
            mesh = mesh_summary(result.mesh)
            print(f"\n  [{result.candidate_index}] {result.stage.value.upper()}")
            print(f"      Points: {result.point_count}")
            print(f"      Mesh: {mesh['vertices']} vertices, {mesh['faces']} faces")
            if result.occlusion_map is not None:
                print(f"      Occlusion holes: {len(result.occlusion_map.holes)}, "
                      f"object boundaries: {len(result.occlusion_map.boundaries)}")
            if result.repaired_mesh is not None:
                repaired = mesh_summary(result.repaired_mesh)
                print(f"      Repaired: {repaired['vertices']} vertices, {repaired['faces']} faces")
            if result.error_kind:
                print(f"      Error: {result.error_kind}: {result.error_message}")

        if self.output_dir:
            print(f"\nArtifacts: {self.output_dir}")
        print("="*60 + "\n")
