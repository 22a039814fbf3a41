"""
Configuration for the Object Reconstruction Pipeline

Contains all configurable parameters including:
- Frame accumulation (frame count, timeout, de-duplication)
- Planar support removal (RANSAC thresholds)
- Euclidean clustering of object candidates
- Surface meshing and occlusion detection/repair
"""
import json
from dataclasses import dataclass, field, fields, is_dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union


class RepairMode(str, Enum):
    """Which occlusion stages run after meshing"""
    SKIP = "skip"
    DETECT_ONLY = "detect_only"
    DETECT_AND_REPAIR = "detect_and_repair"


@dataclass
class AccumulationConfig:
    """Configuration for merging successive sensor frames"""
    frame_count: int = 1
    timeout: float = 10.0                # Seconds to wait for all frames
    voxel_size: Optional[float] = None   # If set, de-duplicate the merged cloud (m)


@dataclass
class PlaneRemovalConfig:
    """Configuration for iterative RANSAC plane removal"""
    distance_threshold: float = 0.01   # Inlier distance to the plane (m)
    ransac_n: int = 3
    num_iterations: int = 1000
    min_inlier_ratio: float = 0.2      # Fraction of the accumulated cloud
    max_planes: int = 3
    random_seed: Optional[int] = None


@dataclass
class ClusteringConfig:
    """Configuration for Euclidean cluster extraction"""
    cluster_tolerance: float = 0.02    # Max gap between neighbouring points (m)
    min_cluster_size: int = 50
    max_cluster_size: int = 25000


@dataclass
class MeshConfig:
    """Configuration for greedy local-projection triangulation"""
    min_points: int = 30
    normal_k: int = 20                 # Neighbours for normal estimation
    triangulation_k: int = 12          # Neighbourhood projected per point
    min_votes: int = 2                 # Local triangulations that must agree
    max_edge_factor: float = 2.5       # Max edge length / mean neighbour spacing
    viewpoint: Optional[List[float]] = None  # None orients normals away from the centroid


@dataclass
class OcclusionConfig:
    """Configuration for occlusion hole classification and filling"""
    max_hole_perimeter: float = 0.3           # Longer loops are object boundary (m)
    max_normal_deviation_deg: float = 45.0    # Curvature continuity along a loop
    ring_count: int = 1                       # Interior rings added per filled hole


@dataclass
class PipelineConfig:
    """Master configuration for the entire pipeline"""
    accumulation: AccumulationConfig = field(default_factory=AccumulationConfig)
    plane_removal: PlaneRemovalConfig = field(default_factory=PlaneRemovalConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    mesh: MeshConfig = field(default_factory=MeshConfig)
    occlusion: OcclusionConfig = field(default_factory=OcclusionConfig)

    repair_mode: RepairMode = RepairMode.DETECT_AND_REPAIR
    max_workers: int = 4

    # Output settings
    output_dir: str = "results"
    save_intermediate: bool = True  # Write checkpoint clouds for offline inspection
    verbose: bool = True

    def __post_init__(self):
        self.repair_mode = RepairMode(self.repair_mode)
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {self.max_workers}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineConfig":
        """
        Build a configuration from a nested dictionary

        Unknown keys raise ValueError so typos in config files surface early.
        """
        return _build(cls, data)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dictionary"""
        return _dump(self)


def _build(cls, data: Dict[str, Any]):
    known = {f.name: f for f in fields(cls)}
    unknown = set(data) - set(known)
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} keys: {sorted(unknown)}")

    kwargs = {}
    for name, value in data.items():
        factory = known[name].default_factory
        if isinstance(value, dict) and is_dataclass(factory):
            kwargs[name] = _build(factory, value)
        else:
            kwargs[name] = value
    return cls(**kwargs)


def _dump(obj) -> Dict[str, Any]:
    result = {}
    for f in fields(obj):
        value = getattr(obj, f.name)
        if is_dataclass(value):
            value = _dump(value)
        elif isinstance(value, Enum):
            value = value.value
        result[f.name] = value
    return result


def get_default_config() -> PipelineConfig:
    """Get default pipeline configuration"""
    return PipelineConfig()


def load_config(path: Union[str, Path]) -> PipelineConfig:
    """
    Load a pipeline configuration from a JSON file

    Args:
        path: Path to a JSON document mirroring PipelineConfig

    Returns:
        Configured PipelineConfig instance
    """
    with open(path, 'r') as f:
        return PipelineConfig.from_dict(json.load(f))


def create_config(
    output_dir: str = "results",
    frame_count: int = 1,
    repair_mode: Union[RepairMode, str] = RepairMode.DETECT_AND_REPAIR,
    **kwargs
) -> PipelineConfig:
    """
    Create a custom pipeline configuration

    Args:
        output_dir: Directory that receives one sub-directory per run
        frame_count: Number of frames to accumulate per run
        repair_mode: Which occlusion stages to run
        **kwargs: Additional top-level PipelineConfig overrides

    Returns:
        Configured PipelineConfig instance
    """
    config = PipelineConfig(output_dir=output_dir, repair_mode=repair_mode, **kwargs)
    config.accumulation.frame_count = frame_count
    return config
