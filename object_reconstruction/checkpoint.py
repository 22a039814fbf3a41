"""
Checkpoint Artifact Module

Writes the intermediate clouds and meshes of a run under a per-run
directory, named ``<stage>-<label>[-<index>]``:

    00-Debugging-Plane-<k>.pcd
    01-AccumulatedPointCloud.pcd
    02-ObjectCandidates.pcd
    03-ObjectCandidate-<i>.pcd
    04-Mesh-<i>.ply
    05-OcclusionMap-<i>.json
    06-RepairedMesh-<i>.ply

Point clouds are written as binary PCD. Per-candidate names are unique, so
candidate workers can write concurrently.
"""
import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Union

import numpy as np
import open3d as o3d

logger = logging.getLogger(__name__)

DEBUGGING = (0, "Debugging")
ACCUMULATED_CLOUD = (1, "AccumulatedPointCloud")
OBJECT_CANDIDATES = (2, "ObjectCandidates")
OBJECT_CANDIDATE = (3, "ObjectCandidate")
MESH = (4, "Mesh")
OCCLUSION_MAP = (5, "OcclusionMap")
REPAIRED_MESH = (6, "RepairedMesh")


def artifact_name(stage: int, label: str, index: Optional[Union[int, str]] = None) -> str:
    """Deterministic artifact stem, e.g. ``03-ObjectCandidate-2``"""
    name = f"{stage:02d}-{label}"
    if index is not None:
        name = f"{name}-{index}"
    return name


def read_point_cloud(path: Union[str, Path]) -> o3d.geometry.PointCloud:
    """
    Read a checkpoint cloud back from disk

    Raises:
        FileNotFoundError: If the file does not exist
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Checkpoint not found: {path}")
    return o3d.io.read_point_cloud(str(path))


class CheckpointWriter:
    """
    Writes checkpoint artifacts for one run

    Every written path is appended to ``artifacts``. Candidate workers write
    concurrently; once ``close()`` returns, every later write is refused so
    nothing lands in the run directory after the run has ended.
    """

    def __init__(self, run_dir: Union[str, Path], enabled: bool = True):
        self.run_dir = Path(run_dir)
        self.enabled = enabled
        self._cond = threading.Condition()
        self._in_flight = 0
        self._closed = False
        self._artifacts: List[Path] = []
        if self.enabled:
            self.run_dir.mkdir(parents=True, exist_ok=True)

    @classmethod
    def for_run(cls, output_dir: Union[str, Path], enabled: bool = True) -> "CheckpointWriter":
        """Create a writer for a fresh, timestamped run directory"""
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
        run_dir = Path(output_dir) / stamp
        suffix = 1
        while run_dir.exists():
            run_dir = Path(output_dir) / f"{stamp}-{suffix}"
            suffix += 1
        return cls(run_dir, enabled=enabled)

    @property
    def artifacts(self) -> List[Path]:
        with self._cond:
            return list(self._artifacts)

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def close(self) -> None:
        """Refuse further writes and wait for the ones in progress"""
        with self._cond:
            self._closed = True
            while self._in_flight:
                self._cond.wait()

    def path_for(self, stage: int, label: str, index=None, suffix: str = ".pcd") -> Path:
        return self.run_dir / f"{artifact_name(stage, label, index)}{suffix}"

    @contextmanager
    def _slot(self, path: Path) -> Iterator[bool]:
        """Reserve a write; yields False when the writer is disabled or closed"""
        with self._cond:
            if not self.enabled or self._closed:
                if self._closed:
                    logger.debug(f"Writer closed, skipping checkpoint {path.name}")
                allowed = False
            else:
                self._in_flight += 1
                allowed = True
        if not allowed:
            yield False
            return

        written = False
        try:
            yield True
            written = True
        finally:
            with self._cond:
                self._in_flight -= 1
                if written:
                    self._artifacts.append(path)
                self._cond.notify_all()
        logger.debug(f"Wrote checkpoint {path.name}")

    def write_cloud(
        self,
        stage: int,
        label: str,
        cloud: o3d.geometry.PointCloud,
        index=None
    ) -> Optional[Path]:
        """
        Write one point cloud as binary PCD

        Returns:
            Written path, or None when checkpoints are disabled, the writer is
            closed or the cloud has no points (PCD cannot hold an empty cloud)

        Raises:
            OSError: If Open3D fails to write the file
        """
        path = self.path_for(stage, label, index, ".pcd")
        if len(cloud.points) == 0:
            logger.info(f"Skipping checkpoint {path.name}: cloud has no points")
            return None
        with self._slot(path) as allowed:
            if not allowed:
                return None
            if not o3d.io.write_point_cloud(str(path), cloud, write_ascii=False):
                raise OSError(f"Failed to write point cloud {path}")
        return path

    def write_clouds(
        self,
        stage: int,
        label: str,
        clouds: Sequence[o3d.geometry.PointCloud],
        colors: Optional[np.ndarray] = None
    ) -> Optional[Path]:
        """
        Write several clouds as one file, optionally one colour per cloud

        Args:
            stage: Stage number
            label: Stage label
            clouds: Clouds to merge
            colors: RGB colours [len(clouds), 3] in [0, 1]
        """
        if not self.enabled:
            return None
        merged = o3d.geometry.PointCloud()
        for i, cloud in enumerate(clouds):
            part = o3d.geometry.PointCloud(cloud)
            if colors is not None:
                part.paint_uniform_color(np.asarray(colors[i], dtype=float))
            merged += part
        return self.write_cloud(stage, label, merged)

    def write_mesh(
        self,
        stage: int,
        label: str,
        mesh: o3d.geometry.TriangleMesh,
        index=None
    ) -> Optional[Path]:
        """Write a triangle mesh as PLY"""
        path = self.path_for(stage, label, index, ".ply")
        with self._slot(path) as allowed:
            if not allowed:
                return None
            if not o3d.io.write_triangle_mesh(str(path), mesh):
                raise OSError(f"Failed to write mesh {path}")
        return path

    def write_json(self, stage: Optional[int], label: str, data: Dict, index=None) -> Optional[Path]:
        """Write a JSON document; ``stage=None`` writes ``<label>.json``"""
        if stage is None:
            path = self.run_dir / f"{label}.json"
        else:
            path = self.path_for(stage, label, index, ".json")
        with self._slot(path) as allowed:
            if not allowed:
                return None
            with open(path, 'w') as f:
                json.dump(data, f, indent=2)
        return path
