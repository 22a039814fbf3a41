"""
Visualization Module

Fire-and-forget publishing of candidates and meshes to observers:
- ReconstructionObserver: interface for external displays
- PlotlyHtmlObserver: writes interactive HTML views
- VisualizationChannel: delivers to observers on a background worker
"""
import itertools
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import List, Optional, Sequence

import matplotlib
import numpy as np
import open3d as o3d
import plotly.graph_objects as go

from .candidate_extraction import ObjectCandidate

logger = logging.getLogger(__name__)


def candidate_colors(n: int) -> np.ndarray:
    """One RGB colour in [0, 1] per candidate from the tab20 colormap"""
    cmap = matplotlib.colormaps['tab20']
    return np.array([cmap(i % 20)[:3] for i in range(n)], dtype=float).reshape(-1, 3)


def _rgb(color: Sequence[float]) -> str:
    return f'rgb({int(color[0]*255)}, {int(color[1]*255)}, {int(color[2]*255)})'


class ReconstructionObserver:
    """
    Receives pipeline data for external display

    Methods are called from the visualization worker thread; the default
    implementations do nothing.
    """

    def on_candidates(self, candidates: List[ObjectCandidate]) -> None:
        pass

    def on_mesh(
        self,
        candidate_index: int,
        mesh: o3d.geometry.TriangleMesh,
        repaired: bool = False
    ) -> None:
        pass


class PlotlyHtmlObserver(ReconstructionObserver):
    """
    Writes interactive Plotly views into a directory

    Every published item gets its own sequence-numbered file, so nothing is
    overwritten when runs or candidates publish concurrently.
    """

    def __init__(self, output_dir: str, point_size: int = 2):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.point_size = point_size
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def _next_path(self, name: str) -> Path:
        with self._lock:
            sequence = next(self._counter)
        return self.output_dir / f"{sequence:04d}-{name}.html"

    def on_candidates(self, candidates: List[ObjectCandidate]) -> None:
        colors = candidate_colors(len(candidates))
        traces = []
        for candidate, color in zip(candidates, colors):
            points = candidate.points
            traces.append(go.Scatter3d(
                x=points[:, 0],
                y=points[:, 1],
                z=points[:, 2],
                mode='markers',
                marker=dict(size=self.point_size, color=_rgb(color)),
                name=f"Candidate {candidate.index} ({candidate.point_count} pts)"
            ))

        fig = go.Figure(data=traces)
        fig.update_layout(
            title='Object Candidates',
            scene=dict(aspectmode='data', xaxis_title='X (m)', yaxis_title='Y (m)', zaxis_title='Z (m)'),
            margin=dict(l=0, r=0, b=0, t=40)
        )
        path = self._next_path("candidates")
        fig.write_html(str(path))
        logger.info(f"Saved candidate visualization to {path}")

    def on_mesh(self, candidate_index: int, mesh: o3d.geometry.TriangleMesh, repaired: bool = False) -> None:
        vertices = np.asarray(mesh.vertices)
        triangles = np.asarray(mesh.triangles)
        if len(triangles) == 0:
            return

        color = candidate_colors(candidate_index + 1)[candidate_index]
        fig = go.Figure(data=[go.Mesh3d(
            x=vertices[:, 0],
            y=vertices[:, 1],
            z=vertices[:, 2],
            i=triangles[:, 0],
            j=triangles[:, 1],
            k=triangles[:, 2],
            color=_rgb(color),
            opacity=1.0,
            flatshading=True,
            name=f"Candidate {candidate_index}"
        )])
        kind = "repaired" if repaired else "mesh"
        fig.update_layout(
            title=f"Candidate {candidate_index} ({kind})",
            scene=dict(aspectmode='data'),
            margin=dict(l=0, r=0, b=0, t=40)
        )
        path = self._next_path(f"{kind}-{candidate_index}")
        fig.write_html(str(path))
        logger.info(f"Saved mesh visualization to {path}")


class VisualizationChannel:
    """
    Delivers data to observers without blocking the caller

    A single background worker serializes calls into observers. Observer
    errors are logged and never reach the pipeline.
    """

    def __init__(self, observers: Optional[Sequence[ReconstructionObserver]] = None):
        self.observers = list(observers or [])
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="visualization")

    def _submit(self, method: str, *args) -> List[Future]:
        futures = []
        for observer in self.observers:
            future = self._executor.submit(getattr(observer, method), *args)
            future.add_done_callback(self._log_failure)
            futures.append(future)
        return futures

    @staticmethod
    def _log_failure(future: Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.warning(f"Visualization observer failed: {error!r}")

    def publish_candidates(self, candidates: List[ObjectCandidate]) -> List[Future]:
        return self._submit('on_candidates', list(candidates))

    def publish_mesh(self, candidate_index: int, mesh: o3d.geometry.TriangleMesh, repaired: bool = False) -> List[Future]:
        return self._submit('on_mesh', candidate_index, mesh, repaired)

    def close(self, wait: bool = True) -> None:
        """Stop the worker, optionally waiting for queued deliveries"""
        self._executor.shutdown(wait=wait)
