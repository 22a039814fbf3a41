"""
Sensor Frames and Frame Sources

A frame is one sensor capture: a point cloud plus the rigid pose that maps
it into the common reference frame. Frame sources hand out successive
frames to the accumulator:
- QueueFrameSource: live stream fed from a sensor callback thread
- SequenceFrameSource: fixed list of frames (offline replay)
- DirectoryFrameSource: point cloud files on disk with optional poses
"""
import copy
import logging
import queue
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

import numpy as np
import open3d as o3d

logger = logging.getLogger(__name__)

POINT_CLOUD_SUFFIXES = ('.pcd', '.ply')
POSE_SUFFIX = '.pose.txt'


@dataclass(frozen=True)
class Frame:
    """
    A single sensor capture

    Attributes:
        cloud: Points in the sensor frame
        pose: 4x4 rigid transform from the sensor frame to the reference frame
        stamp: Acquisition time in seconds
    """
    cloud: o3d.geometry.PointCloud
    pose: np.ndarray = field(default_factory=lambda: np.identity(4))
    stamp: float = 0.0

    def __post_init__(self):
        pose = np.asarray(self.pose, dtype=float)
        if pose.shape != (4, 4):
            raise ValueError(f"Frame pose must be 4x4, got shape {pose.shape}")
        object.__setattr__(self, 'pose', pose)

    @property
    def point_count(self) -> int:
        return len(self.cloud.points)

    def aligned_cloud(self) -> o3d.geometry.PointCloud:
        """Return a copy of the cloud expressed in the reference frame"""
        aligned = copy.deepcopy(self.cloud)
        aligned.transform(self.pose)
        return aligned


class FrameSource(ABC):
    """
    Source of successive frames with exclusive, scoped access

    Callers use ``with source.stream():`` so the underlying sensor handle is
    released on every exit path.
    """

    def acquire(self) -> None:
        """Take exclusive access to the stream"""

    def release(self) -> None:
        """Give the stream back"""

    @property
    @abstractmethod
    def exhausted(self) -> bool:
        """True once no further frames can ever arrive"""

    @abstractmethod
    def next_frame(self, timeout: float) -> Optional[Frame]:
        """
        Wait up to ``timeout`` seconds for the next frame

        Returns:
            The next frame, or None when none arrived in time or the stream
            is exhausted
        """

    @contextmanager
    def stream(self) -> Iterator["FrameSource"]:
        self.acquire()
        try:
            yield self
        finally:
            self.release()


class QueueFrameSource(FrameSource):
    """
    Live frame stream fed from a sensor callback

    Frames pushed while no run holds the source are dropped, and acquiring
    the source flushes anything stale, so a run only sees frames captured
    after it was triggered.
    """

    _END = object()

    def __init__(self, maxsize: int = 64):
        self._queue: "queue.Queue" = queue.Queue(maxsize=maxsize)
        self._lock = threading.Lock()
        self._active = False
        self._ended = False

    def push(self, frame: Frame) -> bool:
        """
        Offer a frame from the sensor callback

        Returns:
            True if the frame was queued for the active run
        """
        with self._lock:
            if not self._active or self._ended:
                return False
        try:
            self._queue.put_nowait(frame)
        except queue.Full:
            logger.warning("Frame queue full, dropping frame")
            return False
        return True

    def end(self) -> None:
        """Mark the stream as finished (sensor shut down)"""
        with self._lock:
            self._ended = True
        try:
            self._queue.put_nowait(self._END)
        except queue.Full:
            logger.warning("Frame queue full, end of stream is signalled through the exhausted flag only")

    @property
    def exhausted(self) -> bool:
        with self._lock:
            return self._ended

    def acquire(self) -> None:
        flushed = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if item is self._END:
                # Keep the end marker visible to the run
                self._queue.put_nowait(item)
                break
            flushed += 1
        with self._lock:
            self._active = True
        if flushed:
            logger.info(f"Flushed {flushed} stale frames before accumulation")

    def release(self) -> None:
        with self._lock:
            self._active = False

    def next_frame(self, timeout: float) -> Optional[Frame]:
        try:
            item = self._queue.get(timeout=max(timeout, 0.0))
        except queue.Empty:
            return None
        if item is self._END:
            self._queue.put_nowait(item)
            return None
        return item


class SequenceFrameSource(FrameSource):
    """Replays a fixed sequence of frames, one pass per acquisition"""

    def __init__(self, frames: Sequence[Frame]):
        self._frames = list(frames)
        self._position = 0

    @property
    def exhausted(self) -> bool:
        return self._position >= len(self._frames)

    def acquire(self) -> None:
        self._position = 0

    def next_frame(self, timeout: float) -> Optional[Frame]:
        if self.exhausted:
            return None
        frame = self._frames[self._position]
        self._position += 1
        return frame


class DirectoryFrameSource(SequenceFrameSource):
    """
    Frames stored as point cloud files in a directory

    Files are read in name order. A sibling ``<stem>.pose.txt`` holding a
    4x4 matrix gives the pose; without it the frame is already in the
    reference frame.
    """

    def __init__(self, directory: str):
        self.directory = Path(directory)
        if not self.directory.is_dir():
            raise FileNotFoundError(f"Frame directory not found: {self.directory}")
        super().__init__([])

    def frame_paths(self) -> List[Path]:
        return sorted(
            p for p in self.directory.iterdir()
            if p.suffix.lower() in POINT_CLOUD_SUFFIXES
        )

    def load_frame(self, path: Path) -> Frame:
        cloud = o3d.io.read_point_cloud(str(path))
        if len(cloud.points) == 0:
            raise ValueError(f"No points in frame file {path}")

        pose_path = path.with_name(path.stem + POSE_SUFFIX)
        pose = np.loadtxt(pose_path) if pose_path.exists() else np.identity(4)

        logger.info(f"Loaded frame {path.name} with {len(cloud.points)} points")
        return Frame(cloud=cloud, pose=pose, stamp=path.stat().st_mtime)

    def acquire(self) -> None:
        self._frames = [self.load_frame(p) for p in self.frame_paths()]
        super().acquire()

    def release(self) -> None:
        self._frames = []


def make_cloud(points: np.ndarray, normals: Optional[np.ndarray] = None) -> o3d.geometry.PointCloud:
    """Wrap an [N, 3] array (and optional normals) in an Open3D point cloud"""
    pcd = o3d.geometry.PointCloud()
    pcd.points = o3d.utility.Vector3dVector(np.asarray(points, dtype=np.float64).reshape(-1, 3))
    if normals is not None:
        pcd.normals = o3d.utility.Vector3dVector(np.asarray(normals, dtype=np.float64).reshape(-1, 3))
    return pcd
