"""
Step 1: Point Cloud Accumulation Module

Merges a bounded number of successive sensor frames into one cloud in the
common reference frame.
"""
import logging
import time
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import open3d as o3d

from .config import PipelineConfig
from .errors import InsufficientFrames
from .frames import FrameSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccumulatedCloud:
    """
    Pose-aligned union of frames

    Attributes:
        cloud: Merged points in the reference frame
        frame_point_counts: Point count of every contributing frame, in order
    """
    cloud: o3d.geometry.PointCloud
    frame_point_counts: Tuple[int, ...]

    @property
    def frame_count(self) -> int:
        return len(self.frame_point_counts)

    @property
    def point_count(self) -> int:
        return len(self.cloud.points)

    @property
    def points(self) -> np.ndarray:
        return np.asarray(self.cloud.points)


def validate_frame_count(frame_count) -> int:
    """Reject anything that is not a positive integer"""
    if isinstance(frame_count, bool) or not isinstance(frame_count, (int, np.integer)):
        raise ValueError(f"frame_count must be a positive integer, got {frame_count!r}")
    if frame_count < 1:
        raise ValueError(f"frame_count must be a positive integer, got {frame_count}")
    return int(frame_count)


class PointCloudAccumulator:
    """
    Collects successive frames from a frame source

    The source is held only for the duration of one accumulate() call and
    released on success, timeout, or error.
    """

    def __init__(self, config: PipelineConfig, source: FrameSource):
        """
        Initialize the accumulator

        Args:
            config: Pipeline configuration
            source: Stream of sensor frames
        """
        self.config = config
        self.accumulation_config = config.accumulation
        self.source = source

    def accumulate(
        self,
        frame_count: Optional[int] = None,
        timeout: Optional[float] = None
    ) -> AccumulatedCloud:
        """
        Accumulate frames into one cloud

        Args:
            frame_count: Number of frames to merge (default: from config)
            timeout: Seconds to wait for all frames (default: from config)

        Returns:
            AccumulatedCloud in the reference frame

        Raises:
            ValueError: If frame_count is not a positive integer
            InsufficientFrames: If the stream ends or times out first
        """
        if frame_count is None:
            frame_count = self.accumulation_config.frame_count
        frame_count = validate_frame_count(frame_count)
        timeout = self.accumulation_config.timeout if timeout is None else timeout

        logger.info(f"Accumulating {frame_count} frames (timeout={timeout:.1f}s)")

        merged = o3d.geometry.PointCloud()
        counts = []
        deadline = time.monotonic() + timeout

        with self.source.stream() as stream:
            while len(counts) < frame_count:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise InsufficientFrames(frame_count, len(counts), "timeout")

                frame = stream.next_frame(remaining)
                if frame is None:
                    if stream.exhausted:
                        raise InsufficientFrames(frame_count, len(counts), "end of stream")
                    continue

                merged += frame.aligned_cloud()
                counts.append(frame.point_count)
                logger.info(f"Frame {len(counts)}/{frame_count}: {frame.point_count} points")

        total = len(merged.points)
        voxel_size = self.accumulation_config.voxel_size
        if voxel_size:
            merged = merged.voxel_down_sample(voxel_size)
            logger.info(f"De-duplicated from {total} to {len(merged.points)} points (voxel={voxel_size})")

        logger.info(f"Accumulated cloud has {len(merged.points)} points from {len(counts)} frames")
        return AccumulatedCloud(cloud=merged, frame_point_counts=tuple(counts))
