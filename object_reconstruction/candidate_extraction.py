"""
Step 2: Object Candidate Extraction Module

Removes dominant planar support surfaces (tables, floors, shelves) and
clusters the remaining points into distinct object candidates.
"""
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional, Tuple

import numpy as np
import open3d as o3d
from sklearn.cluster import DBSCAN

from .config import PipelineConfig

if TYPE_CHECKING:
    from .visualization import VisualizationChannel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlaneModel:
    """
    A removed planar surface

    Attributes:
        coefficients: Plane (a, b, c, d) with ax + by + cz + d = 0
        inlier_indices: Indices into the accumulated cloud
    """
    coefficients: Tuple[float, float, float, float]
    inlier_indices: np.ndarray

    @property
    def inlier_count(self) -> int:
        return len(self.inlier_indices)


@dataclass(frozen=True)
class ObjectCandidate:
    """
    A segmented subset of points believed to belong to one object

    Attributes:
        index: Position in the ordered candidate list
        point_indices: Indices into the accumulated cloud claimed by this candidate
        cloud: The candidate's own points
    """
    index: int
    point_indices: np.ndarray
    cloud: o3d.geometry.PointCloud

    @property
    def point_count(self) -> int:
        return len(self.point_indices)

    @property
    def points(self) -> np.ndarray:
        return np.asarray(self.cloud.points)


@dataclass(frozen=True)
class ExtractionResult:
    """Everything the extractor derived from one accumulated cloud"""
    candidates: List[ObjectCandidate]
    planes: List[PlaneModel] = field(default_factory=list)
    remaining_indices: np.ndarray = field(default_factory=lambda: np.array([], dtype=int))

    @property
    def removed_indices(self) -> np.ndarray:
        if not self.planes:
            return np.array([], dtype=int)
        return np.concatenate([p.inlier_indices for p in self.planes])


class CandidateExtractor:
    """
    Extracts object candidates from an accumulated cloud

    Plane removal runs RANSAC repeatedly on what is left of the cloud. The
    remainder is clustered with DBSCAN using ``min_samples=1``, which makes
    every point a core point and turns DBSCAN into plain Euclidean cluster
    extraction: points closer than the tolerance end up in the same cluster
    and there is no noise label.
    """

    def __init__(self, config: PipelineConfig, channel: Optional["VisualizationChannel"] = None):
        """
        Initialize the extractor

        Args:
            config: Pipeline configuration
            channel: Optional visualization channel for publishing candidates
        """
        self.config = config
        self.channel = channel
        self.plane_config = config.plane_removal
        self.clustering_config = config.clustering

    def remove_planes(
        self,
        cloud: o3d.geometry.PointCloud
    ) -> Tuple[np.ndarray, List[PlaneModel]]:
        """
        Iteratively remove dominant planes

        A plane is removed while its inlier count is at least
        ``min_inlier_ratio`` of the full cloud size.

        Args:
            cloud: Accumulated point cloud

        Returns:
            Tuple of (indices of the points left, removed plane models)
        """
        total = len(cloud.points)
        remaining = np.arange(total)
        planes: List[PlaneModel] = []

        if self.plane_config.random_seed is not None:
            o3d.utility.random.seed(self.plane_config.random_seed)

        while len(planes) < self.plane_config.max_planes:
            if len(remaining) < self.plane_config.ransac_n:
                break

            subset = cloud.select_by_index(remaining.tolist())
            coefficients, inliers = subset.segment_plane(
                distance_threshold=self.plane_config.distance_threshold,
                ransac_n=self.plane_config.ransac_n,
                num_iterations=self.plane_config.num_iterations
            )
            inliers = np.asarray(inliers, dtype=int)
            ratio = len(inliers) / total

            if ratio < self.plane_config.min_inlier_ratio:
                logger.info(f"Best remaining plane has inlier ratio {ratio:.3f}, stopping plane removal")
                break

            a, b, c, d = (float(x) for x in coefficients)
            plane = PlaneModel(coefficients=(a, b, c, d), inlier_indices=remaining[inliers])
            planes.append(plane)

            mask = np.ones(len(remaining), dtype=bool)
            mask[inliers] = False
            remaining = remaining[mask]

            logger.info(f"Removed plane {len(planes)} [{a:.3f}, {b:.3f}, {c:.3f}, {d:.3f}] "
                        f"with {plane.inlier_count} inliers ({100 * ratio:.1f}%), "
                        f"{len(remaining)} points left")

        return remaining, planes

    def cluster(self, points: np.ndarray) -> np.ndarray:
        """
        Euclidean clustering of points

        Args:
            points: Point coordinates [N, 3]

        Returns:
            Cluster labels [N]
        """
        if len(points) == 0:
            return np.array([], dtype=int)

        tolerance = self.clustering_config.cluster_tolerance
        logger.info(f"Clustering {len(points)} points with tolerance={tolerance:.4f}")

        clustering = DBSCAN(eps=tolerance, min_samples=1, metric='euclidean')
        return clustering.fit_predict(points)

    def extract(self, cloud: o3d.geometry.PointCloud) -> ExtractionResult:
        """
        Run plane removal and clustering

        Args:
            cloud: Accumulated point cloud

        Returns:
            ExtractionResult with ordered candidates and removed planes
        """
        remaining, planes = self.remove_planes(cloud)
        if len(remaining) == 0:
            logger.info("No points left after plane removal")
            return ExtractionResult(candidates=[], planes=planes, remaining_indices=remaining)

        points = np.asarray(cloud.points)[remaining]
        labels = self.cluster(points)

        min_size = self.clustering_config.min_cluster_size
        max_size = self.clustering_config.max_cluster_size

        clusters = []
        for label in np.unique(labels):
            indices = remaining[labels == label]
            if min_size <= len(indices) <= max_size:
                clusters.append(np.sort(indices))
            else:
                logger.debug(f"Discarding cluster of {len(indices)} points")

        # Largest first, ties broken by the first point they claim
        clusters.sort(key=lambda idx: (-len(idx), int(idx[0])))

        candidates = [
            ObjectCandidate(
                index=i,
                point_indices=indices,
                cloud=cloud.select_by_index(indices.tolist())
            )
            for i, indices in enumerate(clusters)
        ]

        n_clusters = len(np.unique(labels))
        logger.info(f"Found {n_clusters} clusters, {len(candidates)} within size bounds "
                    f"[{min_size}, {max_size}]")

        return ExtractionResult(candidates=candidates, planes=planes, remaining_indices=remaining)

    def extract_candidates(self, cloud: o3d.geometry.PointCloud) -> List[ObjectCandidate]:
        """
        Extract object candidates ordered by descending size

        An empty list means no object was found; it is not an error.
        """
        return self.extract(cloud).candidates

    def get_candidate_info(self, candidates: List[ObjectCandidate]) -> List[dict]:
        """
        Summarize candidates for logs and reports

        Args:
            candidates: Extracted candidates

        Returns:
            List of dictionaries with candidate information
        """
        info = []
        for candidate in candidates:
            points = candidate.points
            bbox_min = np.min(points, axis=0)
            bbox_max = np.max(points, axis=0)
            info.append({
                'candidate_index': candidate.index,
                'num_points': candidate.point_count,
                'center_of_mass': np.mean(points, axis=0).tolist(),
                'bounding_box': {
                    'min': bbox_min.tolist(),
                    'max': bbox_max.tolist(),
                    'size': (bbox_max - bbox_min).tolist()
                }
            })
        return info

    def publish_candidates(self, candidates: List[ObjectCandidate]) -> None:
        """
        Hand candidates to the visualization channel without waiting

        Does nothing when no channel is attached.
        """
        if self.channel is None or not candidates:
            return
        self.channel.publish_candidates(candidates)
