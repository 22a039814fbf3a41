"""
Step 3: Surface Meshing Module

Turns one object candidate cloud into a triangle mesh:
- Estimates per-point normals from the k nearest neighbours
- Greedy local projection triangulation over unorganized points
"""
import copy
import logging
from collections import Counter
from typing import Optional, Tuple

import numpy as np
import open3d as o3d
from scipy.spatial import Delaunay, KDTree, QhullError

from .candidate_extraction import ObjectCandidate
from .config import PipelineConfig
from .errors import DegenerateCandidate

logger = logging.getLogger(__name__)


def empty_mesh() -> o3d.geometry.TriangleMesh:
    """Mesh with no vertices and no faces"""
    return o3d.geometry.TriangleMesh()


def tangent_basis(normal: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Two unit vectors spanning the plane orthogonal to ``normal``"""
    helper = np.array([1.0, 0.0, 0.0]) if abs(normal[0]) < 0.9 else np.array([0.0, 1.0, 0.0])
    u = np.cross(normal, helper)
    u /= np.linalg.norm(u)
    v = np.cross(normal, u)
    return u, v


class MeshBuilder:
    """
    Builds a surface mesh from an object candidate

    Every point's neighbourhood is projected onto the point's tangent plane
    and triangulated with a 2D Delaunay triangulation. Only triangles that
    touch the centre point are proposed, and a triangle is accepted once
    ``min_votes`` neighbourhoods have proposed it. Overlong edges are
    dropped so separate surface sheets are not bridged.
    """

    def __init__(self, config: PipelineConfig):
        """
        Initialize the mesh builder

        Args:
            config: Pipeline configuration
        """
        self.config = config
        self.mesh_config = config.mesh

    def estimate_normals(self, pcd: o3d.geometry.PointCloud) -> o3d.geometry.PointCloud:
        """
        Estimate oriented normals on a copy of the cloud

        Normals face the configured viewpoint, or point away from the cloud
        centroid when no viewpoint is set.

        Args:
            pcd: Input point cloud

        Returns:
            Point cloud with normals
        """
        result = copy.deepcopy(pcd)
        k = self.mesh_config.normal_k
        result.estimate_normals(search_param=o3d.geometry.KDTreeSearchParamKNN(knn=k))

        viewpoint = self.mesh_config.viewpoint
        if viewpoint is not None:
            result.orient_normals_towards_camera_location(
                camera_location=np.asarray(viewpoint, dtype=float)
            )
        else:
            centroid = np.asarray(result.points).mean(axis=0)
            result.orient_normals_towards_camera_location(camera_location=centroid)
            result.normals = o3d.utility.Vector3dVector(-np.asarray(result.normals))

        return result

    def triangulate(self, points: np.ndarray, normals: np.ndarray) -> np.ndarray:
        """
        Greedy local projection triangulation

        Args:
            points: Point coordinates [N, 3]
            normals: Unit normals [N, 3]

        Returns:
            Triangle vertex indices [F, 3], wound to agree with the normals
        """
        n = len(points)
        if n < 3:
            return np.empty((0, 3), dtype=int)

        k = min(max(self.mesh_config.triangulation_k, 3), n)
        tree = KDTree(points)
        distances, neighbours = tree.query(points, k=k)

        spacing = float(np.mean(distances[:, 1]))
        if spacing <= 0:
            return np.empty((0, 3), dtype=int)
        max_edge = self.mesh_config.max_edge_factor * spacing

        votes = Counter()
        for i in range(n):
            idx = neighbours[i]
            if idx[0] != i:
                idx = np.concatenate(([i], idx[idx != i]))[:k]

            u, v = tangent_basis(normals[i])
            local = points[idx] - points[i]
            uv = np.column_stack((local @ u, local @ v))

            try:
                triangulation = Delaunay(uv)
            except (QhullError, ValueError):
                continue

            for simplex in triangulation.simplices:
                if 0 in simplex:
                    votes[tuple(sorted(idx[simplex]))] += 1

        if not votes:
            return np.empty((0, 3), dtype=int)

        faces = np.array(list(votes.keys()), dtype=int)
        counts = np.array(list(votes.values()), dtype=int)

        a, b, c = points[faces[:, 0]], points[faces[:, 1]], points[faces[:, 2]]
        longest = np.max(np.stack([
            np.linalg.norm(b - a, axis=1),
            np.linalg.norm(c - b, axis=1),
            np.linalg.norm(a - c, axis=1)
        ]), axis=0)
        short_enough = longest <= max_edge

        agreed = short_enough & (counts >= self.mesh_config.min_votes)
        if np.any(agreed):
            faces = faces[agreed]
        else:
            logger.debug("No triangle reached the vote threshold, using single-vote triangles")
            faces = faces[short_enough]

        return self.orient_faces(points, normals, faces)

    @staticmethod
    def orient_faces(points: np.ndarray, normals: np.ndarray, faces: np.ndarray) -> np.ndarray:
        """Flip triangles whose winding disagrees with their vertex normals"""
        if len(faces) == 0:
            return faces
        a, b, c = points[faces[:, 0]], points[faces[:, 1]], points[faces[:, 2]]
        face_normals = np.cross(b - a, c - a)
        reference = normals[faces].sum(axis=1)
        flip = np.einsum('ij,ij->i', face_normals, reference) < 0

        oriented = faces.copy()
        oriented[flip, 1], oriented[flip, 2] = faces[flip, 2], faces[flip, 1]
        return oriented

    def build_mesh(self, candidate: ObjectCandidate) -> o3d.geometry.TriangleMesh:
        """
        Build a triangle mesh for one candidate

        Args:
            candidate: Object candidate to mesh

        Returns:
            Triangle mesh; empty when the candidate has fewer than
            ``min_points`` points

        Raises:
            DegenerateCandidate: If a large enough candidate still yields no
                triangles (e.g. all points collinear)
        """
        n_points = candidate.point_count
        if n_points < self.mesh_config.min_points:
            logger.info(f"Candidate {candidate.index} has {n_points} points "
                        f"(< {self.mesh_config.min_points}), returning empty mesh")
            return empty_mesh()

        pcd = self.estimate_normals(candidate.cloud)
        points = np.asarray(pcd.points)
        normals = np.asarray(pcd.normals)

        faces = self.triangulate(points, normals)
        if len(faces) == 0:
            raise DegenerateCandidate(candidate.index, n_points, "no triangles could be formed")

        mesh = o3d.geometry.TriangleMesh()
        mesh.vertices = o3d.utility.Vector3dVector(points)
        mesh.vertex_normals = o3d.utility.Vector3dVector(normals)
        mesh.triangles = o3d.utility.Vector3iVector(faces.astype(np.int32))

        mesh.remove_duplicated_triangles()
        mesh.remove_degenerate_triangles()
        mesh.remove_non_manifold_edges()
        mesh.remove_unreferenced_vertices()

        if not mesh.has_triangles():
            raise DegenerateCandidate(candidate.index, n_points, "all triangles were degenerate")

        logger.info(f"Candidate {candidate.index}: meshed {n_points} points into "
                    f"{len(mesh.triangles)} triangles")
        return mesh


def mesh_summary(mesh: Optional[o3d.geometry.TriangleMesh]) -> dict:
    """Vertex and face counts of a mesh (None for an absent mesh)"""
    if mesh is None:
        return {'vertices': 0, 'faces': 0}
    return {'vertices': len(mesh.vertices), 'faces': len(mesh.triangles)}
