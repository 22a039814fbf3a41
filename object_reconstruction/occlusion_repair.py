"""
Step 4: Occlusion Detection and Repair Module

Finds mesh holes left by missing sensor coverage and fills them:
- Boundary edges (edges with exactly one face) are chained into loops
- Small, smoothly curved closed loops are classified as occlusion holes
- Holes are filled by interpolating a height field fitted around the loop
"""
import copy
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Set, Tuple

import numpy as np
import open3d as o3d
import trimesh

from .config import PipelineConfig
from .errors import UnrepairableOcclusion
from .mesh_builder import tangent_basis

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BoundaryLoop:
    """
    A connected chain of boundary edges

    Attributes:
        vertices: Vertex indices, ordered along the chain when closed
        closed: True if the chain is a simple cycle
        perimeter: Total edge length of the chain
        max_normal_deviation_deg: Largest angle between the normals of
            consecutive chain vertices
        is_occlusion: True if classified as a sensor-occlusion hole
    """
    vertices: Tuple[int, ...]
    closed: bool
    perimeter: float
    max_normal_deviation_deg: float
    is_occlusion: bool

    @property
    def edges(self) -> List[Tuple[int, int]]:
        """Sorted vertex pairs of a closed loop"""
        n = len(self.vertices)
        return [
            tuple(sorted((self.vertices[i], self.vertices[(i + 1) % n])))
            for i in range(n)
        ]

    def to_dict(self) -> Dict:
        return {
            'vertices': list(self.vertices),
            'closed': self.closed,
            'perimeter': self.perimeter,
            'max_normal_deviation_deg': self.max_normal_deviation_deg,
            'is_occlusion': self.is_occlusion
        }


@dataclass(frozen=True)
class OcclusionMap:
    """Boundary loops of a mesh split into occlusion holes and true boundary"""
    holes: Tuple[BoundaryLoop, ...] = ()
    boundaries: Tuple[BoundaryLoop, ...] = ()
    boundary_edge_count: int = 0

    @property
    def is_empty(self) -> bool:
        return len(self.holes) == 0

    def to_dict(self) -> Dict:
        return {
            'boundary_edge_count': self.boundary_edge_count,
            'holes': [h.to_dict() for h in self.holes],
            'boundaries': [b.to_dict() for b in self.boundaries]
        }


def to_trimesh(mesh: o3d.geometry.TriangleMesh) -> trimesh.Trimesh:
    """Wrap an Open3D mesh without merging or reordering vertices"""
    return trimesh.Trimesh(
        vertices=np.asarray(mesh.vertices),
        faces=np.asarray(mesh.triangles),
        process=False
    )


def from_trimesh(tm: trimesh.Trimesh) -> o3d.geometry.TriangleMesh:
    """Convert a trimesh mesh to Open3D, keeping vertex order"""
    mesh = o3d.geometry.TriangleMesh()
    mesh.vertices = o3d.utility.Vector3dVector(np.asarray(tm.vertices, dtype=np.float64))
    mesh.triangles = o3d.utility.Vector3iVector(np.asarray(tm.faces, dtype=np.int32))
    return mesh


def find_boundary_edges(tm: trimesh.Trimesh) -> np.ndarray:
    """Edges referenced by exactly one face, as sorted vertex pairs [E, 2]"""
    if len(tm.faces) == 0:
        return np.empty((0, 2), dtype=np.int64)
    edges = tm.edges_sorted
    single = trimesh.grouping.group_rows(edges, require_count=1)
    return edges[np.asarray(single, dtype=np.int64).reshape(-1)]


def chain_edges(edges: np.ndarray) -> List[Tuple[List[int], bool]]:
    """
    Group boundary edges into connected chains

    Returns:
        List of (vertices, closed). Vertices of a closed chain are in walk
        order starting at the smallest index; other chains are sorted.
    """
    adjacency: Dict[int, List[int]] = defaultdict(list)
    for a, b in edges:
        adjacency[int(a)].append(int(b))
        adjacency[int(b)].append(int(a))

    chains = []
    visited: Set[int] = set()
    for start in sorted(adjacency):
        if start in visited:
            continue

        component = []
        stack = [start]
        visited.add(start)
        while stack:
            vertex = stack.pop()
            component.append(vertex)
            for neighbour in adjacency[vertex]:
                if neighbour not in visited:
                    visited.add(neighbour)
                    stack.append(neighbour)

        n_edges = sum(len(adjacency[v]) for v in component) // 2
        simple_cycle = (
            len(component) >= 3
            and n_edges == len(component)
            and all(len(adjacency[v]) == 2 for v in component)
        )
        if not simple_cycle:
            chains.append((sorted(component), False))
            continue

        first = min(component)
        order = [first]
        previous, current = first, min(adjacency[first])
        while current != first:
            order.append(current)
            a, b = adjacency[current]
            previous, current = current, (b if a == previous else a)
        chains.append((order, True))

    return chains


class OcclusionRepairer:
    """
    Detects and fills occlusion holes in a candidate mesh

    Detection and repair are separate calls so a pipeline can run detection
    alone.
    """

    def __init__(self, config: PipelineConfig):
        """
        Initialize the repairer

        Args:
            config: Pipeline configuration
        """
        self.config = config
        self.occlusion_config = config.occlusion

    def classify_loop(
        self,
        vertices: List[int],
        closed: bool,
        edges: np.ndarray,
        points: np.ndarray,
        normals: np.ndarray
    ) -> BoundaryLoop:
        """
        Measure a boundary chain and decide whether it is an occlusion hole

        Args:
            vertices: Chain vertices (walk order when closed)
            closed: Whether the chain is a simple cycle
            edges: The chain's edges [E, 2]
            points: Mesh vertex positions
            normals: Mesh vertex normals

        Returns:
            Classified BoundaryLoop
        """
        perimeter = float(np.sum(np.linalg.norm(points[edges[:, 0]] - points[edges[:, 1]], axis=1)))

        a, b = normals[edges[:, 0]], normals[edges[:, 1]]
        cosines = np.einsum('ij,ij->i', a, b)
        lengths = np.linalg.norm(a, axis=1) * np.linalg.norm(b, axis=1)
        cosines = np.where(lengths > 0, cosines / np.maximum(lengths, 1e-12), -1.0)
        max_deviation = float(np.degrees(np.max(np.arccos(np.clip(cosines, -1.0, 1.0)))))

        is_occlusion = (
            closed
            and perimeter <= self.occlusion_config.max_hole_perimeter
            and max_deviation <= self.occlusion_config.max_normal_deviation_deg
        )

        return BoundaryLoop(
            vertices=tuple(vertices),
            closed=closed,
            perimeter=perimeter,
            max_normal_deviation_deg=max_deviation,
            is_occlusion=is_occlusion
        )

    def detect_occlusion(self, mesh: o3d.geometry.TriangleMesh) -> OcclusionMap:
        """
        Find boundary loops and flag the ones caused by missing coverage

        Args:
            mesh: Candidate mesh

        Returns:
            OcclusionMap; empty for empty or watertight meshes
        """
        if not mesh.has_triangles():
            return OcclusionMap()

        tm = to_trimesh(mesh)
        boundary = find_boundary_edges(tm)
        if len(boundary) == 0:
            logger.info("Mesh has no boundary edges")
            return OcclusionMap()

        points = np.asarray(tm.vertices)
        normals = np.asarray(tm.vertex_normals)

        edge_lookup = defaultdict(list)
        for edge in boundary:
            edge_lookup[int(edge[0])].append(edge)

        holes, boundaries = [], []
        for vertices, closed in chain_edges(boundary):
            members = set(vertices)
            chain = np.array([e for v in vertices for e in edge_lookup[v] if e[1] in members])
            loop = self.classify_loop(vertices, closed, chain, points, normals)
            (holes if loop.is_occlusion else boundaries).append(loop)

        logger.info(f"Found {len(boundary)} boundary edges in {len(holes) + len(boundaries)} loops: "
                    f"{len(holes)} occlusion holes, {len(boundaries)} object boundaries")

        return OcclusionMap(
            holes=tuple(holes),
            boundaries=tuple(boundaries),
            boundary_edge_count=len(boundary)
        )

    def fill_hole(
        self,
        loop: BoundaryLoop,
        points: np.ndarray,
        normals: np.ndarray,
        neighbours: List[List[int]],
        half_edges: Set[Tuple[int, int]],
        first_index: int
    ) -> Tuple[np.ndarray, List[Tuple[int, int, int]]]:
        """
        Patch one hole with rings interpolated from the surrounding surface

        A quadratic height field h(u, v) is fitted by least squares to the
        loop vertices and their one-ring neighbours, in a frame centred on
        the loop with its axis along the loop's average normal. Inner rings
        and a centre vertex are placed on that field and stitched to the
        loop.

        Args:
            loop: Closed occlusion loop
            points: Mesh vertex positions
            normals: Mesh vertex normals
            neighbours: Vertex adjacency of the mesh
            half_edges: Directed edges of the existing faces
            first_index: Index the first new vertex will receive

        Returns:
            Tuple of (new vertex positions [M, 3], new faces)
        """
        ring = np.array(loop.vertices)
        # Fill faces must run against the existing face on each loop edge
        if (int(ring[0]), int(ring[1])) in half_edges:
            ring = ring[::-1]

        if len(ring) == 3:
            return np.empty((0, 3)), [(int(ring[0]), int(ring[1]), int(ring[2]))]

        loop_points = points[ring]
        centre = loop_points.mean(axis=0)

        _, _, vt = np.linalg.svd(loop_points - centre)
        axis = vt[2]
        if np.dot(axis, normals[ring].sum(axis=0)) < 0:
            axis = -axis
        u, v = tangent_basis(axis)

        support = sorted(set(ring.tolist()).union(*(neighbours[i] for i in ring)))
        local = points[support] - centre
        su, sv, sh = local @ u, local @ v, local @ axis

        def design(uu, vv):
            uu, vv = np.atleast_1d(uu), np.atleast_1d(vv)
            if len(support) >= 6:
                return np.column_stack([np.ones_like(uu), uu, vv, uu * uu, uu * vv, vv * vv])
            return np.column_stack([np.ones_like(uu), uu, vv])

        coefficients, *_ = np.linalg.lstsq(design(su, sv), sh, rcond=None)

        def surface(uu, vv):
            heights = design(uu, vv) @ coefficients
            return (centre + np.outer(uu, u) + np.outer(vv, v) + np.outer(heights, axis))

        loop_local = loop_points - centre
        loop_u, loop_v = loop_local @ u, loop_local @ v

        ring_count = self.occlusion_config.ring_count
        new_points = []
        rings = [ring.tolist()]
        next_index = first_index
        for r in range(1, ring_count + 1):
            scale = 1.0 - r / (ring_count + 1)
            new_points.append(surface(loop_u * scale, loop_v * scale))
            rings.append(list(range(next_index, next_index + len(ring))))
            next_index += len(ring)

        new_points.append(surface(0.0, 0.0))
        centre_index = next_index

        m = len(ring)
        faces = []
        for outer, inner in zip(rings[:-1], rings[1:]):
            for i in range(m):
                j = (i + 1) % m
                faces.append((outer[i], outer[j], inner[j]))
                faces.append((outer[i], inner[j], inner[i]))
        innermost = rings[-1]
        for i in range(m):
            faces.append((innermost[i], innermost[(i + 1) % m], centre_index))

        return np.vstack(new_points), faces

    def repair(self, mesh: o3d.geometry.TriangleMesh, occlusion_map: OcclusionMap) -> o3d.geometry.TriangleMesh:
        """
        Fill every occlusion hole of a mesh

        The input mesh is left untouched. Loops classified as object
        boundary are not filled.

        Args:
            mesh: Candidate mesh
            occlusion_map: Result of detect_occlusion on the same mesh

        Returns:
            Repaired copy of the mesh

        Raises:
            UnrepairableOcclusion: If a hole could not be closed
        """
        if occlusion_map.is_empty:
            logger.info("No occlusion holes to repair")
            return copy.deepcopy(mesh)

        tm = to_trimesh(mesh)
        points = np.asarray(tm.vertices)
        normals = np.asarray(tm.vertex_normals)
        neighbours = tm.vertex_neighbors
        faces = np.asarray(tm.faces)
        half_edges = set(map(tuple, np.vstack([faces[:, [0, 1]], faces[:, [1, 2]], faces[:, [2, 0]]]).tolist()))

        all_points = [points]
        all_faces = [faces]
        next_index = len(points)
        for loop in occlusion_map.holes:
            if not loop.closed:
                raise UnrepairableOcclusion(f"Loop starting at vertex {loop.vertices[0]} is not closed")

            new_points, new_faces = self.fill_hole(loop, points, normals, neighbours, half_edges, next_index)
            if not np.all(np.isfinite(new_points)):
                raise UnrepairableOcclusion(
                    f"Interpolation diverged for hole with {len(loop.vertices)} vertices"
                )

            all_points.append(new_points)
            all_faces.append(np.asarray(new_faces, dtype=np.int64).reshape(-1, 3))
            next_index += len(new_points)

        repaired_tm = trimesh.Trimesh(
            vertices=np.vstack(all_points),
            faces=np.vstack(all_faces),
            process=False
        )

        remaining = {tuple(e) for e in find_boundary_edges(repaired_tm).tolist()}
        for loop in occlusion_map.holes:
            still_open = [e for e in loop.edges if e in remaining]
            if still_open:
                raise UnrepairableOcclusion(
                    f"Hole with {len(loop.vertices)} vertices still has {len(still_open)} boundary edges"
                )

        repaired = from_trimesh(repaired_tm)
        repaired.compute_vertex_normals()

        logger.info(f"Filled {len(occlusion_map.holes)} holes, added "
                    f"{len(repaired.vertices) - len(points)} vertices and "
                    f"{len(repaired.triangles) - len(faces)} faces")
        return repaired
