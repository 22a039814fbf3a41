"""Synthetic scenes shared by the test suite."""
import numpy as np
import open3d as o3d
import trimesh

from object_reconstruction.config import PipelineConfig
from object_reconstruction.frames import make_cloud
from object_reconstruction.occlusion_repair import from_trimesh


def plane_grid(size=1.0, step=0.05, z=0.0):
    """Square grid of points on the plane z = const"""
    axis = np.arange(-size / 2, size / 2 + 1e-9, step)
    xx, yy = np.meshgrid(axis, axis)
    return np.column_stack([xx.ravel(), yy.ravel(), np.full(xx.size, z)])


def fibonacci_sphere(n=300, radius=0.05, center=(0.0, 0.0, 0.2)):
    """Evenly spread points on a sphere"""
    i = np.arange(n) + 0.5
    phi = np.arccos(1 - 2 * i / n)
    theta = np.pi * (1 + 5 ** 0.5) * i
    points = np.column_stack([
        np.cos(theta) * np.sin(phi),
        np.sin(theta) * np.sin(phi),
        np.cos(phi)
    ])
    return points * radius + np.asarray(center)


def scene_cloud(*parts) -> o3d.geometry.PointCloud:
    return make_cloud(np.vstack(parts))


def icosphere_mesh(subdivisions=2, radius=0.05) -> o3d.geometry.TriangleMesh:
    return from_trimesh(trimesh.creation.icosphere(subdivisions=subdivisions, radius=radius))


def remove_vertex_star(mesh: o3d.geometry.TriangleMesh, vertex: int) -> o3d.geometry.TriangleMesh:
    """Drop every face touching ``vertex``, leaving a hole bounded by its link"""
    faces = np.asarray(mesh.triangles)
    keep = ~np.any(faces == vertex, axis=1)
    holed = o3d.geometry.TriangleMesh()
    holed.vertices = o3d.utility.Vector3dVector(np.asarray(mesh.vertices))
    holed.triangles = o3d.utility.Vector3iVector(faces[keep])
    return holed


def flat_sheet(size=1.0, cells=4) -> o3d.geometry.TriangleMesh:
    """Open square sheet; its outer rim is a true boundary"""
    axis = np.linspace(0.0, size, cells + 1)
    xx, yy = np.meshgrid(axis, axis)
    vertices = np.column_stack([xx.ravel(), yy.ravel(), np.zeros(xx.size)])
    faces = []
    for row in range(cells):
        for col in range(cells):
            a = row * (cells + 1) + col
            b, c, d = a + 1, a + cells + 1, a + cells + 2
            faces.append((a, b, d))
            faces.append((a, d, c))
    mesh = o3d.geometry.TriangleMesh()
    mesh.vertices = o3d.utility.Vector3dVector(vertices)
    mesh.triangles = o3d.utility.Vector3iVector(np.asarray(faces, dtype=np.int32))
    return mesh


def scene_config(output_dir, **overrides) -> PipelineConfig:
    """Configuration tuned to the synthetic scenes"""
    config = PipelineConfig(output_dir=str(output_dir), verbose=False, max_workers=2, **overrides)
    config.accumulation.timeout = 2.0
    config.plane_removal.distance_threshold = 0.005
    config.plane_removal.num_iterations = 500
    config.plane_removal.max_planes = 2
    config.plane_removal.random_seed = 42
    config.clustering.cluster_tolerance = 0.03
    config.clustering.min_cluster_size = 20
    config.clustering.max_cluster_size = 5000
    config.mesh.min_points = 30
    config.occlusion.max_hole_perimeter = 0.5
    return config
