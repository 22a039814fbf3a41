"""
Unit Tests for Occlusion Detection and Repair

Covers:
- Watertight and empty meshes have empty occlusion maps
- Small closed holes are detected and filled watertight
- Large or sharply curved loops stay object boundary
- Repair leaves its input mesh untouched
"""
import tempfile
import unittest

import numpy as np

from object_reconstruction.errors import UnrepairableOcclusion
from object_reconstruction.mesh_builder import empty_mesh
from object_reconstruction.occlusion_repair import (
    BoundaryLoop,
    OcclusionMap,
    OcclusionRepairer,
    chain_edges,
    find_boundary_edges,
    to_trimesh,
)
from tests.synthetic import flat_sheet, icosphere_mesh, remove_vertex_star, scene_config


class TestBoundaryChains(unittest.TestCase):

    def test_triangle_loop_is_closed(self):
        chains = chain_edges(np.array([[0, 1], [1, 2], [0, 2]]))
        self.assertEqual(chains, [([0, 1, 2], True)])

    def test_open_chain_and_pinched_loops(self):
        open_chain = np.array([[0, 1], [1, 2]])
        self.assertEqual(chain_edges(open_chain), [([0, 1, 2], False)])

        # Two triangles sharing vertex 0
        bowtie = np.array([[0, 1], [1, 2], [0, 2], [0, 3], [3, 4], [0, 4]])
        self.assertEqual(chain_edges(bowtie), [([0, 1, 2, 3, 4], False)])


class TestOcclusionRepairer(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.config = scene_config(self.tmp.name)
        self.repairer = OcclusionRepairer(self.config)

    def tearDown(self):
        self.tmp.cleanup()

    def test_watertight_mesh_has_empty_map(self):
        occlusion_map = self.repairer.detect_occlusion(icosphere_mesh())

        self.assertTrue(occlusion_map.is_empty)
        self.assertEqual(occlusion_map.boundary_edge_count, 0)
        self.assertEqual(occlusion_map.boundaries, ())

    def test_empty_mesh_has_empty_map(self):
        self.assertTrue(self.repairer.detect_occlusion(empty_mesh()).is_empty)

    def test_small_hole_is_detected(self):
        holed = remove_vertex_star(icosphere_mesh(), 0)

        occlusion_map = self.repairer.detect_occlusion(holed)

        self.assertEqual(len(occlusion_map.holes), 1)
        self.assertEqual(occlusion_map.boundaries, ())
        hole = occlusion_map.holes[0]
        self.assertTrue(hole.closed)
        self.assertTrue(hole.is_occlusion)
        self.assertNotIn(0, hole.vertices)
        self.assertEqual(occlusion_map.boundary_edge_count, len(hole.vertices))
        self.assertLess(hole.perimeter, self.config.occlusion.max_hole_perimeter)

    def test_sharply_curved_loop_is_boundary(self):
        self.config.occlusion.max_normal_deviation_deg = 1.0
        occlusion_map = OcclusionRepairer(self.config).detect_occlusion(
            remove_vertex_star(icosphere_mesh(), 0)
        )

        self.assertTrue(occlusion_map.is_empty)
        self.assertEqual(len(occlusion_map.boundaries), 1)

    def test_open_sheet_rim_is_boundary(self):
        occlusion_map = self.repairer.detect_occlusion(flat_sheet())

        self.assertTrue(occlusion_map.is_empty)
        self.assertEqual(len(occlusion_map.boundaries), 1)
        rim = occlusion_map.boundaries[0]
        self.assertTrue(rim.closed)
        self.assertFalse(rim.is_occlusion)
        self.assertAlmostEqual(rim.perimeter, 4.0)

    def test_repair_closes_hole(self):
        holed = remove_vertex_star(icosphere_mesh(), 0)
        faces_before = np.asarray(holed.triangles).copy()
        occlusion_map = self.repairer.detect_occlusion(holed)
        ring_size = len(occlusion_map.holes[0].vertices)
        self.assertGreater(ring_size, 3)

        repaired = self.repairer.repair(holed, occlusion_map)

        self.assertEqual(len(find_boundary_edges(to_trimesh(repaired))), 0)
        self.assertTrue(self.repairer.detect_occlusion(repaired).is_empty)
        # One interior ring plus a centre vertex
        self.assertEqual(len(repaired.vertices), len(holed.vertices) + ring_size + 1)
        self.assertTrue(np.all(np.isfinite(np.asarray(repaired.vertices))))
        np.testing.assert_array_equal(np.asarray(holed.triangles), faces_before)

    def test_repaired_patch_follows_the_surface(self):
        holed = remove_vertex_star(icosphere_mesh(radius=0.05), 0)
        repaired = self.repairer.repair(holed, self.repairer.detect_occlusion(holed))

        added = np.asarray(repaired.vertices)[len(holed.vertices):]
        radii = np.linalg.norm(added, axis=1)
        np.testing.assert_allclose(radii, 0.05, atol=5e-3)

    def test_repair_fills_every_hole_and_keeps_orientation(self):
        holed = remove_vertex_star(remove_vertex_star(icosphere_mesh(), 0), 5)
        occlusion_map = self.repairer.detect_occlusion(holed)
        self.assertEqual(len(occlusion_map.holes), 2)

        repaired = to_trimesh(self.repairer.repair(holed, occlusion_map))
        repaired.remove_unreferenced_vertices()

        self.assertTrue(repaired.is_watertight)
        self.assertTrue(repaired.is_winding_consistent)
        self.assertGreater(repaired.volume, 0)

    def test_more_rings(self):
        self.config.occlusion.ring_count = 3
        holed = remove_vertex_star(icosphere_mesh(), 0)
        occlusion_map = self.repairer.detect_occlusion(holed)
        ring_size = len(occlusion_map.holes[0].vertices)

        repaired = self.repairer.repair(holed, occlusion_map)

        self.assertEqual(len(repaired.vertices), len(holed.vertices) + 3 * ring_size + 1)
        self.assertEqual(len(find_boundary_edges(to_trimesh(repaired))), 0)

    def test_repair_without_holes_returns_copy(self):
        sheet = flat_sheet()
        occlusion_map = self.repairer.detect_occlusion(sheet)

        repaired = self.repairer.repair(sheet, occlusion_map)

        self.assertIsNot(repaired, sheet)
        np.testing.assert_array_equal(np.asarray(repaired.triangles), np.asarray(sheet.triangles))

    def test_open_loop_is_unrepairable(self):
        loop = BoundaryLoop(vertices=(1, 2, 3), closed=False, perimeter=0.1,
                            max_normal_deviation_deg=0.0, is_occlusion=True)

        with self.assertRaises(UnrepairableOcclusion):
            self.repairer.repair(flat_sheet(), OcclusionMap(holes=(loop,), boundary_edge_count=2))

    def test_map_serializes(self):
        occlusion_map = self.repairer.detect_occlusion(remove_vertex_star(icosphere_mesh(), 0))
        data = occlusion_map.to_dict()

        self.assertEqual(len(data['holes']), 1)
        self.assertTrue(data['holes'][0]['is_occlusion'])
        self.assertIsInstance(data['holes'][0]['vertices'][0], int)


if __name__ == '__main__':
    unittest.main()
