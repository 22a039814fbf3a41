"""
Unit Tests for Plane Removal and Candidate Extraction

Covers:
- Plane-only scenes yield no candidates
- Candidates never contain removed plane points
- Candidates are pairwise disjoint and ordered by size
"""
import tempfile
import unittest
from unittest.mock import Mock

import numpy as np

from object_reconstruction.candidate_extraction import CandidateExtractor
from tests.synthetic import fibonacci_sphere, plane_grid, scene_cloud, scene_config


class TestCandidateExtractor(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.config = scene_config(self.tmp.name)
        self.extractor = CandidateExtractor(self.config)

    def tearDown(self):
        self.tmp.cleanup()

    def test_plane_only_scene_has_no_candidates(self):
        result = self.extractor.extract(scene_cloud(plane_grid()))

        self.assertEqual(result.candidates, [])
        self.assertEqual(len(result.planes), 1)
        self.assertEqual(result.planes[0].inlier_count, len(plane_grid()))

    def test_object_on_plane(self):
        plane = plane_grid()
        cloud = scene_cloud(plane, fibonacci_sphere())

        result = self.extractor.extract(cloud)

        self.assertEqual(len(result.candidates), 1)
        candidate = result.candidates[0]
        self.assertEqual(candidate.index, 0)
        self.assertEqual(candidate.point_count, 300)
        np.testing.assert_array_equal(candidate.point_indices, np.arange(len(plane), len(plane) + 300))
        self.assertEqual(len(np.intersect1d(candidate.point_indices, result.removed_indices)), 0)
        np.testing.assert_allclose(candidate.points, np.asarray(cloud.points)[candidate.point_indices])

    def test_candidates_are_disjoint_and_ordered_by_size(self):
        cloud = scene_cloud(
            plane_grid(),
            fibonacci_sphere(n=200, center=(0.3, 0.0, 0.2)),
            fibonacci_sphere(n=300, center=(-0.3, 0.0, 0.2))
        )

        candidates = self.extractor.extract_candidates(cloud)

        self.assertEqual([c.point_count for c in candidates], [300, 200])
        self.assertEqual([c.index for c in candidates], [0, 1])
        self.assertEqual(len(np.intersect1d(candidates[0].point_indices, candidates[1].point_indices)), 0)
        self.assertLess(candidates[0].points[:, 0].max(), 0.0)

    def test_cluster_size_bounds(self):
        self.config.clustering.min_cluster_size = 250
        cloud = scene_cloud(
            plane_grid(),
            fibonacci_sphere(n=200, center=(0.3, 0.0, 0.2)),
            fibonacci_sphere(n=300, center=(-0.3, 0.0, 0.2))
        )

        candidates = self.extractor.extract_candidates(cloud)

        self.assertEqual([c.point_count for c in candidates], [300])

    def test_small_planes_are_kept(self):
        self.config.plane_removal.min_inlier_ratio = 0.9
        cloud = scene_cloud(plane_grid(), fibonacci_sphere())

        remaining, planes = self.extractor.remove_planes(cloud)

        self.assertEqual(planes, [])
        self.assertEqual(len(remaining), len(cloud.points))

    def test_candidate_info(self):
        candidates = self.extractor.extract_candidates(scene_cloud(plane_grid(), fibonacci_sphere()))
        info = self.extractor.get_candidate_info(candidates)[0]

        self.assertEqual(info['num_points'], 300)
        np.testing.assert_allclose(info['center_of_mass'], [0.0, 0.0, 0.2], atol=1e-3)
        np.testing.assert_allclose(info['bounding_box']['size'], [0.1, 0.1, 0.1], atol=5e-3)

    def test_publish_without_channel_is_noop(self):
        candidates = self.extractor.extract_candidates(scene_cloud(plane_grid(), fibonacci_sphere()))
        self.extractor.publish_candidates(candidates)

        channel = Mock()
        CandidateExtractor(self.config, channel).publish_candidates(candidates)
        channel.publish_candidates.assert_called_once_with(candidates)


if __name__ == '__main__':
    unittest.main()
