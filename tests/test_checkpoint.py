"""
Unit Tests for Checkpoint Artifacts
"""
import json
import tempfile
import unittest
from pathlib import Path

import numpy as np

from object_reconstruction import checkpoint
from object_reconstruction.checkpoint import CheckpointWriter, artifact_name, read_point_cloud
from object_reconstruction.frames import make_cloud
from tests.synthetic import fibonacci_sphere, icosphere_mesh


class TestArtifactNames(unittest.TestCase):

    def test_names(self):
        self.assertEqual(artifact_name(*checkpoint.OBJECT_CANDIDATE, 2), "03-ObjectCandidate-2")
        self.assertEqual(artifact_name(*checkpoint.ACCUMULATED_CLOUD), "01-AccumulatedPointCloud")
        self.assertEqual(artifact_name(checkpoint.DEBUGGING[0], "Debugging-Plane", 0), "00-Debugging-Plane-0")


class TestCheckpointWriter(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.writer = CheckpointWriter(Path(self.tmp.name) / "run")

    def tearDown(self):
        self.tmp.cleanup()

    def test_cloud_round_trip(self):
        points = fibonacci_sphere()
        path = self.writer.write_cloud(*checkpoint.OBJECT_CANDIDATE, make_cloud(points), index=0)

        self.assertEqual(path.name, "03-ObjectCandidate-0.pcd")
        cloud = read_point_cloud(path)
        np.testing.assert_allclose(np.asarray(cloud.points), points, atol=1e-6)
        self.assertEqual(self.writer.artifacts, [path])

    def test_missing_checkpoint(self):
        with self.assertRaises(FileNotFoundError):
            read_point_cloud(Path(self.tmp.name) / "missing.pcd")

    def test_merged_clouds_are_coloured(self):
        clouds = [make_cloud(np.zeros((3, 3))), make_cloud(np.ones((2, 3)))]
        colors = np.array([[1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])

        path = self.writer.write_clouds(*checkpoint.OBJECT_CANDIDATES, clouds, colors=colors)

        cloud = read_point_cloud(path)
        self.assertEqual(len(cloud.points), 5)
        np.testing.assert_allclose(np.asarray(cloud.colors)[0], [1.0, 0.0, 0.0], atol=1e-2)
        np.testing.assert_allclose(np.asarray(cloud.colors)[-1], [0.0, 0.0, 1.0], atol=1e-2)
        # Inputs are not painted
        self.assertFalse(clouds[0].has_colors())

    def test_mesh_and_json(self):
        mesh_path = self.writer.write_mesh(*checkpoint.MESH, icosphere_mesh(), index=1)
        json_path = self.writer.write_json(*checkpoint.OCCLUSION_MAP, {'holes': []}, index=1)
        report_path = self.writer.write_json(None, "reconstruction_report", {'success': True})

        self.assertEqual(mesh_path.name, "04-Mesh-1.ply")
        self.assertTrue(mesh_path.exists())
        self.assertEqual(json_path.name, "05-OcclusionMap-1.json")
        self.assertEqual(json.loads(report_path.read_text()), {'success': True})
        self.assertEqual(len(self.writer.artifacts), 3)

    def test_disabled_writer_writes_nothing(self):
        run_dir = Path(self.tmp.name) / "disabled"
        writer = CheckpointWriter(run_dir, enabled=False)

        self.assertIsNone(writer.write_cloud(*checkpoint.ACCUMULATED_CLOUD, make_cloud(np.zeros((1, 3)))))
        self.assertIsNone(writer.write_json(None, "reconstruction_report", {}))
        self.assertFalse(run_dir.exists())
        self.assertEqual(writer.artifacts, [])

    def test_empty_cloud_is_skipped(self):
        path = self.writer.write_cloud(*checkpoint.ACCUMULATED_CLOUD, make_cloud(np.empty((0, 3))))

        self.assertIsNone(path)
        self.assertEqual(self.writer.artifacts, [])
        self.assertEqual(list(self.writer.run_dir.iterdir()), [])

    def test_closed_writer_refuses_writes(self):
        self.writer.write_cloud(*checkpoint.OBJECT_CANDIDATE, make_cloud(fibonacci_sphere()), index=0)
        self.writer.close()

        self.assertTrue(self.writer.closed)
        self.assertIsNone(self.writer.write_mesh(*checkpoint.MESH, icosphere_mesh(), index=0))
        self.assertIsNone(self.writer.write_json(*checkpoint.OCCLUSION_MAP, {}, index=0))
        self.assertEqual([p.name for p in self.writer.run_dir.iterdir()], ["03-ObjectCandidate-0.pcd"])
        self.assertEqual(len(self.writer.artifacts), 1)

    def test_each_run_gets_its_own_directory(self):
        first = CheckpointWriter.for_run(self.tmp.name)
        second = CheckpointWriter.for_run(self.tmp.name)
        self.assertNotEqual(first.run_dir, second.run_dir)
        self.assertTrue(first.run_dir.is_dir())


if __name__ == '__main__':
    unittest.main()
