"""
Unit Tests for the Trigger Service
"""
import unittest
from unittest.mock import Mock

from object_reconstruction.errors import PipelineBusy
from object_reconstruction.results import PipelineState, ReconstructionReport
from object_reconstruction.service import ReconstructionService, TriggerResponse, create_app


def make_report(outcome):
    return ReconstructionReport(timestamp="2026-01-01T00:00:00", outcome=outcome)


class TestReconstructionService(unittest.TestCase):

    def setUp(self):
        self.pipeline = Mock()
        self.pipeline.busy = False
        self.service = ReconstructionService(self.pipeline, timeout=30.0)
        self.client = create_app(self.service).test_client()

    def test_trigger_collapses_report_to_boolean(self):
        self.pipeline.run.return_value = make_report(PipelineState.SUCCESS)
        self.assertEqual(self.service.fix_occlusions(), TriggerResponse(success=True))
        self.pipeline.run.assert_called_once_with(timeout=30.0)

        self.pipeline.run.return_value = make_report(PipelineState.NO_CANDIDATES)
        self.assertEqual(self.service.fix_occlusions(), TriggerResponse(success=False))
        self.assertEqual(self.service.last_report.outcome, PipelineState.NO_CANDIDATES)

    def test_post_fix_occlusions(self):
        self.pipeline.run.return_value = make_report(PipelineState.SUCCESS)

        response = self.client.post('/fix_occlusions')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json(), {'success': True})

    def test_failed_run_is_still_answered(self):
        self.pipeline.run.return_value = make_report(PipelineState.FAILED)

        response = self.client.post('/fix_occlusions')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json(), {'success': False})

    def test_busy_pipeline_returns_conflict(self):
        self.pipeline.run.side_effect = PipelineBusy("A reconstruction run is already in progress")

        response = self.client.post('/fix_occlusions')

        self.assertEqual(response.status_code, 409)
        self.assertFalse(response.get_json()['success'])

    def test_health(self):
        data = self.client.get('/health').get_json()
        self.assertEqual(data, {'status': 'ok', 'busy': False, 'last_outcome': None})

        self.pipeline.run.return_value = make_report(PipelineState.SUCCESS)
        self.client.post('/fix_occlusions')
        self.assertEqual(self.client.get('/health').get_json()['last_outcome'], 'success')

    def test_trigger_takes_no_parameters(self):
        self.assertEqual(self.client.get('/fix_occlusions').status_code, 405)


if __name__ == '__main__':
    unittest.main()
