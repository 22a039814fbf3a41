"""
Object Reconstruction Trigger Service - Flask Backend

Exposes the pipeline through a parameterless trigger:
- POST /fix_occlusions -> {"success": bool}
- GET  /health         -> pipeline status
"""
import logging
from dataclasses import dataclass
from typing import Optional

from flask import Flask, jsonify
from flask_cors import CORS

from .errors import PipelineBusy
from .pipeline import ReconstructionPipeline
from .results import ReconstructionReport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TriggerResponse:
    """The only synchronous answer a trigger caller gets"""
    success: bool


class ReconstructionService:
    """
    Transport-agnostic trigger around one pipeline

    The full report of the most recent run stays available through
    ``last_report`` for logging and auditing.
    """

    def __init__(self, pipeline: ReconstructionPipeline, timeout: Optional[float] = None):
        self.pipeline = pipeline
        self.timeout = timeout
        self.last_report: Optional[ReconstructionReport] = None

    def fix_occlusions(self) -> TriggerResponse:
        """
        Run one reconstruction and collapse the outcome to a boolean

        Raises:
            PipelineBusy: If a run is already in flight
        """
        report = self.pipeline.run(timeout=self.timeout)
        self.last_report = report
        return TriggerResponse(success=report.success)


def create_app(service: ReconstructionService) -> Flask:
    """
    Build the Flask application for a service

    Args:
        service: Service that runs the pipeline

    Returns:
        Configured Flask app
    """
    app = Flask(__name__)
    CORS(app)

    @app.route('/fix_occlusions', methods=['POST'])
    def fix_occlusions():
        try:
            response = service.fix_occlusions()
        except PipelineBusy as e:
            logger.warning(f"Rejected trigger: {e}")
            return jsonify({'success': False, 'error': str(e)}), 409
        return jsonify({'success': response.success})

    @app.route('/health', methods=['GET'])
    def health():
        report = service.last_report
        return jsonify({
            'status': 'ok',
            'busy': service.pipeline.busy,
            'last_outcome': report.outcome.value if report is not None else None
        })

    return app
