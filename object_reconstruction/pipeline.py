"""
Main Pipeline Orchestration Module

Chains the reconstruction steps into one run:
1. Point cloud accumulation
2. Plane removal and object candidate extraction
3. Per candidate, concurrently: meshing, occlusion detection, repair
4. Reduction of per-candidate results into the run outcome
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from tqdm import tqdm

from . import checkpoint
from .accumulator import AccumulatedCloud, PointCloudAccumulator
from .candidate_extraction import CandidateExtractor, ExtractionResult, ObjectCandidate
from .checkpoint import CheckpointWriter
from .config import PipelineConfig, RepairMode
from .errors import (
    DegenerateCandidate,
    InsufficientFrames,
    PipelineBusy,
    ReconstructionError,
    RunTimeout,
    UnrepairableOcclusion,
)
from .frames import FrameSource
from .mesh_builder import MeshBuilder
from .occlusion_repair import OcclusionRepairer
from .results import CandidateResult, CandidateStage, PipelineState, ReconstructionReport, reduce_outcome
from .visualization import VisualizationChannel, candidate_colors

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunContext:
    """
    Everything a stage needs from the run it belongs to

    Passed explicitly to every stage; stages share no other state.
    """
    config: PipelineConfig
    writer: CheckpointWriter
    channel: Optional[VisualizationChannel] = None
    deadline: Optional[float] = None

    def remaining(self) -> Optional[float]:
        """Seconds left before the run deadline, None without a deadline"""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def check_deadline(self, what: str) -> None:
        """
        Raises:
            RunTimeout: If the run deadline has passed
        """
        if self.expired:
            raise RunTimeout(f"Run deadline expired before {what}")


class ReconstructionPipeline:
    """
    Drives one reconstruction run at a time

    State machine:
        idle -> accumulating -> extracting -> per_candidate -> reducing
             -> success | no_candidates | failed

    Candidates are processed concurrently and independently; one
    candidate's failure is recorded on its result and never stops the
    others.
    """

    def __init__(
        self,
        source: FrameSource,
        config: Optional[PipelineConfig] = None,
        channel: Optional[VisualizationChannel] = None
    ):
        """
        Initialize the pipeline

        Args:
            source: Stream of sensor frames
            config: Pipeline configuration (or use defaults)
            channel: Optional visualization channel
        """
        self.config = config or PipelineConfig()
        self.source = source
        self.channel = channel

        # Initialize modules
        self.accumulator = PointCloudAccumulator(self.config, source)
        self.extractor = CandidateExtractor(self.config, channel)
        self.mesh_builder = MeshBuilder(self.config)
        self.repairer = OcclusionRepairer(self.config)

        self._run_lock = threading.Lock()

        logger.info(f"Pipeline initialized with repair_mode={self.config.repair_mode.value}, "
                    f"max_workers={self.config.max_workers}")

    @property
    def busy(self) -> bool:
        return self._run_lock.locked()

    def run(self, timeout: Optional[float] = None) -> ReconstructionReport:
        """
        Run the complete pipeline

        Args:
            timeout: Seconds after which the whole run is aborted

        Returns:
            ReconstructionReport with per-candidate results

        Raises:
            PipelineBusy: If another run is in flight
        """
        if not self._run_lock.acquire(blocking=False):
            raise PipelineBusy("A reconstruction run is already in progress")
        try:
            return self._run(timeout)
        finally:
            self._run_lock.release()

    def _run(self, timeout: Optional[float]) -> ReconstructionReport:
        trace = [PipelineState.IDLE]

        def transition(state: PipelineState) -> None:
            logger.info(f"Pipeline state: {trace[-1].value} -> {state.value}")
            trace.append(state)

        deadline = time.monotonic() + timeout if timeout is not None else None
        writer = CheckpointWriter.for_run(self.config.output_dir, enabled=self.config.save_intermediate)
        context = RunContext(config=self.config, writer=writer, channel=self.channel, deadline=deadline)

        logger.info("="*60)
        logger.info("OBJECT RECONSTRUCTION PIPELINE")
        logger.info("="*60)

        totals = {'frame_count': 0, 'accumulated_point_count': 0, 'planes_removed': 0}

        def finish(
            outcome: PipelineState,
            candidates: Optional[List[CandidateResult]] = None,
            reason: Optional[str] = None
        ) -> ReconstructionReport:
            transition(outcome)
            # Stragglers past the deadline must not write into a finished run
            writer.close()
            report = ReconstructionReport(
                timestamp=datetime.now().isoformat(),
                outcome=outcome,
                output_dir=str(writer.run_dir) if writer.enabled else None,
                candidates=candidates or [],
                state_trace=list(trace),
                artifacts=[str(p) for p in writer.artifacts],
                failure_reason=reason,
                **totals
            )
            if writer.enabled:
                report.save_json(str(writer.run_dir / "reconstruction_report.json"))
            self.log_summary(report)
            return report

        def timeout_reason() -> str:
            return f"Run timed out after {timeout:.1f}s"

        # Step 1: Accumulation
        transition(PipelineState.ACCUMULATING)
        try:
            accumulated = self.accumulate(context)
        except InsufficientFrames as e:
            logger.error(f"Accumulation failed: {e}")
            return finish(PipelineState.FAILED, reason=str(e))
        except Exception as e:
            logger.error(f"Accumulation failed: {e}", exc_info=True)
            return finish(PipelineState.FAILED, reason=f"{type(e).__name__}: {e}")
        totals['frame_count'] = accumulated.frame_count
        totals['accumulated_point_count'] = accumulated.point_count
        if context.expired:
            return finish(PipelineState.FAILED, reason=timeout_reason())

        # Step 2: Candidate extraction
        transition(PipelineState.EXTRACTING)
        try:
            extraction = self.extract(context, accumulated)
        except Exception as e:
            logger.error(f"Candidate extraction failed: {e}", exc_info=True)
            return finish(PipelineState.FAILED, reason=f"{type(e).__name__}: {e}")
        totals['planes_removed'] = len(extraction.planes)
        if context.expired:
            logger.error("Run deadline expired during candidate extraction")
            return finish(PipelineState.FAILED, reason=timeout_reason())
        if not extraction.candidates:
            logger.warning("No object candidates found")
            return finish(PipelineState.NO_CANDIDATES, reason="No object candidates found")

        # Step 3: Per-candidate processing
        transition(PipelineState.PER_CANDIDATE)
        results, timed_out = self.process_candidates(context, extraction.candidates)
        if timed_out:
            return finish(PipelineState.FAILED, results, reason=timeout_reason())

        # Step 4: Reduction
        transition(PipelineState.REDUCING)
        outcome = reduce_outcome(results)
        reason = "Every candidate failed" if outcome == PipelineState.FAILED else None
        return finish(outcome, results, reason=reason)

    def accumulate(self, context: RunContext) -> AccumulatedCloud:
        """Accumulate frames, bounded by the run deadline"""
        timeout = context.config.accumulation.timeout
        remaining = context.remaining()
        if remaining is not None:
            timeout = min(timeout, remaining)

        accumulated = self.accumulator.accumulate(context.config.accumulation.frame_count, timeout)
        context.writer.write_cloud(*checkpoint.ACCUMULATED_CLOUD, accumulated.cloud)
        return accumulated

    def extract(self, context: RunContext, accumulated: AccumulatedCloud) -> ExtractionResult:
        """Remove support planes, cluster candidates and publish them"""
        extraction = self.extractor.extract(accumulated.cloud)

        debug_label = checkpoint.DEBUGGING[1] + "-Plane"
        for k, plane in enumerate(extraction.planes):
            plane_cloud = accumulated.cloud.select_by_index(plane.inlier_indices.tolist())
            context.writer.write_cloud(checkpoint.DEBUGGING[0], debug_label, plane_cloud, index=k)

        candidates = extraction.candidates
        if candidates:
            self.extractor.publish_candidates(candidates)
            context.writer.write_clouds(
                *checkpoint.OBJECT_CANDIDATES,
                [c.cloud for c in candidates],
                colors=candidate_colors(len(candidates))
            )
            for info in self.extractor.get_candidate_info(candidates):
                logger.info(f"Candidate {info['candidate_index']}: {info['num_points']} points, "
                            f"size={[round(s, 3) for s in info['bounding_box']['size']]}")

        return extraction

    def process_candidate(self, context: RunContext, candidate: ObjectCandidate) -> CandidateResult:
        """
        Mesh, detect and repair one candidate

        Never raises: every failure ends up on the returned result.
        """
        index = candidate.index
        mode = context.config.repair_mode
        stage = CandidateStage.MESHING
        mesh = occlusion_map = None

        def result(terminal: CandidateStage, repaired_mesh=None, error: Optional[Exception] = None) -> CandidateResult:
            return CandidateResult(
                candidate_index=index,
                point_count=candidate.point_count,
                stage=terminal,
                mesh=mesh,
                occlusion_map=occlusion_map,
                repaired_mesh=repaired_mesh,
                error_kind=getattr(error, 'kind', type(error).__name__) if error is not None else None,
                error_message=str(error) if error is not None else None,
                failed_at=stage if error is not None else None
            )

        try:
            context.check_deadline(f"meshing candidate {index}")
            context.writer.write_cloud(*checkpoint.OBJECT_CANDIDATE, candidate.cloud, index=index)

            mesh = self.mesh_builder.build_mesh(candidate)
            context.check_deadline(f"saving the mesh of candidate {index}")
            if not mesh.has_triangles():
                raise DegenerateCandidate(
                    index, candidate.point_count,
                    f"below the minimum of {context.config.mesh.min_points} points"
                )
            context.writer.write_mesh(*checkpoint.MESH, mesh, index=index)
            if context.channel is not None:
                context.channel.publish_mesh(index, mesh)

            if mode == RepairMode.SKIP:
                return result(CandidateStage.MESH_BUILT)

            stage = CandidateStage.DETECTING_OCCLUSION
            context.check_deadline(f"occlusion detection of candidate {index}")
            occlusion_map = self.repairer.detect_occlusion(mesh)
            context.writer.write_json(*checkpoint.OCCLUSION_MAP, occlusion_map.to_dict(), index=index)

            if mode == RepairMode.DETECT_ONLY:
                return result(CandidateStage.MESH_BUILT)

            stage = CandidateStage.REPAIRING
            context.check_deadline(f"repairing candidate {index}")
            repaired = self.repairer.repair(mesh, occlusion_map)
            context.check_deadline(f"saving the repaired mesh of candidate {index}")
            context.writer.write_mesh(*checkpoint.REPAIRED_MESH, repaired, index=index)
            if context.channel is not None:
                context.channel.publish_mesh(index, repaired, repaired=True)
            return result(CandidateStage.REPAIRED, repaired_mesh=repaired)

        except UnrepairableOcclusion as e:
            logger.warning(f"Candidate {index}: {e}; keeping the unrepaired mesh")
            return result(CandidateStage.MESH_BUILT, error=e)
        except ReconstructionError as e:
            logger.warning(f"Candidate {index} failed while {stage.value}: {e}")
            return result(CandidateStage.CANDIDATE_FAILED, error=e)
        except Exception as e:
            logger.error(f"Candidate {index} failed while {stage.value}: {e}", exc_info=True)
            return result(CandidateStage.CANDIDATE_FAILED, error=e)

    def process_candidates(
        self,
        context: RunContext,
        candidates: List[ObjectCandidate]
    ) -> Tuple[List[CandidateResult], bool]:
        """
        Process all candidates on a bounded worker pool

        Returns:
            Tuple of (results ordered by candidate index, whether the run
            deadline expired)
        """
        workers = min(context.config.max_workers, len(candidates))
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="candidate")
        futures = {executor.submit(self.process_candidate, context, c): c for c in candidates}

        results: Dict[int, CandidateResult] = {}
        timed_out = False
        try:
            progress = tqdm(
                as_completed(futures, timeout=context.remaining()),
                total=len(futures),
                desc="Candidates",
                disable=not context.config.verbose
            )
            for future in progress:
                result = future.result()
                results[result.candidate_index] = result
        except FuturesTimeout:
            timed_out = True
            logger.error(f"Run deadline expired with {len(candidates) - len(results)} candidates unfinished")
        finally:
            executor.shutdown(wait=not timed_out, cancel_futures=True)

        for candidate in candidates:
            if candidate.index not in results:
                results[candidate.index] = CandidateResult(
                    candidate_index=candidate.index,
                    point_count=candidate.point_count,
                    stage=CandidateStage.CANDIDATE_FAILED,
                    error_kind="Timeout",
                    error_message="Run deadline expired before the candidate finished"
                )

        return [results[i] for i in sorted(results)], timed_out

    @staticmethod
    def log_summary(report: ReconstructionReport) -> None:
        succeeded = [c for c in report.candidates if c.succeeded]
        logger.info("="*60)
        logger.info(f"PIPELINE COMPLETE: {report.outcome.value}")
        logger.info(f"{len(succeeded)}/{len(report.candidates)} candidates usable")
        for result in report.candidates:
            if result.error_kind:
                logger.info(f"  Candidate {result.candidate_index} [{result.stage.value}]: "
                            f"{result.error_kind}: {result.error_message}")
        if report.output_dir:
            logger.info(f"Artifacts saved to: {report.output_dir}")
        logger.info("="*60)


def run_pipeline(
    source: FrameSource,
    config: Optional[PipelineConfig] = None,
    timeout: Optional[float] = None
) -> ReconstructionReport:
    """
    Convenience function to run the pipeline once

    Args:
        source: Stream of sensor frames
        config: Pipeline configuration (or use defaults)
        timeout: Seconds after which the run is aborted

    Returns:
        ReconstructionReport
    """
    pipeline = ReconstructionPipeline(source, config)
    return pipeline.run(timeout=timeout)
