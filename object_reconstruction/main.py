"""
Object Reconstruction Pipeline - Command Line Entry Point

Runs one reconstruction over frames stored on disk, or serves the trigger
over HTTP:

    object-reconstruction --frames-dir scans/ --output results
    object-reconstruction --frames-dir scans/ --serve --port 5000
"""
import argparse
import logging
import sys

from .config import RepairMode, create_config, load_config
from .frames import DirectoryFrameSource
from .pipeline import ReconstructionPipeline
from .service import ReconstructionService, create_app
from .visualization import PlotlyHtmlObserver, VisualizationChannel

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Occluded Object Reconstruction Pipeline')
    parser.add_argument('--frames-dir', '-f', required=True,
                        help='Directory of PCD/PLY frames with optional <stem>.pose.txt poses')
    parser.add_argument('--output', '-o', default=None, help='Output directory (one sub-directory per run)')
    parser.add_argument('--config', '-c', default=None, help='JSON configuration file')
    parser.add_argument('--frame-count', '-n', type=int, default=None, help='Frames to accumulate')
    parser.add_argument('--repair-mode', choices=[m.value for m in RepairMode], default=None,
                        help='Occlusion stages to run after meshing')
    parser.add_argument('--workers', type=int, default=None, help='Concurrent candidate workers')
    parser.add_argument('--timeout', type=float, default=None, help='Abort a run after this many seconds')
    parser.add_argument('--html', action='store_true', help='Write interactive Plotly views')
    parser.add_argument('--serve', action='store_true', help='Serve POST /fix_occlusions instead of running once')
    parser.add_argument('--host', default='127.0.0.1')
    parser.add_argument('--port', type=int, default=5000)
    parser.add_argument('--quiet', '-q', action='store_true', help='Only log warnings and errors')
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    config = load_config(args.config) if args.config else create_config()
    if args.output:
        config.output_dir = args.output
    if args.frame_count is not None:
        config.accumulation.frame_count = args.frame_count
    if args.repair_mode:
        config.repair_mode = RepairMode(args.repair_mode)
    if args.workers is not None:
        config.max_workers = args.workers
    if args.quiet:
        config.verbose = False

    logging.basicConfig(
        level=logging.INFO if config.verbose else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    channel = None
    if args.html:
        channel = VisualizationChannel([PlotlyHtmlObserver(f"{config.output_dir}/html")])

    source = DirectoryFrameSource(args.frames_dir)
    pipeline = ReconstructionPipeline(source, config, channel)

    try:
        if args.serve:
            service = ReconstructionService(pipeline, timeout=args.timeout)
            app = create_app(service)
            logger.info(f"Serving POST /fix_occlusions on {args.host}:{args.port}")
            app.run(host=args.host, port=args.port, threaded=True)
            return 0

        report = pipeline.run(timeout=args.timeout)
        report.print_summary()
        return 0 if report.success else 1
    finally:
        if channel is not None:
            channel.close()


if __name__ == "__main__":
    sys.exit(main())
