#!/usr/bin/env python3
"""
stereocast - Main Entry Point
=============================

Starts the WebSocket server that pairs front/back camera frames and
broadcasts the 3D positions of up to six people per pair.

Usage:
    python main.py --config calibration.json
    python main.py --config calibration.json --port 8765 --detector yolo_nano
    PORT=8080 python main.py --config calibration.json --debug-dir debug/
"""

import argparse
import asyncio
import sys

import cv2

from stereocast.config import (
    DEFAULT_PAIRING_WINDOW_MS,
    MAX_SUBJECTS,
    ServerConfig,
    compute_rectification,
    default_port,
    load_config_from_json,
)
from stereocast.detection import DetectorType, PersonDetector
from stereocast.logger import logger, setup_logging
from stereocast.pipeline import ReconstructionPipeline
from stereocast.server import StereoServer
from stereocast.stereo_geometry import DepthMethod, StereoProcessor


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Stereo 3D people positions over WebSocket",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Serve on the default port ($PORT or 3000)
    python main.py --config calibration.json

    # YOLOv8n detector, wider pairing window, diagnostics
    python main.py --config calibration.json --detector yolo_nano --window-ms 250 --debug-dir debug/
        """,
    )

    # Calibration
    parser.add_argument(
        "--config", type=str, required=True, help="Path to stereo calibration JSON file"
    )

    # Network
    parser.add_argument("--host", type=str, default="0.0.0.0", help="Interface to bind (default: 0.0.0.0)")
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to listen on (default: $PORT or 3000)",
    )
    parser.add_argument(
        "--max-message-size",
        type=int,
        default=0,
        help="Largest inbound message in bytes (default: 0 = no limit)",
    )

    # Pairing
    parser.add_argument(
        "--window-ms",
        type=int,
        default=DEFAULT_PAIRING_WINDOW_MS,
        help=f"Maximum timestamp difference of a stereo pair (default: {DEFAULT_PAIRING_WINDOW_MS})",
    )
    parser.add_argument(
        "--max-buffer-depth",
        type=int,
        default=64,
        help="Frames kept per camera while waiting for a partner (default: 64, 0 = unbounded)",
    )

    # Reconstruction
    parser.add_argument(
        "--detector",
        type=str,
        choices=[t.value for t in DetectorType],
        default="hog_svm",
        help="Person detector (default: hog_svm)",
    )
    parser.add_argument("--model-dir", type=str, help="Directory for the YOLOv8n model")
    parser.add_argument(
        "--method",
        type=str,
        choices=[m.value for m in DepthMethod],
        default="sgbm",
        help="Dense disparity method (default: sgbm)",
    )
    parser.add_argument(
        "--num-disparities",
        type=int,
        default=64,
        help="Disparity search range (default: 64, must be divisible by 16)",
    )
    parser.add_argument(
        "--block-size",
        type=int,
        default=9,
        help="Block size for stereo matching (default: 9, must be odd)",
    )
    parser.add_argument(
        "--no-disparity",
        action="store_true",
        help="Skip the diagnostic dense disparity computation",
    )
    parser.add_argument(
        "--max-in-flight",
        type=int,
        default=2,
        help="Reconstructions running at once (default: 2)",
    )
    parser.add_argument(
        "--max-pending",
        type=int,
        default=4,
        help="Matched pairs waiting for a worker before the oldest is dropped (default: 4)",
    )

    # Output
    parser.add_argument("--debug-dir", type=str, help="Write diagnostic images for every pair")
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"],
        help="Console log level (default: INFO)",
    )
    parser.add_argument("--log-dir", type=str, help="Directory for rotating log files")

    return parser.parse_args(argv)


def build_server(args) -> StereoServer:
    """Load calibration and wire the pipeline and server together."""
    config = load_config_from_json(args.config)
    geometry = compute_rectification(config)
    logger.info(
        f"Loaded calibration {config.image_size[0]}x{config.image_size[1]}, "
        f"fx={config.focal_length_left:.1f}, baseline={config.baseline:.4f}"
    )

    settings = ServerConfig(
        host=args.host,
        port=args.port if args.port is not None else default_port(),
        pairing_window_ms=args.window_ms,
        max_buffer_depth=args.max_buffer_depth or None,
        max_in_flight=args.max_in_flight,
        max_pending=args.max_pending,
        max_subjects=MAX_SUBJECTS,
        compute_disparity=not args.no_disparity,
        debug_dir=args.debug_dir,
        max_message_size=args.max_message_size or None,
    )

    processor = StereoProcessor(
        config,
        geometry=geometry,
        method=DepthMethod(args.method),
        num_disparities=args.num_disparities,
        block_size=args.block_size,
        compute_disparity=settings.compute_disparity,
    )
    detector = PersonDetector(
        detector_type=DetectorType(args.detector),
        model_dir=args.model_dir,
    )
    pipeline = ReconstructionPipeline(
        processor,
        detector,
        config,
        max_subjects=settings.max_subjects,
        debug_dir=settings.debug_dir,
    )
    return StereoServer(settings, pipeline)


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level, args.log_dir)

    try:
        server = build_server(args)
    except (FileNotFoundError, ValueError, cv2.error) as e:
        logger.critical(f"Cannot start: {e}")
        return 1

    try:
        asyncio.run(server.serve())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        logger.info(f"Final stats: {server.stats()}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
