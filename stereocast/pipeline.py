"""
Reconstruction Pipeline
=======================

One reconstruction: rectify a matched pair, detect people in both
rectified views, pair detections by index and triangulate.

The pipeline is synchronous and CPU bound; the server runs it in a worker
thread. Exceptions propagate to the caller, which drops the pair.
"""

import time
from typing import Optional

from .config import CameraConfig, MAX_SUBJECTS
from .detection import PersonDetector, correspond_detections
from .frame_buffer import StereoPair
from .logger import logger, log_performance
from .stereo_geometry import StereoProcessor
from .triangulation import ResultFrame, triangulate_correspondences
from .visualization import save_debug_images


class ReconstructionPipeline:
    """
    Stereo geometry, detection correspondence and triangulation for a pair.

    Args:
        processor: Rectification/disparity stage (holds the cached maps)
        detector: Person detector applied to both rectified images
        config: Calibration profile providing intrinsics and baseline
        max_subjects: Number of result slots
        debug_dir: Directory for diagnostic images (None disables)
    """

    def __init__(
        self,
        processor: StereoProcessor,
        detector: PersonDetector,
        config: CameraConfig,
        max_subjects: int = MAX_SUBJECTS,
        debug_dir: Optional[str] = None
    ):
        self.processor = processor
        self.detector = detector
        self.config = config
        self.max_subjects = max_subjects
        self.debug_dir = debug_dir

    def run(self, pair: StereoPair) -> ResultFrame:
        """Reconstruct the 3D positions of the people visible in a pair."""
        start_time = time.perf_counter()

        rectified = self.processor.process(pair)

        left_boxes = self.detector.detect(rectified.left)
        right_boxes = self.detector.detect(rectified.right)

        correspondences = correspond_detections(left_boxes, right_boxes, self.max_subjects)
        positions = triangulate_correspondences(correspondences, self.config, self.max_subjects)

        logger.debug(
            f"Pair {pair.describe()}: {len(left_boxes)} left / {len(right_boxes)} right "
            f"detections, {len(correspondences)} triangulated "
            f"(geometry {rectified.computation_time_ms:.1f}ms)"
        )

        if self.debug_dir is not None:
            save_debug_images(
                self.debug_dir,
                f"front{pair.front.seq}_back{pair.back.seq}",
                rectified.left,
                rectified.right,
                left_boxes,
                right_boxes,
                positions,
                rectified.disparity
            )

        log_performance(
            f"reconstruction of {pair.describe()}",
            (time.perf_counter() - start_time) * 1000
        )
        return positions
