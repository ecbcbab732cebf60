"""
Unit tests for the reconstruction pipeline.
"""

import pytest
import numpy as np
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from stereocast.config import create_default_config
from stereocast.detection import DetectionBox
from stereocast.frame_buffer import FrameRecord, StereoPair
from stereocast.logger import logger
from stereocast.pipeline import ReconstructionPipeline
from stereocast.registry import Role
from stereocast.stereo_geometry import StereoProcessor
from stereocast.triangulation import SENTINEL


WIDTH, HEIGHT = 320, 240


class ScriptedDetector:
    """Returns a fixed list of boxes per call, in call order (left, right)."""

    def __init__(self, *outputs):
        self.outputs = list(outputs)
        self.images = []

    def detect(self, image):
        self.images.append(image)
        return self.outputs.pop(0)


def boxes(xs, y=80.0, w=40.0, h=80.0):
    return [DetectionBox(x=float(x), y=y, width=w, height=h) for x in xs]


@pytest.fixture
def config():
    return create_default_config(
        focal_length=300.0,
        principal_point=(WIDTH / 2, HEIGHT / 2),
        baseline=0.12,
        image_size=(WIDTH, HEIGHT)
    )


@pytest.fixture
def pair():
    image = np.zeros((HEIGHT, WIDTH, 3), dtype=np.uint8)
    return StereoPair(
        front=FrameRecord(seq=1, timestamp=1000, image=image, role=Role.FRONT),
        back=FrameRecord(seq=2, timestamp=1010, image=image.copy(), role=Role.BACK),
        dt_ms=10
    )


def make_pipeline(config, detector, **kwargs):
    processor = StereoProcessor(config, compute_disparity=False)
    return ReconstructionPipeline(processor, detector, config, **kwargs)


class TestReconstructionPipeline:

    def test_detects_on_both_rectified_images(self, config, pair):
        detector = ScriptedDetector([], [])
        make_pipeline(config, detector).run(pair)

        assert len(detector.images) == 2
        assert detector.images[0].shape == (HEIGHT, WIDTH, 3)

    def test_triangulates_index_pairs(self, config, pair):
        detector = ScriptedDetector(boxes([140, 200]), boxes([120, 210]))

        result = make_pipeline(config, detector).run(pair)

        assert len(result) == 6
        # First: centers 160 vs 140 -> d = 20
        assert result[0].z == pytest.approx(300.0 * 0.12 / 20.0)
        assert result[0].x == pytest.approx(0.0)
        # Second: 220 vs 230 -> negative disparity
        assert result[1] == SENTINEL
        assert all(p == SENTINEL for p in result[2:])

    def test_eight_left_three_right(self, config, pair):
        """Only min(8, 3, 6) slots hold estimates."""
        left = boxes([150 + 10 * i for i in range(8)])
        right = boxes([100, 110, 120])
        detector = ScriptedDetector(left, right)

        result = make_pipeline(config, detector).run(pair)

        assert len(result) == 6
        assert all(p.is_valid for p in result[:3])
        assert all(p == SENTINEL for p in result[3:])

    def test_no_detections(self, config, pair):
        result = make_pipeline(config, ScriptedDetector([], [])).run(pair)
        assert result == (SENTINEL,) * 6

    def test_detector_errors_propagate(self, config, pair):
        class Broken:
            def detect(self, image):
                raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            make_pipeline(config, Broken()).run(pair)

    def test_debug_images_written(self, config, pair, tmp_path):
        detector = ScriptedDetector(boxes([140]), boxes([120]))
        processor = StereoProcessor(config, num_disparities=16, block_size=5)
        pipeline = ReconstructionPipeline(processor, detector, config, debug_dir=str(tmp_path))

        pipeline.run(pair)

        assert (tmp_path / "front1_back2_pair.png").exists()
        assert (tmp_path / "front1_back2_disparity.png").exists()

    def test_logs_geometry_timing(self, config, pair):
        messages = []
        sink_id = logger.add(messages.append, level="DEBUG", format="{message}")
        try:
            make_pipeline(config, ScriptedDetector([], [])).run(pair)
        finally:
            logger.remove(sink_id)

        assert any("geometry" in m and "ms" in m for m in messages)
