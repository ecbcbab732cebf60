"""
Unit tests for diagnostic visualization.
"""

import pytest
import numpy as np
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from stereocast.detection import DetectionBox
from stereocast.triangulation import SENTINEL, Position3D
from stereocast.visualization import colorize_disparity, draw_detections, save_debug_images


class TestColorization:
    """Tests for disparity colorization."""

    def test_colorize_disparity(self):
        disparity = np.random.rand(100, 200).astype(np.float32) * 64

        colored = colorize_disparity(disparity)

        assert colored.shape == (100, 200, 3)
        assert colored.dtype == np.uint8

    def test_invalid_regions_are_black(self):
        disparity = np.zeros((100, 200), dtype=np.float32)
        disparity[50:, :] = 32

        colored = colorize_disparity(disparity)

        assert np.all(colored[:50, :] == 0)
        assert not np.all(colored[50:, :] == 0)

    def test_all_invalid(self):
        colored = colorize_disparity(np.full((10, 10), -1.0, dtype=np.float32))
        assert np.all(colored == 0)


class TestDrawing:
    """Tests for detection overlays."""

    @pytest.fixture
    def image(self):
        return np.zeros((240, 320, 3), dtype=np.uint8)

    def test_does_not_modify_input(self, image):
        boxes = [DetectionBox(10, 10, 50, 100)]
        output = draw_detections(image, boxes, [Position3D(0.1, 0.2, 2.0)])

        assert np.all(image == 0)
        assert output.shape == image.shape
        assert np.any(output != 0)

    def test_invalid_position_drawn_red(self, image):
        output = draw_detections(image, [DetectionBox(10, 10, 50, 100)], [SENTINEL])
        red = (output[:, :, 2] > 0) & (output[:, :, 1] == 0)
        assert np.any(red)

    def test_save_debug_images(self, image, tmp_path):
        written = save_debug_images(
            str(tmp_path / "debug"),
            "pair",
            image, image,
            [DetectionBox(10, 10, 50, 100)], [],
            [SENTINEL] * 6,
            np.ones((240, 320), dtype=np.float32)
        )

        assert [p.name for p in written] == ["pair_pair.png", "pair_disparity.png"]
        assert all(p.exists() for p in written)
