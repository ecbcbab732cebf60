"""
Unit tests for rectification and disparity.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
import numpy as np
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from stereocast.config import compute_rectification, create_default_config
from stereocast.frame_buffer import FrameRecord, StereoPair
from stereocast.registry import Role
from stereocast.stereo_geometry import DepthMethod, RectifiedPair, StereoProcessor


WIDTH, HEIGHT = 320, 240


@pytest.fixture
def config():
    return create_default_config(
        focal_length=300.0,
        principal_point=(WIDTH / 2, HEIGHT / 2),
        baseline=0.12,
        image_size=(WIDTH, HEIGHT)
    )


@pytest.fixture
def textured_pair():
    """Random texture shifted by 10 px between views."""
    rng = np.random.default_rng(1)
    left = rng.integers(0, 256, (HEIGHT, WIDTH, 3), dtype=np.uint8)
    right = np.roll(left, -10, axis=1)
    return left, right


def make_pair(left, right):
    return StereoPair(
        front=FrameRecord(seq=1, timestamp=1000, image=left, role=Role.FRONT),
        back=FrameRecord(seq=2, timestamp=1005, image=right, role=Role.BACK),
        dt_ms=5
    )


class TestStereoProcessor:
    """Tests for StereoProcessor."""

    def test_parameters_are_normalized(self, config):
        processor = StereoProcessor(config, num_disparities=70, block_size=8)
        assert processor.num_disparities == 64
        assert processor.block_size == 9

    def test_reuses_given_geometry(self, config):
        geometry = compute_rectification(config)
        processor = StereoProcessor(config, geometry=geometry)
        assert processor.geometry is geometry

    def test_rectify_keeps_calibrated_size(self, config, textured_pair):
        processor = StereoProcessor(config)
        left, right = processor.rectify(*textured_pair)

        assert left.shape == (HEIGHT, WIDTH, 3)
        assert right.shape == (HEIGHT, WIDTH, 3)

    def test_rectify_resizes_other_resolutions(self, config):
        processor = StereoProcessor(config)
        big = np.zeros((HEIGHT * 2, WIDTH * 2, 3), dtype=np.uint8)

        left, right = processor.rectify(big, big)

        assert left.shape == (HEIGHT, WIDTH, 3)

    @pytest.mark.parametrize("method", [DepthMethod.BM, DepthMethod.SGBM])
    def test_compute_disparity(self, config, textured_pair, method):
        processor = StereoProcessor(config, method=method, num_disparities=32, block_size=9)
        left, right = textured_pair

        disparity = processor.compute_disparity(left, right)

        assert disparity.shape == (HEIGHT, WIDTH)
        assert disparity.dtype == np.float32
        valid = disparity[disparity > 0]
        assert valid.size > 0
        assert np.median(valid) == pytest.approx(10.0, abs=1.5)

    def test_process_pair(self, config, textured_pair):
        processor = StereoProcessor(config, num_disparities=32)

        result = processor.process(make_pair(*textured_pair))

        assert isinstance(result, RectifiedPair)
        assert result.left.shape == (HEIGHT, WIDTH, 3)
        assert result.disparity.shape == (HEIGHT, WIDTH)
        assert result.computation_time_ms >= 0

    def test_disparity_optional(self, config, textured_pair):
        processor = StereoProcessor(config, compute_disparity=False)

        result = processor.process(make_pair(*textured_pair))

        assert result.disparity is None


class TestConcurrentDisparity:
    """Worker threads must not share matcher state."""

    def test_each_thread_gets_its_own_matcher(self, config):
        processor = StereoProcessor(config)
        seen = []

        def grab():
            seen.append(processor.matcher)

        threads = [threading.Thread(target=grab) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert seen[0] is not seen[1]
        assert processor.matcher is processor.matcher

    @pytest.mark.parametrize("method", [DepthMethod.BM, DepthMethod.SGBM])
    def test_concurrent_matches_sequential(self, config, method):
        processor = StereoProcessor(config, method=method, num_disparities=32)
        rng = np.random.default_rng(7)
        pairs = []
        for shift in range(4, 12):
            left = rng.integers(0, 256, (HEIGHT, WIDTH, 3), dtype=np.uint8)
            pairs.append((left, np.roll(left, -shift, axis=1)))

        expected = [processor.compute_disparity(l, r) for l, r in pairs]

        with ThreadPoolExecutor(max_workers=2) as pool:
            for _ in range(5):
                results = list(pool.map(lambda p: processor.compute_disparity(*p), pairs))
                for got, want in zip(results, expected):
                    assert np.array_equal(got, want)
