"""
Unit tests for triangulation.
"""

import pytest
import numpy as np
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from stereocast.config import create_default_config
from stereocast.triangulation import (
    SENTINEL,
    Position3D,
    pad_positions,
    triangulate_correspondences,
    triangulate_point,
)


class TestTriangulatePoint:
    """Tests for single-correspondence triangulation."""

    def test_known_point(self):
        """Point at the principal point with 20 px disparity."""
        pos = triangulate_point((320.0, 240.0), (300.0, 240.0), 700.0, 700.0, 320.0, 240.0, 0.12)

        assert pos.z == pytest.approx(700.0 * 0.12 / 20.0)
        assert pos.x == pytest.approx(0.0)
        assert pos.y == pytest.approx(0.0)

    def test_pinhole_formulas(self):
        """Random intrinsics and centers follow Z = fx*B/d and the pinhole X/Y."""
        rng = np.random.default_rng(42)
        for _ in range(200):
            fx, fy = rng.uniform(300, 1500, size=2)
            cx, cy = rng.uniform(100, 900, size=2)
            baseline = rng.uniform(0.05, 1.0)
            xl, yl = rng.uniform(0, 1280), rng.uniform(0, 720)
            d = rng.uniform(0.5, 200)
            xr = xl - d

            pos = triangulate_point((xl, yl), (xr, yl + rng.normal()), fx, fy, cx, cy, baseline)

            z = fx * baseline / (xl - xr)
            assert pos.z == z
            assert pos.x == pytest.approx((xl - cx) * z / fx)
            assert pos.y == pytest.approx((yl - cy) * z / fy)

    @pytest.mark.parametrize("xr", [320.0, 320.5, 400.0])
    def test_non_positive_disparity_is_sentinel(self, xr):
        pos = triangulate_point((320.0, 240.0), (xr, 240.0), 700.0, 700.0, 320.0, 240.0, 0.12)
        assert pos == SENTINEL
        assert pos == Position3D(0.0, 0.0, -1.0)
        assert not pos.is_valid

    def test_pure_function(self):
        """Same input always gives the same output."""
        args = ((410.0, 200.0), (380.0, 201.0), 650.0, 640.0, 320.0, 240.0, 0.2)
        assert triangulate_point(*args) == triangulate_point(*args)

    def test_to_dict(self):
        assert Position3D(1.0, 2.0, 3.0).to_dict() == {"x": 1.0, "y": 2.0, "z": 3.0}


class TestResultFrame:
    """Tests for padding and whole-frame triangulation."""

    @pytest.fixture
    def config(self):
        return create_default_config(
            focal_length=700.0,
            principal_point=(320.0, 240.0),
            baseline=0.12
        )

    def test_pad_to_six(self):
        real = [Position3D(1.0, 2.0, 3.0), Position3D(4.0, 5.0, 6.0)]
        result = pad_positions(real)

        assert len(result) == 6
        assert result[:2] == tuple(real)
        assert all(p == SENTINEL for p in result[2:])

    def test_pad_empty(self):
        assert pad_positions([]) == (SENTINEL,) * 6

    def test_pad_rejects_overflow(self):
        with pytest.raises(ValueError):
            pad_positions([Position3D(0.0, 0.0, 1.0)] * 7)

    def test_uses_left_intrinsics_and_baseline(self, config):
        result = triangulate_correspondences([((330.0, 250.0), (310.0, 250.0))], config)

        z = 700.0 * 0.12 / 20.0
        assert result[0].z == pytest.approx(z)
        assert result[0].x == pytest.approx(10.0 * z / 700.0)
        assert result[0].y == pytest.approx(10.0 * z / 700.0)

    def test_order_preserved_with_invalid_entries(self, config):
        correspondences = [
            ((330.0, 240.0), (310.0, 240.0)),
            ((300.0, 240.0), (310.0, 240.0)),  # negative disparity
            ((400.0, 240.0), (360.0, 240.0)),
        ]
        result = triangulate_correspondences(correspondences, config)

        assert len(result) == 6
        assert result[0].is_valid
        assert result[1] == SENTINEL
        assert result[2].is_valid
        assert result[2].z < result[0].z
        assert all(p == SENTINEL for p in result[3:])

    def test_more_than_six_truncated(self, config):
        correspondences = [((330.0 + i, 240.0), (310.0, 240.0)) for i in range(9)]
        result = triangulate_correspondences(correspondences, config)

        assert len(result) == 6
        assert all(p.is_valid for p in result)
