"""
Triangulation Module
====================

Turns index-paired 2D detection centers into 3D positions in the left
camera frame, and pads every result to a fixed number of slots.

For a rectified, near-horizontal pair with left intrinsics (fx, fy, cx, cy)
and baseline B:

    d = x_left - x_right
    Z = fx * B / d
    X = (x_left - cx) * Z / fx
    Y = (y_left - cy) * Z / fy

A non-positive disparity cannot come from a point in front of the rig and
yields the sentinel (0, 0, -1).

Reference: Hartley & Zisserman, "Multiple View Geometry", Section 12.5
"""

from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

from .config import CameraConfig, MAX_SUBJECTS

Point2D = Tuple[float, float]


@dataclass(frozen=True)
class Position3D:
    """3D position in camera-frame metric units."""
    x: float
    y: float
    z: float

    @property
    def is_valid(self) -> bool:
        return self != SENTINEL

    def to_dict(self) -> Dict[str, float]:
        return {"x": float(self.x), "y": float(self.y), "z": float(self.z)}


SENTINEL = Position3D(0.0, 0.0, -1.0)

ResultFrame = Tuple[Position3D, ...]


def triangulate_point(
    left: Point2D,
    right: Point2D,
    fx: float,
    fy: float,
    cx: float,
    cy: float,
    baseline: float
) -> Position3D:
    """
    Triangulate one left/right correspondence.

    Returns:
        Position3D, or SENTINEL when the disparity is not positive
    """
    disparity = left[0] - right[0]
    if disparity <= 0:
        return SENTINEL

    z = fx * baseline / disparity
    x = (left[0] - cx) * z / fx
    y = (left[1] - cy) * z / fy
    return Position3D(x, y, z)


def pad_positions(
    positions: Sequence[Position3D],
    size: int = MAX_SUBJECTS
) -> ResultFrame:
    """
    Append sentinels until exactly `size` entries exist.

    Raises:
        ValueError: If more than `size` positions are given
    """
    if len(positions) > size:
        raise ValueError(f"Got {len(positions)} positions, at most {size} allowed")
    return tuple(positions) + (SENTINEL,) * (size - len(positions))


def triangulate_correspondences(
    correspondences: Sequence[Tuple[Point2D, Point2D]],
    config: CameraConfig,
    size: int = MAX_SUBJECTS
) -> ResultFrame:
    """
    Triangulate up to `size` correspondences with the left intrinsics and
    B = |T_x|, padded to exactly `size` entries in input order.
    """
    fx = config.focal_length_left
    fy = config.focal_length_y_left
    cx, cy = config.principal_point_left
    baseline = config.baseline

    positions: List[Position3D] = [
        triangulate_point(left, right, fx, fy, cx, cy, baseline)
        for left, right in correspondences[:size]
    ]
    return pad_positions(positions, size)
