"""
Configuration Module
====================

Handles loading and validation of the stereo rig calibration profile and
derives the rectification geometry once at startup. Also holds the runtime
settings of the server.

References:
- OpenCV Camera Calibration: https://docs.opencv.org/4.x/dc/dbb/tutorial_py_calibration.html
- OpenCV stereoRectify: https://docs.opencv.org/4.x/d9/d0c/group__calib3d.html
"""

import json
import os
import numpy as np
import cv2
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
from pathlib import Path


DEFAULT_PORT = 3000
DEFAULT_PAIRING_WINDOW_MS = 200
MAX_SUBJECTS = 6


@dataclass(frozen=True)
class CameraConfig:
    """
    Calibration profile of the front/back stereo rig.

    The front camera is the left (reference) camera, the back camera the
    right one.

    Attributes:
        camera_matrix_left: 3x3 intrinsic matrix for left camera [fx, 0, cx; 0, fy, cy; 0, 0, 1]
        camera_matrix_right: 3x3 intrinsic matrix for right camera
        dist_coeffs_left: Distortion coefficients for left camera (k1, k2, p1, p2, k3)
        dist_coeffs_right: Distortion coefficients for right camera
        R: 3x3 rotation matrix between cameras (left -> right)
        T: 3-element translation vector between cameras (left -> right)
        image_size: Tuple of (width, height) of the images
    """
    camera_matrix_left: np.ndarray
    camera_matrix_right: np.ndarray
    dist_coeffs_left: np.ndarray
    dist_coeffs_right: np.ndarray
    R: np.ndarray
    T: np.ndarray
    image_size: Tuple[int, int]

    @property
    def baseline(self) -> float:
        """
        Horizontal component of the calibrated translation.

        Assumes a near-horizontal rectified pair, so |T_x| is taken as the
        distance between the two camera centers.
        """
        return float(abs(self.T[0]))

    @property
    def focal_length_left(self) -> float:
        """Horizontal focal length (fx) of the left camera."""
        return float(self.camera_matrix_left[0, 0])

    @property
    def focal_length_y_left(self) -> float:
        """Vertical focal length (fy) of the left camera."""
        return float(self.camera_matrix_left[1, 1])

    @property
    def principal_point_left(self) -> Tuple[float, float]:
        """Get principal point (cx, cy) from left camera."""
        return (float(self.camera_matrix_left[0, 2]), float(self.camera_matrix_left[1, 2]))


@dataclass(frozen=True)
class RectificationGeometry:
    """
    Rectification transforms derived from a CameraConfig.

    Attributes:
        R1, R2: Per-camera rectification rotations
        P1, P2: Per-camera projection matrices in the rectified frame
        Q: 4x4 disparity-to-depth reprojection matrix
        maps_left, maps_right: (map_x, map_y) remap tables for cv2.remap
    """
    R1: np.ndarray
    R2: np.ndarray
    P1: np.ndarray
    P2: np.ndarray
    Q: np.ndarray
    maps_left: Tuple[np.ndarray, np.ndarray]
    maps_right: Tuple[np.ndarray, np.ndarray]


@dataclass
class ServerConfig:
    """
    Runtime settings of the stereo server.

    Attributes:
        host: Interface to bind
        port: TCP port to listen on
        pairing_window_ms: Maximum timestamp difference for a stereo pair
        max_buffer_depth: Per-role buffer cap (None for unbounded)
        max_in_flight: Reconstructions allowed to run concurrently
        max_pending: Matched pairs allowed to wait for a free worker
        max_subjects: Fixed cardinality of every broadcast result
        compute_disparity: Whether to compute the diagnostic disparity field
        debug_dir: Directory for diagnostic images (None disables)
        max_message_size: Largest inbound WebSocket message in bytes (None for
            no limit); larger messages close the connection with code 1009
    """
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    pairing_window_ms: int = DEFAULT_PAIRING_WINDOW_MS
    max_buffer_depth: Optional[int] = 64
    max_in_flight: int = 2
    max_pending: int = 4
    max_subjects: int = MAX_SUBJECTS
    compute_disparity: bool = True
    debug_dir: Optional[str] = None
    max_message_size: Optional[int] = None

    def __post_init__(self):
        if self.pairing_window_ms < 0:
            raise ValueError("pairing_window_ms must be non-negative")
        if self.max_in_flight < 1:
            raise ValueError("max_in_flight must be at least 1")
        if self.max_pending < 1:
            raise ValueError("max_pending must be at least 1")
        if self.max_buffer_depth is not None and self.max_buffer_depth < 1:
            raise ValueError("max_buffer_depth must be at least 1")
        if self.max_message_size is not None and self.max_message_size < 1:
            raise ValueError("max_message_size must be at least 1")


def default_port() -> int:
    """Port from the PORT environment variable, falling back to 3000."""
    value = os.environ.get("PORT")
    if not value:
        return DEFAULT_PORT
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"PORT must be an integer, got {value!r}")


# Calibration JSON fields and the array shape each must have after loading.
CALIBRATION_FIELDS: Dict[str, Tuple[int, ...]] = {
    'camera_matrix_left': (3, 3),
    'camera_matrix_right': (3, 3),
    'dist_coeffs_left': (5,),
    'dist_coeffs_right': (5,),
    'R': (3, 3),
    'T': (3,),
}

# Stored as nested lists but used as flat vectors
_FLAT_FIELDS = ('dist_coeffs_left', 'dist_coeffs_right', 'T')


def load_config_from_json(config_path: str) -> CameraConfig:
    """
    Load the stereo calibration profile from a JSON file.

    The file is a single object holding the fields of CALIBRATION_FIELDS
    as (nested) number lists plus image_size as [width, height].
    Distortion vectors and T may be given flat or as column vectors.

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config file is invalid
    """
    path = Path(config_path)
    if not path.is_file():
        raise FileNotFoundError(f"Calibration file not found: {config_path}")

    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise ValueError(f"Calibration file is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ValueError("Calibration root must be a JSON object")

    missing = [name for name in (*CALIBRATION_FIELDS, 'image_size') if name not in data]
    if missing:
        raise ValueError(f"Calibration is missing field(s): {', '.join(missing)}")

    arrays = {}
    try:
        for name in CALIBRATION_FIELDS:
            value = np.asarray(data[name], dtype=np.float64)
            arrays[name] = value.reshape(-1) if name in _FLAT_FIELDS else value
        width, height = (int(v) for v in data['image_size'])
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid numeric data in calibration: {e}") from e

    config = CameraConfig(image_size=(width, height), **arrays)
    validate_config(config)
    return config


def validate_config(config: CameraConfig) -> None:
    """
    Check matrix shapes and basic sanity of a calibration profile.

    Raises:
        ValueError: On the first problem found
    """
    for name, shape in CALIBRATION_FIELDS.items():
        actual = getattr(config, name).shape
        if actual != shape:
            raise ValueError(f"{name} must have shape {shape}, got {actual}")

    if min(config.image_size) <= 0:
        raise ValueError(f"image_size must be positive, got {config.image_size}")
    if config.focal_length_left <= 0 or config.focal_length_y_left <= 0:
        raise ValueError("Left camera focal lengths must be positive")
    if config.baseline <= 0:
        raise ValueError("Baseline |T_x| must be positive")


def create_default_config(
    focal_length: float = 700.0,
    principal_point: Tuple[float, float] = (320.0, 240.0),
    baseline: float = 0.12,
    image_size: Tuple[int, int] = (640, 480)
) -> CameraConfig:
    """
    Ideal, distortion-free rig with identical cameras side by side.
    Useful for tests and for bench setups without a calibration file.

    Args:
        focal_length: fx = fy in pixels
        principal_point: (cx, cy) in pixels
        baseline: Camera separation in meters
        image_size: (width, height)
    """
    cx, cy = principal_point
    intrinsics = np.array([[focal_length, 0.0, cx], [0.0, focal_length, cy], [0.0, 0.0, 1.0]])

    return CameraConfig(
        camera_matrix_left=intrinsics,
        camera_matrix_right=intrinsics.copy(),
        dist_coeffs_left=np.zeros(5),
        dist_coeffs_right=np.zeros(5),
        R=np.eye(3),
        T=np.array([-baseline, 0.0, 0.0]),
        image_size=tuple(image_size)
    )


def save_config_to_json(config: CameraConfig, output_path: str) -> None:
    """Write a profile in the format load_config_from_json reads."""
    data = {name: getattr(config, name).tolist() for name in CALIBRATION_FIELDS}
    data['image_size'] = list(config.image_size)
    Path(output_path).write_text(json.dumps(data, indent=4))


def compute_rectification(config: CameraConfig) -> RectificationGeometry:
    """
    Compute stereo rectification transforms and remap tables.

    Called once at startup; the result is shared read-only by every frame
    pair. Uses cv2.stereoRectify so that epipolar lines become horizontal.

    Reference: OpenCV stereoRectify documentation
    https://docs.opencv.org/4.x/d9/d0c/group__calib3d.html#ga617b1685d4059c6040827800e72ad2b6
    """
    # OpenCV expects column vectors; the profile stores them flat
    dist_left = config.dist_coeffs_left.reshape(-1, 1)
    dist_right = config.dist_coeffs_right.reshape(-1, 1)
    T = config.T.reshape(3, 1)

    R1, R2, P1, P2, Q, _roi1, _roi2 = cv2.stereoRectify(
        config.camera_matrix_left,
        dist_left,
        config.camera_matrix_right,
        dist_right,
        config.image_size,
        config.R,
        T,
        flags=cv2.CALIB_ZERO_DISPARITY,
        alpha=0  # Crop to valid pixels only
    )

    maps_left = cv2.initUndistortRectifyMap(
        config.camera_matrix_left,
        dist_left,
        R1, P1,
        config.image_size,
        cv2.CV_32FC1
    )

    maps_right = cv2.initUndistortRectifyMap(
        config.camera_matrix_right,
        dist_right,
        R2, P2,
        config.image_size,
        cv2.CV_32FC1
    )

    return RectificationGeometry(
        R1=R1, R2=R2, P1=P1, P2=P2, Q=Q,
        maps_left=maps_left,
        maps_right=maps_right,
    )
