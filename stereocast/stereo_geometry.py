"""
Stereo Geometry Module
======================

Rectifies matched front/back pairs with the cached rectification maps and
computes a dense disparity field for diagnostics. Triangulation of people
does not depend on the dense field; it uses the sparse per-detection
disparity instead (see triangulation.py).

References:
- OpenCV Stereo Matching: https://docs.opencv.org/4.x/dd/d53/tutorial_py_depthmap.html
- Semi-Global Block Matching: H. Hirschmuller, "Stereo Processing by Semiglobal Matching
  and Mutual Information," IEEE TPAMI, 2008
"""

import cv2
import numpy as np
import threading
import time
from enum import Enum
from typing import Optional
from dataclasses import dataclass

from .config import CameraConfig, RectificationGeometry, compute_rectification
from .frame_buffer import StereoPair


class DepthMethod(Enum):
    """
    Dense disparity algorithms.

    BM: Block Matching - Fastest, good for textured scenes
    SGBM: Semi-Global Block Matching - Better quality, moderate speed
    """
    BM = "bm"
    SGBM = "sgbm"


@dataclass
class RectifiedPair:
    """
    Result of the geometry stage for one stereo pair.

    Attributes:
        left: Rectified front (left) image, BGR
        right: Rectified back (right) image, BGR
        disparity: Float32 disparity in pixels, or None when disabled
        computation_time_ms: Time spent in rectification and disparity
    """
    left: np.ndarray
    right: np.ndarray
    disparity: Optional[np.ndarray]
    computation_time_ms: float


class StereoProcessor:
    """
    Rectification and dense disparity for a calibrated rig.

    The rectification geometry is computed once (or passed in) and reused
    for every pair. OpenCV matchers keep scratch buffers between calls, so
    each worker thread gets its own matcher, created on first use.
    """

    def __init__(
        self,
        config: CameraConfig,
        geometry: Optional[RectificationGeometry] = None,
        method: DepthMethod = DepthMethod.SGBM,
        num_disparities: int = 64,
        block_size: int = 9,
        compute_disparity: bool = True
    ):
        """
        Args:
            config: Calibration profile
            geometry: Precomputed rectification (computed here if None)
            method: Dense disparity algorithm
            num_disparities: Disparity search range (rounded down to a multiple of 16)
            block_size: Matching block size (forced odd)
            compute_disparity: Whether process() produces the disparity field
        """
        self.config = config
        self.geometry = geometry if geometry is not None else compute_rectification(config)
        self.method = method
        self.num_disparities = max(16, (num_disparities // 16) * 16)
        self.block_size = block_size if block_size % 2 == 1 else block_size + 1
        self.compute_disparity_enabled = compute_disparity

        self._local = threading.local()

    @property
    def matcher(self):
        """Stereo matcher owned by the calling thread."""
        matcher = getattr(self._local, "matcher", None)
        if matcher is None:
            matcher = self._init_matcher()
            self._local.matcher = matcher
        return matcher

    def _init_matcher(self):
        """Create a stereo matcher with the configured parameters."""
        if self.method == DepthMethod.BM:
            matcher = cv2.StereoBM_create(
                numDisparities=self.num_disparities,
                blockSize=max(5, self.block_size)
            )
            matcher.setPreFilterType(cv2.STEREO_BM_PREFILTER_XSOBEL)
            matcher.setTextureThreshold(10)
            matcher.setUniquenessRatio(15)
            matcher.setSpeckleWindowSize(100)
            matcher.setSpeckleRange(32)
            return matcher
        else:
            # P1 and P2 control smoothness penalty
            P1 = 8 * 3 * self.block_size ** 2
            P2 = 32 * 3 * self.block_size ** 2
            return cv2.StereoSGBM_create(
                minDisparity=0,
                numDisparities=self.num_disparities,
                blockSize=self.block_size,
                P1=P1,
                P2=P2,
                disp12MaxDiff=1,
                preFilterCap=63,
                uniquenessRatio=10,
                speckleWindowSize=100,
                speckleRange=32,
                mode=cv2.STEREO_SGBM_MODE_SGBM
            )

    def rectify(self, left_img: np.ndarray, right_img: np.ndarray):
        """
        Warp a raw pair into the common epipolar-aligned frame.

        Returns:
            (rectified_left, rectified_right)
        """
        map_lx, map_ly = self.geometry.maps_left
        map_rx, map_ry = self.geometry.maps_right
        left = cv2.remap(self._fit(left_img), map_lx, map_ly, cv2.INTER_LINEAR)
        right = cv2.remap(self._fit(right_img), map_rx, map_ry, cv2.INTER_LINEAR)
        return left, right

    def _fit(self, image: np.ndarray) -> np.ndarray:
        # Remap tables are built for the calibrated resolution
        width, height = self.config.image_size
        if image.shape[1] == width and image.shape[0] == height:
            return image
        return cv2.resize(image, (width, height), interpolation=cv2.INTER_AREA)

    def compute_disparity(self, left_img: np.ndarray, right_img: np.ndarray) -> np.ndarray:
        """
        Compute disparity map from a rectified pair.

        Disparity = x_left - x_right for corresponding points.

        Returns:
            Disparity map as float32 array (in pixels)
        """
        if left_img.ndim == 3:
            left_gray = cv2.cvtColor(left_img, cv2.COLOR_BGR2GRAY)
            right_gray = cv2.cvtColor(right_img, cv2.COLOR_BGR2GRAY)
        else:
            left_gray = left_img
            right_gray = right_img

        disparity = self.matcher.compute(left_gray, right_gray)

        # OpenCV returns disparity in 16-bit fixed point (4 fractional bits)
        return disparity.astype(np.float32) / 16.0

    def process(self, pair: StereoPair) -> RectifiedPair:
        """Rectify a matched pair and, if enabled, compute its disparity."""
        start_time = time.perf_counter()

        left, right = self.rectify(pair.left, pair.right)

        disparity = None
        if self.compute_disparity_enabled:
            disparity = self.compute_disparity(left, right)

        return RectifiedPair(
            left=left,
            right=right,
            disparity=disparity,
            computation_time_ms=(time.perf_counter() - start_time) * 1000
        )
