"""
Visualization Module
====================

Diagnostic images for reconstructed pairs: colorized disparity and
detection overlays annotated with the triangulated positions.

Reference: Google AI Blog - "Turbo, An Improved Rainbow Colormap"
https://ai.googleblog.com/2019/08/turbo-improved-rainbow-colormap-for.html
"""

import cv2
import numpy as np
from pathlib import Path
from typing import List, Optional, Sequence

from .detection import DetectionBox
from .triangulation import Position3D


def colorize_disparity(disparity: np.ndarray, max_disparity: Optional[float] = None) -> np.ndarray:
    """
    Apply the TURBO colormap to a disparity map.

    Args:
        disparity: Disparity map in pixels
        max_disparity: Value mapped to the top of the colormap (95th percentile if None)

    Returns:
        Colorized disparity map (BGR), invalid pixels black
    """
    if max_disparity is None:
        max_disparity = np.percentile(disparity[disparity > 0], 95) if np.any(disparity > 0) else 64
    max_disparity = max(float(max_disparity), 1e-6)

    normalized = np.clip(disparity / max_disparity, 0, 1)
    normalized = (normalized * 255).astype(np.uint8)

    colorized = cv2.applyColorMap(normalized, cv2.COLORMAP_TURBO)
    colorized[disparity <= 0] = [0, 0, 0]

    return colorized


def draw_detections(
    image: np.ndarray,
    boxes: Sequence[DetectionBox],
    positions: Optional[Sequence[Position3D]] = None
) -> np.ndarray:
    """
    Draw person boxes with their correspondence index and, where given,
    the triangulated position.

    Args:
        image: Input image (will be copied)
        boxes: Detections in detector order
        positions: Result frame aligned with boxes by index

    Returns:
        Annotated copy of the image
    """
    output = image.copy()

    for i, box in enumerate(boxes):
        x, y = int(box.x), int(box.y)
        x2, y2 = int(box.x + box.width), int(box.y + box.height)
        color = (0, 255, 0)

        label = f"#{i}"
        if positions is not None and i < len(positions):
            pos = positions[i]
            if pos.is_valid:
                label += f" ({pos.x:.2f}, {pos.y:.2f}, {pos.z:.2f})m"
            else:
                label += " invalid"
                color = (0, 0, 255)

        cv2.rectangle(output, (x, y), (x2, y2), color, 2)
        cx, cy = box.center
        cv2.circle(output, (int(cx), int(cy)), 4, color, -1)
        cv2.putText(
            output, label,
            (x, max(12, y - 4)),
            cv2.FONT_HERSHEY_SIMPLEX, 0.5,
            color, 1
        )

    return output


def save_debug_images(
    output_dir: str,
    tag: str,
    left: np.ndarray,
    right: np.ndarray,
    left_boxes: Sequence[DetectionBox],
    right_boxes: Sequence[DetectionBox],
    positions: Sequence[Position3D],
    disparity: Optional[np.ndarray] = None
) -> List[Path]:
    """
    Write the annotated rectified pair (side by side) and the colorized
    disparity for one reconstruction.

    Returns:
        Paths of the files written
    """
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)

    left_vis = draw_detections(left, left_boxes, positions)
    right_vis = draw_detections(right, right_boxes)
    if left_vis.shape[0] != right_vis.shape[0]:
        right_vis = cv2.resize(right_vis, (right_vis.shape[1], left_vis.shape[0]))

    written = []
    pair_path = out / f"{tag}_pair.png"
    cv2.imwrite(str(pair_path), np.hstack([left_vis, right_vis]))
    written.append(pair_path)

    if disparity is not None:
        disparity_path = out / f"{tag}_disparity.png"
        cv2.imwrite(str(disparity_path), colorize_disparity(disparity))
        written.append(disparity_path)

    return written
