"""
Person Detection Module
=======================

Detects people in rectified images and pairs left/right detections.

Correspondence is by positional index only: the i-th detection of the left
image is paired with the i-th detection of the right image. There is no
epipolar or appearance matching, so the pairing is only meaningful when the
detector happens to list people in the same order in both views. When the
orders disagree the reconstructed positions are geometrically meaningless;
this is a known limitation and is not corrected here.

References:
- HOG+SVM: N. Dalal and B. Triggs, "Histograms of Oriented Gradients for Human Detection"
- YOLOv8: https://docs.ultralytics.com/
"""

import cv2
import numpy as np
import onnxruntime as ort
import urllib.request
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .config import MAX_SUBJECTS
from .logger import logger


class DetectorType(Enum):
    """
    Available person detectors.

    HOG_SVM: Histogram of Oriented Gradients with the default people SVM
    YOLO_NANO: YOLOv8n via ONNX Runtime, person class only
    """
    HOG_SVM = "hog_svm"
    YOLO_NANO = "yolo_nano"


# Minimum file size in bytes to consider a model file valid
MIN_MODEL_SIZE_BYTES = 1000

DEFAULT_CONFIDENCE_THRESHOLD = 0.5
DEFAULT_NMS_THRESHOLD = 0.45

YOLO_MODEL_URL = "https://github.com/ultralytics/assets/releases/download/v8.3.0/yolov8n.onnx"
YOLO_INPUT_SIZE = 640
COCO_PERSON_CLASS = 0

Point2D = Tuple[float, float]


@dataclass(frozen=True)
class DetectionBox:
    """
    Axis-aligned person box in rectified image coordinates.

    Attributes:
        x, y: Top-left corner in pixels
        width, height: Box size in pixels
        confidence: Detector score
    """
    x: float
    y: float
    width: float
    height: float
    confidence: float = 1.0

    @property
    def center(self) -> Point2D:
        return box_center(self)

    @property
    def area(self) -> float:
        return self.width * self.height


def box_center(box: DetectionBox) -> Point2D:
    """Center point (x + w/2, y + h/2) of a box."""
    return (box.x + box.width / 2.0, box.y + box.height / 2.0)


def correspond_detections(
    left_boxes: Sequence[DetectionBox],
    right_boxes: Sequence[DetectionBox],
    max_subjects: int = MAX_SUBJECTS
) -> List[Tuple[Point2D, Point2D]]:
    """
    Pair left and right detections by index.

    Returns:
        min(len(left), len(right), max_subjects) (left_center, right_center)
        tuples in detector order
    """
    n = min(len(left_boxes), len(right_boxes), max_subjects)
    return [(box_center(left_boxes[i]), box_center(right_boxes[i])) for i in range(n)]


class PersonDetector:
    """
    Person detector for rectified stereo images.

    Detections are returned in the detector's own order; no sorting is
    applied, since correspondence relies on that order.
    """

    def __init__(
        self,
        detector_type: DetectorType = DetectorType.HOG_SVM,
        min_area: int = 1000,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        model_dir: Optional[str] = None,
        max_width: int = 800
    ):
        """
        Args:
            detector_type: Detection algorithm
            min_area: Minimum box area in pixels
            confidence_threshold: Minimum score for YOLO detections
            model_dir: Where the YOLO model is stored or downloaded to
            max_width: Images wider than this are downscaled for HOG
        """
        self.detector_type = detector_type
        self.min_area = min_area
        self.confidence_threshold = confidence_threshold
        self.max_width = max_width

        self._model_dir = Path(model_dir) if model_dir else Path.cwd() / "models"
        self._yolo_session: Optional[ort.InferenceSession] = None
        self.hog: Optional[cv2.HOGDescriptor] = None

        self._init_detector()

    def _init_detector(self) -> None:
        if self.detector_type == DetectorType.YOLO_NANO:
            self._init_yolo_nano()
            if self._yolo_session is not None:
                return
            logger.warning("YOLOv8n unavailable, falling back to HOG people detector")
            self.detector_type = DetectorType.HOG_SVM

        # Reference: N. Dalal and B. Triggs, CVPR 2005
        self.hog = cv2.HOGDescriptor()
        self.hog.setSVMDetector(cv2.HOGDescriptor_getDefaultPeopleDetector())

    def _init_yolo_nano(self) -> None:
        """Load (downloading if needed) the YOLOv8n ONNX model."""
        self._model_dir.mkdir(parents=True, exist_ok=True)
        model_path = self._model_dir / "yolov8n.onnx"

        if not model_path.exists():
            logger.info(f"Downloading YOLOv8n ONNX model to {model_path}")
            try:
                urllib.request.urlretrieve(YOLO_MODEL_URL, str(model_path))
            except OSError as e:
                logger.error(f"Failed to download YOLOv8n model: {e}")
                return

        if model_path.stat().st_size <= MIN_MODEL_SIZE_BYTES:
            logger.error(f"YOLOv8n model at {model_path} looks truncated")
            return

        try:
            self._yolo_session = ort.InferenceSession(
                str(model_path),
                providers=['CPUExecutionProvider']
            )
        except Exception as e:
            logger.error(f"Failed to load YOLOv8n model: {e}")
            self._yolo_session = None
            return
        self._yolo_input_name = self._yolo_session.get_inputs()[0].name

    def detect(self, image: np.ndarray) -> List[DetectionBox]:
        """
        Detect people in a BGR image.

        Returns:
            Boxes in detector order
        """
        if self.detector_type == DetectorType.YOLO_NANO:
            return self._detect_yolo_nano(image)
        return self._detect_hog(image)

    def _detect_hog(self, image: np.ndarray) -> List[DetectionBox]:
        # Resize for speed if image is large
        scale = 1.0
        if image.shape[1] > self.max_width:
            scale = self.max_width / image.shape[1]
            small = cv2.resize(image, None, fx=scale, fy=scale)
        else:
            small = image

        boxes, weights = self.hog.detectMultiScale(
            small,
            winStride=(8, 8),
            padding=(4, 4),
            scale=1.05
        )

        weights = np.asarray(weights).reshape(-1)
        detections = []
        for i, (x, y, w, h) in enumerate(boxes):
            x, y, w, h = x / scale, y / scale, w / scale, h / scale
            if w * h < self.min_area:
                continue
            confidence = float(weights[i]) if i < len(weights) else 0.5
            detections.append(DetectionBox(
                x=float(x), y=float(y), width=float(w), height=float(h),
                confidence=min(confidence, 1.0)
            ))

        return detections

    def _detect_yolo_nano(self, image: np.ndarray) -> List[DetectionBox]:
        h, w = image.shape[:2]

        # Letterbox to 640x640 keeping aspect ratio
        scale = min(YOLO_INPUT_SIZE / w, YOLO_INPUT_SIZE / h)
        new_w = int(w * scale)
        new_h = int(h * scale)
        resized = cv2.resize(image, (new_w, new_h))

        padded = np.zeros((YOLO_INPUT_SIZE, YOLO_INPUT_SIZE, 3), dtype=np.uint8)
        pad_x = (YOLO_INPUT_SIZE - new_w) // 2
        pad_y = (YOLO_INPUT_SIZE - new_h) // 2
        padded[pad_y:pad_y + new_h, pad_x:pad_x + new_w] = resized

        # BGR to RGB, [0, 1], NCHW
        input_data = cv2.cvtColor(padded, cv2.COLOR_BGR2RGB)
        input_data = input_data.astype(np.float32) / 255.0
        input_data = np.transpose(input_data, (2, 0, 1))[np.newaxis]

        outputs = self._yolo_session.run(None, {self._yolo_input_name: input_data})

        return parse_yolo_output(
            outputs[0], (w, h), scale, (pad_x, pad_y),
            confidence_threshold=self.confidence_threshold,
            min_area=self.min_area
        )


def parse_yolo_output(
    output: np.ndarray,
    image_size: Tuple[int, int],
    scale: float,
    padding: Tuple[int, int],
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    nms_threshold: float = DEFAULT_NMS_THRESHOLD,
    min_area: int = 0
) -> List[DetectionBox]:
    """
    Decode a YOLOv8 output tensor into person boxes.

    Args:
        output: Raw output of shape [1, 84, N] (4 box values + 80 class scores)
        image_size: Original (width, height)
        scale: Letterbox scale factor
        padding: Letterbox (pad_x, pad_y)

    Returns:
        Person boxes that survive thresholding and NMS, in NMS order
    """
    w, h = image_size
    pad_x, pad_y = padding
    rows = np.transpose(output[0])

    boxes = []
    confidences = []
    for row in rows:
        confidence = float(row[4 + COCO_PERSON_CLASS])
        if confidence < confidence_threshold:
            continue
        if int(np.argmax(row[4:])) != COCO_PERSON_CLASS:
            continue

        cx, cy, bw, bh = row[:4]
        cx = (cx - pad_x) / scale
        cy = (cy - pad_y) / scale
        bw = bw / scale
        bh = bh / scale

        x1 = max(0, min(int(cx - bw / 2), w))
        y1 = max(0, min(int(cy - bh / 2), h))
        box_w = max(1, min(int(bw), w - x1))
        box_h = max(1, min(int(bh), h - y1))

        if box_w * box_h < min_area:
            continue

        boxes.append([x1, y1, box_w, box_h])
        confidences.append(confidence)

    if not boxes:
        return []

    indices = cv2.dnn.NMSBoxes(boxes, confidences, confidence_threshold, nms_threshold)
    detections = []
    for i in np.asarray(indices).reshape(-1):
        x, y, bw, bh = boxes[int(i)]
        detections.append(DetectionBox(
            x=float(x), y=float(y), width=float(bw), height=float(bh),
            confidence=confidences[int(i)]
        ))
    return detections
