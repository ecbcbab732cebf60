"""
Wire Protocol
=============

JSON messages exchanged over the WebSocket connection.

Inbound:
    {"type": "role", "role": "front" | "back"}
    {"type": "frame", "seq": int, "timestamp": int, "img": "<base64 JPEG/PNG>"}

Outbound:
    {"type": "3d_positions", "data": [{"x": .., "y": .., "z": ..} x 6]}
"""

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Sequence, Union

import cv2
import numpy as np

from .triangulation import Position3D

POSITIONS_MESSAGE_TYPE = "3d_positions"


class ProtocolError(ValueError):
    """Raised for inbound messages that cannot be parsed or decoded."""


@dataclass(frozen=True)
class RoleMessage:
    role: str


@dataclass(frozen=True)
class FrameMessage:
    seq: int
    timestamp: int
    img: str


InboundMessage = Union[RoleMessage, FrameMessage]


def _require_int(data: dict, key: str) -> int:
    value = data.get(key)
    # bool is an int subclass but never a valid sequence number or timestamp
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ProtocolError(f"Field '{key}' must be an integer")
    if isinstance(value, float):
        if not value.is_integer():
            raise ProtocolError(f"Field '{key}' must be an integer")
        value = int(value)
    return value


def parse_message(raw: Union[str, bytes]) -> InboundMessage:
    """
    Parse one inbound message.

    The role value is passed through unvalidated; the registry decides
    whether it is acceptable.

    Raises:
        ProtocolError: On invalid JSON, unknown type or missing fields
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError("Message must be a JSON object")

    msg_type = data.get("type")
    if msg_type == "role":
        return RoleMessage(role=data.get("role"))

    if msg_type == "frame":
        img = data.get("img")
        if not isinstance(img, str) or not img:
            raise ProtocolError("Field 'img' must be a non-empty base64 string")
        return FrameMessage(
            seq=_require_int(data, "seq"),
            timestamp=_require_int(data, "timestamp"),
            img=img
        )

    raise ProtocolError(f"Unknown message type: {msg_type!r}")


def decode_image(img: str) -> np.ndarray:
    """
    Decode a base64 compressed image into a BGR pixel buffer.

    A leading data URL header ("data:image/jpeg;base64,") is accepted.

    Raises:
        ProtocolError: If the payload is not base64 or not a decodable image
    """
    if img.startswith("data:"):
        _, _, img = img.partition(",")

    try:
        payload = base64.b64decode(img, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ProtocolError(f"Image is not valid base64: {e}") from e

    buffer = np.frombuffer(payload, dtype=np.uint8)
    if buffer.size == 0:
        raise ProtocolError("Image payload is empty")

    image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if image is None:
        raise ProtocolError("Image payload could not be decoded")
    return image


def encode_image(image: np.ndarray, ext: str = ".jpg", params=None) -> str:
    """Compress and base64-encode a BGR image (client side of decode_image)."""
    ok, encoded = cv2.imencode(ext, image, params or [])
    if not ok:
        raise ValueError(f"Could not encode image as {ext}")
    return base64.b64encode(encoded.tobytes()).decode("ascii")


def serialize_positions(positions: Sequence[Position3D]) -> str:
    """Serialize a result frame as a tagged 3d_positions message."""
    return json.dumps({
        "type": POSITIONS_MESSAGE_TYPE,
        "data": [p.to_dict() for p in positions]
    })
