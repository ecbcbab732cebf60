#!/usr/bin/env python3
"""
Camera client for the stereocast server.

Registers as the front or back camera and streams frames from a webcam
or video file, printing any 3d_positions messages it receives.

Usage:
    python tools/stream_camera.py --role front --source 0
    python tools/stream_camera.py --role back --source back.mp4 --url ws://host:3000
"""

import argparse
import asyncio
import json
import sys
import time
from pathlib import Path

import cv2
from websockets.asyncio.client import connect

sys.path.insert(0, str(Path(__file__).parent.parent))

from stereocast.logger import logger, setup_logging
from stereocast.protocol import encode_image


def parse_args():
    parser = argparse.ArgumentParser(description="Stream a camera to the stereocast server")
    parser.add_argument("--role", choices=["front", "back"], required=True)
    parser.add_argument("--source", default="0", help="Webcam index or video file path")
    parser.add_argument("--url", default="ws://localhost:3000")
    parser.add_argument("--fps", type=float, default=10.0, help="Frames sent per second")
    parser.add_argument("--quality", type=int, default=80, help="JPEG quality")
    return parser.parse_args()


async def receive_positions(websocket) -> None:
    async for message in websocket:
        data = json.loads(message)
        if data.get("type") == "3d_positions":
            valid = [p for p in data["data"] if p["z"] >= 0]
            logger.info(f"{len(valid)} subject(s): {valid}")


async def stream(args) -> None:
    source = int(args.source) if args.source.isdigit() else args.source
    cap = cv2.VideoCapture(source)
    if not cap.isOpened():
        raise SystemExit(f"Could not open source: {args.source}")

    interval = 1.0 / args.fps
    seq = 0
    async with connect(args.url, max_size=None) as websocket:
        await websocket.send(json.dumps({"type": "role", "role": args.role}))
        receiver = asyncio.create_task(receive_positions(websocket))
        try:
            while True:
                ok, frame = cap.read()
                if not ok:
                    logger.info("Source exhausted")
                    break
                timestamp = int(time.time() * 1000)
                await websocket.send(json.dumps({
                    "type": "frame",
                    "seq": seq,
                    "timestamp": timestamp,
                    "img": encode_image(frame, ".jpg", [cv2.IMWRITE_JPEG_QUALITY, args.quality]),
                }))
                seq += 1
                await asyncio.sleep(interval)
        finally:
            receiver.cancel()
            cap.release()


def main():
    setup_logging("INFO")
    args = parse_args()
    try:
        asyncio.run(stream(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")


if __name__ == "__main__":
    main()
