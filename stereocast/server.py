"""
Stereo Server
=============

WebSocket server that receives role registrations and camera frames,
pairs front/back frames, reconstructs 3D positions and broadcasts them.

Frame handling (parse, decode, buffer, pair) runs synchronously inside the
connection handler, so no two arrivals interleave while the buffers are
being mutated. Reconstructions run in a thread pool; at most
`max_in_flight` run at once and at most `max_pending` matched pairs wait
for a worker. When the waiting queue is full the oldest waiting pair is
dropped. Running reconstructions are never cancelled, and results are
broadcast in completion order, which can differ from pairing order.
"""

import asyncio
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Deque, Dict, Optional, Set

from websockets.asyncio.server import Server, serve
from websockets.exceptions import ConnectionClosed

from .broadcast import Broadcaster
from .config import ServerConfig
from .frame_buffer import FrameRecord, PairingMatcher, StereoPair
from .logger import logger
from .protocol import FrameMessage, ProtocolError, RoleMessage, decode_image, parse_message
from .registry import ConnectionRegistry


class ServerContext:
    """
    Mutable state owned by one server instance: the connection registry
    and the pairing matcher with its two role buffers.
    """

    def __init__(self, settings: ServerConfig):
        self.registry = ConnectionRegistry()
        self.matcher = PairingMatcher(
            window_ms=settings.pairing_window_ms,
            max_depth=settings.max_buffer_depth
        )


class StereoServer:
    """
    Args:
        settings: Runtime settings
        pipeline: Object with a synchronous run(pair) -> ResultFrame
        executor: Thread pool for reconstructions (created if None)
    """

    def __init__(self, settings: ServerConfig, pipeline: Any, executor: Optional[ThreadPoolExecutor] = None):
        self.settings = settings
        self.context = ServerContext(settings)
        self.broadcaster = Broadcaster(self.context.registry)
        self.pipeline = pipeline

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=settings.max_in_flight,
            thread_name_prefix="reconstruct"
        )
        self._pending: Deque[StereoPair] = deque()
        self._in_flight: Set[asyncio.Task] = set()

        self.dropped_pairs = 0
        self.failed_reconstructions = 0
        self.completed_reconstructions = 0

    @property
    def registry(self) -> ConnectionRegistry:
        return self.context.registry

    @property
    def matcher(self) -> PairingMatcher:
        return self.context.matcher

    def handle_message(self, connection: Any, raw) -> Optional[StereoPair]:
        """
        Process one inbound message from a connection.

        Must be called from within the running event loop. Malformed
        messages and undecodable images are logged and dropped.

        Returns:
            The stereo pair formed by this message, if any
        """
        try:
            message = parse_message(raw)
        except ProtocolError as e:
            logger.warning(f"Dropping malformed message: {e}")
            return None

        if isinstance(message, RoleMessage):
            if self.registry.register(connection, message.role):
                logger.info(f"Connection registered as {message.role}")
            return None

        role = self.registry.lookup(connection)
        if role is None:
            logger.debug(f"Ignoring frame #{message.seq} from unassigned connection")
            return None

        return self._handle_frame(role, message)

    def _handle_frame(self, role, message: FrameMessage) -> Optional[StereoPair]:
        try:
            image = decode_image(message.img)
        except ProtocolError as e:
            logger.warning(f"Dropping {role.value} frame #{message.seq}: {e}")
            return None

        frame = FrameRecord(
            seq=message.seq,
            timestamp=message.timestamp,
            image=image,
            role=role
        )
        pair = self.matcher.push(frame)
        if pair is not None:
            logger.debug(f"Paired {pair.describe()}")
            self.submit(pair)
        return pair

    def submit(self, pair: StereoPair) -> None:
        """Queue a pair for reconstruction, dropping the oldest waiting pair on overflow."""
        if len(self._pending) >= self.settings.max_pending:
            dropped = self._pending.popleft()
            self.dropped_pairs += 1
            logger.warning(f"Reconstruction backlog full, dropping pair {dropped.describe()}")
        self._pending.append(pair)
        self._drain()

    def _drain(self) -> None:
        loop = asyncio.get_running_loop()
        while self._pending and len(self._in_flight) < self.settings.max_in_flight:
            pair = self._pending.popleft()
            task = loop.create_task(self._reconstruct(pair))
            self._in_flight.add(task)
            task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._in_flight.discard(task)
        self._drain()

    async def _reconstruct(self, pair: StereoPair) -> None:
        loop = asyncio.get_running_loop()
        try:
            positions = await loop.run_in_executor(self._executor, self.pipeline.run, pair)
        except Exception:
            self.failed_reconstructions += 1
            logger.exception(f"Reconstruction failed for pair {pair.describe()}, result dropped")
            return

        self.completed_reconstructions += 1
        await self.broadcaster.broadcast(positions)

    async def wait_idle(self) -> None:
        """Wait until no reconstruction is running or waiting."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def handler(self, websocket) -> None:
        """Per-connection handler passed to websockets.serve."""
        self.registry.add(websocket)
        logger.info(f"Client connected from {getattr(websocket, 'remote_address', None)}")
        try:
            async for message in websocket:
                self.handle_message(websocket, message)
        except ConnectionClosed as e:
            logger.debug(f"Connection closed: {e}")
        finally:
            role = self.registry.remove(websocket)
            logger.info(f"Client disconnected (role={role.value if role else 'unassigned'})")

    def stats(self) -> Dict[str, int]:
        matcher_stats = self.matcher.stats
        return {
            "connections": len(self.registry),
            "pairs": matcher_stats.pairs,
            "stale_front": matcher_stats.stale_front,
            "evicted_back": matcher_stats.evicted_back,
            "in_flight": len(self._in_flight),
            "pending": len(self._pending),
            "dropped_pairs": self.dropped_pairs,
            "failed_reconstructions": self.failed_reconstructions,
            "completed_reconstructions": self.completed_reconstructions,
            "broadcast_failed": self.broadcaster.failed,
            "broadcast_closed": self.broadcaster.closed,
        }

    async def listen(self) -> Server:
        """Open the listening socket and return the websockets server."""
        # Frames are base64 images; websockets' 1 MiB default is too small
        return await serve(
            self.handler,
            self.settings.host,
            self.settings.port,
            max_size=self.settings.max_message_size
        )

    async def serve(self) -> None:
        """Listen until cancelled."""
        host, port = self.settings.host, self.settings.port
        try:
            async with await self.listen() as server:
                logger.info(f"WebSocket server running on ws://{host}:{port}")
                await server.serve_forever()
        finally:
            await self.wait_idle()
            self.close()

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False)
