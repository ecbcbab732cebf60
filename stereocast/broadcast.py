"""
Broadcaster
===========

Fans a result frame out to every open connection, whatever its role.
"""

from typing import Sequence

from websockets.exceptions import ConnectionClosed

from .logger import logger
from .protocol import serialize_positions
from .registry import ConnectionRegistry
from .triangulation import Position3D


class Broadcaster:
    """
    Sends serialized results to all connections in the registry.

    `failed` counts sends that raised; `closed` counts connections found
    already closed at send time.

    The registry is snapshotted before sending, so registrations and
    disconnects that happen while sends are suspended do not disturb the
    iteration. Connections removed in the meantime are skipped, and a
    failed send never stops delivery to the remaining connections.
    """

    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry
        self.sent = 0
        self.failed = 0
        self.closed = 0

    async def broadcast(self, positions: Sequence[Position3D]) -> int:
        """
        Send one result frame.

        Returns:
            Number of connections the message was delivered to
        """
        message = serialize_positions(positions)
        delivered = 0

        for connection in self.registry.snapshot():
            if connection not in self.registry:
                continue
            try:
                await connection.send(message)
            except ConnectionClosed:
                self.closed += 1
                logger.debug("Skipping connection that closed during broadcast")
                continue
            except Exception as e:
                self.failed += 1
                logger.warning(f"Broadcast to a connection failed: {e!r}")
                continue
            delivered += 1

        self.sent += 1
        return delivered
