"""
Frame Buffer Module
===================

Buffers frames from the two independently clocked cameras and pairs
frames that were captured close in time.

The front buffer is drained strictly FIFO. For the oldest front frame the
whole back buffer is scanned for the closest timestamp; if that is within
the pairing window both frames are removed and returned as a pair,
otherwise the front frame is discarded as stale. One pair is resolved per
call; further pending pairs resolve on later frame arrivals.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

import numpy as np

from .config import DEFAULT_PAIRING_WINDOW_MS
from .logger import logger
from .registry import Role


@dataclass
class FrameRecord:
    """
    A decoded frame waiting to be paired.

    Attributes:
        seq: Producer-assigned sequence number (not necessarily contiguous)
        timestamp: Capture time in milliseconds
        image: Decoded BGR image
        role: Camera that produced the frame
    """
    seq: int
    timestamp: int
    image: np.ndarray
    role: Role


@dataclass
class StereoPair:
    """
    Two frames captured close enough in time to be treated as simultaneous.

    The front frame is the left image of the rig, the back frame the right.
    """
    front: FrameRecord
    back: FrameRecord
    dt_ms: int

    @property
    def left(self) -> np.ndarray:
        return self.front.image

    @property
    def right(self) -> np.ndarray:
        return self.back.image

    def describe(self) -> str:
        return (
            f"front#{self.front.seq}@{self.front.timestamp} / "
            f"back#{self.back.seq}@{self.back.timestamp} (dt={self.dt_ms}ms)"
        )


class RoleBuffer:
    """Arrival-ordered queue of frames for one role."""

    def __init__(self, role: Role):
        self.role = role
        self._frames: deque = deque()

    def append(self, frame: FrameRecord) -> None:
        self._frames.append(frame)

    def popleft(self) -> FrameRecord:
        return self._frames.popleft()

    def pop_at(self, index: int) -> FrameRecord:
        """Remove and return the frame at an arbitrary position."""
        frame = self._frames[index]
        del self._frames[index]
        return frame

    def peek(self) -> Optional[FrameRecord]:
        return self._frames[0] if self._frames else None

    def timestamps(self) -> List[int]:
        return [f.timestamp for f in self._frames]

    def evict_older_than(self, cutoff: int) -> int:
        """Drop every frame with timestamp < cutoff; returns how many went."""
        kept = [f for f in self._frames if f.timestamp >= cutoff]
        evicted = len(self._frames) - len(kept)
        if evicted:
            self._frames = deque(kept)
        return evicted

    def __len__(self) -> int:
        return len(self._frames)

    def __iter__(self) -> Iterator[FrameRecord]:
        return iter(self._frames)


@dataclass
class PairingStats:
    """Counters describing what happened to buffered frames."""
    pairs: int = 0
    stale_front: int = 0
    evicted_back: int = 0
    overflow: Dict[str, int] = field(default_factory=lambda: {r.value: 0 for r in Role})


class PairingMatcher:
    """
    Reconciles the front and back frame streams into time-aligned pairs.

    Args:
        window_ms: Maximum |front.timestamp - back.timestamp| for a pair
        max_depth: Cap per buffer; the oldest frame is dropped on overflow
            (None for unbounded)
        evict_stale_back: After each match attempt, drop back frames older
            than the front frame still waiting minus the window
    """

    def __init__(
        self,
        window_ms: int = DEFAULT_PAIRING_WINDOW_MS,
        max_depth: Optional[int] = None,
        evict_stale_back: bool = True
    ):
        self.window_ms = window_ms
        self.max_depth = max_depth
        self.evict_stale_back = evict_stale_back
        self.buffers = {role: RoleBuffer(role) for role in Role}
        self.stats = PairingStats()

    @property
    def front(self) -> RoleBuffer:
        return self.buffers[Role.FRONT]

    @property
    def back(self) -> RoleBuffer:
        return self.buffers[Role.BACK]

    def push(self, frame: FrameRecord) -> Optional[StereoPair]:
        """
        Buffer a frame and attempt one pairing.

        Returns:
            The pair formed by this arrival, or None
        """
        buffer = self.buffers[frame.role]
        buffer.append(frame)

        if self.max_depth is not None and len(buffer) > self.max_depth:
            dropped = buffer.popleft()
            self.stats.overflow[frame.role.value] += 1
            logger.debug(f"{frame.role.value} buffer full, dropped frame #{dropped.seq}")

        pair = self.match()

        # After matching, so the stale-front rule sees the back buffer as it was
        if self.evict_stale_back and self.front:
            self._evict_unmatchable_back()

        return pair

    def match(self) -> Optional[StereoPair]:
        """
        Resolve at most one pair from the heads of the buffers.

        Ties on timestamp distance go to the earliest-arrived back frame.
        """
        if not self.front or not self.back:
            return None

        head = self.front.peek()
        best_index = -1
        best_dt = None
        for i, candidate in enumerate(self.back):
            dt = abs(candidate.timestamp - head.timestamp)
            if best_dt is None or dt < best_dt:
                best_index, best_dt = i, dt

        if best_dt > self.window_ms:
            self.front.popleft()
            self.stats.stale_front += 1
            logger.debug(
                f"Dropping stale front frame #{head.seq}@{head.timestamp} "
                f"(closest back dt={best_dt}ms > {self.window_ms}ms)"
            )
            return None

        front = self.front.popleft()
        back = self.back.pop_at(best_index)
        self.stats.pairs += 1
        return StereoPair(front=front, back=back, dt_ms=best_dt)

    def _evict_unmatchable_back(self) -> None:
        # Relative to the front frame still waiting after match(): later front
        # frames are newer, so nothing older than this cutoff can pair again.
        cutoff = self.front.peek().timestamp - self.window_ms
        evicted = self.back.evict_older_than(cutoff)
        if evicted:
            self.stats.evicted_back += evicted
            logger.debug(f"Evicted {evicted} back frame(s) older than {cutoff}ms")
