"""Fixed-size ring FIFO of E1 frames for the E1 -> IP direction."""

from __future__ import annotations

from typing import Callable, Optional

BYTES_PER_FRAME = 32
FRAMES_PER_FIFO = 1792

_BUF_SIZE = BYTES_PER_FRAME * FRAMES_PER_FIFO


class FifoEmptyError(LookupError):
    """Raised when a frame is requested from an empty FIFO."""


def _check_frame(frame: bytes) -> bytes:
    frame = bytes(frame)
    if len(frame) != BYTES_PER_FRAME:
        raise ValueError(
            f"frame must be {BYTES_PER_FRAME} bytes, got {len(frame)}"
        )
    return frame


class FrameFifo:
    """Ring buffer of 32-byte E1 frames.

    Once at least ``threshold`` frames are stored after a write,
    ``threshold_cb(fifo, frames_available)`` is called.  As with the
    ring it models, overflow is not detected: writing a full ring's
    worth of frames without reading wraps the fill level around.
    """

    def __init__(
        self,
        threshold: int,
        threshold_cb: Optional[Callable[["FrameFifo", int], None]] = None,
    ) -> None:
        self._buf = bytearray(b"\xff" * _BUF_SIZE)
        self._next_in = 0
        self._next_out = 0
        self.threshold = threshold
        self.threshold_cb = threshold_cb

    def __len__(self) -> int:
        return ((self._next_in + _BUF_SIZE - self._next_out) % _BUF_SIZE) // BYTES_PER_FRAME

    def space(self) -> int:
        """Number of frames that can still be stored."""
        return FRAMES_PER_FIFO - len(self)

    def put(self, frame: bytes) -> None:
        """Append one frame, possibly triggering the threshold callback."""
        frame = _check_frame(frame)
        start = self._next_in
        self._buf[start:start + BYTES_PER_FRAME] = frame
        self._next_in = (start + BYTES_PER_FRAME) % _BUF_SIZE

        if self.threshold_cb is not None:
            available = len(self)
            if available >= self.threshold:
                self.threshold_cb(self, available)

    def put_many(self, data: bytes) -> int:
        """Append consecutive frames from ``data``; return how many were stored."""
        data = bytes(data)
        if len(data) % BYTES_PER_FRAME:
            raise ValueError(
                f"data length {len(data)} is not a multiple of {BYTES_PER_FRAME}"
            )
        count = 0
        for offset in range(0, len(data), BYTES_PER_FRAME):
            self.put(data[offset:offset + BYTES_PER_FRAME])
            count += 1
        return count

    def get(self) -> bytes:
        """Remove and return the oldest frame."""
        if len(self) < 1:
            raise FifoEmptyError("no frame available in FIFO")
        start = self._next_out
        frame = bytes(self._buf[start:start + BYTES_PER_FRAME])
        self._next_out = (start + BYTES_PER_FRAME) % _BUF_SIZE
        return frame

    def get_many(self, count: int) -> bytes:
        """Remove up to ``count`` frames and return them concatenated."""
        frames = []
        for _ in range(count):
            if len(self) < 1:
                break
            frames.append(self.get())
        return b"".join(frames)