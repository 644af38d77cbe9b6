"""Random-in, first-out frame buffer for the IP -> E1 direction.

Frames arriving over IP may be reordered; each one is stored at the slot
given by its absolute 32-bit frame number and read back in order.
"""

from __future__ import annotations

from .fifo import BYTES_PER_FRAME, FRAMES_PER_FIFO

_U32 = 0xFFFFFFFF


class RifoRangeError(ValueError):
    """Raised when a frame number cannot be stored in the RIFO."""


class FrameMissingError(LookupError):
    """The next output slot holds no received frame; the caller should substitute one."""


class RifoUnderrunError(LookupError):
    """The RIFO has no depth at all: the jitter buffer ran empty."""


class FrameRifo:
    """Reordering jitter buffer keyed by 32-bit frame number."""

    def __init__(self, fn: int = 0) -> None:
        self.reset(fn)

    def reset(self, fn: int) -> None:
        """Empty the buffer; the next frame read out will be ``fn``."""
        self._buf = bytearray(b"\xff" * (BYTES_PER_FRAME * FRAMES_PER_FIFO))
        self._occupied = [False] * FRAMES_PER_FIFO
        self._next_out = 0
        self.next_out_fn = fn & _U32
        self.last_in_fn = (fn - 1) & _U32

    def in_range(self, fn: int) -> bool:
        """Whether frame number ``fn`` fits in the current window."""
        return ((fn - self.next_out_fn) & _U32) < FRAMES_PER_FIFO

    def depth(self) -> int:
        """Distance from the next output frame to the last input frame, inclusive."""
        return (self.last_in_fn - self.next_out_fn + 1) & _U32

    def frames(self) -> int:
        """Number of slots currently holding received data."""
        return sum(self._occupied)

    def _bucket_for_fn(self, fn: int) -> int:
        offset = ((fn - self.next_out_fn) & _U32) % FRAMES_PER_FIFO
        return (self._next_out + offset) % FRAMES_PER_FIFO

    def put(self, frame: bytes, fn: int) -> None:
        """Store ``frame`` at absolute frame number ``fn``."""
        frame = bytes(frame)
        if len(frame) != BYTES_PER_FRAME:
            raise ValueError(
                f"frame must be {BYTES_PER_FRAME} bytes, got {len(frame)}"
            )
        fn &= _U32
        if not self.in_range(fn):
            raise RifoRangeError(
                f"frame number {fn} outside window starting at {self.next_out_fn}"
            )
        bucket = self._bucket_for_fn(fn)
        start = bucket * BYTES_PER_FRAME
        self._buf[start:start + BYTES_PER_FRAME] = frame
        self._occupied[bucket] = True
        self.last_in_fn = fn

    def get(self) -> bytes:
        """Return the next frame in order.

        The read position always advances by one frame, also when
        :class:`RifoUnderrunError` or :class:`FrameMissingError` is raised.
        """
        bucket = self._next_out
        error: Exception | None = None
        frame = b""

        if self.depth() == 0:
            error = RifoUnderrunError("RIFO depth is zero")
        elif not self._occupied[bucket]:
            error = FrameMissingError(f"frame {self.next_out_fn} not received")
        else:
            start = bucket * BYTES_PER_FRAME
            frame = bytes(self._buf[start:start + BYTES_PER_FRAME])
            self._occupied[bucket] = False

        self._next_out = (bucket + 1) % FRAMES_PER_FIFO
        if self.depth() == 0:
            # drag last_in along while empty to avoid wrapping the depth
            self.last_in_fn = (self.last_in_fn + 1) & _U32
        self.next_out_fn = (self.next_out_fn + 1) & _U32

        if error is not None:
            raise error
        return frame