"""E1-over-IP line: TDM payload encoding and the per-line buffering state."""

from __future__ import annotations

import enum
import logging
import struct
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Sequence, Tuple

from .fifo import BYTES_PER_FRAME, FifoEmptyError, FrameFifo
from .rifo import FrameRifo, RifoRangeError

logger = logging.getLogger(__name__)

FRAMES_PER_SEC_THRESHOLD = 7500
FRAMES_BUFFER_RESET_AVG = 40000
DEFAULT_BATCHING_FACTOR = 32
DEFAULT_PREFILL_FRAME_COUNT = 200  # 25ms

GROUP_NAME_PREFIX = "e1oip_line"

# all timeslots except TS0
ALL_TS_MASK = 0xFFFFFFFE

_RX_WINDOW = 8000
_U32 = 0xFFFFFFFF
_TDM_HDR = struct.Struct(">HI")
TDM_HEADER_SIZE = _TDM_HDR.size

_IDLE_FRAME = b"\xff" * BYTES_PER_FRAME


class LineCounter(enum.IntEnum):
    """Rate counters kept for each line."""

    UNDERRUN = 0
    SUBSTITUTED = 1
    E1T_OVERFLOW = 2
    E1O_OVERFLOW = 3
    RX_OUT_OF_ORDER = 4
    RX_OUT_OF_WIN = 5
    CONNECT_ACCEPT = 6
    RX_BYTES = 7
    RX_PACKETS = 8
    TX_BYTES = 9
    TX_PACKETS = 10

    @property
    def counter_name(self) -> str:
        return _COUNTER_DESC[self][0]

    @property
    def description(self) -> str:
        return _COUNTER_DESC[self][1]


_COUNTER_DESC = {
    LineCounter.UNDERRUN: ("e1oip:underrun", "Frames underrun / slipped in IP->E1 direction"),
    LineCounter.SUBSTITUTED: ("e1oip:substituted", "Frames substituted in E1->IP direction"),
    LineCounter.E1T_OVERFLOW: ("e1oip:e1t_overflow", "Frames overflowing the RIFO in IP->E1 direction"),
    LineCounter.E1O_OVERFLOW: ("e1oip:e1o_overflow", "Frames overflowed in E1->IP direction"),
    LineCounter.RX_OUT_OF_ORDER: ("e1oip:rx:pkt_out_of_order", "Packets out-of-order in IP->E1 direction"),
    LineCounter.RX_OUT_OF_WIN: ("e1oip:rx:pkt_out_of_win", "Packets out-of-rx-window in IP->E1 direction"),
    LineCounter.CONNECT_ACCEPT: ("e1oip:connect_accepted", "OCTOI connections entering accepted state"),
    LineCounter.RX_BYTES: ("e1oip:rx:bytes", "Number of bytes received including UDP+IP header"),
    LineCounter.RX_PACKETS: ("e1oip:rx:packets", "Number of UDP packets received"),
    LineCounter.TX_BYTES: ("e1oip:tx:bytes", "Number of bytes transmitted including UDP+IP header"),
    LineCounter.TX_PACKETS: ("e1oip:tx:packets", "Number of UDP packets transmitted"),
}


class LineStat(enum.IntEnum):
    """Stat items (last set value) kept for each line."""

    RTT = 0
    E1O_FIFO = 1
    E1T_FIFO = 2
    E1O_TS = 3
    E1T_TS = 4

    @property
    def stat_name(self) -> str:
        return _STAT_DESC[self][0]

    @property
    def description(self) -> str:
        return _STAT_DESC[self][1]


_STAT_DESC = {
    LineStat.RTT: ("e1oip:rtt", "Round Trip Time (in us)"),
    LineStat.E1O_FIFO: ("e1oip:e1o_fifo_level", "E1 originated FIFO level"),
    LineStat.E1T_FIFO: ("e1oip:e1t_fifo_level", "E1 terminated FIFO level"),
    LineStat.E1O_TS: ("e1oip:e1o_ts_active", "E1 timeslots active in E1->IP direction"),
    LineStat.E1T_TS: ("e1oip:e1t_ts_active", "E1 timeslots active in IP->E1 direction"),
}


class RateCounter:
    """Monotonic counter that also reports how much it grew in the last full second."""

    def __init__(self) -> None:
        self.total = 0
        self._interval: Optional[int] = None
        self._interval_count = 0
        self._rate = 0

    def _roll(self, now: float) -> None:
        second = int(now // 1)
        if self._interval is None:
            self._interval = second
            return
        if second == self._interval:
            return
        self._rate = self._interval_count if second == self._interval + 1 else 0
        self._interval = second
        self._interval_count = 0

    def add(self, value: int, now: Optional[float] = None) -> None:
        """Increase the counter by ``value`` at time ``now`` (seconds)."""
        self._roll(time.monotonic() if now is None else now)
        self.total += value
        self._interval_count += value

    def rate_1s(self, now: Optional[float] = None) -> int:
        """Amount added during the last completed one-second interval."""
        self._roll(time.monotonic() if now is None else now)
        return self._rate


@dataclass
class LineConfig:
    """Tunable parameters of a line."""

    batching_factor: int = DEFAULT_BATCHING_FACTOR
    prefill_frame_count: int = DEFAULT_PREFILL_FRAME_COUNT
    buffer_reset_percent: int = 0
    force_send_all_ts: bool = False


class TdmRejected(ValueError):
    """A received TDM payload could not be accepted."""


def _to_int32(value: int) -> int:
    value &= _U32
    return value - (1 << 32) if value & 0x80000000 else value


def ts_mask_to_index(ts_mask: int) -> Tuple[int, ...]:
    """Timeslot numbers, in payload order, of the bits set in ``ts_mask``."""
    return tuple(ts for ts in range(BYTES_PER_FRAME) if ts_mask & (1 << ts))


def encode_tdm_payload(
    seq: int,
    frames: Iterable[bytes],
    last_frame: bytes,
    force_all_ts: bool = False,
) -> bytes:
    """Encode frames as a TDM_DATA payload (header plus changed timeslots).

    Only timeslots 1..31 that differ from the preceding frame (``last_frame``
    for the first one) are carried, unless ``force_all_ts`` is set.  If no
    timeslot is carried, a single octet holds the number of frames.
    """
    frame_list = [bytes(f) for f in frames]
    last_frame = bytes(last_frame)
    for frame in (*frame_list, last_frame):
        if len(frame) != BYTES_PER_FRAME:
            raise ValueError(f"frame must be {BYTES_PER_FRAME} bytes, got {len(frame)}")

    if force_all_ts:
        ts_mask = ALL_TS_MASK
    else:
        ts_mask = 0
        ref = last_frame
        for frame in frame_list:
            # TS0 is never compared
            for ts in range(1, BYTES_PER_FRAME):
                if frame[ts] != ref[ts]:
                    ts_mask |= 1 << ts
            ref = frame

    header = _TDM_HDR.pack(seq & 0xFFFF, ts_mask)
    timeslots = ts_mask_to_index(ts_mask)
    if not timeslots:
        return header + bytes([len(frame_list) & 0xFF])
    return header + bytes(frame[ts] for frame in frame_list for ts in timeslots)


class E1oipLine:
    """State of one E1 line carried over IP, in both directions.

    ``send(payload)`` is called with each encoded TDM_DATA payload once
    ``batching_factor`` frames have been queued in the E1 -> IP FIFO.
    """

    def __init__(self, name: str, send: Callable[[bytes], object]) -> None:
        self.name = name
        self.send = send
        self.cfg = LineConfig()
        self.iph_udph_size = 20 + 8
        self._counters: Dict[LineCounter, RateCounter] = {c: RateCounter() for c in LineCounter}
        self._stats: Dict[LineStat, int] = {s: 0 for s in LineStat}
        self.reset()

    def set_name(self, name: str) -> None:
        """Rename the line (used in logs and the counter group name)."""
        self.name = name

    def configure(
        self,
        batching_factor: int,
        prefill_frame_count: int,
        buffer_reset_percent: int,
        force_send_all_ts: bool,
    ) -> None:
        """Store new parameters; they take effect on the next :meth:`reset`."""
        self.cfg = LineConfig(
            batching_factor=batching_factor,
            prefill_frame_count=prefill_frame_count,
            buffer_reset_percent=buffer_reset_percent,
            force_send_all_ts=force_send_all_ts,
        )

    def reset(self) -> None:
        """Re-initialise the FIFO, RIFO and sequence state of both directions."""
        self.e1o_fifo = FrameFifo(self.cfg.batching_factor, self._on_threshold)
        self.e1o_last_frame = _IDLE_FRAME
        self.e1o_next_seq = 0

        self.e1t_rifo = FrameRifo(0)
        self.e1t_last_frame = _IDLE_FRAME
        self.e1t_next_fn32 = 0
        self.primed_rx_tdm = False
        self._delay = 0
        self._delay_cnt = 0

    # counters and stats

    def counter(self, which: LineCounter) -> int:
        return self._counters[LineCounter(which)].total

    def stat(self, which: LineStat) -> int:
        return self._stats[LineStat(which)]

    def set_stat(self, which: LineStat, value: int) -> None:
        self._stats[LineStat(which)] = value

    def add_counter(self, which: LineCounter, value: int) -> None:
        self._counters[LineCounter(which)].add(value)

    def rate_1s(self, which: LineCounter) -> int:
        """Growth of a counter during the last completed second."""
        return self._counters[LineCounter(which)].rate_1s()

    # E1 -> IP

    def _on_threshold(self, fifo: FrameFifo, frames: int) -> None:
        n_frames = fifo.threshold
        batch = []
        for i in range(n_frames):
            try:
                batch.append(fifo.get())
            except FifoEmptyError:
                logger.error(
                    "%s: frame_fifo_out failure for frame %u/%u",
                    self.name, self.e1o_next_seq + i, i,
                )
                batch.append(_IDLE_FRAME)
        self.set_stat(LineStat.E1O_FIFO, len(fifo))

        payload = encode_tdm_payload(
            self.e1o_next_seq, batch, self.e1o_last_frame, self.cfg.force_send_all_ts
        )
        _, ts_mask = _TDM_HDR.unpack_from(payload)
        self.set_stat(LineStat.E1O_TS, len(ts_mask_to_index(ts_mask)))

        self.send(payload)
        self.add_counter(LineCounter.TX_PACKETS, 1)
        self.add_counter(LineCounter.TX_BYTES, self.iph_udph_size + len(payload))

        self.e1o_next_seq = (self.e1o_next_seq + n_frames) & 0xFFFF
        if batch:
            self.e1o_last_frame = batch[-1]

    # IP -> E1

    def receive_tdm(self, payload: bytes) -> int:
        """Feed one received TDM_DATA payload into the RIFO.

        Returns the number of frames it carried.  Raises :class:`TdmRejected`
        for a truncated payload or one outside the +/- 1 s receive window.
        """
        payload = bytes(payload)
        if len(payload) < TDM_HEADER_SIZE:
            raise TdmRejected(f"TDM payload too short ({len(payload)} bytes)")
        frame_nr, ts_mask = _TDM_HDR.unpack_from(payload)
        data = payload[TDM_HEADER_SIZE:]
        exp_next_seq = self.e1t_next_fn32 & 0xFFFF

        if frame_nr != exp_next_seq:
            logger.info("%s: RxIP: frame_nr=%u, but expected %u", self.name, frame_nr, exp_next_seq)
            frame_nr_ofs = (frame_nr - (exp_next_seq - _RX_WINDOW)) & 0xFFFF
            if frame_nr_ofs > 2 * _RX_WINDOW:
                self.add_counter(LineCounter.RX_OUT_OF_WIN, 1)
                raise TdmRejected(
                    f"frame_nr={frame_nr} outside +/- 1s window of expected "
                    f"frame {self.e1t_next_fn32}"
                )
            self.add_counter(LineCounter.RX_OUT_OF_ORDER, 1)
            fn32 = (self.e1t_next_fn32 + frame_nr_ofs - _RX_WINDOW) & _U32
            update_next = frame_nr_ofs >= _RX_WINDOW
        else:
            fn32 = self.e1t_next_fn32
            update_next = True

        timeslots = ts_mask_to_index(ts_mask)
        num_ts = len(timeslots)
        self.set_stat(LineStat.E1T_TS, num_ts)
        if num_ts:
            n_frames = len(data) // num_ts
            if len(data) % num_ts:
                logger.info(
                    "%s: RxIP: %u extraneous bytes (len=%u, num_ts=%u, n_frames=%u)",
                    self.name, len(data) % num_ts, len(data), num_ts, n_frames,
                )
        elif not data:
            logger.error("%s: RxIP: num_ts==0 but no n_frames octet!", self.name)
            n_frames = BYTES_PER_FRAME
        else:
            n_frames = data[0]

        frame_buf = bytearray(self.e1t_last_frame)
        for i in range(n_frames):
            chunk = data[i * num_ts:(i + 1) * num_ts]
            for ts, octet in zip(timeslots, chunk):
                frame_buf[ts] = octet
            fn = (fn32 + i) & _U32
            try:
                self.e1t_rifo.put(bytes(frame_buf), fn)
            except RifoRangeError:
                self.add_counter(LineCounter.E1T_OVERFLOW, 1)
            if not self.cfg.buffer_reset_percent:
                continue
            self._track_delay(fn)

        self.e1t_last_frame = bytes(frame_buf)
        if update_next:
            self.e1t_next_fn32 = (fn32 + n_frames) & _U32
        self.set_stat(LineStat.E1T_FIFO, self.e1t_rifo.depth())
        return n_frames

    def _track_delay(self, fn: int) -> None:
        self._delay += _to_int32(fn - self.e1t_rifo.next_out_fn)
        self._delay_cnt += 1
        if self._delay_cnt != FRAMES_BUFFER_RESET_AVG:
            return
        avg = int(self._delay / self._delay_cnt)
        self._delay = 0
        self._delay_cnt = 0
        prefill = self.cfg.prefill_frame_count
        if not prefill:
            return
        offset = abs(prefill - avg) * 100 // prefill
        logger.info("%s: RxIP: Buffer fill %d frames, %u%% off target.", self.name, avg, offset)
        if offset > self.cfg.buffer_reset_percent:
            logger.error("%s: RxIP: frame number out of range. Reset buffer.", self.name)
            self.e1t_rifo.reset(fn)
            self.primed_rx_tdm = False


__all__: Sequence[str] = (
    "LineCounter",
    "LineStat",
    "RateCounter",
    "LineConfig",
    "TdmRejected",
    "E1oipLine",
    "encode_tdm_payload",
    "ts_mask_to_index",
)