import pytest

from octoip.fifo import (
    BYTES_PER_FRAME,
    FRAMES_PER_FIFO,
    FifoEmptyError,
    FrameFifo,
)


def frame(n):
    return bytes([n & 0xFF]) * BYTES_PER_FRAME


def test_sizes_fixed_by_format():
    fifo = FrameFifo(1000)
    assert fifo.space() == 1792
    fifo.put(b"\xab" * 32)
    assert len(fifo.get_many(1)) == 32


def test_new_fifo_is_empty():
    fifo = FrameFifo(8)
    assert len(fifo) == 0
    assert fifo.space() == FRAMES_PER_FIFO


def test_put_get_round_trip():
    fifo = FrameFifo(100)
    fifo.put(frame(7))
    assert len(fifo) == 1
    assert fifo.get() == frame(7)
    assert len(fifo) == 0


def test_order_is_preserved():
    fifo = FrameFifo(100)
    for i in range(5):
        fifo.put(frame(i))
    assert [fifo.get() for _ in range(5)] == [frame(i) for i in range(5)]


def test_get_empty_raises():
    fifo = FrameFifo(4)
    with pytest.raises(FifoEmptyError):
        fifo.get()


def test_put_wrong_size_raises():
    fifo = FrameFifo(4)
    with pytest.raises(ValueError):
        fifo.put(b"\x00" * (BYTES_PER_FRAME - 1))


def test_space_tracks_fill():
    fifo = FrameFifo(1000)
    for i in range(10):
        fifo.put(frame(i))
    assert len(fifo) + fifo.space() == FRAMES_PER_FIFO
    assert fifo.space() == FRAMES_PER_FIFO - 10


def test_threshold_callback_invoked():
    calls = []

    def cb(f, frames):
        calls.append(frames)
        for _ in range(frames):
            f.get()

    fifo = FrameFifo(3, cb)
    for i in range(7):
        fifo.put(frame(i))
    assert calls == [3, 3]
    assert len(fifo) == 1


def test_threshold_callback_not_called_below_threshold():
    calls = []
    fifo = FrameFifo(5, lambda f, n: calls.append(n))
    for i in range(4):
        fifo.put(frame(i))
    assert calls == []
    fifo.put(frame(4))
    assert calls == [5]


def test_put_many_and_get_many():
    fifo = FrameFifo(1000)
    data = b"".join(frame(i) for i in range(4))
    assert fifo.put_many(data) == 4
    assert fifo.get_many(2) == data[: 2 * BYTES_PER_FRAME]
    rest = fifo.get_many(10)
    assert rest == data[2 * BYTES_PER_FRAME:]
    assert fifo.get_many(3) == b""


def test_put_many_rejects_partial_frame():
    fifo = FrameFifo(1000)
    with pytest.raises(ValueError):
        fifo.put_many(b"\x01" * (BYTES_PER_FRAME + 1))


def test_wraparound_preserves_data():
    fifo = FrameFifo(10000)
    for i in range(FRAMES_PER_FIFO * 2 + 5):
        fifo.put(frame(i))
        assert fifo.get() == frame(i)
    assert len(fifo) == 0


def test_overflow_is_not_detected_and_wraps():
    fifo = FrameFifo(10000)
    for i in range(FRAMES_PER_FIFO):
        fifo.put(frame(i))
    assert len(fifo) == 0