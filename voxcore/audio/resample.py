from __future__ import annotations

import math

import numpy as np

from voxcore.errors import UnsupportedSampleRate

MIN_RATIO = 1 / 8
MAX_RATIO = 8.0


def check_rates(from_rate: int, to_rate: int) -> None:
    if from_rate <= 0 or to_rate <= 0:
        raise UnsupportedSampleRate(f"sample rates must be positive (from={from_rate}, to={to_rate})")
    ratio = to_rate / from_rate
    if not MIN_RATIO <= ratio <= MAX_RATIO:
        raise UnsupportedSampleRate(f"resample ratio {ratio:.3f} outside [{MIN_RATIO}, {MAX_RATIO}]")


def resample(samples: np.ndarray, from_rate: int, to_rate: int) -> np.ndarray:
    """Linear-interpolation resample of a mono signal.

    The output holds ``ceil(n * to_rate / from_rate)`` samples so the clip
    duration is preserved to within one output sample.
    """
    check_rates(from_rate, to_rate)
    data = np.asarray(samples, dtype=np.float32)
    if data.size == 0 or from_rate == to_rate:
        return data.copy()
    step = from_rate / to_rate
    out_len = -(-data.size * to_rate // from_rate)
    positions = np.arange(out_len, dtype=np.float64) * step
    return np.interp(positions, np.arange(data.size), data).astype(np.float32)


def to_mono(samples: np.ndarray, channel_count: int) -> np.ndarray:
    """Average channels; accepts interleaved 1-D or (frames, channels) input."""
    if channel_count <= 0:
        raise ValueError("channel_count must be > 0")
    data = np.asarray(samples, dtype=np.float32)
    if data.ndim == 2:
        if data.shape[1] != channel_count:
            raise ValueError(f"expected {channel_count} channels, got {data.shape[1]}")
        return data.mean(axis=1, dtype=np.float32) if channel_count > 1 else data[:, 0].copy()
    if channel_count == 1:
        return data.copy()
    if data.size % channel_count:
        raise ValueError("interleaved buffer is not a whole number of frames")
    return data.reshape(-1, channel_count).mean(axis=1, dtype=np.float32)


class StreamingResampler:
    """Block-wise resampler that keeps interpolation phase across calls."""

    def __init__(self, from_rate: int, to_rate: int) -> None:
        check_rates(from_rate, to_rate)
        self.from_rate = from_rate
        self.to_rate = to_rate
        self._step = from_rate / to_rate
        self._pos = 0.0
        self._carry = np.zeros(0, dtype=np.float32)

    def process(self, samples: np.ndarray) -> np.ndarray:
        data = np.asarray(samples, dtype=np.float32)
        if self.from_rate == self.to_rate:
            return data.copy()
        buf = np.concatenate([self._carry, data]) if self._carry.size else data
        last = buf.size - 1
        if last < 1 or self._pos > last:
            self._carry = buf
            return np.zeros(0, dtype=np.float32)
        count = int(math.floor((last - self._pos) / self._step)) + 1
        positions = self._pos + self._step * np.arange(count, dtype=np.float64)
        out = np.interp(positions, np.arange(buf.size), buf).astype(np.float32)
        next_pos = self._pos + self._step * count
        keep_from = min(int(math.floor(next_pos)), last)
        self._carry = buf[keep_from:].copy()
        self._pos = next_pos - keep_from
        return out

    def reset(self) -> None:
        self._pos = 0.0
        self._carry = np.zeros(0, dtype=np.float32)


__all__ = ["resample", "to_mono", "check_rates", "StreamingResampler"]
