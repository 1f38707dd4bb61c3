"""Block quantization for 2-D weight matrices.

``q4_0``: 32 weights per block, one float16 scale, values packed two per byte
(low nibbles hold the first 16 values of the block, high nibbles the last 16).
``q8_0``: 32 weights per block, one float16 scale, int8 values.
Matrices stay packed in memory and are dequantized block-wise when used.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

BLOCK_SIZE = 32


def _blocks(weights: np.ndarray) -> np.ndarray:
    rows, cols = weights.shape
    if cols % BLOCK_SIZE:
        raise ValueError(f"inner dimension {cols} is not a multiple of {BLOCK_SIZE}")
    return weights.astype(np.float32).reshape(rows, cols // BLOCK_SIZE, BLOCK_SIZE)


def quantize_q4_0(weights: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    blocks = _blocks(weights)
    idx = np.argmax(np.abs(blocks), axis=-1)
    extreme = np.take_along_axis(blocks, idx[..., None], axis=-1)[..., 0]
    scale = extreme / -8.0
    inv = np.divide(1.0, scale, out=np.zeros_like(scale), where=scale != 0)
    q = np.clip(np.round(blocks * inv[..., None]) + 8, 0, 15).astype(np.uint8)
    half = BLOCK_SIZE // 2
    packed = q[..., :half] | (q[..., half:] << 4)
    return packed, scale.astype(np.float16)


def dequantize_q4_0(packed: np.ndarray, scales: np.ndarray) -> np.ndarray:
    lo = (packed & 0x0F).astype(np.int8) - 8
    hi = (packed >> 4).astype(np.int8) - 8
    values = np.concatenate([lo, hi], axis=-1).astype(np.float32)
    values *= scales.astype(np.float32)[..., None]
    return values.reshape(values.shape[0], -1)


def quantize_q8_0(weights: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    blocks = _blocks(weights)
    amax = np.max(np.abs(blocks), axis=-1)
    scale = amax / 127.0
    inv = np.divide(1.0, scale, out=np.zeros_like(scale), where=scale != 0)
    q = np.clip(np.round(blocks * inv[..., None]), -127, 127).astype(np.int8)
    return q, scale.astype(np.float16)


def dequantize_q8_0(values: np.ndarray, scales: np.ndarray) -> np.ndarray:
    out = values.astype(np.float32) * scales.astype(np.float32)[..., None]
    return out.reshape(out.shape[0], -1)


@dataclass(frozen=True, eq=False)
class QuantizedMatrix:
    """A (rows x cols) weight matrix kept in its packed block form."""

    scheme: str
    shape: tuple[int, int]
    data: np.ndarray
    scales: np.ndarray | None = None

    @classmethod
    def from_dense(cls, weights: np.ndarray, scheme: str) -> "QuantizedMatrix":
        weights = np.asarray(weights, dtype=np.float32)
        shape = (int(weights.shape[0]), int(weights.shape[1]))
        if scheme == "q4_0":
            packed, scales = quantize_q4_0(weights)
            return cls(scheme, shape, packed, scales)
        if scheme == "q8_0":
            values, scales = quantize_q8_0(weights)
            return cls(scheme, shape, values, scales)
        if scheme == "f32":
            return cls(scheme, shape, weights.copy())
        raise ValueError(f"unknown quantization scheme '{scheme}'")

    @property
    def nbytes(self) -> int:
        return int(self.data.nbytes + (self.scales.nbytes if self.scales is not None else 0))

    def dequantize(self, rows: np.ndarray | None = None) -> np.ndarray:
        data = self.data if rows is None else self.data[rows]
        scales = None if self.scales is None else (self.scales if rows is None else self.scales[rows])
        if self.scheme == "q4_0":
            return dequantize_q4_0(data, scales)
        if self.scheme == "q8_0":
            return dequantize_q8_0(data, scales)
        return np.asarray(data, dtype=np.float32)

    def rows(self, ids: np.ndarray | list[int]) -> np.ndarray:
        return self.dequantize(np.asarray(ids, dtype=np.int64))

    def matmul(self, x: np.ndarray) -> np.ndarray:
        """Compute ``x @ W.T`` for x of shape (..., cols)."""
        return np.asarray(x, dtype=np.float32) @ self.dequantize().T


__all__ = [
    "BLOCK_SIZE",
    "QuantizedMatrix",
    "quantize_q4_0",
    "dequantize_q4_0",
    "quantize_q8_0",
    "dequantize_q8_0",
]
