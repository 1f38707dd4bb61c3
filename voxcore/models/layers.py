"""Numpy building blocks shared by the speech and language networks."""

from __future__ import annotations

import math

import numpy as np

from voxcore.errors import ModelLoadError
from voxcore.models.blob import Tensor
from voxcore.models.quant import QuantizedMatrix


def linear(weight: Tensor, x: np.ndarray, bias: np.ndarray | None = None) -> np.ndarray:
    """``x @ W.T (+ b)``; packed weights are dequantized block-wise here."""
    if isinstance(weight, QuantizedMatrix):
        out = weight.matmul(x)
    else:
        out = np.asarray(x, dtype=np.float32) @ weight.T
    if bias is not None:
        out = out + bias
    return out


def embed(weight: Tensor, ids: list[int] | np.ndarray) -> np.ndarray:
    if isinstance(weight, QuantizedMatrix):
        return weight.rows(ids)
    return np.asarray(weight[np.asarray(ids, dtype=np.int64)], dtype=np.float32)


def layer_norm(x: np.ndarray, weight: np.ndarray, bias: np.ndarray, eps: float = 1e-5) -> np.ndarray:
    mean = x.mean(axis=-1, keepdims=True)
    var = x.var(axis=-1, keepdims=True)
    return (x - mean) / np.sqrt(var + eps) * weight + bias


def rms_norm(x: np.ndarray, weight: np.ndarray, eps: float = 1e-5) -> np.ndarray:
    return x / np.sqrt(np.mean(np.square(x), axis=-1, keepdims=True) + eps) * weight


def softmax(x: np.ndarray, axis: int = -1) -> np.ndarray:
    shifted = x - np.max(x, axis=axis, keepdims=True)
    exp = np.exp(shifted)
    return exp / np.sum(exp, axis=axis, keepdims=True)


def gelu(x: np.ndarray) -> np.ndarray:
    return 0.5 * x * (1.0 + np.tanh(math.sqrt(2.0 / math.pi) * (x + 0.044715 * np.power(x, 3))))


def silu(x: np.ndarray) -> np.ndarray:
    return x / (1.0 + np.exp(-x))


def sinusoids(positions: np.ndarray | range, channels: int, max_timescale: float = 10_000.0) -> np.ndarray:
    """Fixed sinusoidal position embeddings, shape (len(positions), channels)."""
    half = channels // 2
    log_increment = math.log(max_timescale) / max(1, half - 1)
    inv = np.exp(-log_increment * np.arange(half, dtype=np.float32))
    scaled = np.asarray(positions, dtype=np.float32)[:, None] * inv[None, :]
    return np.concatenate([np.sin(scaled), np.cos(scaled)], axis=1).astype(np.float32)


def require(tensors: dict[str, Tensor], name: str, shape: tuple[int, ...]) -> Tensor:
    """Fetch a tensor by name, raising ModelLoadError when absent or mis-shaped."""
    tensor = tensors.get(name)
    if tensor is None:
        raise ModelLoadError(f"model blob is missing tensor '{name}'")
    actual = tuple(tensor.shape)
    if actual != shape:
        raise ModelLoadError(f"tensor '{name}' has shape {actual}, expected {shape}")
    return tensor


def config_int(config: dict[str, int | float | str], key: str) -> int:
    value = config.get(key)
    if not isinstance(value, int) or value <= 0:
        raise ModelLoadError(f"model config '{key}' must be a positive integer, got {value!r}")
    return value


__all__ = [
    "linear",
    "embed",
    "layer_norm",
    "rms_norm",
    "softmax",
    "gelu",
    "silu",
    "sinusoids",
    "require",
    "config_int",
]
