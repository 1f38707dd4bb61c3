"""Decoder-only transformer in the llama layout with a per-session KV cache."""

from __future__ import annotations

import math
from dataclasses import dataclass, field

import numpy as np

from voxcore.errors import InferenceError, ModelLoadError
from voxcore.models.blob import ParsedModel, Tensor
from voxcore.models.layers import config_int, embed, linear, require, rms_norm, silu, sinusoids, softmax


@dataclass(slots=True)
class DecoderState:
    """Keys and values seen so far, one (position x d_model) array per layer."""

    keys: list[np.ndarray] = field(default_factory=list)
    values: list[np.ndarray] = field(default_factory=list)
    position: int = 0


@dataclass(slots=True)
class _Block:
    attn_norm: Tensor
    wq: Tensor
    wk: Tensor
    wv: Tensor
    wo: Tensor
    ffn_norm: Tensor
    w1: Tensor
    w2: Tensor
    w3: Tensor


class CausalLanguageModel:
    families = ("llama", "phi")
    required_specials = ("<|endoftext|>",)

    def __init__(self, config: dict[str, int | float | str], tensors: dict[str, Tensor]) -> None:
        self.d_model = config_int(config, "d_model")
        self.n_heads = config_int(config, "n_heads")
        self.n_layers = config_int(config, "n_layers")
        self.d_ff = config_int(config, "d_ff")
        self.n_vocab = config_int(config, "n_vocab")
        self.n_ctx = config_int(config, "n_ctx")
        self.eps = float(config.get("norm_eps", 1e-5))
        if self.d_model % self.n_heads:
            raise ModelLoadError(f"d_model {self.d_model} is not divisible by {self.n_heads} heads")
        d, ff = self.d_model, self.d_ff

        self.tok_embeddings = require(tensors, "tok_embeddings", (self.n_vocab, d))
        self.norm = require(tensors, "norm", (d,))
        self.blocks = [
            _Block(
                attn_norm=require(tensors, f"layers.{i}.attn_norm", (d,)),
                wq=require(tensors, f"layers.{i}.wq", (d, d)),
                wk=require(tensors, f"layers.{i}.wk", (d, d)),
                wv=require(tensors, f"layers.{i}.wv", (d, d)),
                wo=require(tensors, f"layers.{i}.wo", (d, d)),
                ffn_norm=require(tensors, f"layers.{i}.ffn_norm", (d,)),
                w1=require(tensors, f"layers.{i}.w1", (ff, d)),
                w2=require(tensors, f"layers.{i}.w2", (d, ff)),
                w3=require(tensors, f"layers.{i}.w3", (ff, d)),
            )
            for i in range(self.n_layers)
        ]

    @classmethod
    def from_parsed(cls, parsed: ParsedModel) -> "CausalLanguageModel":
        model = cls(parsed.header.config, parsed.tensors)
        if len(parsed.header.vocab) != model.n_vocab:
            raise ModelLoadError(
                f"vocabulary has {len(parsed.header.vocab)} pieces but the network scores {model.n_vocab}"
            )
        return model

    def new_state(self) -> DecoderState:
        return DecoderState(
            keys=[np.zeros((0, self.d_model), dtype=np.float32) for _ in range(self.n_layers)],
            values=[np.zeros((0, self.d_model), dtype=np.float32) for _ in range(self.n_layers)],
        )

    def forward(self, state: DecoderState, ids: list[int]) -> np.ndarray:
        """Append ``ids`` to the cached context and return next-token logits."""
        if not ids:
            raise InferenceError("forward called without tokens")
        if state.position + len(ids) > self.n_ctx:
            raise InferenceError(f"context of {state.position + len(ids)} tokens exceeds window {self.n_ctx}")
        if max(ids) >= self.n_vocab or min(ids) < 0:
            raise InferenceError("token id outside the vocabulary")

        positions = range(state.position, state.position + len(ids))
        x = embed(self.tok_embeddings, ids) + sinusoids(positions, self.d_model)
        head_dim = self.d_model // self.n_heads
        n_new = len(ids)
        for layer, block in enumerate(self.blocks):
            h = rms_norm(x, block.attn_norm, self.eps)
            q = linear(block.wq, h)
            keys = np.concatenate([state.keys[layer], linear(block.wk, h)])
            values = np.concatenate([state.values[layer], linear(block.wv, h)])
            state.keys[layer] = keys
            state.values[layer] = values

            total = keys.shape[0]
            qh = q.reshape(n_new, self.n_heads, head_dim).transpose(1, 0, 2)
            kh = keys.reshape(total, self.n_heads, head_dim).transpose(1, 0, 2)
            vh = values.reshape(total, self.n_heads, head_dim).transpose(1, 0, 2)
            scores = qh @ kh.transpose(0, 2, 1) / math.sqrt(head_dim)
            # new token i may see cached positions and new tokens up to i
            visible = np.arange(total)[None, :] <= (total - n_new + np.arange(n_new))[:, None]
            scores = np.where(visible[None, :, :], scores, -np.inf)
            attended = (softmax(scores) @ vh).transpose(1, 0, 2).reshape(n_new, self.d_model)
            x = x + linear(block.wo, attended)

            h = rms_norm(x, block.ffn_norm, self.eps)
            x = x + linear(block.w2, silu(linear(block.w1, h)) * linear(block.w3, h))

        state.position += n_new
        last = rms_norm(x[-1], self.norm, self.eps)
        return linear(self.tok_embeddings, last)


__all__ = ["CausalLanguageModel", "DecoderState"]
