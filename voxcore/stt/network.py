"""Compact encoder/decoder speech network in the whisper layout.

The encoder stacks pairs of log-mel frames (stride 2), projects them to the
model width and runs one self-attention block. The decoder is a recurrent
cell that cross-attends over the encoded audio and scores the next token
against the tied token embedding.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

from voxcore.errors import InferenceError, ModelLoadError
from voxcore.models.blob import ParsedModel, Tensor
from voxcore.models.layers import config_int, embed, gelu, layer_norm, linear, require, sinusoids, softmax

DYNAMIC_RANGE = 8.0 * math.log(10.0)
ENCODER_STRIDE = 2


def normalize_log_mel(mel: np.ndarray) -> np.ndarray:
    """Clamp to eight decades below the peak and map linearly onto [-1, 1]."""
    peak = float(mel.max()) if mel.size else 0.0
    clamped = np.maximum(mel, peak - DYNAMIC_RANGE)
    return ((clamped - (peak - DYNAMIC_RANGE)) / DYNAMIC_RANGE * 2.0 - 1.0).astype(np.float32)


@dataclass(slots=True)
class AudioContext:
    keys: np.ndarray
    values: np.ndarray

    @property
    def n_ctx(self) -> int:
        return int(self.keys.shape[0])


class SpeechModel:
    families = ("whisper",)
    required_specials = ("<|endoftext|>", "<|startoftranscript|>")

    def __init__(self, config: dict[str, int | float | str], tensors: dict[str, Tensor]) -> None:
        self.n_mels = config_int(config, "n_mels")
        self.d_model = config_int(config, "d_model")
        self.n_vocab = config_int(config, "n_vocab")
        self.n_audio_ctx = config_int(config, "n_audio_ctx")
        self.n_text_ctx = config_int(config, "n_text_ctx")
        d, v = self.d_model, self.n_vocab

        self.proj_w = require(tensors, "encoder.proj.weight", (d, self.n_mels * ENCODER_STRIDE))
        self.proj_b = require(tensors, "encoder.proj.bias", (d,))
        self.attn = {
            part: require(tensors, f"encoder.attn.{part}.weight", (d, d)) for part in ("q", "k", "v", "o")
        }
        self.enc_ln_w = require(tensors, "encoder.ln.weight", (d,))
        self.enc_ln_b = require(tensors, "encoder.ln.bias", (d,))
        self.token_embedding = require(tensors, "decoder.token_embedding", (v, d))
        self.cross = {part: require(tensors, f"decoder.cross.{part}.weight", (d, d)) for part in ("q", "k", "v")}
        self.state_w = require(tensors, "decoder.state.weight", (d, d))
        self.dec_ln_w = require(tensors, "decoder.ln.weight", (d,))
        self.dec_ln_b = require(tensors, "decoder.ln.bias", (d,))
        self.out_b = require(tensors, "decoder.out.bias", (v,))

    @classmethod
    def from_parsed(cls, parsed: ParsedModel) -> "SpeechModel":
        model = cls(parsed.header.config, parsed.tensors)
        if len(parsed.header.vocab) != model.n_vocab:
            raise ModelLoadError(
                f"vocabulary has {len(parsed.header.vocab)} pieces but the network scores {model.n_vocab}"
            )
        return model

    def encode(self, mel: np.ndarray) -> AudioContext:
        if mel.ndim != 2 or mel.shape[1] != self.n_mels:
            raise InferenceError(f"expected features with {self.n_mels} mel bins, got shape {mel.shape}")
        x = normalize_log_mel(mel)
        if x.shape[0] % ENCODER_STRIDE:
            x = np.concatenate([x, np.full((1, self.n_mels), -1.0, dtype=np.float32)])
        x = x.reshape(-1, self.n_mels * ENCODER_STRIDE)
        if x.shape[0] > self.n_audio_ctx:
            raise InferenceError(f"segment spans {x.shape[0]} encoder positions, limit is {self.n_audio_ctx}")

        h = gelu(linear(self.proj_w, x, self.proj_b)) + sinusoids(range(x.shape[0]), self.d_model)
        q = linear(self.attn["q"], h)
        k = linear(self.attn["k"], h)
        v = linear(self.attn["v"], h)
        weights = softmax(q @ k.T / math.sqrt(self.d_model))
        h = h + linear(self.attn["o"], weights @ v)
        h = layer_norm(h, self.enc_ln_w, self.enc_ln_b)
        return AudioContext(keys=linear(self.cross["k"], h), values=linear(self.cross["v"], h))

    def initial_state(self) -> np.ndarray:
        return np.zeros(self.d_model, dtype=np.float32)

    def decode_step(
        self, audio: AudioContext, state: np.ndarray, token: int, position: int
    ) -> tuple[np.ndarray, np.ndarray]:
        """Advance the decoder by one token; returns (logits, new state)."""
        if position >= self.n_text_ctx:
            raise InferenceError(f"decoder position {position} exceeds text context {self.n_text_ctx}")
        e = embed(self.token_embedding, [token])[0] + sinusoids([position], self.d_model)[0]
        q = linear(self.cross["q"], state + e)
        weights = softmax(audio.keys @ q / math.sqrt(self.d_model))
        context = weights @ audio.values
        new_state = np.tanh(linear(self.state_w, state) + e + context).astype(np.float32)
        h = layer_norm(new_state, self.dec_ln_w, self.dec_ln_b)
        logits = linear(self.token_embedding, h, self.out_b)
        return logits, new_state


__all__ = ["SpeechModel", "AudioContext", "normalize_log_mel", "DYNAMIC_RANGE"]
