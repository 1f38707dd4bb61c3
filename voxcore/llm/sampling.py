from __future__ import annotations

import numpy as np
from pydantic import BaseModel, Field


class SamplingConfig(BaseModel):
    temperature: float = Field(0.7, ge=0.0, le=2.0, description="0 selects greedy decoding")
    top_k: int = Field(40, ge=0, description="0 disables top-k filtering")
    top_p: float = Field(0.95, gt=0.0, le=1.0)
    seed: int | None = None
    max_new_tokens: int = Field(512, ge=1, le=8192)
    stop: list[str] = Field(default_factory=list, max_length=8)


class Sampler:
    """Temperature, top-k and nucleus sampling over raw logits.

    Each sampler owns its generator, so two samplers built from the same
    seed produce the same token sequence for the same logits.
    """

    def __init__(self, config: SamplingConfig) -> None:
        self.config = config
        self._rng = np.random.default_rng(config.seed)

    def probabilities(self, logits: np.ndarray) -> np.ndarray:
        scores = np.asarray(logits, dtype=np.float64) / self.config.temperature
        k = self.config.top_k
        if 0 < k < scores.size:
            threshold = np.partition(scores, -k)[-k]
            scores = np.where(scores >= threshold, scores, -np.inf)
        probs = np.exp(scores - np.max(scores))
        probs /= probs.sum()
        if self.config.top_p < 1.0:
            order = np.argsort(-probs, kind="stable")
            cumulative = np.cumsum(probs[order])
            keep = int(np.searchsorted(cumulative, self.config.top_p)) + 1
            mask = np.zeros_like(probs, dtype=bool)
            mask[order[:keep]] = True
            probs = np.where(mask, probs, 0.0)
            probs /= probs.sum()
        return probs

    def sample(self, logits: np.ndarray) -> int:
        if self.config.temperature == 0.0:
            return int(np.argmax(logits))
        probs = self.probabilities(logits)
        return int(self._rng.choice(probs.size, p=probs))


__all__ = ["SamplingConfig", "Sampler"]
