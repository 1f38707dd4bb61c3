"""Log-mel front end matching the speech model's training configuration.

These constants are part of the model contract: changing any of them produces
features the speech model was never trained on.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass

import numpy as np

SAMPLE_RATE = 16_000
N_FFT = 400
HOP_LENGTH = 160
N_MELS = 80
CHUNK_LENGTH = 30 * SAMPLE_RATE
LOG_FLOOR = 1e-10


def hz_to_mel(hz: np.ndarray | float) -> np.ndarray:
    return 2595.0 * np.log10(1.0 + np.asarray(hz, dtype=np.float64) / 700.0)


def mel_to_hz(mel: np.ndarray | float) -> np.ndarray:
    return 700.0 * (10.0 ** (np.asarray(mel, dtype=np.float64) / 2595.0) - 1.0)


@functools.lru_cache(maxsize=4)
def mel_filterbank(n_mels: int = N_MELS, n_fft: int = N_FFT, sample_rate: int = SAMPLE_RATE) -> np.ndarray:
    """Triangular filters on the HTK mel scale with Slaney area normalization."""
    fft_freqs = np.linspace(0.0, sample_rate / 2.0, n_fft // 2 + 1)
    mel_points = np.linspace(hz_to_mel(0.0), hz_to_mel(sample_rate / 2.0), n_mels + 2)
    hz_points = mel_to_hz(mel_points)
    widths = np.diff(hz_points)
    ramps = hz_points[:, None] - fft_freqs[None, :]
    lower = -ramps[:-2] / widths[:-1, None]
    upper = ramps[2:] / widths[1:, None]
    weights = np.maximum(0.0, np.minimum(lower, upper))
    weights *= (2.0 / (hz_points[2:] - hz_points[:-2]))[:, None]
    weights = weights.astype(np.float32)
    weights.flags.writeable = False
    return weights


@functools.lru_cache(maxsize=4)
def hann_window(size: int = N_FFT) -> np.ndarray:
    window = (0.5 - 0.5 * np.cos(2.0 * np.pi * np.arange(size) / size)).astype(np.float32)
    window.flags.writeable = False
    return window


@dataclass(frozen=True, eq=False)
class FeatureTensor:
    """Immutable (time x mel bins) log-mel energies for one speech segment."""

    data: np.ndarray
    sample_rate: int = SAMPLE_RATE
    n_fft: int = N_FFT
    hop_length: int = HOP_LENGTH
    start_ms: float = 0.0

    def __post_init__(self) -> None:
        data = np.array(self.data, dtype=np.float32, copy=True)
        if data.ndim != 2:
            raise ValueError(f"feature tensor must be 2-D, got shape {data.shape}")
        data.flags.writeable = False
        object.__setattr__(self, "data", data)

    @property
    def n_frames(self) -> int:
        return int(self.data.shape[0])

    @property
    def n_mels(self) -> int:
        return int(self.data.shape[1])

    @property
    def frame_rate(self) -> float:
        return self.sample_rate / self.hop_length

    @property
    def duration_ms(self) -> float:
        return self.n_frames * self.hop_length * 1000.0 / self.sample_rate


class MelStream:
    """Streaming STFT: frames are appended as soon as a full window is buffered."""

    def __init__(self, extractor: "FeatureExtractor", start_ms: float = 0.0) -> None:
        self._extractor = extractor
        self._pending = np.zeros(0, dtype=np.float32)
        self._frames: list[np.ndarray] = []
        self._start_ms = start_ms
        self._finalized = False

    @property
    def n_frames(self) -> int:
        return len(self._frames)

    def push(self, samples: np.ndarray) -> int:
        if self._finalized:
            raise RuntimeError("mel stream already finalized")
        self._pending = np.concatenate([self._pending, np.asarray(samples, dtype=np.float32)])
        added = 0
        n_fft, hop = self._extractor.n_fft, self._extractor.hop_length
        while self._pending.size >= n_fft:
            self._frames.append(self._extractor.frame_features(self._pending[:n_fft]))
            self._pending = self._pending[hop:]
            added += 1
        return added

    def snapshot(self) -> FeatureTensor:
        return self._extractor.tensor(self._frames, self._start_ms)

    def finalize(self) -> FeatureTensor:
        """Zero-pad the tail so every pushed sample is covered by a window."""
        if not self._finalized:
            n_fft, hop = self._extractor.n_fft, self._extractor.hop_length
            if self._pending.size and (not self._frames or self._pending.size > n_fft - hop):
                self.push(np.zeros(n_fft - self._pending.size, dtype=np.float32))
            self._finalized = True
        return self.snapshot()


class FeatureExtractor:
    def __init__(
        self,
        sample_rate: int = SAMPLE_RATE,
        n_fft: int = N_FFT,
        hop_length: int = HOP_LENGTH,
        n_mels: int = N_MELS,
    ) -> None:
        self.sample_rate = sample_rate
        self.n_fft = n_fft
        self.hop_length = hop_length
        self.n_mels = n_mels
        self._filters = mel_filterbank(n_mels, n_fft, sample_rate)
        self._window = hann_window(n_fft)

    def frame_features(self, window_samples: np.ndarray) -> np.ndarray:
        spectrum = np.fft.rfft(window_samples * self._window, n=self.n_fft)
        power = (spectrum.real**2 + spectrum.imag**2).astype(np.float32)
        mel = self._filters @ power
        return np.log(np.maximum(mel, LOG_FLOOR)).astype(np.float32)

    def stream(self, start_ms: float = 0.0) -> MelStream:
        return MelStream(self, start_ms=start_ms)

    def extract(self, samples: np.ndarray) -> FeatureTensor:
        stream = self.stream()
        stream.push(samples)
        return stream.finalize()

    def tensor(self, frames: list[np.ndarray], start_ms: float = 0.0) -> FeatureTensor:
        data = np.stack(frames) if frames else np.zeros((0, self.n_mels), dtype=np.float32)
        return FeatureTensor(
            data=data,
            sample_rate=self.sample_rate,
            n_fft=self.n_fft,
            hop_length=self.hop_length,
            start_ms=start_ms,
        )


__all__ = [
    "SAMPLE_RATE",
    "N_FFT",
    "HOP_LENGTH",
    "N_MELS",
    "CHUNK_LENGTH",
    "FeatureTensor",
    "FeatureExtractor",
    "MelStream",
    "mel_filterbank",
]
