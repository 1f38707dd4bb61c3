from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass

import numpy as np

from voxcore.audio.capture import AudioSource
from voxcore.audio.resample import StreamingResampler, check_rates, to_mono
from voxcore.audio.ring_buffer import RingBuffer
from voxcore.telemetry.logging import get_logger


@dataclass(frozen=True, eq=False)
class AudioFrame:
    samples: np.ndarray
    sample_rate: int
    index: int
    channels: int = 1

    def __post_init__(self) -> None:
        data = np.array(self.samples, dtype=np.float32, copy=True)
        data.flags.writeable = False
        object.__setattr__(self, "samples", data)

    @property
    def duration_ms(self) -> float:
        return self.samples.shape[0] * 1000.0 / self.sample_rate

    @property
    def start_ms(self) -> float:
        return self.index * self.duration_ms


class AudioPipeline:
    """Source -> ring buffer -> mono -> resample -> fixed-size frames."""

    def __init__(
        self,
        source: AudioSource,
        target_rate: int = 16_000,
        frame_ms: int = 30,
        ring_seconds: float = 12.0,
        poll_timeout: float = 0.1,
    ) -> None:
        self.source = source
        self.target_rate = target_rate
        self.frame_ms = frame_ms
        self.frame_samples = int(target_rate * frame_ms / 1000)
        self._ring_seconds = ring_seconds
        self._poll_timeout = poll_timeout
        self._ring: RingBuffer | None = None
        self._logger = get_logger(__name__)

    @property
    def ring(self) -> RingBuffer:
        if self._ring is None:
            raise RuntimeError("pipeline not started")
        return self._ring

    @property
    def dropped_samples(self) -> int:
        return self._ring.dropped_samples if self._ring is not None else 0

    def start(self) -> None:
        """Acquire the source; raises AudioDeviceError or UnsupportedSampleRate."""
        if self._ring is not None and not self._ring.closed:
            return
        check_rates(self.source.sample_rate or self.target_rate, self.target_rate)
        self._ring = RingBuffer.for_duration(self._ring_seconds, max(self.source.sample_rate, self.target_rate))
        self.source.start(self._ring)
        self._logger.info(
            "audio.pipeline.started",
            source_rate=self.source.sample_rate,
            target_rate=self.target_rate,
            channels=self.source.channels,
            frame_ms=self.frame_ms,
        )

    def stop(self) -> None:
        self.source.stop()
        if self._ring is not None:
            self._ring.close()
            self._logger.info("audio.pipeline.stopped", dropped_samples=self._ring.dropped_samples)

    def capture(self) -> Iterator[np.ndarray]:
        """Raw blocks as delivered by the source, until it stops and the buffer drains."""
        ring = self.ring
        while True:
            block = ring.pop(timeout=self._poll_timeout)
            if block is None:
                if ring.exhausted:
                    return
                continue
            yield block

    def assembler(self) -> "FrameAssembler":
        return FrameAssembler(self.source.sample_rate, self.source.channels, self.target_rate, self.frame_samples)

    def frames(self) -> Iterator[AudioFrame]:
        assembler = self.assembler()
        for block in self.capture():
            yield from assembler.push(block)
        yield from assembler.flush()


class FrameAssembler:
    """Turns raw interleaved blocks into consecutive fixed-size mono frames."""

    def __init__(self, source_rate: int, channels: int, target_rate: int, frame_samples: int) -> None:
        self.channels = channels
        self.target_rate = target_rate
        self.frame_samples = frame_samples
        self._resampler = StreamingResampler(source_rate, target_rate)
        self._pending = np.zeros(0, dtype=np.float32)
        self._index = 0

    def push(self, block: np.ndarray) -> list[AudioFrame]:
        mono = to_mono(block, self.channels)
        self._pending = np.concatenate([self._pending, self._resampler.process(mono)])
        frames: list[AudioFrame] = []
        while self._pending.size >= self.frame_samples:
            frames.append(AudioFrame(self._pending[: self.frame_samples], self.target_rate, self._index))
            self._pending = self._pending[self.frame_samples :]
            self._index += 1
        return frames

    def flush(self) -> list[AudioFrame]:
        """Zero-pad and emit whatever is left as a final frame."""
        if not self._pending.size:
            return []
        tail = np.zeros(self.frame_samples, dtype=np.float32)
        tail[: self._pending.size] = self._pending
        self._pending = np.zeros(0, dtype=np.float32)
        frame = AudioFrame(tail, self.target_rate, self._index)
        self._index += 1
        return [frame]


__all__ = ["AudioFrame", "AudioPipeline", "FrameAssembler"]
