from __future__ import annotations

import itertools
import math
from dataclasses import dataclass
from enum import Enum

import numpy as np

from voxcore.audio.features import CHUNK_LENGTH, FeatureExtractor, FeatureTensor, MelStream
from voxcore.audio.pipeline import AudioFrame
from voxcore.config import VADSettings
from voxcore.telemetry.logging import get_logger

FLOOR_DB = -100.0


class VADState(str, Enum):
    SILENCE = "silence"
    SPEECH_ACTIVE = "speech_active"
    TRAILING = "trailing"


@dataclass(slots=True)
class VadTransition:
    previous: VADState
    current: VADState
    ts_ms: float


@dataclass(slots=True)
class SpeechSegment:
    segment_id: int
    start_ms: float
    end_ms: float
    features: FeatureTensor

    @property
    def duration_ms(self) -> float:
        return self.end_ms - self.start_ms


VadEvent = VadTransition | SpeechSegment


def frame_dbfs(samples: np.ndarray) -> float:
    if samples.size == 0:
        return FLOOR_DB
    rms = math.sqrt(float(np.mean(np.square(samples, dtype=np.float64))))
    if rms <= 0.0:
        return FLOOR_DB
    return max(FLOOR_DB, 20.0 * math.log10(rms))


class VoiceActivityDetector:
    """Energy-gated Silence -> SpeechActive -> Trailing -> Silence state machine.

    Frames are forwarded to the feature stream only while speech is active or
    trailing; frames seen in Silence are dropped.
    """

    def __init__(self, extractor: FeatureExtractor, settings: VADSettings | None = None) -> None:
        self._extractor = extractor
        self.settings = settings or VADSettings()
        self._max_segment_ms = min(self.settings.max_segment_ms, CHUNK_LENGTH * 1000 // extractor.sample_rate)
        self._segment_ids = itertools.count(1)
        self._logger = get_logger(__name__)
        self.reset()

    @property
    def state(self) -> VADState:
        return self._state

    @property
    def level_db(self) -> float:
        return self._smoothed

    def reset(self) -> None:
        self._state = VADState.SILENCE
        self._smoothed = FLOOR_DB
        self._onset_ms: float | None = None
        self._attack_frames: list[np.ndarray] = []
        self._segment_start = 0.0
        self._speech_end = 0.0
        self._trailing_since = 0.0
        self._last_end_ms = 0.0
        self._stream: MelStream | None = None

    def process(self, frame: AudioFrame) -> list[VadEvent]:
        alpha = self.settings.smoothing
        self._smoothed = alpha * frame_dbfs(frame.samples) + (1.0 - alpha) * self._smoothed
        loud = self._smoothed >= self.settings.activation_db
        now, end = frame.start_ms, frame.start_ms + frame.duration_ms
        self._last_end_ms = end
        events: list[VadEvent] = []

        if self._state is VADState.SILENCE:
            if not loud:
                self._onset_ms = None
                self._attack_frames.clear()
                return events
            if self._onset_ms is None:
                self._onset_ms = now
            self._attack_frames.append(frame.samples)
            if end - self._onset_ms >= self.settings.attack_ms:
                self._segment_start = self._onset_ms
                self._stream = self._extractor.stream(start_ms=self._segment_start)
                self._stream.push(np.concatenate(self._attack_frames))
                self._attack_frames.clear()
                events.append(self._transition(VADState.SPEECH_ACTIVE, now))
            return events

        assert self._stream is not None
        self._stream.push(frame.samples)

        if self._state is VADState.SPEECH_ACTIVE:
            if self._smoothed < self.settings.release_db:
                self._speech_end = now
                self._trailing_since = now
                events.append(self._transition(VADState.TRAILING, now))
            elif end - self._segment_start >= self._max_segment_ms:
                self._speech_end = end
                events.append(self._transition(VADState.TRAILING, end))
                events.extend(self._close_segment(end))
            return events

        if loud:
            events.append(self._transition(VADState.SPEECH_ACTIVE, now))
        elif end - self._trailing_since >= self.settings.release_ms:
            events.extend(self._close_segment(end))
        return events

    def flush(self, ts_ms: float | None = None) -> list[VadEvent]:
        """Close an open segment at end of capture, walking through Trailing."""
        if self._state is VADState.SILENCE or self._stream is None:
            return []
        events: list[VadEvent] = []
        when = ts_ms if ts_ms is not None else self._last_end_ms
        if self._state is VADState.SPEECH_ACTIVE:
            self._speech_end = when
            events.append(self._transition(VADState.TRAILING, when))
        events.extend(self._close_segment(when))
        return events

    def _close_segment(self, ts_ms: float) -> list[VadEvent]:
        assert self._stream is not None
        segment = SpeechSegment(
            segment_id=next(self._segment_ids),
            start_ms=self._segment_start,
            end_ms=self._speech_end,
            features=self._stream.finalize(),
        )
        self._stream = None
        self._onset_ms = None
        self._logger.debug(
            "audio.vad.segment",
            segment_id=segment.segment_id,
            start_ms=segment.start_ms,
            end_ms=segment.end_ms,
            frames=segment.features.n_frames,
        )
        return [self._transition(VADState.SILENCE, ts_ms), segment]

    def _transition(self, new_state: VADState, ts_ms: float) -> VadTransition:
        transition = VadTransition(previous=self._state, current=new_state, ts_ms=ts_ms)
        self._state = new_state
        self._logger.debug("audio.vad.transition", previous=transition.previous.value, current=new_state.value, ts_ms=ts_ms)
        return transition


__all__ = ["VADState", "VadTransition", "SpeechSegment", "VadEvent", "VoiceActivityDetector", "frame_dbfs"]
