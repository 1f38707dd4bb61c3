from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass

import numpy as np

from voxcore.audio.features import FeatureTensor
from voxcore.errors import InferenceError
from voxcore.models.descriptors import ModelRole
from voxcore.models.loader import ModelHandle
from voxcore.telemetry.logging import get_logger
from voxcore.telemetry.tracing import get_tracer

END_OF_TEXT = "<|endoftext|>"
PROMPT_TOKENS = ("<|startoftranscript|>", "<|en|>", "<|transcribe|>", "<|notimestamps|>")

_tracer = get_tracer(__name__)


@dataclass(slots=True)
class TranscriptDelta:
    text: str
    transcript: str
    is_final: bool
    token_count: int


class SpeechToTextEngine:
    """Greedy decoder over one VAD-bounded segment."""

    def __init__(self, max_tokens: int = 224) -> None:
        if max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        self.max_tokens = max_tokens
        self._logger = get_logger(__name__)

    def transcribe(
        self,
        features: FeatureTensor,
        handle: ModelHandle,
        should_stop: Callable[[], bool] | None = None,
    ) -> Iterator[TranscriptDelta]:
        """Yield one partial per decoded piece of text, then the final transcript.

        The encoder runs once; the handle is re-checked before every decoder
        step so an unload in between surfaces as InferenceError.
        """
        if handle.role is not ModelRole.STT:
            raise InferenceError(f"{handle.descriptor.model_id} is not a speech-to-text model")
        network = handle.network
        tokenizer = handle.tokenizer
        if features.n_mels != network.n_mels:
            raise InferenceError(f"features carry {features.n_mels} mel bins, model expects {network.n_mels}")
        if features.n_frames == 0:
            yield TranscriptDelta(text="", transcript="", is_final=True, token_count=0)
            return

        with _tracer.start_as_current_span("stt.encode") as span:
            span.set_attribute("stt.frames", features.n_frames)
            audio = network.encode(features.data)

        eot = tokenizer.token_id(END_OF_TEXT)
        prompt = [tokenizer.special_tokens[name] for name in PROMPT_TOKENS if name in tokenizer.special_tokens]
        suppress = np.array(sorted(tokenizer.special_ids - {eot}), dtype=np.int64)
        suppress_first = np.array(sorted(tokenizer.blank_ids() | {eot}), dtype=np.int64)

        state = network.initial_state()
        position = 0
        logits: np.ndarray | None = None
        for token in prompt:
            logits, state = network.decode_step(audio, state, token, position)
            position += 1
        assert logits is not None

        decoder = tokenizer.stream_decoder()
        transcript = ""
        count = 0
        for step in range(self.max_tokens):
            if should_stop is not None and should_stop():
                self._logger.info("stt.transcribe.stopped", tokens=count)
                break
            if position >= network.n_text_ctx:
                break
            scores = np.array(logits, dtype=np.float32)
            scores[suppress] = -np.inf
            if step == 0:
                scores[suppress_first] = -np.inf
            token = int(np.argmax(scores))
            if token == eot:
                break
            count += 1
            piece = decoder.feed(token)
            if piece:
                transcript += piece
                yield TranscriptDelta(text=piece, transcript=transcript, is_final=False, token_count=count)
            logits, state = handle.network.decode_step(audio, state, token, position)
            position += 1

        tail = decoder.flush()
        if tail:
            transcript += tail
            yield TranscriptDelta(text=tail, transcript=transcript, is_final=False, token_count=count)
        final = transcript.strip()
        self._logger.info("stt.transcribe.completed", tokens=count, chars=len(final))
        yield TranscriptDelta(text=final, transcript=final, is_final=True, token_count=count)


__all__ = ["SpeechToTextEngine", "TranscriptDelta"]
