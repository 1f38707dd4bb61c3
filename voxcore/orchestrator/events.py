from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar

from voxcore.errors import ErrorKind


@dataclass(slots=True)
class Event:
    type: ClassVar[str] = "event"

    def to_payload(self) -> dict[str, Any]:
        return {"type": self.type, **asdict(self)}


@dataclass(slots=True)
class TranscriptPartial(Event):
    type: ClassVar[str] = "transcript_partial"
    segment_id: int
    text: str
    transcript: str


@dataclass(slots=True)
class TranscriptFinal(Event):
    type: ClassVar[str] = "transcript_final"
    segment_id: int
    text: str
    start_ms: float
    end_ms: float


@dataclass(slots=True)
class TokenDelta(Event):
    type: ClassVar[str] = "token_delta"
    session_id: str
    token_id: int
    text: str
    index: int


@dataclass(slots=True)
class GenerationComplete(Event):
    type: ClassVar[str] = "generation_complete"
    session_id: str
    text: str
    state: str
    stop_reason: str | None
    tokens: int
    conversation_ended: bool = False


@dataclass(slots=True)
class ToolCallDispatched(Event):
    type: ClassVar[str] = "tool_call"
    session_id: str
    call_id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ModelLoadProgress(Event):
    type: ClassVar[str] = "model_load_progress"
    model_id: str
    version: str
    role: str
    received_bytes: int
    total_bytes: int
    percentage: float


@dataclass(slots=True)
class ModelLoaded(Event):
    type: ClassVar[str] = "model_loaded"
    model_id: str
    version: str
    role: str
    resident_bytes: int


@dataclass(slots=True)
class ModelUnloaded(Event):
    type: ClassVar[str] = "model_unloaded"
    role: str
    model_id: str | None


@dataclass(slots=True)
class ModelLoadFailed(Event):
    type: ClassVar[str] = "model_load_error"
    model_id: str
    version: str
    role: str
    kind: ErrorKind
    message: str
    recoverable: bool


@dataclass(slots=True)
class VadStateChanged(Event):
    type: ClassVar[str] = "vad_state"
    previous: str
    current: str
    ts_ms: float


@dataclass(slots=True)
class ListeningStarted(Event):
    type: ClassVar[str] = "listening_started"
    sample_rate: int


@dataclass(slots=True)
class ListeningStopped(Event):
    type: ClassVar[str] = "listening_stopped"
    reason: str
    dropped_samples: int = 0


@dataclass(slots=True)
class ErrorOccurred(Event):
    type: ClassVar[str] = "error"
    kind: ErrorKind
    message: str
    recoverable: bool
    command: str | None = None


__all__ = [
    "Event",
    "TranscriptPartial",
    "TranscriptFinal",
    "TokenDelta",
    "GenerationComplete",
    "ToolCallDispatched",
    "ModelLoadProgress",
    "ModelLoaded",
    "ModelUnloaded",
    "ModelLoadFailed",
    "VadStateChanged",
    "ListeningStarted",
    "ListeningStopped",
    "ErrorOccurred",
]
