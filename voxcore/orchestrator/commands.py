from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from voxcore.llm.prompt import ChatMessage
from voxcore.llm.sampling import SamplingConfig
from voxcore.models.descriptors import ModelDescriptor, ModelRole


class StartListening(BaseModel):
    type: Literal["start_listening"] = "start_listening"


class StopListening(BaseModel):
    type: Literal["stop_listening"] = "stop_listening"


class Generate(BaseModel):
    type: Literal["generate"] = "generate"
    messages: list[ChatMessage] = Field(..., min_length=1)
    sampling: SamplingConfig | None = None


class CancelGeneration(BaseModel):
    type: Literal["cancel_generation"] = "cancel_generation"


class LoadModel(BaseModel):
    type: Literal["load_model"] = "load_model"
    descriptor: ModelDescriptor


class UnloadModel(BaseModel):
    type: Literal["unload_model"] = "unload_model"
    role: ModelRole


Command = Annotated[
    Union[StartListening, StopListening, Generate, CancelGeneration, LoadModel, UnloadModel],
    Field(discriminator="type"),
]

_adapter: TypeAdapter[Any] = TypeAdapter(Command)


def parse_command(payload: dict[str, Any] | str | bytes) -> Command:
    """Validate a JSON object (or its text) into one of the command models."""
    if isinstance(payload, (str, bytes)):
        return _adapter.validate_json(payload)
    return _adapter.validate_python(payload)


__all__ = [
    "StartListening",
    "StopListening",
    "Generate",
    "CancelGeneration",
    "LoadModel",
    "UnloadModel",
    "Command",
    "parse_command",
]
