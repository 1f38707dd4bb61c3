from __future__ import annotations

from typing import ClassVar, Literal

ErrorKind = Literal[
    "audio_device",
    "unsupported_sample_rate",
    "model_download",
    "model_load",
    "model_in_use",
    "inference",
    "tool_call",
    "busy",
    "invalid_command",
    "internal",
]


class VoxcoreError(Exception):
    """Base class for every failure the core reports as an event."""

    kind: ClassVar[ErrorKind] = "internal"
    recoverable: ClassVar[bool] = False


class AudioDeviceError(VoxcoreError):
    """The capture source could not be acquired (no device, permission denied)."""

    kind = "audio_device"
    recoverable = True


class UnsupportedSampleRate(VoxcoreError, ValueError):
    kind = "unsupported_sample_rate"


class ModelDownloadError(VoxcoreError):
    """Network failure or checksum mismatch while fetching model weights."""

    kind = "model_download"
    recoverable = True


class ModelLoadError(VoxcoreError):
    """Cached blob is corrupt, absent, or incompatible with the descriptor."""

    kind = "model_load"


class ModelInUseError(VoxcoreError):
    kind = "model_in_use"
    recoverable = True


class InferenceError(VoxcoreError):
    """Invalid or unloaded handle, dimension mismatch, out of memory or timeout."""

    kind = "inference"


class ToolCallError(VoxcoreError):
    kind = "tool_call"
    recoverable = True


class BusyError(VoxcoreError):
    kind = "busy"
    recoverable = True


__all__ = [
    "ErrorKind",
    "VoxcoreError",
    "AudioDeviceError",
    "UnsupportedSampleRate",
    "ModelDownloadError",
    "ModelLoadError",
    "ModelInUseError",
    "InferenceError",
    "ToolCallError",
    "BusyError",
]
