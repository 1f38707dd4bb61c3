from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ModelRole(str, Enum):
    STT = "stt"
    LLM = "llm"


Quantization = Literal["q4_0", "q8_0", "f32"]


class ModelDescriptor(BaseModel):
    """Identity and provenance of one downloadable weight blob."""

    model_config = ConfigDict(frozen=True)

    model_id: str = Field(..., min_length=1, max_length=200)
    family: str = Field(..., min_length=1, description="Network family, e.g. whisper or llama")
    variant: str = Field("base", description="Size variant, e.g. tiny, base, 1.1b")
    role: ModelRole
    quantization: Quantization = "q4_0"
    version: str = "1"
    url: str
    size_bytes: int = Field(..., gt=0)
    sha256: str = Field(..., pattern=r"^[0-9a-f]{64}$")

    @field_validator("sha256", mode="before")
    @classmethod
    def lower_checksum(cls, value: str) -> str:
        return value.strip().lower() if isinstance(value, str) else value

    @property
    def key(self) -> tuple[str, str]:
        return (self.model_id, self.version)

    @property
    def storage_name(self) -> str:
        safe_id = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in self.model_id)
        safe_version = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in self.version)
        return f"{safe_id}@{safe_version}"


class CacheStatus(str, Enum):
    NOT_CACHED = "not_cached"
    DOWNLOADING = "downloading"
    CACHED = "cached"
    CORRUPT = "corrupt"


@dataclass(slots=True)
class DownloadProgress:
    received_bytes: int
    total_bytes: int

    @property
    def percentage(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return min(100.0, self.received_bytes / self.total_bytes * 100.0)


@dataclass(slots=True)
class ModelCacheEntry:
    descriptor: ModelDescriptor
    status: CacheStatus = CacheStatus.NOT_CACHED
    progress: DownloadProgress | None = None
    stored_bytes: int = 0
    cached_at: float | None = None
    last_used: float = field(default_factory=time.time)
    error: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return self.descriptor.key

    @property
    def is_cached(self) -> bool:
        return self.status is CacheStatus.CACHED


class CacheIndexRecord(BaseModel):
    """One verified entry as persisted in the cache index."""

    descriptor: ModelDescriptor
    stored_bytes: int
    cached_at: float
    last_used: float


class CacheIndex(BaseModel):
    version: int = 1
    entries: list[CacheIndexRecord] = Field(default_factory=list)


__all__ = [
    "ModelRole",
    "Quantization",
    "ModelDescriptor",
    "CacheStatus",
    "DownloadProgress",
    "ModelCacheEntry",
    "CacheIndexRecord",
    "CacheIndex",
]
