from __future__ import annotations

import functools
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AudioSettings(BaseModel):
    sample_rate: int = 16_000
    frame_ms: int = 30
    ring_seconds: float = 12.0
    input_device: str | int | None = None
    capture_rate: int | None = None
    capture_channels: int = 1


class VADSettings(BaseModel):
    activation_db: float = -35.0
    release_db: float = -45.0
    attack_ms: int = 60
    release_ms: int = 300
    smoothing: float = Field(0.5, gt=0.0, le=1.0)
    max_segment_ms: int = 30_000


class CacheSettings(BaseModel):
    directory: Path
    max_bytes: int | None = None
    chunk_size: int = 1 << 20
    download_timeout: float = 60.0
    catalog_path: Path | None = None


class InferenceSettings(BaseModel):
    memory_budget_mb: int = 2048
    stt_max_tokens: int = 224
    temperature: float = 0.7
    top_k: int = 40
    top_p: float = 0.95
    seed: int | None = None
    max_new_tokens: int = 512
    conversation_end_keyword: str = "CONVERSATION_ENDED"


class TelemetrySettings(BaseModel):
    log_level: str = "INFO"
    otlp_endpoint: str | None = None
    resource_sample_seconds: int = 30


class UISettings(BaseModel):
    origin: str = "http://localhost:8010"


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=(".env", ".env.local"), env_file_encoding="utf-8", extra="ignore")

    AUDIO_SAMPLE_RATE: int = 16_000
    AUDIO_FRAME_MS: int = 30
    AUDIO_RING_SECONDS: float = 12.0
    AUDIO_INPUT_DEVICE: str | int | None = None
    AUDIO_CAPTURE_RATE: int | None = None
    AUDIO_CAPTURE_CHANNELS: int = 1
    VAD_ACTIVATION_DB: float = -35.0
    VAD_RELEASE_DB: float = -45.0
    VAD_ATTACK_MS: int = 60
    VAD_RELEASE_MS: int = 300
    VAD_SMOOTHING: float = 0.5
    VAD_MAX_SEGMENT_MS: int = 30_000
    MODEL_CACHE_DIR: str = "~/.cache/voxcore/models"
    MODEL_CACHE_MAX_BYTES: int | None = None
    MODEL_DOWNLOAD_CHUNK_BYTES: int = 1 << 20
    MODEL_DOWNLOAD_TIMEOUT: float = 60.0
    MODEL_CATALOG_PATH: str | None = None
    MEMORY_BUDGET_MB: int = 2048
    STT_MAX_TOKENS: int = 224
    LLM_TEMPERATURE: float = 0.7
    LLM_TOP_K: int = 40
    LLM_TOP_P: float = 0.95
    LLM_SEED: int | None = None
    LLM_MAX_NEW_TOKENS: int = 512
    CONVERSATION_END_KEYWORD: str = "CONVERSATION_ENDED"
    LOG_LEVEL: str = "INFO"
    OTEL_EXPORTER_OTLP_ENDPOINT: str | None = None
    RESOURCE_SAMPLE_SECONDS: int = 30
    UI_ORIGIN: str = "http://localhost:8010"
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"

    @staticmethod
    def _coerce_device(device: str | int | None) -> str | int | None:
        if isinstance(device, str):
            trimmed = device.strip()
            if not trimmed:
                return None
            if trimmed.isdigit():
                return int(trimmed)
            return trimmed
        return device

    @property
    def audio(self) -> AudioSettings:
        return AudioSettings(
            sample_rate=self.AUDIO_SAMPLE_RATE,
            frame_ms=self.AUDIO_FRAME_MS,
            ring_seconds=self.AUDIO_RING_SECONDS,
            input_device=self._coerce_device(self.AUDIO_INPUT_DEVICE),
            capture_rate=self.AUDIO_CAPTURE_RATE,
            capture_channels=self.AUDIO_CAPTURE_CHANNELS,
        )

    @property
    def vad(self) -> VADSettings:
        return VADSettings(
            activation_db=self.VAD_ACTIVATION_DB,
            release_db=self.VAD_RELEASE_DB,
            attack_ms=self.VAD_ATTACK_MS,
            release_ms=self.VAD_RELEASE_MS,
            smoothing=self.VAD_SMOOTHING,
            max_segment_ms=self.VAD_MAX_SEGMENT_MS,
        )

    @property
    def cache(self) -> CacheSettings:
        catalog = Path(self.MODEL_CATALOG_PATH).expanduser() if self.MODEL_CATALOG_PATH else None
        return CacheSettings(
            directory=Path(self.MODEL_CACHE_DIR).expanduser(),
            max_bytes=self.MODEL_CACHE_MAX_BYTES,
            chunk_size=self.MODEL_DOWNLOAD_CHUNK_BYTES,
            download_timeout=self.MODEL_DOWNLOAD_TIMEOUT,
            catalog_path=catalog,
        )

    @property
    def inference(self) -> InferenceSettings:
        return InferenceSettings(
            memory_budget_mb=self.MEMORY_BUDGET_MB,
            stt_max_tokens=self.STT_MAX_TOKENS,
            temperature=self.LLM_TEMPERATURE,
            top_k=self.LLM_TOP_K,
            top_p=self.LLM_TOP_P,
            seed=self.LLM_SEED,
            max_new_tokens=self.LLM_MAX_NEW_TOKENS,
            conversation_end_keyword=self.CONVERSATION_END_KEYWORD,
        )

    @property
    def telemetry(self) -> TelemetrySettings:
        return TelemetrySettings(
            log_level=self.LOG_LEVEL,
            otlp_endpoint=self.OTEL_EXPORTER_OTLP_ENDPOINT,
            resource_sample_seconds=self.RESOURCE_SAMPLE_SECONDS,
        )

    @property
    def ui(self) -> UISettings:
        return UISettings(origin=self.UI_ORIGIN)


@functools.lru_cache(maxsize=1)
def load_settings() -> AppSettings:
    return AppSettings()


def project_root() -> Path:
    return Path(__file__).resolve().parents[1]


__all__ = ["AppSettings", "load_settings", "project_root"]
