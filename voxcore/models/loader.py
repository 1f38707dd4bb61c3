from __future__ import annotations

import threading
from typing import Any

from voxcore.errors import InferenceError, ModelLoadError
from voxcore.llm.network import CausalLanguageModel
from voxcore.models.blob import parse_model_blob
from voxcore.models.cache import ModelCache
from voxcore.models.descriptors import ModelCacheEntry, ModelDescriptor, ModelRole
from voxcore.models.tokenizer import Tokenizer
from voxcore.stt.network import SpeechModel
from voxcore.telemetry.logging import get_logger
from voxcore.telemetry.tracing import get_tracer

NETWORKS: dict[ModelRole, Any] = {
    ModelRole.STT: SpeechModel,
    ModelRole.LLM: CausalLanguageModel,
}

_tracer = get_tracer(__name__)


class ModelHandle:
    """Resident weights for one cache entry.

    After ``release()`` every accessor raises InferenceError so engines still
    holding the handle fail instead of touching freed weights.
    """

    def __init__(
        self,
        role: ModelRole,
        descriptor: ModelDescriptor,
        network: Any,
        tokenizer: Tokenizer,
        nbytes: int = 0,
    ) -> None:
        self.role = role
        self.descriptor = descriptor
        self.nbytes = nbytes
        self._network = network
        self._tokenizer: Tokenizer | None = tokenizer

    @property
    def live(self) -> bool:
        return self._network is not None

    @property
    def network(self) -> Any:
        if self._network is None:
            raise InferenceError(f"{self.role.value} model {self.descriptor.model_id} has been unloaded")
        return self._network

    @property
    def tokenizer(self) -> Tokenizer:
        if self._tokenizer is None:
            raise InferenceError(f"{self.role.value} model {self.descriptor.model_id} has been unloaded")
        return self._tokenizer

    def release(self) -> None:
        self._network = None
        self._tokenizer = None

    def __repr__(self) -> str:
        state = "live" if self.live else "released"
        return f"ModelHandle({self.role.value}, {self.descriptor.model_id}@{self.descriptor.version}, {state})"


class ModelLoader:
    """Owns at most one resident handle per role."""

    def __init__(self, cache: ModelCache, memory_budget_bytes: int | None = None) -> None:
        self._cache = cache
        self._budget = memory_budget_bytes
        self._slots: dict[ModelRole, ModelHandle] = {}
        self._lock = threading.Lock()
        self._logger = get_logger(__name__)

    @property
    def cache(self) -> ModelCache:
        return self._cache

    def resident_bytes(self) -> dict[str, int]:
        with self._lock:
            return {role.value: handle.nbytes for role, handle in self._slots.items()}

    def current(self, role: ModelRole) -> ModelHandle | None:
        with self._lock:
            return self._slots.get(role)

    def resident(self, role: ModelRole) -> ModelHandle:
        handle = self.current(role)
        if handle is None or not handle.live:
            raise InferenceError(f"no {role.value} model is loaded")
        return handle

    def load(self, entry: ModelCacheEntry) -> ModelHandle:
        descriptor = entry.descriptor
        role = descriptor.role
        with self._lock:
            occupant = self._slots.get(role)
            if occupant is not None:
                raise ModelLoadError(
                    f"{role.value} slot holds {occupant.descriptor.model_id}; unload it before loading another model"
                )
            blob = self._cache.read_blob(entry)
            with _tracer.start_as_current_span("model.load") as span:
                span.set_attribute("model.id", descriptor.model_id)
                span.set_attribute("model.role", role.value)
                handle = self._materialize(descriptor, blob, entry.stored_bytes)
            self._cache.pin(entry.key)
            self._slots[role] = handle
        self._logger.info(
            "model.loader.loaded",
            role=role.value,
            model_id=descriptor.model_id,
            version=descriptor.version,
            resident_bytes=handle.nbytes,
        )
        return handle

    def unload(self, target: ModelRole | ModelHandle) -> ModelHandle | None:
        role = target.role if isinstance(target, ModelHandle) else ModelRole(target)
        with self._lock:
            handle = self._slots.get(role)
            if handle is None or (isinstance(target, ModelHandle) and handle is not target):
                return None
            del self._slots[role]
            handle.release()
            self._cache.unpin(handle.descriptor.key)
        self._logger.info("model.loader.unloaded", role=role.value, model_id=handle.descriptor.model_id)
        return handle

    def _materialize(self, descriptor: ModelDescriptor, blob: bytes, stored_bytes: int) -> ModelHandle:
        parsed = parse_model_blob(blob)
        header = parsed.header
        if header.role is not descriptor.role:
            raise ModelLoadError(f"blob holds a {header.role.value} model, descriptor says {descriptor.role.value}")
        if header.family != descriptor.family:
            raise ModelLoadError(f"blob family '{header.family}' does not match descriptor '{descriptor.family}'")
        if header.quantization != descriptor.quantization:
            raise ModelLoadError(
                f"blob quantization {header.quantization} does not match descriptor {descriptor.quantization}"
            )
        network_cls = NETWORKS[descriptor.role]
        if header.family not in network_cls.families:
            raise ModelLoadError(f"no {descriptor.role.value} network implements family '{header.family}'")
        missing = [name for name in network_cls.required_specials if name not in header.special_tokens]
        if missing:
            raise ModelLoadError(f"vocabulary lacks special tokens {missing}")
        network = network_cls.from_parsed(parsed)
        try:
            tokenizer = Tokenizer(header.vocab, header.special_tokens)
        except ValueError as exc:
            raise ModelLoadError(str(exc)) from exc

        nbytes = parsed.resident_bytes
        if nbytes > stored_bytes:
            raise ModelLoadError(f"resident size {nbytes} exceeds cached blob size {stored_bytes}")
        in_use = sum(handle.nbytes for handle in self._slots.values())
        if self._budget is not None and in_use + nbytes > self._budget:
            raise ModelLoadError(
                f"loading {descriptor.model_id} needs {nbytes} bytes; {self._budget - in_use} left in the memory budget"
            )
        return ModelHandle(descriptor.role, descriptor, network, tokenizer, nbytes=nbytes)


__all__ = ["ModelHandle", "ModelLoader", "NETWORKS"]
