from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import numpy as np
import pytest
from reference_models import build_language_model, build_speech_model, describe_blob

from voxcore.errors import ModelDownloadError
from voxcore.llm.network import DecoderState
from voxcore.models.blob import parse_model_blob
from voxcore.models.descriptors import ModelDescriptor
from voxcore.models.loader import NETWORKS, ModelHandle
from voxcore.models.source import FetchResult
from voxcore.models.tokenizer import Tokenizer


@pytest.fixture
def anyio_backend():
    return "asyncio"


class StaticModelSource:
    """Serves blobs from memory; ``fail_at`` breaks the next transfer once at that byte."""

    def __init__(self, blobs: dict[str, bytes], chunk_size: int = 4096, delay: float = 0.0, honour_range: bool = True):
        self.blobs = blobs
        self.chunk_size = chunk_size
        self.delay = delay
        self.honour_range = honour_range
        self.fail_at: int | None = None
        self.calls: list[tuple[str, int]] = []

    @asynccontextmanager
    async def open(self, url: str, offset: int = 0) -> AsyncIterator[FetchResult]:
        self.calls.append((url, offset))
        if url not in self.blobs:
            raise ModelDownloadError(f"404 for {url}")
        data = self.blobs[url]
        start = offset if self.honour_range else 0
        fail_at, self.fail_at = self.fail_at, None

        async def chunks() -> AsyncIterator[bytes]:
            for pos in range(start, len(data), self.chunk_size):
                if fail_at is not None and pos >= fail_at:
                    raise ModelDownloadError("connection reset by peer")
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield data[pos : pos + self.chunk_size]

        yield FetchResult(offset=start, total=len(data), chunks=chunks())


class ScriptedLanguageModel:
    """Stands in for a language network; the n-th forward call favours ``script[n]``.

    A script entry is a token id or a tuple of ids in descending preference.
    """

    def __init__(self, script: list, n_vocab: int, n_ctx: int = 4096, delay: float = 0.0) -> None:
        self.script = list(script)
        self.n_vocab = n_vocab
        self.n_ctx = n_ctx
        self.delay = delay
        self.calls: list[list[int]] = []

    def new_state(self) -> DecoderState:
        return DecoderState()

    def forward(self, state: DecoderState, ids: list[int]) -> np.ndarray:
        if self.delay:
            time.sleep(self.delay)
        self.calls.append(list(ids))
        state.position += len(ids)
        entry = self.script[min(len(self.calls) - 1, len(self.script) - 1)]
        return one_hot(entry, self.n_vocab)


class ScriptedSpeechModel:
    """Speech network stand-in; logits after the decoder prompt follow ``script``."""

    n_mels = 80
    n_text_ctx = 448

    def __init__(self, script: list, n_vocab: int, prompt_length: int = 4) -> None:
        self.script = list(script)
        self.n_vocab = n_vocab
        self.prompt_length = prompt_length
        self.steps = 0
        self.encoded = 0

    def encode(self, mel: np.ndarray) -> object:
        self.encoded += 1
        return object()

    def initial_state(self) -> np.ndarray:
        return np.zeros(1, dtype=np.float32)

    def decode_step(self, audio: object, state: np.ndarray, token: int, position: int) -> tuple[np.ndarray, np.ndarray]:
        self.steps += 1
        index = max(0, self.steps - self.prompt_length)
        entry = self.script[min(index, len(self.script) - 1)]
        return one_hot(entry, self.n_vocab), state


def one_hot(entry, n_vocab: int) -> np.ndarray:
    logits = np.full(n_vocab, -10.0, dtype=np.float32)
    ranked = entry if isinstance(entry, (tuple, list)) else (entry,)
    for rank, token in enumerate(ranked):
        logits[token] = 10.0 - rank
    return logits


def handle_for(blob: bytes, model_id: str = "reference") -> ModelHandle:
    descriptor = describe_blob(blob, model_id, f"https://models.test/{model_id}.vxmb")
    parsed = parse_model_blob(blob)
    network = NETWORKS[descriptor.role].from_parsed(parsed)
    tokenizer = Tokenizer(parsed.header.vocab, parsed.header.special_tokens)
    return ModelHandle(descriptor.role, descriptor, network, tokenizer, nbytes=parsed.resident_bytes)


def scripted_handle(blob: bytes, network: object, model_id: str = "scripted") -> ModelHandle:
    """A handle carrying ``blob``'s tokenizer in front of a scripted network."""
    real = handle_for(blob, model_id)
    return ModelHandle(real.role, real.descriptor, network, real.tokenizer, nbytes=real.nbytes)


def token_id(tokenizer: Tokenizer, text: str) -> int:
    ids = tokenizer.encode(text)
    assert len(ids) == 1, f"{text!r} is not a single piece"
    return ids[0]


@pytest.fixture(scope="session")
def speech_blob() -> bytes:
    return build_speech_model(seed=7)


@pytest.fixture(scope="session")
def language_blob() -> bytes:
    return build_language_model(seed=11)


@pytest.fixture
def publish():
    """Serves blobs from a (fresh) static source; returns the source and a descriptor per model id."""

    def factory(
        blobs: dict[str, bytes], source: StaticModelSource | None = None, **kwargs
    ) -> tuple[StaticModelSource, dict[str, ModelDescriptor]]:
        source = source or StaticModelSource({}, **kwargs)
        descriptors = {}
        for model_id, blob in blobs.items():
            url = f"https://models.test/{model_id}.vxmb"
            source.blobs[url] = blob
            descriptors[model_id] = describe_blob(blob, model_id, url)
        return source, descriptors

    return factory
