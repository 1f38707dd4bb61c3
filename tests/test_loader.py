from __future__ import annotations

import threading

import pytest
from reference_models import build_language_model

from voxcore.errors import InferenceError, ModelInUseError, ModelLoadError
from voxcore.models.cache import ModelCache
from voxcore.models.descriptors import ModelRole
from voxcore.models.loader import ModelLoader
from voxcore.models.store import MemoryBlobStore


@pytest.fixture
def models(publish, speech_blob, language_blob):
    source, descriptors = publish(
        {
            "tiny-stt": speech_blob,
            "tiny-llm": language_blob,
            "other-llm": build_language_model(seed=5),
            "gpt2-llm": build_language_model(seed=6, family="gpt2"),
        }
    )
    return ModelCache(MemoryBlobStore(), source), descriptors


@pytest.mark.anyio("asyncio")
async def test_one_resident_model_per_role(models) -> None:
    cache, descriptors = models
    loader = ModelLoader(cache)
    stt = loader.load(await cache.ensure_cached(descriptors["tiny-stt"]))
    llm = loader.load(await cache.ensure_cached(descriptors["tiny-llm"]))

    assert stt.role is ModelRole.STT and llm.role is ModelRole.LLM
    assert loader.resident(ModelRole.LLM) is llm
    assert set(loader.resident_bytes()) == {"stt", "llm"}
    assert 0 < llm.nbytes <= descriptors["tiny-llm"].size_bytes
    assert cache.is_pinned(llm.descriptor.key)

    other = await cache.ensure_cached(descriptors["other-llm"])
    with pytest.raises(ModelLoadError):
        loader.load(other)
    assert loader.current(ModelRole.LLM) is llm

    loader.unload(ModelRole.LLM)
    assert loader.load(other).descriptor.model_id == "other-llm"


@pytest.mark.anyio("asyncio")
async def test_unload_invalidates_handle_and_unpins(models) -> None:
    cache, descriptors = models
    loader = ModelLoader(cache)
    entry = await cache.ensure_cached(descriptors["tiny-llm"])
    handle = loader.load(entry)

    with pytest.raises(ModelInUseError):
        cache.evict(entry)

    assert loader.unload(handle) is handle
    assert not handle.live
    assert "released" in repr(handle)
    with pytest.raises(InferenceError):
        handle.network
    with pytest.raises(InferenceError):
        handle.tokenizer
    with pytest.raises(InferenceError):
        loader.resident(ModelRole.LLM)
    assert loader.unload(handle) is None
    assert not cache.is_pinned(entry.key)
    cache.evict(entry)


@pytest.mark.anyio("asyncio")
async def test_memory_budget_is_enforced(models) -> None:
    cache, descriptors = models
    loader = ModelLoader(cache, memory_budget_bytes=1024)
    entry = await cache.ensure_cached(descriptors["tiny-llm"])

    with pytest.raises(ModelLoadError):
        loader.load(entry)
    assert loader.current(ModelRole.LLM) is None
    assert not cache.is_pinned(entry.key)


@pytest.mark.anyio("asyncio")
async def test_incompatible_blobs_are_rejected(models) -> None:
    cache, descriptors = models
    loader = ModelLoader(cache)

    with pytest.raises(ModelLoadError):
        loader.load(await cache.ensure_cached(descriptors["gpt2-llm"]))

    mislabelled = descriptors["tiny-llm"].model_copy(update={"family": "phi"})
    with pytest.raises(ModelLoadError):
        loader.load(await cache.ensure_cached(mislabelled))

    wrong_role = descriptors["tiny-stt"].model_copy(update={"model_id": "stt-as-llm", "role": ModelRole.LLM})
    with pytest.raises(ModelLoadError):
        loader.load(await cache.ensure_cached(wrong_role))

    assert loader.resident_bytes() == {}


def test_uncached_entry_cannot_be_loaded(models) -> None:
    cache, descriptors = models
    loader = ModelLoader(cache)
    with pytest.raises(ModelLoadError):
        loader.load(cache.entry(descriptors["tiny-llm"]))


@pytest.mark.anyio("asyncio")
async def test_resident_bytes_can_be_read_while_models_swap(models) -> None:
    cache, descriptors = models
    loader = ModelLoader(cache)
    entries = [await cache.ensure_cached(descriptors[name]) for name in ("tiny-llm", "other-llm")]
    failures: list[BaseException] = []
    done = threading.Event()

    def read() -> None:
        while not done.is_set():
            try:
                assert set(loader.resident_bytes()) <= {"llm"}
                assert len(cache.entries()) == 2
            except BaseException as exc:
                failures.append(exc)
                return

    reader = threading.Thread(target=read)
    reader.start()
    try:
        for i in range(40):
            loader.load(entries[i % 2])
            loader.unload(ModelRole.LLM)
    finally:
        done.set()
        reader.join(timeout=5)

    assert failures == []
    assert loader.resident_bytes() == {}
