from __future__ import annotations

import asyncio
import collections
import hashlib
import threading
import time
from collections.abc import Callable, Collection

from voxcore.errors import ModelDownloadError, ModelInUseError, ModelLoadError
from voxcore.models.descriptors import (
    CacheIndex,
    CacheIndexRecord,
    CacheStatus,
    DownloadProgress,
    ModelCacheEntry,
    ModelDescriptor,
)
from voxcore.models.source import ModelSource
from voxcore.models.store import BlobStore, BlobWriter
from voxcore.telemetry.logging import get_logger
from voxcore.telemetry.tracing import get_tracer

ProgressCallback = Callable[[ModelCacheEntry, DownloadProgress], None]
CacheKey = tuple[str, str]

_tracer = get_tracer(__name__)


class _Download:
    def __init__(self) -> None:
        self.listeners: list[ProgressCallback] = []
        self.last: DownloadProgress | None = None
        self.task: asyncio.Task[ModelCacheEntry] | None = None


class ModelCache:
    """Versioned store of verified model blobs keyed by (model id, version).

    Concurrent ``ensure_cached`` calls for one key share a single in-flight
    download; every caller sees the same progress stream and the same entry.
    """

    def __init__(self, store: BlobStore, source: ModelSource, max_bytes: int | None = None) -> None:
        self._store = store
        self._source = source
        self._max_bytes = max_bytes
        self._entries: dict[CacheKey, ModelCacheEntry] = {}
        self._entries_lock = threading.RLock()
        self._inflight: dict[CacheKey, _Download] = {}
        self._pins: collections.Counter[CacheKey] = collections.Counter()
        self._logger = get_logger(__name__)
        self._restore_index()

    def entry(self, descriptor: ModelDescriptor) -> ModelCacheEntry:
        with self._entries_lock:
            existing = self._entries.get(descriptor.key)
            if existing is None:
                existing = ModelCacheEntry(descriptor=descriptor)
                self._entries[descriptor.key] = existing
            elif existing.descriptor != descriptor:
                if existing.is_cached or existing.status is CacheStatus.DOWNLOADING:
                    raise ModelDownloadError(
                        f"descriptor for {descriptor.model_id}@{descriptor.version} conflicts with the cached one"
                    )
                existing.descriptor = descriptor
            return existing

    def get(self, model_id: str, version: str) -> ModelCacheEntry | None:
        with self._entries_lock:
            return self._entries.get((model_id, version))

    def entries(self) -> list[ModelCacheEntry]:
        """Snapshot of every known entry; safe to call from another thread."""
        with self._entries_lock:
            return list(self._entries.values())

    def versions(self, model_id: str) -> list[str]:
        return sorted(
            entry.descriptor.version
            for entry in self.entries()
            if entry.key[0] == model_id and entry.is_cached
        )

    @property
    def cached_bytes(self) -> int:
        return sum(entry.stored_bytes for entry in self.entries() if entry.is_cached)

    async def ensure_cached(
        self,
        descriptor: ModelDescriptor,
        on_progress: ProgressCallback | None = None,
    ) -> ModelCacheEntry:
        entry = self.entry(descriptor)
        if entry.is_cached:
            entry.last_used = time.time()
            return entry

        key = descriptor.key
        download = self._inflight.get(key)
        if download is None:
            download = _Download()
            self._inflight[key] = download
            download.task = asyncio.create_task(
                self._download(entry, download),
                name=f"model-download:{descriptor.storage_name}",
            )
            download.task.add_done_callback(lambda _task, k=key, d=download: self._finish_inflight(k, d))
        else:
            self._logger.info("model.cache.download.joined", model_id=descriptor.model_id, version=descriptor.version)

        if on_progress is not None:
            download.listeners.append(on_progress)
            if download.last is not None:
                on_progress(entry, download.last)
        assert download.task is not None
        try:
            return await asyncio.shield(download.task)
        finally:
            if on_progress is not None and on_progress in download.listeners:
                download.listeners.remove(on_progress)

    def read_blob(self, entry: ModelCacheEntry) -> bytes:
        if entry.status is CacheStatus.CORRUPT:
            raise ModelLoadError(f"{entry.descriptor.storage_name} is corrupt: {entry.error}")
        if not entry.is_cached:
            raise ModelLoadError(f"{entry.descriptor.storage_name} is not cached")
        try:
            blob = self._store.read(entry.descriptor.storage_name)
        except FileNotFoundError as exc:
            entry.status = CacheStatus.NOT_CACHED
            self._save_index()
            raise ModelLoadError(f"{entry.descriptor.storage_name} blob is missing") from exc
        if len(blob) != entry.stored_bytes:
            entry.status = CacheStatus.CORRUPT
            entry.error = f"stored size {len(blob)} != recorded {entry.stored_bytes}"
            self._save_index()
            raise ModelLoadError(f"{entry.descriptor.storage_name} is corrupt: {entry.error}")
        entry.last_used = time.time()
        return blob

    def pin(self, key: CacheKey) -> None:
        self._pins[key] += 1

    def unpin(self, key: CacheKey) -> None:
        if self._pins[key] <= 1:
            self._pins.pop(key, None)
        else:
            self._pins[key] -= 1

    def is_pinned(self, key: CacheKey) -> bool:
        return self._pins[key] > 0

    def evict(self, entry: ModelCacheEntry) -> None:
        """Delete a cached blob; refuses while a live handle or a download uses it."""
        key = entry.key
        if self.is_pinned(key):
            raise ModelInUseError(f"{entry.descriptor.storage_name} has a live model handle")
        if key in self._inflight:
            raise ModelInUseError(f"{entry.descriptor.storage_name} is downloading")
        self._store.delete(entry.descriptor.storage_name)
        entry.status = CacheStatus.NOT_CACHED
        entry.stored_bytes = 0
        entry.progress = None
        with self._entries_lock:
            self._entries.pop(key, None)
        self._save_index()
        self._logger.info("model.cache.evicted", model_id=key[0], version=key[1])

    def prune(self, max_bytes: int | None = None, keep: Collection[CacheKey] = ()) -> list[CacheKey]:
        """Evict least recently used, unpinned entries until the cache fits ``max_bytes``.

        Keys in ``keep`` are never evicted, even if the cache stays over budget.
        """
        budget = self._max_bytes if max_bytes is None else max_bytes
        if budget is None:
            return []
        evicted: list[CacheKey] = []
        candidates = sorted(
            (
                e
                for e in self.entries()
                if e.is_cached and e.key not in keep and not self.is_pinned(e.key) and e.key not in self._inflight
            ),
            key=lambda e: e.last_used,
        )
        for entry in candidates:
            if self.cached_bytes <= budget:
                break
            evicted.append(entry.key)
            self.evict(entry)
        if self.cached_bytes > budget:
            self._logger.warning("model.cache.over_budget", cached_bytes=self.cached_bytes, max_bytes=budget)
        return evicted

    async def _download(self, entry: ModelCacheEntry, download: _Download) -> ModelCacheEntry:
        descriptor = entry.descriptor
        entry.status = CacheStatus.DOWNLOADING
        entry.error = None
        digest = hashlib.sha256()
        writer = self._store.open_writer(descriptor.storage_name, resume=True)
        self._logger.info(
            "model.cache.download.started",
            model_id=descriptor.model_id,
            version=descriptor.version,
            resume_from=writer.offset,
            expected_bytes=descriptor.size_bytes,
        )
        with _tracer.start_as_current_span("model.download") as span:
            span.set_attribute("model.id", descriptor.model_id)
            try:
                writer, received = await self._transfer(entry, download, writer, digest)
            except ModelDownloadError as exc:
                writer.abort(keep_partial=True)
                entry.status = CacheStatus.NOT_CACHED
                entry.error = str(exc)
                self._logger.warning("model.cache.download.failed", model_id=descriptor.model_id, error=str(exc))
                raise
            except BaseException:
                writer.abort(keep_partial=True)
                entry.status = CacheStatus.NOT_CACHED
                raise

            checksum = digest.hexdigest()
            if received != descriptor.size_bytes or checksum != descriptor.sha256:
                writer.abort(keep_partial=False)
                entry.status = CacheStatus.CORRUPT
                entry.error = (
                    f"expected {descriptor.size_bytes} bytes sha256={descriptor.sha256}, "
                    f"got {received} bytes sha256={checksum}"
                )
                self._logger.error("model.cache.checksum_mismatch", model_id=descriptor.model_id, detail=entry.error)
                raise ModelDownloadError(f"{descriptor.storage_name} failed verification: {entry.error}")

            entry.stored_bytes = writer.commit()
            entry.status = CacheStatus.CACHED
            entry.cached_at = entry.last_used = time.time()
            span.set_attribute("model.bytes", entry.stored_bytes)
        self._save_index()
        self._logger.info("model.cache.download.completed", model_id=descriptor.model_id, bytes=entry.stored_bytes)
        if self._max_bytes is not None:
            self.prune(keep={descriptor.key})
        return entry

    async def _transfer(
        self,
        entry: ModelCacheEntry,
        download: _Download,
        writer: BlobWriter,
        digest: "hashlib._Hash",
    ) -> tuple[BlobWriter, int]:
        descriptor = entry.descriptor
        async with self._source.open(descriptor.url, writer.offset) as fetch:
            if fetch.offset != writer.offset:
                writer.abort(keep_partial=False)
                writer = self._store.open_writer(descriptor.storage_name, resume=False)
            writer.hash_existing(digest)
            received = writer.offset
            self._report(entry, download, received)
            async for chunk in fetch.chunks:
                writer.write(chunk)
                digest.update(chunk)
                received += len(chunk)
                self._report(entry, download, received)
                if received > descriptor.size_bytes:
                    break
        return writer, received

    def _report(self, entry: ModelCacheEntry, download: _Download, received: int) -> None:
        progress = DownloadProgress(received_bytes=received, total_bytes=entry.descriptor.size_bytes)
        entry.progress = progress
        download.last = progress
        for listener in list(download.listeners):
            try:
                listener(entry, progress)
            except Exception as exc:  # pragma: no cover
                self._logger.error("model.cache.progress_listener_failed", error=str(exc))

    def _finish_inflight(self, key: CacheKey, download: _Download) -> None:
        if self._inflight.get(key) is download:
            del self._inflight[key]

    def _restore_index(self) -> None:
        index = self._store.load_index()
        dropped = 0
        for record in index.entries:
            descriptor = record.descriptor
            size = self._store.size(descriptor.storage_name)
            if size is None or size != record.stored_bytes or size != descriptor.size_bytes:
                self._logger.warning(
                    "model.cache.index_entry_dropped",
                    model_id=descriptor.model_id,
                    version=descriptor.version,
                    on_disk=size,
                )
                self._store.delete(descriptor.storage_name)
                dropped += 1
                continue
            restored = ModelCacheEntry(
                descriptor=descriptor,
                status=CacheStatus.CACHED,
                stored_bytes=record.stored_bytes,
                cached_at=record.cached_at,
                last_used=record.last_used,
            )
            with self._entries_lock:
                self._entries[descriptor.key] = restored
        if dropped:
            self._save_index()
        self._logger.info("model.cache.restored", entries=len(self._entries), dropped=dropped)

    def _save_index(self) -> None:
        records = [
            CacheIndexRecord(
                descriptor=entry.descriptor,
                stored_bytes=entry.stored_bytes,
                cached_at=entry.cached_at or time.time(),
                last_used=entry.last_used,
            )
            for entry in self.entries()
            if entry.is_cached
        ]
        self._store.save_index(CacheIndex(entries=records))


__all__ = ["ModelCache", "ProgressCallback"]
