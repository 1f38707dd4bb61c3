from __future__ import annotations

import hashlib
import os
from pathlib import Path
from typing import Protocol

from voxcore.models.descriptors import CacheIndex
from voxcore.telemetry.logging import get_logger


class BlobWriter(Protocol):
    offset: int

    def write(self, chunk: bytes) -> None: ...

    def hash_existing(self, digest: "hashlib._Hash") -> None: ...

    def commit(self) -> int: ...

    def abort(self, keep_partial: bool = False) -> None: ...


class BlobStore(Protocol):
    def open_writer(self, name: str, resume: bool = False) -> BlobWriter: ...

    def read(self, name: str) -> bytes: ...

    def size(self, name: str) -> int | None: ...

    def delete(self, name: str) -> None: ...

    def load_index(self) -> CacheIndex: ...

    def save_index(self, index: CacheIndex) -> None: ...


class _MemoryWriter:
    def __init__(self, store: "MemoryBlobStore", name: str, resume: bool) -> None:
        self._store = store
        self._name = name
        self._buffer = bytearray(store.partials.get(name, b"") if resume else b"")
        self.offset = len(self._buffer)

    def write(self, chunk: bytes) -> None:
        self._buffer.extend(chunk)

    def hash_existing(self, digest: "hashlib._Hash") -> None:
        digest.update(self._buffer[: self.offset])

    def commit(self) -> int:
        self._store.blobs[self._name] = bytes(self._buffer)
        self._store.partials.pop(self._name, None)
        return len(self._buffer)

    def abort(self, keep_partial: bool = False) -> None:
        if keep_partial:
            self._store.partials[self._name] = bytes(self._buffer)
        else:
            self._store.partials.pop(self._name, None)


class MemoryBlobStore:
    """Process-local byte store; nothing survives the process."""

    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}
        self.partials: dict[str, bytes] = {}
        self._index = CacheIndex()

    def open_writer(self, name: str, resume: bool = False) -> BlobWriter:
        return _MemoryWriter(self, name, resume)

    def read(self, name: str) -> bytes:
        try:
            return self.blobs[name]
        except KeyError as exc:
            raise FileNotFoundError(name) from exc

    def size(self, name: str) -> int | None:
        blob = self.blobs.get(name)
        return None if blob is None else len(blob)

    def delete(self, name: str) -> None:
        self.blobs.pop(name, None)
        self.partials.pop(name, None)

    def load_index(self) -> CacheIndex:
        return self._index.model_copy(deep=True)

    def save_index(self, index: CacheIndex) -> None:
        self._index = index.model_copy(deep=True)


class _FileWriter:
    def __init__(self, final_path: Path, resume: bool) -> None:
        self._final = final_path
        self._partial = final_path.with_suffix(final_path.suffix + ".part")
        mode = "ab" if resume and self._partial.exists() else "wb"
        self._handle = open(self._partial, mode)
        self.offset = self._handle.tell()

    def write(self, chunk: bytes) -> None:
        self._handle.write(chunk)

    def hash_existing(self, digest: "hashlib._Hash") -> None:
        if not self.offset:
            return
        with open(self._partial, "rb") as handle:
            remaining = self.offset
            while remaining:
                block = handle.read(min(remaining, 1 << 20))
                if not block:
                    break
                digest.update(block)
                remaining -= len(block)

    def commit(self) -> int:
        self._handle.flush()
        os.fsync(self._handle.fileno())
        size = self._handle.tell()
        self._handle.close()
        os.replace(self._partial, self._final)
        return size

    def abort(self, keep_partial: bool = False) -> None:
        self._handle.close()
        if not keep_partial:
            self._partial.unlink(missing_ok=True)


class FileBlobStore:
    """Blobs under ``<root>/blobs`` plus an ``index.json`` of verified entries."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self._blobs = self.root / "blobs"
        self._blobs.mkdir(parents=True, exist_ok=True)
        self._index_path = self.root / "index.json"
        self._logger = get_logger(__name__)

    def _path(self, name: str) -> Path:
        return self._blobs / f"{name}.bin"

    def open_writer(self, name: str, resume: bool = False) -> BlobWriter:
        return _FileWriter(self._path(name), resume)

    def read(self, name: str) -> bytes:
        return self._path(name).read_bytes()

    def size(self, name: str) -> int | None:
        path = self._path(name)
        return path.stat().st_size if path.exists() else None

    def delete(self, name: str) -> None:
        path = self._path(name)
        path.unlink(missing_ok=True)
        path.with_suffix(path.suffix + ".part").unlink(missing_ok=True)

    def load_index(self) -> CacheIndex:
        if not self._index_path.exists():
            return CacheIndex()
        try:
            return CacheIndex.model_validate_json(self._index_path.read_text(encoding="utf-8"))
        except ValueError as exc:
            self._logger.warning("model.store.index_unreadable", path=str(self._index_path), error=str(exc))
            return CacheIndex()

    def save_index(self, index: CacheIndex) -> None:
        tmp = self._index_path.with_suffix(".json.tmp")
        tmp.write_text(index.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp, self._index_path)


__all__ = ["BlobStore", "BlobWriter", "MemoryBlobStore", "FileBlobStore"]
