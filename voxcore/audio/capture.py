from __future__ import annotations

import threading
from collections.abc import Iterator
from pathlib import Path
from typing import Protocol

import numpy as np
import soundfile as sf

from voxcore.audio.ring_buffer import RingBuffer
from voxcore.errors import AudioDeviceError
from voxcore.telemetry.logging import get_logger


class AudioSource(Protocol):
    sample_rate: int
    channels: int

    def start(self, ring: RingBuffer) -> None: ...

    def stop(self) -> None: ...


class _PacedSource:
    """Feeds blocks from a reader thread, waiting for room in the ring instead of dropping."""

    sample_rate: int
    channels: int

    def __init__(self, block_frames: int) -> None:
        self._block_frames = block_frames
        self._ring: RingBuffer | None = None
        self._thread: threading.Thread | None = None
        self._stopped = threading.Event()
        self._logger = get_logger(__name__)

    def start(self, ring: RingBuffer) -> None:
        self._ring = ring
        self._stopped.clear()
        self._thread = threading.Thread(target=self._feed, args=(ring,), name=type(self).__name__, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stopped.set()
        if self._ring is not None:
            self._ring.close()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
            self._thread = None

    def _blocks(self) -> Iterator[np.ndarray]:
        raise NotImplementedError

    def _feed(self, ring: RingBuffer) -> None:
        try:
            for block in self._blocks():
                while not ring.wait_for_room(block.shape[0], timeout=0.1):
                    if self._stopped.is_set() or ring.closed:
                        return
                ring.push(block)
        except AudioDeviceError as exc:
            self._logger.error("audio.source.read_failed", source=type(self).__name__, error=str(exc))
        finally:
            ring.close()


class FileSource(_PacedSource):
    """Plays an audio file through the pipeline as if it were captured."""

    def __init__(self, path: str | Path, block_frames: int = 4096) -> None:
        super().__init__(block_frames)
        self._path = Path(path)
        try:
            info = sf.info(str(self._path))
        except (RuntimeError, OSError) as exc:
            raise AudioDeviceError(f"cannot open audio file {self._path}: {exc}") from exc
        self.sample_rate = int(info.samplerate)
        self.channels = int(info.channels)
        self._handle: sf.SoundFile | None = None

    def start(self, ring: RingBuffer) -> None:
        try:
            self._handle = sf.SoundFile(str(self._path))
        except (RuntimeError, OSError) as exc:
            raise AudioDeviceError(f"cannot open audio file {self._path}: {exc}") from exc
        super().start(ring)

    def _blocks(self) -> Iterator[np.ndarray]:
        handle = self._handle
        assert handle is not None
        try:
            yield from handle.blocks(blocksize=self._block_frames, dtype="float32", always_2d=True)
        except (RuntimeError, OSError) as exc:
            raise AudioDeviceError(f"failed reading {self._path}: {exc}") from exc
        finally:
            handle.close()


class ArraySource(_PacedSource):
    """In-memory clip source; streams the clip then closes the ring."""

    def __init__(self, samples: np.ndarray, sample_rate: int, channels: int = 1, block_frames: int = 1024) -> None:
        super().__init__(block_frames)
        data = np.asarray(samples, dtype=np.float32)
        self._samples = data.reshape(-1, channels) if data.ndim == 1 else data
        self.sample_rate = sample_rate
        self.channels = channels

    def _blocks(self) -> Iterator[np.ndarray]:
        for offset in range(0, self._samples.shape[0], self._block_frames):
            yield self._samples[offset : offset + self._block_frames]


__all__ = ["AudioSource", "FileSource", "ArraySource"]
