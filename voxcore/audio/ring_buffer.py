from __future__ import annotations

import collections
import threading
from typing import Deque

import numpy as np


class RingBuffer:
    """Bounded sample store between a push-based capture source and the pipeline.

    ``push`` never blocks: when the buffer would exceed its capacity the oldest
    unread samples are discarded and counted in ``dropped_samples``. ``pop``
    waits for data until the buffer is closed and drained. Sources that are not
    realtime call ``wait_for_room`` before pushing so nothing is dropped.
    """

    def __init__(self, capacity_samples: int) -> None:
        if capacity_samples <= 0:
            raise ValueError("capacity_samples must be > 0")
        self.capacity_samples = capacity_samples
        self._blocks: Deque[np.ndarray] = collections.deque()
        self._buffered = 0
        self._closed = False
        self._cond = threading.Condition()
        self.dropped_samples = 0

    @classmethod
    def for_duration(cls, seconds: float, sample_rate: int) -> "RingBuffer":
        return cls(max(1, int(seconds * sample_rate)))

    def push(self, block: np.ndarray) -> None:
        if block.shape[0] == 0:
            return
        data = np.array(block, dtype=np.float32, copy=True)
        with self._cond:
            if self._closed:
                return
            if data.shape[0] > self.capacity_samples:
                self.dropped_samples += data.shape[0] - self.capacity_samples
                data = data[-self.capacity_samples :]
            self._blocks.append(data)
            self._buffered += data.shape[0]
            self._prune_locked()
            self._cond.notify_all()

    def pop(self, timeout: float | None = None) -> np.ndarray | None:
        """Return the oldest block, or ``None`` on timeout or once closed and empty."""
        with self._cond:
            if not self._blocks and not self._closed:
                self._cond.wait(timeout)
            if not self._blocks:
                return None
            block = self._blocks.popleft()
            self._buffered -= block.shape[0]
            self._cond.notify_all()
            return block

    def wait_for_room(self, samples: int, timeout: float | None = None) -> bool:
        """Block until ``samples`` more fit without dropping; ``False`` on timeout or once closed."""
        need = min(samples, self.capacity_samples)
        with self._cond:
            self._cond.wait_for(lambda: self._closed or self._buffered + need <= self.capacity_samples, timeout)
            return not self._closed and self._buffered + need <= self.capacity_samples

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def exhausted(self) -> bool:
        with self._cond:
            return self._closed and not self._blocks

    def __len__(self) -> int:
        return self._buffered

    def _prune_locked(self) -> None:
        while self._buffered > self.capacity_samples:
            overflow = self._buffered - self.capacity_samples
            oldest = self._blocks[0]
            if oldest.shape[0] <= overflow:
                self._blocks.popleft()
                self._buffered -= oldest.shape[0]
                self.dropped_samples += oldest.shape[0]
            else:
                self._blocks[0] = oldest[overflow:]
                self._buffered -= overflow
                self.dropped_samples += overflow


__all__ = ["RingBuffer"]
