from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

import psutil

from voxcore.telemetry.logging import get_logger


@dataclass
class SystemSample:
    cpu_percent: float
    mem_percent: float
    rss_mb: float
    model_bytes: dict[str, int] = field(default_factory=dict)

    @property
    def model_total_mb(self) -> float:
        return round(sum(self.model_bytes.values()) / (1024 * 1024), 2)

    def to_payload(self) -> dict[str, Any]:
        return {**asdict(self), "model_total_mb": self.model_total_mb}


class MetricsSink(Protocol):
    async def publish_metrics(self, payload: dict[str, Any]) -> None: ...


class ResourceMonitor:
    """Periodically logs process CPU/RSS and the bytes held by resident models."""

    def __init__(
        self,
        interval_seconds: int,
        model_bytes: Callable[[], dict[str, int]] | None = None,
        sink: MetricsSink | None = None,
    ) -> None:
        self._interval = max(5, interval_seconds)
        self._model_bytes = model_bytes
        self._sink = sink
        self._logger = get_logger(__name__)
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()

    async def start(self) -> None:
        if self._task:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="resource-monitor")
        self._logger.info("resource.monitor.started", interval=self._interval)

    async def shutdown(self) -> None:
        self._stop.set()
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        self._logger.info("resource.monitor.stopped")

    async def _run(self) -> None:
        while not self._stop.is_set():
            sample = self.sample()
            self._logger.info(
                "resource.monitor.sample",
                cpu_percent=sample.cpu_percent,
                mem_percent=sample.mem_percent,
                rss_mb=sample.rss_mb,
                model_bytes=sample.model_bytes,
                model_total_mb=sample.model_total_mb,
            )
            if self._sink:
                await self._sink.publish_metrics(sample.to_payload())
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue

    def sample(self) -> SystemSample:
        process = psutil.Process()
        cpu = process.cpu_percent(interval=None)
        mem = process.memory_percent()
        rss_mb = process.memory_info().rss / (1024 * 1024)
        if cpu == 0.0:
            cpu = psutil.cpu_percent(interval=0.1)
        models = dict(self._model_bytes()) if self._model_bytes else {}
        return SystemSample(cpu_percent=cpu, mem_percent=mem, rss_mb=round(rss_mb, 2), model_bytes=models)


__all__ = ["ResourceMonitor", "SystemSample", "MetricsSink"]
