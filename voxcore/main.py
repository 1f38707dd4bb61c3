from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from voxcore.audio.capture import AudioSource
from voxcore.audio.microphone import SoundDeviceSource
from voxcore.config import AppSettings, load_settings
from voxcore.llm.prompt import PromptBuilder
from voxcore.models.cache import ModelCache
from voxcore.models.catalog import ModelCatalog, load_catalog
from voxcore.models.loader import ModelLoader
from voxcore.models.source import HttpModelSource, ModelSource
from voxcore.models.store import FileBlobStore
from voxcore.orchestrator.commands import LoadModel
from voxcore.orchestrator.worker import WorkerCoordinator
from voxcore.telemetry.logging import configure_logging, get_logger
from voxcore.telemetry.system_metrics import ResourceMonitor
from voxcore.telemetry.tracing import configure_tracing
from voxcore.tools.executor import RegistryToolExecutor, ToolRegistry, register_builtin_tools
from voxcore.ui.websocket import CommandBridge

settings = load_settings()
configure_logging(settings.telemetry.log_level)
configure_tracing("voxcore", settings.telemetry.otlp_endpoint)
logger = get_logger(__name__)

app = FastAPI(title="voxcore")
bridge = CommandBridge()

origins = {settings.ui.origin}
if "localhost" in settings.ui.origin:
    origins.add(settings.ui.origin.replace("localhost", "127.0.0.1"))
app.include_router(bridge.router)
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(origins),
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=True,
)


class Runtime:
    def __init__(
        self,
        coordinator: WorkerCoordinator,
        cache: ModelCache,
        catalog: ModelCatalog,
        monitor: ResourceMonitor,
    ) -> None:
        self.coordinator = coordinator
        self.cache = cache
        self.catalog = catalog
        self.monitor = monitor

    async def shutdown(self) -> None:
        await self.monitor.shutdown()
        await asyncio.to_thread(self.coordinator.stop)
        logger.info("runtime.shutdown")


def microphone_factory(settings: AppSettings) -> Callable[[], AudioSource]:
    audio = settings.audio

    def factory() -> AudioSource:
        return SoundDeviceSource(
            samplerate=audio.capture_rate,
            channels=audio.capture_channels,
            frame_ms=audio.frame_ms,
            device=audio.input_device,
        )

    return factory


async def bootstrap_runtime(
    settings: AppSettings,
    *,
    source_factory: Callable[[], AudioSource] | None = None,
    model_source: ModelSource | None = None,
) -> Runtime:
    cache_settings = settings.cache
    store = FileBlobStore(cache_settings.directory)
    source = model_source or HttpModelSource(
        timeout=cache_settings.download_timeout,
        chunk_size=cache_settings.chunk_size,
    )
    cache = ModelCache(store, source, max_bytes=cache_settings.max_bytes)
    loader = ModelLoader(cache, memory_budget_bytes=settings.inference.memory_budget_mb * 1024 * 1024)

    catalog = ModelCatalog([])
    if cache_settings.catalog_path is not None:
        try:
            catalog = load_catalog(cache_settings.catalog_path)
        except (FileNotFoundError, ValueError) as exc:
            logger.error("catalog.load.failed", path=str(cache_settings.catalog_path), error=str(exc))

    registry = ToolRegistry()
    register_builtin_tools(registry)
    prompt = PromptBuilder(
        end_keyword=settings.inference.conversation_end_keyword,
        tools=registry.describe(),
    )
    coordinator = WorkerCoordinator(
        loader=loader,
        source_factory=source_factory or microphone_factory(settings),
        tool_executor=RegistryToolExecutor(registry),
        settings=settings,
        prompt_builder=prompt,
        event_sink=bridge.sink,
    )
    coordinator.start()
    bridge.bind(coordinator)

    monitor = ResourceMonitor(
        settings.telemetry.resource_sample_seconds,
        model_bytes=loader.resident_bytes,
        sink=bridge,
    )
    await monitor.start()
    logger.info("runtime.ready", cache_dir=str(cache_settings.directory), catalog_models=len(catalog))
    return Runtime(coordinator=coordinator, cache=cache, catalog=catalog, monitor=monitor)


@app.on_event("startup")
async def startup_event() -> None:
    app.state.runtime = await bootstrap_runtime(settings)


@app.on_event("shutdown")
async def shutdown_event() -> None:
    runtime = getattr(app.state, "runtime", None)
    if runtime:
        await runtime.shutdown()


def _runtime() -> Runtime:
    runtime = getattr(app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Runtime not ready")
    return runtime


@app.get("/health")
async def health() -> dict[str, Any]:
    runtime = getattr(app.state, "runtime", None)
    return {"status": "ok", "worker": bool(runtime and runtime.coordinator.running)}


@app.get("/models")
async def list_models() -> dict[str, Any]:
    runtime = _runtime()
    cached = [
        {
            "model_id": entry.descriptor.model_id,
            "version": entry.descriptor.version,
            "role": entry.descriptor.role.value,
            "status": entry.status.value,
            "stored_bytes": entry.stored_bytes,
        }
        for entry in runtime.cache.entries()
    ]
    catalog = [descriptor.model_dump(mode="json") for descriptor in runtime.catalog]
    return {"cached": cached, "catalog": catalog, "resident": runtime.coordinator.loader.resident_bytes()}


@app.post("/models/{model_id}/load")
async def load_catalog_model(model_id: str, version: str | None = None) -> dict[str, str]:
    runtime = _runtime()
    try:
        descriptor = runtime.catalog.get(model_id, version)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    runtime.coordinator.submit(LoadModel(descriptor=descriptor))
    return {"status": "queued", "model_id": descriptor.model_id, "version": descriptor.version}
