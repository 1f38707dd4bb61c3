from __future__ import annotations

import asyncio
import queue
import threading
from collections.abc import Callable, Coroutine
from typing import Any

from voxcore.audio.capture import AudioSource
from voxcore.audio.features import FeatureExtractor
from voxcore.audio.pipeline import AudioPipeline
from voxcore.audio.vad import SpeechSegment, VadEvent, VadTransition, VoiceActivityDetector
from voxcore.config import AppSettings, load_settings
from voxcore.errors import ToolCallError, VoxcoreError
from voxcore.llm.engine import GenerationEngine, Token
from voxcore.llm.prompt import PromptBuilder
from voxcore.llm.sampling import SamplingConfig
from voxcore.llm.session import InferenceSession
from voxcore.models.descriptors import DownloadProgress, ModelCacheEntry, ModelDescriptor, ModelRole
from voxcore.models.loader import ModelLoader
from voxcore.orchestrator.commands import (
    CancelGeneration,
    Command,
    Generate,
    LoadModel,
    StartListening,
    StopListening,
    UnloadModel,
    parse_command,
)
from voxcore.orchestrator.events import (
    ErrorOccurred,
    Event,
    GenerationComplete,
    ListeningStarted,
    ListeningStopped,
    ModelLoaded,
    ModelLoadFailed,
    ModelLoadProgress,
    ModelUnloaded,
    TokenDelta,
    ToolCallDispatched,
    TranscriptFinal,
    TranscriptPartial,
    VadStateChanged,
)
from voxcore.stt.engine import SpeechToTextEngine
from voxcore.telemetry.logging import get_logger
from voxcore.tools.executor import ToolCallRequest, ToolCallResult, ToolExecutor

EventSink = Callable[[Event], None]

_SHUTDOWN = object()


class WorkerCoordinator:
    """Runs capture, VAD, transcription, generation and model work off the caller's thread.

    The caller only ever calls ``submit()`` and reads events; a dedicated
    thread owns an asyncio loop, the model handles and the ring buffer
    consumer. Commands are dispatched strictly in arrival order and long
    operations run as tasks on that loop.
    """

    def __init__(
        self,
        *,
        loader: ModelLoader,
        source_factory: Callable[[], AudioSource],
        tool_executor: ToolExecutor | None = None,
        settings: AppSettings | None = None,
        stt_engine: SpeechToTextEngine | None = None,
        generation_engine: GenerationEngine | None = None,
        prompt_builder: PromptBuilder | None = None,
        event_sink: EventSink | None = None,
        poll_timeout: float = 0.05,
    ) -> None:
        self._settings = settings or load_settings()
        inference = self._settings.inference
        self._loader = loader
        self._source_factory = source_factory
        self._tools = tool_executor
        self._stt = stt_engine or SpeechToTextEngine(max_tokens=inference.stt_max_tokens)
        self._generation = generation_engine or GenerationEngine(end_keyword=inference.conversation_end_keyword)
        self._prompt = prompt_builder or PromptBuilder(end_keyword=inference.conversation_end_keyword)
        self._sink = event_sink
        self._poll_timeout = poll_timeout
        self._events: queue.Queue[Event] = queue.Queue()
        self._logger = get_logger(__name__)

        self._thread: threading.Thread | None = None
        self._ready = threading.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._commands: asyncio.Queue[Any] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._role_locks: dict[ModelRole, asyncio.Lock] = {}

        self._listen_task: asyncio.Task[Any] | None = None
        self._pipeline: AudioPipeline | None = None
        self._stop_listening = threading.Event()
        self._generation_task: asyncio.Task[Any] | None = None
        self._session: InferenceSession | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def loader(self) -> ModelLoader:
        return self._loader

    def start(self, timeout: float = 5.0) -> None:
        if self.running:
            return
        self._ready.clear()
        self._thread = threading.Thread(target=self._thread_main, name="voxcore-worker", daemon=True)
        self._thread.start()
        if not self._ready.wait(timeout):
            raise RuntimeError("worker loop failed to start")
        self._logger.info("worker.started")

    def stop(self, timeout: float = 10.0) -> None:
        if not self.running or self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._enqueue, _SHUTDOWN)
        assert self._thread is not None
        self._thread.join(timeout)
        self._thread = None
        self._logger.info("worker.stopped")

    def submit(self, command: Command | dict[str, Any] | str) -> None:
        """Queue a command; never blocks on background work."""
        if not isinstance(command, (StartListening, StopListening, Generate, CancelGeneration, LoadModel, UnloadModel)):
            command = parse_command(command)
        if not self.running or self._loop is None:
            raise RuntimeError("coordinator is not running")
        self._loop.call_soon_threadsafe(self._enqueue, command)

    def next_event(self, timeout: float | None = None) -> Event | None:
        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain_events(self) -> list[Event]:
        events: list[Event] = []
        while True:
            try:
                events.append(self._events.get_nowait())
            except queue.Empty:
                return events

    def _enqueue(self, item: Any) -> None:
        assert self._commands is not None
        self._commands.put_nowait(item)

    def _emit(self, event: Event) -> None:
        self._events.put(event)
        if self._sink is not None:
            try:
                self._sink(event)
            except Exception as exc:  # pragma: no cover
                self._logger.error("worker.sink_failed", error=str(exc), event=event.type)

    def _emit_error(self, exc: BaseException, command: str | None = None) -> None:
        if isinstance(exc, VoxcoreError):
            kind, recoverable = exc.kind, exc.recoverable
        else:
            kind, recoverable = "internal", False
        self._logger.warning("worker.error", kind=kind, error=str(exc), command=command)
        self._emit(ErrorOccurred(kind=kind, message=str(exc), recoverable=recoverable, command=command))

    def _thread_main(self) -> None:
        asyncio.run(self._main())

    async def _main(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._commands = asyncio.Queue()
        self._role_locks = {role: asyncio.Lock() for role in ModelRole}
        self._ready.set()
        while True:
            command = await self._commands.get()
            if command is _SHUTDOWN:
                break
            try:
                self._dispatch(command)
            except Exception as exc:
                self._emit_error(exc, getattr(command, "type", None))
        await self._teardown()

    def _dispatch(self, command: Command) -> None:
        self._logger.debug("worker.command", command=command.type)
        if isinstance(command, StartListening):
            if self._listen_task is not None and not self._listen_task.done():
                self._emit(
                    ErrorOccurred(kind="busy", message="already listening", recoverable=True, command=command.type)
                )
                return
            self._stop_listening.clear()
            self._listen_task = self._spawn(self._listen(), "listen")
        elif isinstance(command, StopListening):
            self._stop_listening.set()
            if self._pipeline is not None:
                self._pipeline.stop()
        elif isinstance(command, Generate):
            if self._generation_task is not None and not self._generation_task.done():
                self._emit(
                    ErrorOccurred(
                        kind="busy", message="a generation is already running", recoverable=True, command=command.type
                    )
                )
                return
            session = InferenceSession(self._sampling_for(command))
            self._session = session
            self._generation_task = self._spawn(self._generate(command, session), "generate")
        elif isinstance(command, CancelGeneration):
            if self._session is not None:
                self._session.cancel()
        elif isinstance(command, LoadModel):
            self._spawn(self._load_model(command.descriptor), "load_model")
        elif isinstance(command, UnloadModel):
            self._spawn(self._unload_model(command.role), "unload_model")

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=f"worker-{name}")
        self._tasks.add(task)
        task.add_done_callback(lambda t, label=name: self._task_done(t, label))
        return task

    def _task_done(self, task: asyncio.Task[Any], name: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error("worker.task_failed", task=name, error=str(exc))
            self._emit_error(exc, name)

    async def _teardown(self) -> None:
        self._stop_listening.set()
        if self._pipeline is not None:
            self._pipeline.stop()
        if self._session is not None:
            self._session.cancel()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        for role in ModelRole:
            if self._loader.unload(role) is not None:
                self._emit(ModelUnloaded(role=role.value, model_id=None))

    async def _load_model(self, descriptor: ModelDescriptor) -> None:
        role = descriptor.role

        def on_progress(_entry: ModelCacheEntry, progress: DownloadProgress) -> None:
            self._emit(
                ModelLoadProgress(
                    model_id=descriptor.model_id,
                    version=descriptor.version,
                    role=role.value,
                    received_bytes=progress.received_bytes,
                    total_bytes=progress.total_bytes,
                    percentage=round(progress.percentage, 2),
                )
            )

        async with self._role_locks[role]:
            try:
                entry = await self._loader.cache.ensure_cached(descriptor, on_progress)
                current = self._loader.current(role)
                if current is not None and current.descriptor == descriptor:
                    handle = current
                else:
                    if current is not None:
                        self._loader.unload(role)
                        self._emit(ModelUnloaded(role=role.value, model_id=current.descriptor.model_id))
                    handle = self._loader.load(entry)
            except VoxcoreError as exc:
                self._logger.warning("worker.model_load_failed", model_id=descriptor.model_id, error=str(exc))
                self._emit(
                    ModelLoadFailed(
                        model_id=descriptor.model_id,
                        version=descriptor.version,
                        role=role.value,
                        kind=exc.kind,
                        message=str(exc),
                        recoverable=exc.recoverable,
                    )
                )
                return
        self._emit(
            ModelLoaded(
                model_id=descriptor.model_id,
                version=descriptor.version,
                role=role.value,
                resident_bytes=handle.nbytes,
            )
        )

    async def _unload_model(self, role: ModelRole) -> None:
        async with self._role_locks[role]:
            handle = self._loader.unload(role)
        self._emit(ModelUnloaded(role=role.value, model_id=handle.descriptor.model_id if handle else None))

    async def _listen(self) -> None:
        loop = asyncio.get_running_loop()
        audio = self._settings.audio
        pipeline = AudioPipeline(
            self._source_factory(),
            target_rate=audio.sample_rate,
            frame_ms=audio.frame_ms,
            ring_seconds=audio.ring_seconds,
            poll_timeout=self._poll_timeout,
        )
        try:
            pipeline.start()
        except VoxcoreError as exc:
            self._emit_error(exc, "start_listening")
            return
        self._pipeline = pipeline
        if self._stop_listening.is_set():
            pipeline.stop()
        self._emit(ListeningStarted(sample_rate=pipeline.target_rate))

        ring = pipeline.ring
        assembler = pipeline.assembler()
        vad = VoiceActivityDetector(FeatureExtractor(sample_rate=pipeline.target_rate), self._settings.vad)
        reason = "source_ended"
        try:
            while True:
                block = await loop.run_in_executor(None, ring.pop, self._poll_timeout)
                if block is None:
                    if ring.exhausted:
                        break
                    continue
                for frame in assembler.push(block):
                    await self._on_vad_events(vad.process(frame))
            for frame in assembler.flush():
                await self._on_vad_events(vad.process(frame))
            await self._on_vad_events(vad.flush())
            if self._stop_listening.is_set():
                reason = "stopped"
        except VoxcoreError as exc:
            reason = "error"
            self._emit_error(exc, "start_listening")
        finally:
            pipeline.stop()
            self._pipeline = None
            self._emit(ListeningStopped(reason=reason, dropped_samples=pipeline.dropped_samples))

    async def _on_vad_events(self, events: list[VadEvent]) -> None:
        for event in events:
            if isinstance(event, VadTransition):
                self._emit(VadStateChanged(previous=event.previous.value, current=event.current.value, ts_ms=event.ts_ms))
            elif isinstance(event, SpeechSegment):
                await self._transcribe(event)

    async def _transcribe(self, segment: SpeechSegment) -> None:
        try:
            handle = self._loader.resident(ModelRole.STT)
            for delta in self._stt.transcribe(segment.features, handle, should_stop=self._stop_listening.is_set):
                if delta.is_final:
                    self._emit(
                        TranscriptFinal(
                            segment_id=segment.segment_id,
                            text=delta.text,
                            start_ms=segment.start_ms,
                            end_ms=segment.end_ms,
                        )
                    )
                else:
                    self._emit(
                        TranscriptPartial(segment_id=segment.segment_id, text=delta.text, transcript=delta.transcript)
                    )
                await asyncio.sleep(0)
        except VoxcoreError as exc:
            self._emit_error(exc, "transcribe")

    def _sampling_for(self, command: Generate) -> SamplingConfig:
        if command.sampling is not None:
            return command.sampling
        inference = self._settings.inference
        return SamplingConfig(
            temperature=inference.temperature,
            top_k=inference.top_k,
            top_p=inference.top_p,
            seed=inference.seed,
            max_new_tokens=inference.max_new_tokens,
        )

    async def _generate(self, command: Generate, session: InferenceSession) -> None:
        stream = None
        try:
            handle = self._loader.resident(ModelRole.LLM)
            context = self._prompt.encode(command.messages, handle.tokenizer)
            stream = self._generation.generate(context, handle, session)
            for item in stream:
                if isinstance(item, Token):
                    self._emit(
                        TokenDelta(session_id=session.session_id, token_id=item.token_id, text=item.text, index=item.index)
                    )
                else:
                    session.submit_tool_result(await self._run_tool(session, item))
                await asyncio.sleep(0)
        except VoxcoreError as exc:
            self._emit_error(exc, command.type)
            return
        finally:
            if stream is not None:
                stream.close()
            if self._session is session:
                self._session = None
        self._emit(
            GenerationComplete(
                session_id=session.session_id,
                text=session.output,
                state=session.state.value,
                stop_reason=session.stop_reason,
                tokens=session.tokens_emitted,
                conversation_ended=session.conversation_ended,
            )
        )

    async def _run_tool(self, session: InferenceSession, request: ToolCallRequest) -> ToolCallResult:
        self._emit(
            ToolCallDispatched(
                session_id=session.session_id, call_id=request.id, name=request.name, arguments=request.arguments
            )
        )
        try:
            if self._tools is None:
                raise ToolCallError("no tool executor is configured")
            result = await self._tools.execute(request)
        except ToolCallError as exc:
            self._emit_error(exc, "tool_call")
            return ToolCallResult.failure(request.id, str(exc))
        except Exception as exc:
            self._emit_error(ToolCallError(f"tool '{request.name}' failed: {exc}"), "tool_call")
            return ToolCallResult.failure(request.id, str(exc))
        if result.call_id != request.id:
            result = result.model_copy(update={"call_id": request.id})
        return result


__all__ = ["WorkerCoordinator", "EventSink"]
