from __future__ import annotations

import asyncio
from typing import Any, Protocol

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from voxcore.orchestrator.commands import Command, parse_command
from voxcore.orchestrator.events import Event
from voxcore.telemetry.logging import get_logger


class CommandTarget(Protocol):
    def submit(self, command: Command) -> None: ...


class CommandBridge:
    """Websocket adapter: JSON commands in, coordinator events out.

    ``sink`` is handed to the coordinator as its event sink and may be called
    from the worker thread; delivery hops onto the server loop.
    """

    def __init__(self, target: CommandTarget | None = None, path: str = "/ws/session") -> None:
        self._target = target
        self._clients: set[WebSocket] = set()
        self._router = APIRouter()
        self._router.add_api_websocket_route(path, self._websocket_handler)
        self._lock = asyncio.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._logger = get_logger(__name__)

    @property
    def router(self) -> APIRouter:
        return self._router

    def bind(self, target: CommandTarget) -> None:
        self._target = target

    async def _websocket_handler(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._loop = asyncio.get_running_loop()
        async with self._lock:
            self._clients.add(websocket)
        self._logger.info("ui.client.connected", count=len(self._clients))
        try:
            while True:
                raw = await websocket.receive_text()
                await websocket.send_json(self._handle(raw))
        except WebSocketDisconnect:
            async with self._lock:
                self._clients.discard(websocket)
            self._logger.info("ui.client.disconnected", count=len(self._clients))

    def _handle(self, raw: str) -> dict[str, Any]:
        try:
            command = parse_command(raw)
        except ValidationError as exc:
            self._logger.warning("ui.command.invalid", error=str(exc))
            return {"type": "error", "kind": "invalid_command", "message": str(exc), "recoverable": True}
        if self._target is None:
            return {"type": "error", "kind": "internal", "message": "runtime not ready", "recoverable": True}
        try:
            self._target.submit(command)
        except RuntimeError as exc:
            return {"type": "error", "kind": "internal", "message": str(exc), "recoverable": True}
        return {"type": "ack", "command": command.type}

    async def publish(self, payload: dict[str, Any]) -> None:
        async with self._lock:
            send_tasks = [client.send_json(payload) for client in self._clients]
        if send_tasks:
            await asyncio.gather(*send_tasks, return_exceptions=True)

    async def publish_metrics(self, payload: dict[str, Any]) -> None:
        await self.publish({"type": "resource", **payload})

    def sink(self, event: Event) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        asyncio.run_coroutine_threadsafe(self.publish(event.to_payload()), loop)


__all__ = ["CommandBridge", "CommandTarget"]
