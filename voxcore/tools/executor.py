from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

import psutil
from pydantic import BaseModel, Field, ValidationError

from voxcore.errors import ToolCallError
from voxcore.telemetry.logging import get_logger


class ToolCallRequest(BaseModel):
    id: str
    name: str = Field(..., min_length=1, max_length=200)
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolCallResult(BaseModel):
    call_id: str
    success: bool
    result: Any = None
    error: str | None = None

    @classmethod
    def failure(cls, call_id: str, error: str) -> "ToolCallResult":
        return cls(call_id=call_id, success=False, error=error)


class ToolExecutor(Protocol):
    async def execute(self, request: ToolCallRequest) -> ToolCallResult:
        """Run one tool call; raises ToolCallError on failure."""
        ...


@dataclass(slots=True)
class ToolSpec:
    name: str
    request_model: type[BaseModel]
    handler: Callable[[BaseModel], Awaitable[Any] | Any]
    description: str = ""
    timeout_s: float = 8.0

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.request_model.model_json_schema(),
        }


class ToolRegistry:
    def __init__(self) -> None:
        self._specs: dict[str, ToolSpec] = {}
        self._logger = get_logger(__name__)

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._specs:
            raise ValueError(f"Tool '{spec.name}' already registered")
        self._specs[spec.name] = spec
        self._logger.info("tool.registry.registered", tool=spec.name)

    def available(self) -> list[str]:
        return sorted(self._specs.keys())

    def describe(self) -> list[dict[str, Any]]:
        return [self._specs[name].describe() for name in self.available()]

    async def run(self, name: str, payload: dict[str, Any]) -> Any:
        spec = self._specs.get(name)
        if spec is None:
            raise ToolCallError(f"Unknown tool '{name}'")
        try:
            args = spec.request_model.model_validate(payload)
        except ValidationError as exc:
            raise ToolCallError(f"Invalid arguments for tool '{name}': {exc}") from exc

        async def _invoke() -> Any:
            result = spec.handler(args)
            if asyncio.iscoroutine(result):
                result = await result
            return result

        try:
            return await asyncio.wait_for(_invoke(), timeout=spec.timeout_s)
        except asyncio.TimeoutError as exc:
            raise ToolCallError(f"Tool '{name}' timed out after {spec.timeout_s}s") from exc


class RegistryToolExecutor:
    """In-process ``ToolExecutor`` backed by a ``ToolRegistry``."""

    def __init__(self, registry: ToolRegistry) -> None:
        self._registry = registry
        self._logger = get_logger(__name__)

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    async def execute(self, request: ToolCallRequest) -> ToolCallResult:
        self._logger.info("tool.invoke", tool=request.name, call_id=request.id, payload=request.arguments)
        started = time.perf_counter()
        try:
            result = await self._registry.run(request.name, request.arguments)
        except ToolCallError:
            raise
        except Exception as exc:
            raise ToolCallError(f"Tool '{request.name}' failed: {exc}") from exc
        self._logger.info(
            "tool.completed",
            tool=request.name,
            call_id=request.id,
            duration_ms=round((time.perf_counter() - started) * 1000.0, 2),
        )
        return ToolCallResult(call_id=request.id, success=True, result=result)


class EmptyArgs(BaseModel):
    """Placeholder for tools that do not accept input."""


class ClockArgs(BaseModel):
    utc: bool = False


def _clock_now(args: ClockArgs) -> dict[str, Any]:
    now = datetime.now(timezone.utc) if args.utc else datetime.now().astimezone()
    return {"iso": now.isoformat(timespec="seconds"), "weekday": now.strftime("%A")}


def _system_resources(_args: EmptyArgs) -> dict[str, Any]:
    process = psutil.Process()
    return {
        "cpu_percent": psutil.cpu_percent(interval=None),
        "mem_percent": round(psutil.virtual_memory().percent, 1),
        "rss_mb": round(process.memory_info().rss / (1024 * 1024), 1),
    }


def register_builtin_tools(registry: ToolRegistry) -> None:
    registry.register(
        ToolSpec(
            name="clock.now",
            request_model=ClockArgs,
            handler=_clock_now,
            description="Current local (or UTC) date and time.",
        )
    )
    registry.register(
        ToolSpec(
            name="system.resources",
            request_model=EmptyArgs,
            handler=_system_resources,
            description="CPU and memory usage of the assistant process.",
            timeout_s=2.0,
        )
    )


__all__ = [
    "ToolCallRequest",
    "ToolCallResult",
    "ToolExecutor",
    "ToolSpec",
    "ToolRegistry",
    "RegistryToolExecutor",
    "EmptyArgs",
    "ClockArgs",
    "register_builtin_tools",
]
