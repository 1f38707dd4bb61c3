from __future__ import annotations

import threading
import uuid
from enum import Enum

from voxcore.errors import InferenceError
from voxcore.llm.sampling import SamplingConfig
from voxcore.tools.executor import ToolCallRequest, ToolCallResult


class SessionState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    AWAITING_TOOL = "awaiting_tool"
    RESUMED = "resumed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = frozenset({SessionState.COMPLETED, SessionState.CANCELLED, SessionState.FAILED})

_ALLOWED: dict[SessionState, frozenset[SessionState]] = {
    SessionState.CREATED: frozenset({SessionState.RUNNING, SessionState.CANCELLED, SessionState.FAILED}),
    SessionState.RUNNING: frozenset({SessionState.AWAITING_TOOL} | TERMINAL_STATES),
    SessionState.AWAITING_TOOL: frozenset({SessionState.RESUMED, SessionState.CANCELLED, SessionState.FAILED}),
    SessionState.RESUMED: frozenset({SessionState.AWAITING_TOOL} | TERMINAL_STATES),
}


class InferenceSession:
    """State of one generation turn; single use.

    ``cancel()`` may be called from any thread; the engine honours it before
    its next token step.
    """

    def __init__(self, sampling: SamplingConfig | None = None, session_id: str | None = None) -> None:
        self.session_id = session_id or uuid.uuid4().hex
        self.sampling = sampling or SamplingConfig()
        self.history: list[int] = []
        self.output = ""
        self.tokens_emitted = 0
        self.stop_reason: str | None = None
        self.error: str | None = None
        self.conversation_ended = False
        self.tool_log: list[tuple[ToolCallRequest, ToolCallResult]] = []
        self.pending_tool: ToolCallRequest | None = None
        self._state = SessionState.CREATED
        self._tool_result: ToolCallResult | None = None
        self._cancel = threading.Event()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        self._cancel.set()

    def submit_tool_result(self, result: ToolCallResult) -> None:
        if self._state is not SessionState.AWAITING_TOOL or self.pending_tool is None:
            raise InferenceError(f"session {self.session_id} is not waiting for a tool result")
        if result.call_id != self.pending_tool.id:
            raise InferenceError(f"result for call {result.call_id} does not match pending call {self.pending_tool.id}")
        self._tool_result = result

    def transition(self, new_state: SessionState) -> None:
        if new_state not in _ALLOWED.get(self._state, frozenset()):
            raise InferenceError(f"session cannot move from {self._state.value} to {new_state.value}")
        self._state = new_state

    def await_tool(self, request: ToolCallRequest) -> None:
        self.transition(SessionState.AWAITING_TOOL)
        self.pending_tool = request
        self._tool_result = None

    def resume(self) -> ToolCallResult:
        if self._tool_result is None or self.pending_tool is None:
            raise InferenceError(f"session {self.session_id} resumed without a tool result")
        result = self._tool_result
        self.tool_log.append((self.pending_tool, result))
        self.pending_tool = None
        self._tool_result = None
        self.transition(SessionState.RESUMED)
        return result

    def finish(self, state: SessionState, reason: str) -> None:
        self.transition(state)
        self.stop_reason = reason

    def fail(self, error: str) -> None:
        if not self.is_terminal:
            self._state = SessionState.FAILED
        self.stop_reason = "error"
        self.error = error


__all__ = ["InferenceSession", "SessionState", "TERMINAL_STATES"]
