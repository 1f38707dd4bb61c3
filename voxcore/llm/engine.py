from __future__ import annotations

import json
import threading
from collections.abc import Generator, Iterator, Sequence
from dataclasses import dataclass

from pydantic import ValidationError

from voxcore.errors import BusyError, InferenceError
from voxcore.llm.prompt import DEFAULT_END_KEYWORD
from voxcore.llm.sampling import Sampler
from voxcore.llm.session import InferenceSession, SessionState
from voxcore.models.descriptors import ModelRole
from voxcore.models.loader import ModelHandle
from voxcore.models.tokenizer import Tokenizer
from voxcore.telemetry.logging import get_logger
from voxcore.telemetry.tracing import get_tracer
from voxcore.tools.executor import ToolCallRequest, ToolCallResult

STOP_TOKENS = ("<|endoftext|>", "<|end|>")
TOOL_CALL_OPEN = "<tool_call>"
TOOL_CALL_CLOSE = "</tool_call>"
TOOL_RESPONSE_OPEN = "<tool_response>"
TOOL_RESPONSE_CLOSE = "</tool_response>"

_tracer = get_tracer(__name__)


@dataclass(slots=True)
class Token:
    token_id: int
    text: str
    index: int


GenerationItem = Token | ToolCallRequest


class GenerationEngine:
    """Autoregressive decoding with sampling, stop criteria and tool calls.

    ``generate`` returns a pull-based stream. When the model closes a
    ``<tool_call>`` span the stream yields the parsed ``ToolCallRequest`` and
    the session moves to awaiting_tool; the caller submits the result on the
    session and pulls again to resume. Callers must exhaust or ``close()``
    the stream to free the engine for the next session.
    """

    def __init__(self, end_keyword: str | None = DEFAULT_END_KEYWORD) -> None:
        self.end_keyword = end_keyword
        self._active: InferenceSession | None = None
        self._lock = threading.Lock()
        self._logger = get_logger(__name__)

    @property
    def active_session(self) -> InferenceSession | None:
        return self._active

    def generate(
        self,
        context_ids: Sequence[int],
        handle: ModelHandle,
        session: InferenceSession,
    ) -> Iterator[GenerationItem]:
        ids = list(context_ids)
        with self._lock:
            if session.state is not SessionState.CREATED:
                raise InferenceError(f"session {session.session_id} was already used; create a new session")
            if self._active is not None and not self._active.is_terminal:
                raise BusyError("a generation is already running on this engine")
            if handle.role is not ModelRole.LLM:
                raise InferenceError(f"{handle.descriptor.model_id} is not a language model")
            network = handle.network
            if not ids:
                raise InferenceError("generation needs a non-empty context")
            if len(ids) >= network.n_ctx:
                raise InferenceError(f"context of {len(ids)} tokens leaves no room in a {network.n_ctx} token window")
            session.transition(SessionState.RUNNING)
            self._active = session
        return self._steps(ids, handle, session)

    def _steps(
        self, ids: list[int], handle: ModelHandle, session: InferenceSession
    ) -> Generator[GenerationItem, None, None]:
        tokenizer = handle.tokenizer
        sampler = Sampler(session.sampling)
        stop_ids = {tokenizer.special_tokens[name] for name in STOP_TOKENS if name in tokenizer.special_tokens}
        call_open = tokenizer.special_tokens.get(TOOL_CALL_OPEN)
        call_close = tokenizer.special_tokens.get(TOOL_CALL_CLOSE)
        decoder = tokenizer.stream_decoder()
        state = handle.network.new_state()
        session.history = list(ids)
        pending = ids
        call_body: list[int] | None = None
        steps = 0
        span = _tracer.start_span("llm.generate")
        span.set_attribute("llm.context_tokens", len(ids))
        self._logger.info("llm.generate.started", session_id=session.session_id, context_tokens=len(ids))
        try:
            while True:
                if session.cancel_requested:
                    session.finish(SessionState.CANCELLED, "cancelled")
                    break
                network = handle.network
                if state.position + len(pending) > network.n_ctx:
                    session.finish(SessionState.COMPLETED, "context_window")
                    break
                logits = network.forward(state, pending)
                if steps >= session.sampling.max_new_tokens:
                    session.finish(SessionState.COMPLETED, "max_tokens")
                    break
                token = sampler.sample(logits)
                steps += 1
                session.history.append(token)
                pending = [token]

                if token in stop_ids:
                    session.finish(SessionState.COMPLETED, "stop_token")
                    break
                if call_body is not None:
                    if token != call_close:
                        call_body.append(token)
                        continue
                    result = yield from self._tool_call(session, tokenizer, call_body)
                    call_body = None
                    if result is None:
                        session.finish(SessionState.CANCELLED, "cancelled")
                        break
                    injected = self._tool_response_ids(tokenizer, result)
                    session.history.extend(injected)
                    pending = [token, *injected]
                    continue
                if call_open is not None and token == call_open:
                    call_body = []
                    continue

                text = decoder.feed(token)
                session.output += text
                session.tokens_emitted += 1
                yield Token(token_id=token, text=text, index=session.tokens_emitted - 1)

                if any(stop and stop in session.output for stop in session.sampling.stop):
                    session.finish(SessionState.COMPLETED, "stop_string")
                    break
                if self.end_keyword and self.end_keyword in session.output:
                    session.conversation_ended = True
                    session.finish(SessionState.COMPLETED, "end_keyword")
                    break
            session.output += decoder.flush()
        except GeneratorExit:
            if not session.is_terminal:
                session.finish(SessionState.CANCELLED, "closed")
            raise
        except Exception as exc:
            session.fail(str(exc))
            span.record_exception(exc)
            self._logger.error("llm.generate.failed", session_id=session.session_id, error=str(exc))
            raise
        finally:
            span.set_attribute("llm.generated_tokens", steps)
            span.end()
            with self._lock:
                if self._active is session:
                    self._active = None
        self._logger.info(
            "llm.generate.completed",
            session_id=session.session_id,
            state=session.state.value,
            stop_reason=session.stop_reason,
            tokens=session.tokens_emitted,
        )

    def _tool_call(
        self, session: InferenceSession, tokenizer: Tokenizer, body: list[int]
    ) -> Generator[ToolCallRequest, None, ToolCallResult | None]:
        raw = tokenizer.decode(body).strip()
        call_id = f"{session.session_id[:8]}-call-{len(session.tool_log) + 1}"
        try:
            payload = json.loads(raw)
            if not isinstance(payload, dict):
                raise ValueError("tool call must be a JSON object")
            request = ToolCallRequest(
                id=str(payload.get("id") or call_id),
                name=payload.get("name") or "",
                arguments=payload.get("arguments") or {},
            )
        except (ValueError, ValidationError) as exc:
            self._logger.warning("llm.tool_call.malformed", session_id=session.session_id, raw=raw[:200])
            result = ToolCallResult.failure(call_id, f"malformed tool call: {exc}")
            session.tool_log.append((ToolCallRequest(id=call_id, name="<malformed>", arguments={"raw": raw}), result))
            return result

        session.await_tool(request)
        self._logger.info("llm.tool_call.awaiting", session_id=session.session_id, tool=request.name)
        yield request
        if session.cancel_requested:
            return None
        return session.resume()

    def _tool_response_ids(self, tokenizer: Tokenizer, result: ToolCallResult) -> list[int]:
        body = json.dumps(result.model_dump(), ensure_ascii=False, default=str)
        return [
            *_marker_ids(tokenizer, TOOL_RESPONSE_OPEN),
            *tokenizer.encode(body),
            *_marker_ids(tokenizer, TOOL_RESPONSE_CLOSE),
        ]


def _marker_ids(tokenizer: Tokenizer, marker: str) -> list[int]:
    if marker in tokenizer.special_tokens:
        return [tokenizer.special_tokens[marker]]
    return tokenizer.encode(marker)


__all__ = ["GenerationEngine", "Token", "GenerationItem", "STOP_TOKENS"]
