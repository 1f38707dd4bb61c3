from __future__ import annotations

import json
from collections.abc import Iterator
from typing import Any, Literal

from pydantic import BaseModel, Field

from voxcore.models.tokenizer import Tokenizer

DEFAULT_END_KEYWORD = "CONVERSATION_ENDED"

SYSTEM_PROMPT = """You are a calm, precise voice assistant running entirely on this device.

# Communication Style

Provide precise, proactive solutions
Do not use emojis or markdown symbols such as asterisks
End: Offer additional assistance"""

INSTRUCTIONS = (
    "never use ellipsis (...)",
    "Keep your answers short but precise",
    "Only use tools if you absolutely have to.",
)


def end_instructions(keyword: str) -> str:
    return (
        "# End conversation\n\n"
        'When the user indicates they want to end the conversation (through phrases like "goodbye," "bye," '
        '"talk to you later," "that\'s all," "thanks, I\'m done," or similar farewell expressions), respond with '
        f"a polite farewell message and then include the exact keyword {keyword} on a new line at the very end "
        "of your response.\n"
        "But only use that if you are 100% sure the user explicitly told you to end the conversation!\n\n"
        "Example format:\n"
        "Thank you for the conversation! Have a great day.\n"
        f"{keyword}"
    )


def tool_instructions(tools: list[dict[str, Any]]) -> str:
    listing = "\n".join(json.dumps(tool, ensure_ascii=False, sort_keys=True) for tool in tools)
    return (
        "# Tools\n\n"
        "To call a tool, answer with <tool_call>{\"name\": ..., \"arguments\": {...}}</tool_call> and wait. "
        "The result arrives inside <tool_response></tool_response>.\n\n"
        f"Available tools:\n{listing}"
    )


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant", "tool"]
    content: str = Field(..., max_length=32_000)


class PromptBuilder:
    """Renders a chat transcript into the token layout the language models expect.

    ``<|system|>``, ``<|user|>`` and ``<|assistant|>`` open a turn and ``<|end|>``
    closes it; tool results are wrapped in ``<tool_response>`` spans inside
    the assistant turn that requested them.
    """

    def __init__(
        self,
        system_prompt: str = SYSTEM_PROMPT,
        instructions: tuple[str, ...] = INSTRUCTIONS,
        end_keyword: str | None = DEFAULT_END_KEYWORD,
        tools: list[dict[str, Any]] | None = None,
    ) -> None:
        self.end_keyword = end_keyword
        parts = [system_prompt]
        if instructions:
            parts.append("\n".join(instructions))
        if end_keyword:
            parts.append(end_instructions(end_keyword))
        if tools:
            parts.append(tool_instructions(tools))
        self.system_prompt = "\n\n".join(parts)

    def render(self, messages: list[ChatMessage]) -> str:
        return "".join(text for text, _ in self._segments(messages))

    def encode(self, messages: list[ChatMessage], tokenizer: Tokenizer) -> list[int]:
        """Tokenize the transcript; markers in message bodies stay plain text."""
        ids: list[int] = []
        for text, markup in self._segments(messages):
            ids.extend(tokenizer.encode(text, allow_special=markup))
        return ids

    def _segments(self, messages: list[ChatMessage]) -> Iterator[tuple[str, bool]]:
        yield f"<|system|>\n{self.system_prompt}<|end|>\n", True
        for message in messages:
            if message.role == "tool":
                opening, closing = "<tool_response>", "</tool_response>\n"
            else:
                opening, closing = f"<|{message.role}|>\n", "<|end|>\n"
            yield opening, True
            yield message.content, False
            yield closing, True
        yield "<|assistant|>\n", True


__all__ = [
    "ChatMessage",
    "PromptBuilder",
    "SYSTEM_PROMPT",
    "INSTRUCTIONS",
    "DEFAULT_END_KEYWORD",
    "end_instructions",
]
