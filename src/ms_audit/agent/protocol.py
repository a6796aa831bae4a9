"""Decoder for the agent's line-delimited JSON event stream.

The stream schema drifts between agent releases (the final text has been
published as ``result``, ``text``, ``output`` and ``content``), so every field
with known aliases is read through an explicit fallback chain here and nowhere
else.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

RESULT_TEXT_FIELDS: tuple[str, ...] = ("result", "text", "output", "content")
RESULT_COST_FIELDS: tuple[str, ...] = ("total_cost_usd", "cost_usd")
ERROR_MESSAGE_FIELDS: tuple[str, ...] = ("error", "message")


@dataclass(frozen=True, slots=True)
class AssistantMessage:
    """One assistant turn; only its text blocks are kept."""

    text_blocks: tuple[str, ...]

    @property
    def text(self) -> str:
        return "".join(self.text_blocks)


@dataclass(frozen=True, slots=True)
class ResultMessage:
    """Final result event closing the agent session."""

    text: str
    cost_usd: float | None = None
    subtype: str | None = None
    is_error: bool = False


@dataclass(frozen=True, slots=True)
class SystemMessage:
    subtype: str | None
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ErrorMessage:
    message: str
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class UnknownMessage:
    raw_fields: dict[str, Any]


ProtocolMessage = AssistantMessage | ResultMessage | SystemMessage | ErrorMessage | UnknownMessage


def decode_line(line: str) -> ProtocolMessage | None:
    """Decode one framed line, or return ``None`` when it is not a JSON object."""

    try:
        payload = json.loads(line)
    except (json.JSONDecodeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None

    message_type = payload.get("type")
    if message_type == "assistant":
        return AssistantMessage(text_blocks=_assistant_text_blocks(payload))
    if message_type == "result":
        return ResultMessage(
            text=_first_string(payload, RESULT_TEXT_FIELDS) or "",
            cost_usd=_first_number(payload, RESULT_COST_FIELDS),
            subtype=_optional_string(payload.get("subtype")),
            is_error=bool(payload.get("is_error", False)),
        )
    if message_type == "system":
        return SystemMessage(
            subtype=_optional_string(payload.get("subtype")),
            fields=_without_type(payload),
        )
    if message_type == "error":
        return ErrorMessage(
            message=_error_text(payload),
            fields=_without_type(payload),
        )
    return UnknownMessage(raw_fields=payload)


class TextAccumulator:
    """Fold protocol messages into the single result text of one invocation.

    Heuristic: assistant text is appended; a result text replaces what was
    accumulated only when it is at least as long, or when it carries a ``{``,
    so a short closing acknowledgement never hides the real payload.
    """

    def __init__(self) -> None:
        self._text = ""

    @property
    def text(self) -> str:
        return self._text

    def fold(self, message: ProtocolMessage) -> None:
        if isinstance(message, AssistantMessage):
            self._text += message.text
        elif isinstance(message, ResultMessage):
            if message.text and (len(message.text) >= len(self._text) or "{" in message.text):
                self._text = message.text


def _assistant_text_blocks(payload: dict[str, Any]) -> tuple[str, ...]:
    message = payload.get("message")
    if not isinstance(message, dict):
        return ()
    content = message.get("content")
    if isinstance(content, str):
        return (content,) if content else ()
    if not isinstance(content, list):
        return ()

    blocks: list[str] = []
    for block in content:
        if not isinstance(block, dict) or block.get("type") != "text":
            continue
        text = block.get("text")
        if isinstance(text, str) and text:
            blocks.append(text)
    return tuple(blocks)


def _error_text(payload: dict[str, Any]) -> str:
    for name in ERROR_MESSAGE_FIELDS:
        value = payload.get(name)
        if isinstance(value, str) and value:
            return value
        if isinstance(value, dict):
            nested = value.get("message")
            if isinstance(nested, str) and nested:
                return nested
    return "unknown agent error"


def _first_string(payload: dict[str, Any], names: tuple[str, ...]) -> str | None:
    for name in names:
        value = payload.get(name)
        if isinstance(value, str) and value:
            return value
    return None


def _first_number(payload: dict[str, Any], names: tuple[str, ...]) -> float | None:
    for name in names:
        value = payload.get(name)
        if isinstance(value, bool):
            continue
        if isinstance(value, int | float):
            return float(value)
    return None


def _optional_string(value: object) -> str | None:
    return value if isinstance(value, str) else None


def _without_type(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if key != "type"}
