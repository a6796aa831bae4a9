"""Best-effort JSON payload recovery from the agent's final text.

The agent is asked for bare JSON but regularly wraps it in a markdown fence or
surrounds it with prose. These rules are heuristics tuned against real agent
replies, not a parser.
"""

from __future__ import annotations

import json
import re
from typing import Any

from ms_audit.agent.errors import AgentDidNotComplete, NoJsonFound, PayloadParseError

SHORT_RESPONSE_THRESHOLD = 500

_FENCED_BLOCK = re.compile(r"```[\w+-]*[ \t]*\r?\n?(.*?)```", re.DOTALL)


def extract_json_payload(text: str, *, short_threshold: int = SHORT_RESPONSE_THRESHOLD) -> str:
    """Return the best-candidate JSON object span from ``text``."""

    for fenced in _FENCED_BLOCK.finditer(text):
        span = _brace_span(fenced.group(1))
        if span is not None:
            return span

    span = _brace_span(text)
    if span is not None:
        return span

    if "{" in text:
        raise NoJsonFound("JSON object is truncated")
    stripped = text.strip()
    if len(stripped) < short_threshold:
        raise AgentDidNotComplete(stripped)
    raise NoJsonFound()


def load_json_object(json_text: str) -> dict[str, Any]:
    """Parse an extracted span and require a JSON object at the top level."""

    try:
        parsed = json.loads(json_text)
    except json.JSONDecodeError as error:
        raise PayloadParseError(
            f"Agent returned malformed JSON: {error.msg} (line {error.lineno}, "
            f"column {error.colno}).",
        ) from error
    if not isinstance(parsed, dict):
        raise PayloadParseError("Agent returned JSON that is not an object.")
    return parsed


def _brace_span(text: str) -> str | None:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return text[start : end + 1]
