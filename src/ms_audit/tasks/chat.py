"""Conversation with the agent about one stored analysis result."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from ms_audit.agent.cli_runner import CliAgentRunner
from ms_audit.progress import ProgressRelay
from ms_audit.tasks.models import ChatMessage
from ms_audit.tasks.prompts import build_chat_prompt
from ms_audit.tasks.store import FindingStore, terminal_events

logger = logging.getLogger(__name__)

CHAT_ROLES: tuple[str, ...] = ("user", "assistant")


@dataclass(slots=True)
class ChatRequest:
    result_id: int
    microservice_name: str
    messages: list[ChatMessage] = field(default_factory=list)


@dataclass(slots=True)
class ChatReply:
    text: str
    cost_usd: float | None = None

    def to_event_fields(self) -> dict[str, object]:
        return {"reply": self.text, "costUsd": self.cost_usd}


def validate_chat_request(request: ChatRequest) -> None:
    if not request.result_id or not request.microservice_name or not request.messages:
        raise ValueError("resultId, microserviceName and messages are required")
    for message in request.messages:
        if message.role not in CHAT_ROLES:
            raise ValueError(f"Unknown chat role: {message.role!r}")


class ChatTask:
    """Answer the last user message with the result as context. Nothing is stored."""

    def __init__(
        self,
        *,
        runner: CliAgentRunner,
        store: FindingStore,
        timeout_seconds: float | None = None,
    ) -> None:
        self.runner = runner
        self.store = store
        self.timeout_seconds = timeout_seconds

    def run(
        self,
        request: ChatRequest,
        progress: ProgressRelay | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> ChatReply:
        relay = progress or ProgressRelay()
        with terminal_events(relay, task_name="Chat"):
            reply = self._run(request, relay, cancel_event)
        relay.complete(**reply.to_event_fields())
        return reply

    def _run(
        self,
        request: ChatRequest,
        relay: ProgressRelay,
        cancel_event: threading.Event | None,
    ) -> ChatReply:
        validate_chat_request(request)
        result = self.store.get_result(request.result_id)
        if result is None:
            raise ValueError("Analysis result not found")
        usecase = self.store.get_usecase(result.usecase_id) if result.usecase_id is not None else None

        relay.status("init", "Preparing conversation...")
        prompt = build_chat_prompt(
            microservice_name=request.microservice_name,
            result=result,
            usecase=usecase,
            messages=request.messages,
        )
        relay.emit("info", f"Prompt length: {len(prompt)} chars")
        invocation = self.runner.invocation(prompt, timeout_seconds=self.timeout_seconds)
        run = self.runner.run(invocation, progress=relay, cancel_event=cancel_event)

        logger.info(
            "Chat about result %s: %d message(s) in, %d chars out",
            request.result_id,
            len(request.messages),
            len(run.text),
        )
        return ChatReply(text=run.text.strip(), cost_usd=run.cost_usd)
