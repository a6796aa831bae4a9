"""Progress server: SSE and WebSocket transports for agent task runs."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Literal

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field
from sse_starlette.sse import EventSourceResponse

from ms_audit import __version__
from ms_audit.agent.cli_runner import CliAgentRunner
from ms_audit.agent.errors import AgentRunError
from ms_audit.config import Settings
from ms_audit.progress import ProgressEvent, ProgressRelay, QueueSink
from ms_audit.storage.repository import FindingRepository
from ms_audit.tasks.analysis import AnalysisRequest, AnalysisTask, find_legacy_path
from ms_audit.tasks.chat import ChatRequest, ChatTask
from ms_audit.tasks.converter import DocumentConverter, PdfTextConverter
from ms_audit.tasks.deduplication import DeduplicationRequest, DeduplicationTask
from ms_audit.tasks.extraction import ExtractionRequest, ExtractionTask
from ms_audit.tasks.models import ChatMessage, MicroserviceView
from ms_audit.tasks.store import UNEXPECTED_ERROR_MESSAGE

logger = logging.getLogger(__name__)

TaskWork = Callable[[ProgressRelay, threading.Event], Any]


class AnalyzeBody(BaseModel):
    prompt: str | None = None


class ChatMessageBody(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    result_id: int = Field(alias="resultId")
    microservice_name: str = Field(default="", alias="microserviceName")
    messages: list[ChatMessageBody] = Field(default_factory=list)


class TargetRunLocks:
    """At most one run per microservice at a time."""

    def __init__(self) -> None:
        self._active: set[str] = set()
        self._lock = threading.Lock()

    def try_acquire(self, target: str) -> bool:
        with self._lock:
            if target in self._active:
                return False
            self._active.add(target)
            return True

    def release(self, target: str) -> None:
        with self._lock:
            self._active.discard(target)

    def is_running(self, target: str) -> bool:
        with self._lock:
            return target in self._active


class TaskStream:
    """One orchestrator run on a worker thread, relayed into an asyncio queue.

    The run lock for ``target``, when ``locks`` is given, must already be held;
    it is released when the worker thread finishes, not when the client goes away.
    """

    def __init__(
        self,
        *,
        target: str,
        locks: TargetRunLocks | None,
        work: TaskWork,
    ) -> None:
        self.target = target
        self._locks = locks
        self._events: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()
        self.relay = ProgressRelay(QueueSink(asyncio.get_running_loop(), self._events))
        self.cancel_event = threading.Event()
        self._drained = False
        self._worker = asyncio.ensure_future(
            asyncio.to_thread(work, self.relay, self.cancel_event),
        )
        self._worker.add_done_callback(self._on_worker_done)

    def cancel(self) -> None:
        self.cancel_event.set()

    async def events(self) -> AsyncIterator[ProgressEvent]:
        try:
            while True:
                event = await self._events.get()
                if event is None:
                    self._drained = True
                    return
                yield event
        finally:
            if not self._drained and not self._worker.done():
                logger.info("Client left during run for %s, cancelling agent", self.target)
                self.cancel()

    def _on_worker_done(self, worker: asyncio.Future[Any]) -> None:
        if self._locks is not None:
            self._locks.release(self.target)
        error = None if worker.cancelled() else worker.exception()
        if error is not None and not self.relay.finished:
            logger.error("Run for %s failed", self.target, exc_info=error)
            self.relay.fail(UNEXPECTED_ERROR_MESSAGE)
        self.relay.close()


def create_app(
    settings: Settings | None = None,
    *,
    repository: FindingRepository | None = None,
    runner: CliAgentRunner | None = None,
    converter: DocumentConverter | None = None,
) -> FastAPI:
    """Build the progress server around explicitly passed collaborators."""

    settings = settings or Settings.from_env()
    owns_repository = repository is None
    store = repository or FindingRepository(settings.db_path)
    agent_runner = runner or CliAgentRunner(settings.agent)
    document_converter = converter or PdfTextConverter(settings.documents)
    locks = TargetRunLocks()
    short_threshold = settings.extraction.short_response_threshold

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if owns_repository:
            store.init_schema()
        yield
        if owns_repository:
            store.close()

    app = FastAPI(title="ms-audit", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.repository = store
    app.state.run_locks = locks

    def _require_microservice(name: str) -> MicroserviceView:
        microservice = store.get_microservice(name)
        if microservice is None:
            raise HTTPException(status_code=404, detail="Microservice not found")
        return microservice

    def _acquire(name: str) -> None:
        if not locks.try_acquire(name):
            raise HTTPException(status_code=409, detail=f"A run for {name} is already in progress")

    def _analysis_work(
        microservice: MicroserviceView,
        prompt_template: str | None,
    ) -> TaskWork:
        task = AnalysisTask(runner=agent_runner, store=store, short_threshold=short_threshold)

        def work(relay: ProgressRelay, cancel_event: threading.Event) -> Any:
            request = AnalysisRequest(
                microservice_id=microservice.microservice_id,
                microservice_path=Path(microservice.path),
                document_path=Path(microservice.document_path) if microservice.document_path else None,
                linked_issues=store.linked_issues(microservice.microservice_id),
                prompt_template=prompt_template,
            )
            return task.run(request, relay, cancel_event=cancel_event)

        return work

    def _analysis_precondition(microservice: MicroserviceView) -> str | None:
        if microservice.document_path or find_legacy_path(Path(microservice.path)):
            return None
        return "No requirements document or legacy code found."

    @app.get("/api/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "ms-audit", "version": __version__}

    @app.post("/api/microservices/{name}/extract-usecases")
    async def extract_usecases(name: str) -> EventSourceResponse:
        microservice = _require_microservice(name)
        if not microservice.document_path:
            raise HTTPException(
                status_code=400,
                detail="No requirements document uploaded for this microservice.",
            )
        task = ExtractionTask(
            runner=agent_runner,
            store=store,
            converter=document_converter,
            short_threshold=short_threshold,
        )
        request = ExtractionRequest(
            microservice_id=microservice.microservice_id,
            documents=(Path(microservice.document_path),),
        )
        _acquire(name)
        stream = TaskStream(
            target=name,
            locks=locks,
            work=lambda relay, cancel_event: task.run(request, relay, cancel_event=cancel_event),
        )
        return EventSourceResponse(_sse_events(stream))

    @app.post("/api/microservices/{name}/analyze-stream")
    async def analyze_stream(name: str, body: AnalyzeBody | None = None) -> EventSourceResponse:
        microservice = _require_microservice(name)
        problem = _analysis_precondition(microservice)
        if problem is not None:
            raise HTTPException(status_code=400, detail=problem)
        _acquire(name)
        stream = TaskStream(
            target=name,
            locks=locks,
            work=_analysis_work(microservice, body.prompt if body else None),
        )
        return EventSourceResponse(_sse_events(stream))

    @app.post("/api/analysis/{name}/deduplicate")
    async def deduplicate(name: str) -> dict[str, Any]:
        microservice = _require_microservice(name)
        task = DeduplicationTask(runner=agent_runner, store=store, short_threshold=short_threshold)
        _acquire(name)
        try:
            result = await asyncio.to_thread(
                task.run,
                DeduplicationRequest(microservice_id=microservice.microservice_id),
            )
        except AgentRunError as error:
            raise HTTPException(status_code=500, detail=str(error)) from error
        finally:
            locks.release(name)
        return result.to_payload()

    @app.post("/api/chat/analysis-result")
    async def chat_about_result(body: ChatBody) -> EventSourceResponse:
        if not body.microservice_name or not body.messages:
            raise HTTPException(
                status_code=400,
                detail="resultId, microserviceName and messages are required",
            )
        microservice = _require_microservice(body.microservice_name)
        result = store.get_result(body.result_id)
        if result is None or result.microservice_id != microservice.microservice_id:
            raise HTTPException(status_code=404, detail="Analysis result not found")

        task = ChatTask(
            runner=agent_runner,
            store=store,
            timeout_seconds=settings.agent.chat_silence_timeout_seconds,
        )
        request = ChatRequest(
            result_id=body.result_id,
            microservice_name=body.microservice_name,
            messages=[ChatMessage(role=item.role, content=item.content) for item in body.messages],
        )
        # Chat only reads the store, so it does not take the microservice run lock.
        stream = TaskStream(
            target=f"chat:{body.result_id}",
            locks=None,
            work=lambda relay, cancel_event: task.run(request, relay, cancel_event=cancel_event),
        )
        return EventSourceResponse(_chat_events(stream))

    @app.websocket("/_ws")
    async def progress_socket(websocket: WebSocket) -> None:
        await websocket.accept()
        logger.info("WebSocket connected")
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    await websocket.send_json({"type": "error", "message": "Invalid message"})
                    continue
                if not isinstance(message, dict):
                    await websocket.send_json({"type": "error", "message": "Invalid message"})
                    continue
                if message.get("type") != "start-analysis":
                    logger.debug("Ignoring WebSocket message of type %r", message.get("type"))
                    continue

                name = message.get("microserviceName")
                if not name:
                    await websocket.send_json(
                        {"type": "error", "message": "Microservice name is required"},
                    )
                    continue
                microservice = store.get_microservice(name)
                if microservice is None:
                    await websocket.send_json({"type": "error", "message": "Microservice not found"})
                    continue
                problem = _analysis_precondition(microservice)
                if problem is not None:
                    await websocket.send_json({"type": "error", "message": problem})
                    continue
                if not locks.try_acquire(name):
                    await websocket.send_json(
                        {"type": "error", "message": f"A run for {name} is already in progress"},
                    )
                    continue

                stream = TaskStream(
                    target=name,
                    locks=locks,
                    work=_analysis_work(microservice, message.get("prompt")),
                )
                if not await _relay_over_websocket(websocket, stream):
                    return
        except WebSocketDisconnect:
            logger.info("WebSocket disconnected")

    return app


async def _sse_events(stream: TaskStream) -> AsyncIterator[dict[str, str]]:
    async for event in stream.events():
        yield {"data": json.dumps(event, ensure_ascii=False)}


def chat_frame(event: ProgressEvent) -> dict[str, Any] | None:
    """Map a relay event to the chat stream's ``text`` / ``done`` / ``error`` frames."""

    kind = event.get("type")
    if kind == "chunk" and event.get("phase") == "analyzing":
        return {"text": event.get("text", "")}
    if kind == "complete":
        return {"done": True, "reply": event.get("reply", ""), "costUsd": event.get("costUsd")}
    if kind == "error":
        return {"error": event.get("message", "")}
    return None


async def _chat_events(stream: TaskStream) -> AsyncIterator[dict[str, str]]:
    async for event in stream.events():
        frame = chat_frame(event)
        if frame is not None:
            yield {"data": json.dumps(frame, ensure_ascii=False)}


async def _forward(websocket: WebSocket, stream: TaskStream) -> None:
    async for event in stream.events():
        await websocket.send_json(event)


async def _watch_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
        logger.debug("Ignoring WebSocket message received during a run")


async def _relay_over_websocket(websocket: WebSocket, stream: TaskStream) -> bool:
    """Forward one run's events; return ``False`` when the peer went away."""

    forward = asyncio.create_task(_forward(websocket, stream))
    watcher = asyncio.create_task(_watch_disconnect(websocket))
    await asyncio.wait({forward, watcher}, return_when=asyncio.FIRST_COMPLETED)

    if watcher.done() and not forward.done():
        stream.cancel()
        forward.cancel()
        await asyncio.gather(forward, return_exceptions=True)
        logger.info("WebSocket closed during run for %s", stream.target)
        return False

    peer_gone = watcher.done()
    if not peer_gone:
        watcher.cancel()
    await asyncio.gather(watcher, return_exceptions=True)
    if forward.exception() is not None:
        stream.cancel()
        logger.info("WebSocket send failed during run for %s", stream.target)
        return False
    return not peer_gone
