"""Progress relay from task orchestrators to SSE and WebSocket clients."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from typing import Any, Protocol

logger = logging.getLogger(__name__)

PHASE_PROGRESS: dict[str, int] = {
    "init": 5,
    "cleanup": 8,
    "converting": 12,
    "starting": 15,
    "agent_start": 15,
    "preparing": 18,
    "info": 20,
    "analyzing": 50,
    "agent_error": 50,
    "cost": 80,
    "parsing": 90,
    "saving": 98,
    "complete": 100,
}
DEFAULT_PROGRESS = 50
TERMINAL_PHASE = "complete"


def phase_progress(phase: str) -> int:
    """Map a phase to its percentage, falling back for unknown phases."""

    return PHASE_PROGRESS.get(phase, DEFAULT_PROGRESS)


ProgressEvent = dict[str, Any]


class ProgressSink(Protocol):
    """Transport end of a relay. Implementations must not block."""

    def send(self, event: ProgressEvent) -> None: ...

    def close(self) -> None: ...


class NullSink:
    def send(self, event: ProgressEvent) -> None:
        return None

    def close(self) -> None:
        return None


class CallbackSink:
    """Forward events to a plain callable (CLI output, tests)."""

    def __init__(self, callback: Callable[[ProgressEvent], None]) -> None:
        self._callback = callback

    def send(self, event: ProgressEvent) -> None:
        self._callback(event)

    def close(self) -> None:
        return None


class QueueSink:
    """Hand events from a worker thread to an asyncio consumer.

    ``None`` is queued once on close as the end-of-stream marker.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        queue: asyncio.Queue[ProgressEvent | None],
    ) -> None:
        self._loop = loop
        self._queue = queue

    def send(self, event: ProgressEvent) -> None:
        self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    def close(self) -> None:
        self._loop.call_soon_threadsafe(self._queue.put_nowait, None)


class ProgressRelay:
    """Per-invocation relay with phase de-duplication.

    Status events go out only when the phase changes; chunk events go out for
    every call to :meth:`emit`. Delivery is best-effort: a failing sink is
    logged and the run carries on.
    """

    def __init__(self, sink: ProgressSink | None = None) -> None:
        self._sink: ProgressSink = sink or NullSink()
        self._lock = threading.Lock()
        self._last_phase: str | None = None
        self._floor = 0
        self._finished = False
        self._closed = False

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def last_phase(self) -> str | None:
        return self._last_phase

    def emit(self, phase: str, message: str) -> None:
        """Forward a text chunk, preceded by a status event on phase change."""

        with self._lock:
            if self._finished:
                return
            progress = self._advance(phase)
            if phase != self._last_phase:
                self._last_phase = phase
                self._send(
                    {"type": "status", "phase": phase, "message": message, "progress": progress},
                )
            self._send({"type": "chunk", "phase": phase, "text": message, "progress": progress})

    def status(self, phase: str, message: str) -> None:
        """Forward a status line; repeated phases are suppressed."""

        with self._lock:
            if self._finished or phase == self._last_phase:
                return
            self._last_phase = phase
            self._send(
                {
                    "type": "status",
                    "phase": phase,
                    "message": message,
                    "progress": self._advance(phase),
                },
            )

    def complete(self, **fields: Any) -> None:
        """Send the terminal success event and close the sink."""

        with self._lock:
            if self._finished:
                return
            self._finished = True
            self._send({"type": "complete", "progress": 100, **fields})
        self.close()

    def fail(self, message: str) -> None:
        """Send the terminal error event and close the sink."""

        with self._lock:
            if self._finished:
                return
            self._finished = True
            self._send({"type": "error", "message": message})
        self.close()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            self._sink.close()
        except Exception:  # noqa: BLE001
            logger.warning("Progress sink close failed", exc_info=True)

    def _advance(self, phase: str) -> int:
        progress = max(phase_progress(phase), self._floor)
        if phase == TERMINAL_PHASE or self._floor:
            self._floor = progress
        return progress

    def _send(self, event: ProgressEvent) -> None:
        if self._closed:
            return
        try:
            self._sink.send(event)
        except Exception:  # noqa: BLE001
            logger.warning("Progress delivery failed for %s event", event.get("type"), exc_info=True)
