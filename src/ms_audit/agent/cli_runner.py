"""Subprocess runner for stream-json CLI agents."""

from __future__ import annotations

import logging
import os
import queue
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

from ms_audit.agent.errors import AgentCancelled, AgentTimeout, NoOutput, SpawnFailure
from ms_audit.agent.failure_classifier import classify_agent_failure
from ms_audit.agent.protocol import (
    AssistantMessage,
    ErrorMessage,
    ResultMessage,
    SystemMessage,
    TextAccumulator,
    decode_line,
)
from ms_audit.config import AgentSettings
from ms_audit.progress import ProgressRelay

logger = logging.getLogger(__name__)

_READ_SIZE = 64 * 1024
_KILL_WAIT_SECONDS = 5
_PREVIEW_CHARS = 200


@dataclass(slots=True)
class AgentInvocation:
    """Everything needed to launch one agent process. Never shared between runs."""

    prompt: str
    allowed_paths: tuple[Path, ...] = ()
    timeout_seconds: float = 600.0
    command: tuple[str, ...] = ("claude",)
    model: str | None = None
    max_turns: int | None = None
    working_dir: Path | None = None
    payload_markers: tuple[str, ...] = ()


@dataclass(slots=True)
class AgentRunResult:
    """Outcome of a successful agent run."""

    text: str
    exit_code: int
    cost_usd: float | None
    elapsed_seconds: float
    messages_seen: int = 0


class LineBuffer:
    """Reassemble newline-framed lines from arbitrarily split byte chunks."""

    def __init__(self) -> None:
        self._pending = b""

    def feed(self, chunk: bytes) -> list[str]:
        data = self._pending + chunk
        complete, newline, tail = data.rpartition(b"\n")
        if not newline:
            self._pending = tail
            return []
        self._pending = tail
        return [line for line in (_decode(raw) for raw in complete.split(b"\n")) if line]

    def flush(self) -> str | None:
        """Return the retained partial line, if any, and reset the buffer."""

        pending, self._pending = self._pending, b""
        line = _decode(pending)
        return line or None


def allowed_directories(paths: tuple[Path, ...] | list[Path]) -> list[Path]:
    """Unique parent directories of ``paths`` in first-seen order."""

    seen: set[Path] = set()
    directories: list[Path] = []
    for path in paths:
        directory = Path(os.path.abspath(os.path.expanduser(str(path)))).parent
        if directory in seen:
            continue
        seen.add(directory)
        directories.append(directory)
    return directories


def build_run_args(invocation: AgentInvocation) -> list[str]:
    """Render the agent argv. The prompt is always passed as an argument."""

    if not invocation.command:
        raise SpawnFailure("Agent command is empty.")

    args = [
        *invocation.command,
        "-p",
        invocation.prompt,
        "--output-format",
        "stream-json",
        "--verbose",
    ]
    if invocation.model:
        args.extend(["--model", invocation.model])
    if invocation.max_turns:
        args.extend(["--max-turns", str(invocation.max_turns)])
    for directory in allowed_directories(invocation.allowed_paths):
        args.extend(["--add-dir", str(directory)])
    return args


class CliAgentRunner:
    """Launch the agent, decode its event stream and return the final text."""

    def __init__(self, settings: AgentSettings | None = None, *, poll_interval: float = 0.1) -> None:
        self.settings = settings or AgentSettings()
        self.poll_interval = poll_interval

    def invocation(
        self,
        prompt: str,
        *,
        allowed_paths: tuple[Path, ...] | list[Path] = (),
        payload_markers: tuple[str, ...] = (),
        timeout_seconds: float | None = None,
    ) -> AgentInvocation:
        """Build an invocation from configured defaults."""

        return AgentInvocation(
            prompt=prompt,
            allowed_paths=tuple(Path(path) for path in allowed_paths),
            timeout_seconds=timeout_seconds or self.settings.silence_timeout_seconds,
            command=self.settings.command,
            model=self.settings.model,
            max_turns=self.settings.max_turns,
            working_dir=self.settings.working_dir,
            payload_markers=payload_markers,
        )

    def run(
        self,
        invocation: AgentInvocation,
        *,
        progress: ProgressRelay | None = None,
        cancel_event: threading.Event | None = None,
    ) -> AgentRunResult:
        relay = progress or ProgressRelay()
        relay.emit("starting", "Starting agent...")

        run_args = build_run_args(invocation)
        cwd = invocation.working_dir or Path.home()
        started = time.monotonic()
        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                cwd=str(cwd),
                env=self._build_env(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as error:
            raise SpawnFailure(f"Agent command not found: {run_args[0]}") from error
        except OSError as error:
            raise SpawnFailure(f"Agent failed to start: {error}") from error

        logger.info(
            "Agent started: pid=%s command=%s prompt_chars=%d allowed_dirs=%d",
            process.pid,
            run_args[0],
            len(invocation.prompt),
            len(allowed_directories(invocation.allowed_paths)),
        )

        chunks: queue.Queue[bytes | None] = queue.Queue()
        stderr_tail = _StderrTail(self.settings.stderr_excerpt_chars)
        readers = [
            threading.Thread(target=_pump_stdout, args=(process.stdout, chunks), daemon=True),
            threading.Thread(target=stderr_tail.drain, args=(process.stderr,), daemon=True),
        ]
        for reader in readers:
            reader.start()

        stream = _StreamState(relay=relay, payload_markers=invocation.payload_markers)
        buffer = LineBuffer()
        try:
            self._consume(
                chunks=chunks,
                buffer=buffer,
                stream=stream,
                timeout_seconds=invocation.timeout_seconds,
                started=started,
                cancel_event=cancel_event,
            )
        except BaseException:
            _kill_process(process)
            raise
        finally:
            for reader in readers:
                reader.join(timeout=1)

        exit_code = process.wait()
        tail = buffer.flush()
        if tail is not None:
            stream.handle_line(tail)
        elapsed = time.monotonic() - started

        if stream.accumulator.text:
            logger.info(
                "Agent finished: exit_code=%s elapsed=%.1fs text_chars=%d messages=%d",
                exit_code,
                elapsed,
                len(stream.accumulator.text),
                stream.messages_seen,
            )
            relay.emit("complete", "Agent run completed")
            return AgentRunResult(
                text=stream.accumulator.text,
                exit_code=exit_code,
                cost_usd=stream.cost_usd,
                elapsed_seconds=elapsed,
                messages_seen=stream.messages_seen,
            )

        stderr_excerpt = stderr_tail.text()
        classification = classify_agent_failure(
            exit_code=exit_code,
            stdout="",
            stderr=stderr_excerpt,
        )
        logger.warning(
            "Agent produced no output: %s stderr=%r",
            classification.to_log_details(exit_code=exit_code),
            stderr_excerpt[-_PREVIEW_CHARS:],
        )
        raise NoOutput(
            exit_code=exit_code,
            stderr_excerpt=stderr_excerpt,
            failure_class=classification.failure_class.value,
            transient=classification.transient,
        )

    def _consume(  # noqa: PLR0913
        self,
        *,
        chunks: queue.Queue[bytes | None],
        buffer: LineBuffer,
        stream: _StreamState,
        timeout_seconds: float,
        started: float,
        cancel_event: threading.Event | None,
    ) -> None:
        received_any = False
        while True:
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Agent run cancelled by caller")
                raise AgentCancelled()
            try:
                chunk = chunks.get(timeout=self.poll_interval)
            except queue.Empty:
                # Silence is only fatal before the first byte.
                if not received_any and time.monotonic() - started >= timeout_seconds:
                    logger.warning("Agent silent for %.1fs, killing it", timeout_seconds)
                    raise AgentTimeout(timeout_seconds) from None
                continue
            if chunk is None:
                return
            received_any = True
            for line in buffer.feed(chunk):
                stream.handle_line(line)

    def _build_env(self) -> dict[str, str]:
        env = os.environ.copy()
        env["TERM"] = "dumb"
        if self.settings.strip_api_key:
            env.pop("ANTHROPIC_API_KEY", None)
        return env


@dataclass(slots=True)
class _StreamState:
    relay: ProgressRelay
    payload_markers: tuple[str, ...]
    accumulator: TextAccumulator = field(default_factory=TextAccumulator)
    cost_usd: float | None = None
    messages_seen: int = 0

    def handle_line(self, line: str) -> None:
        message = decode_line(line)
        if message is None:
            if "{" in line and any(marker in line for marker in self.payload_markers):
                logger.warning(
                    "Undecodable agent line resembles payload (%d chars): %.200s",
                    len(line),
                    line,
                )
            return

        self.messages_seen += 1
        self.accumulator.fold(message)
        if isinstance(message, AssistantMessage):
            for text_line in message.text.splitlines():
                if text_line.strip():
                    self.relay.emit("analyzing", text_line)
        elif isinstance(message, ResultMessage):
            if message.cost_usd is not None:
                self.cost_usd = message.cost_usd
                self.relay.emit("cost", f"Cost: ${message.cost_usd:.4f}")
            if message.is_error:
                logger.warning("Agent result flagged as error: subtype=%s", message.subtype)
        elif isinstance(message, ErrorMessage):
            logger.warning("Agent error event: %s", message.message)
            self.relay.emit("agent_error", message.message)
        elif isinstance(message, SystemMessage):
            logger.debug("Agent system event: subtype=%s", message.subtype)


class _StderrTail:
    """Drain stderr without parsing it, keeping a bounded excerpt."""

    def __init__(self, limit_chars: int) -> None:
        self._limit = limit_chars
        self._lines: deque[str] = deque()
        self._size = 0
        self._lock = threading.Lock()

    def drain(self, stream: IO[bytes] | None) -> None:
        if stream is None:
            return
        try:
            for raw in stream:
                line = _decode(raw)
                if not line:
                    continue
                logger.debug("agent stderr: %s", line)
                self._append(line)
        except (OSError, ValueError):
            logger.debug("stderr reader stopped", exc_info=True)

    def text(self) -> str:
        with self._lock:
            return "\n".join(self._lines)

    def _append(self, line: str) -> None:
        with self._lock:
            self._lines.append(line)
            self._size += len(line) + 1
            while self._lines and self._size > self._limit:
                self._size -= len(self._lines.popleft()) + 1


def _pump_stdout(stream: IO[bytes] | None, chunks: queue.Queue[bytes | None]) -> None:
    try:
        if stream is None:
            return
        while True:
            chunk = stream.read1(_READ_SIZE)  # type: ignore[attr-defined]
            if not chunk:
                break
            chunks.put(chunk)
    except (OSError, ValueError):
        logger.debug("stdout reader stopped", exc_info=True)
    finally:
        chunks.put(None)


def _kill_process(process: subprocess.Popen[bytes]) -> None:
    if process.poll() is not None:
        return
    try:
        process.kill()
    except OSError:
        return
    try:
        process.wait(timeout=_KILL_WAIT_SECONDS)
    except subprocess.TimeoutExpired:
        logger.warning("Agent process %s did not exit after kill", process.pid)


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace").strip()
