"""Shared test fixtures."""

from __future__ import annotations

import json
import os
import sys
import textwrap
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from ms_audit.agent.cli_runner import CliAgentRunner
from ms_audit.config import AgentSettings
from ms_audit.storage.repository import FindingRepository

SRC_DIR = Path(__file__).resolve().parents[1] / "src"
ECHO_AGENT_COMMAND: tuple[str, ...] = (sys.executable, "-m", "ms_audit.agent.echo_agent")


@pytest.fixture(autouse=True)
def _agent_subprocess_imports(monkeypatch: pytest.MonkeyPatch) -> None:
    """Let agent subprocesses import ``ms_audit`` without an installed package."""

    existing = os.environ.get("PYTHONPATH")
    monkeypatch.setenv(
        "PYTHONPATH",
        f"{SRC_DIR}{os.pathsep}{existing}" if existing else str(SRC_DIR),
    )


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[FindingRepository]:
    store = FindingRepository(tmp_path / "audit.db")
    store.init_schema()
    try:
        yield store
    finally:
        store.close()


@pytest.fixture()
def fake_agent(tmp_path: Path) -> Callable[[str], tuple[str, ...]]:
    """Write a python script acting as the agent binary; return its command."""

    counter = iter(range(1_000))

    def _make(source: str) -> tuple[str, ...]:
        script = tmp_path / f"fake_agent_{next(counter)}.py"
        script.write_text(textwrap.dedent(source).strip() + "\n", "utf-8")
        return (sys.executable, str(script))

    return _make


@pytest.fixture()
def make_runner(tmp_path: Path) -> Callable[..., CliAgentRunner]:
    def _make(
        command: tuple[str, ...],
        *,
        timeout_seconds: float = 30.0,
        stderr_excerpt_chars: int = 2_000,
    ) -> CliAgentRunner:
        return CliAgentRunner(
            AgentSettings(
                command=command,
                max_turns=5,
                silence_timeout_seconds=timeout_seconds,
                working_dir=tmp_path,
                stderr_excerpt_chars=stderr_excerpt_chars,
            ),
            poll_interval=0.02,
        )

    return _make


@pytest.fixture()
def echo_agent() -> Callable[[dict[str, object] | str], tuple[str, ...]]:
    """Echo agent command answering every prompt with the given reply."""

    def _command(reply: dict[str, object] | str) -> tuple[str, ...]:
        text = reply if isinstance(reply, str) else json.dumps(reply)
        return (*ECHO_AGENT_COMMAND, "--reply", text)

    return _command
