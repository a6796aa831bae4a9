"""Runtime configuration for agent runs, storage and the progress server."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class AgentSettings:
    """External CLI agent invocation settings."""

    command: tuple[str, ...] = ("claude",)
    model: str | None = None
    max_turns: int | None = 50
    silence_timeout_seconds: float = 600.0
    chat_silence_timeout_seconds: float = 300.0
    working_dir: Path | None = None
    strip_api_key: bool = True
    stderr_excerpt_chars: int = 2_000


@dataclass(slots=True)
class ExtractionSettings:
    """Payload extraction heuristics."""

    short_response_threshold: int = 500


@dataclass(slots=True)
class DocumentSettings:
    """Requirements document conversion settings."""

    pdftotext_command: str = "pdftotext"
    conversion_timeout_seconds: float = 120.0


@dataclass(slots=True)
class ScanSettings:
    """Microservice discovery settings."""

    microservices_directory: Path | None = None
    microservices_pattern: str = "*"


@dataclass(slots=True)
class WebSettings:
    """Progress server settings."""

    host: str = "127.0.0.1"
    port: int = 8000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".ms_audit.db")
    agent: AgentSettings = field(default_factory=AgentSettings)
    extraction: ExtractionSettings = field(default_factory=ExtractionSettings)
    documents: DocumentSettings = field(default_factory=DocumentSettings)
    scan: ScanSettings = field(default_factory=ScanSettings)
    web: WebSettings = field(default_factory=WebSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local development."""

        working_dir = os.getenv("MS_AUDIT_AGENT_WORKING_DIR", "").strip()
        scan_directory = os.getenv("MS_AUDIT_MICROSERVICES_DIRECTORY", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("MS_AUDIT_DB_PATH", ".ms_audit.db")),
            agent=AgentSettings(
                command=_env_command("MS_AUDIT_AGENT_COMMAND", default=("claude",)),
                model=os.getenv("MS_AUDIT_AGENT_MODEL", "").strip() or None,
                max_turns=_env_optional_int("MS_AUDIT_AGENT_MAX_TURNS", default=50),
                silence_timeout_seconds=float(
                    os.getenv("MS_AUDIT_AGENT_SILENCE_TIMEOUT_SECONDS", "600"),
                ),
                chat_silence_timeout_seconds=float(
                    os.getenv("MS_AUDIT_CHAT_SILENCE_TIMEOUT_SECONDS", "300"),
                ),
                working_dir=Path(working_dir) if working_dir else None,
                strip_api_key=_env_bool("MS_AUDIT_AGENT_STRIP_API_KEY", default=True),
                stderr_excerpt_chars=int(os.getenv("MS_AUDIT_AGENT_STDERR_EXCERPT_CHARS", "2000")),
            ),
            extraction=ExtractionSettings(
                short_response_threshold=int(
                    os.getenv("MS_AUDIT_SHORT_RESPONSE_THRESHOLD", "500"),
                ),
            ),
            documents=DocumentSettings(
                pdftotext_command=os.getenv("MS_AUDIT_PDFTOTEXT_COMMAND", "pdftotext"),
                conversion_timeout_seconds=float(
                    os.getenv("MS_AUDIT_CONVERSION_TIMEOUT_SECONDS", "120"),
                ),
            ),
            scan=ScanSettings(
                microservices_directory=Path(scan_directory) if scan_directory else None,
                microservices_pattern=os.getenv("MS_AUDIT_MICROSERVICES_PATTERN", "*"),
            ),
            web=WebSettings(
                host=os.getenv("MS_AUDIT_WEB_HOST", "127.0.0.1"),
                port=int(os.getenv("MS_AUDIT_WEB_PORT", "8000")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the runtime cannot work with."""

        if not self.agent.command:
            raise ValueError("MS_AUDIT_AGENT_COMMAND must not be empty.")
        if self.agent.silence_timeout_seconds <= 0:
            raise ValueError("MS_AUDIT_AGENT_SILENCE_TIMEOUT_SECONDS must be > 0.")
        if self.agent.chat_silence_timeout_seconds <= 0:
            raise ValueError("MS_AUDIT_CHAT_SILENCE_TIMEOUT_SECONDS must be > 0.")
        if self.agent.max_turns is not None and self.agent.max_turns <= 0:
            raise ValueError("MS_AUDIT_AGENT_MAX_TURNS must be a positive integer.")
        if self.agent.stderr_excerpt_chars < 0:
            raise ValueError("MS_AUDIT_AGENT_STDERR_EXCERPT_CHARS must be >= 0.")
        if self.extraction.short_response_threshold <= 0:
            raise ValueError("MS_AUDIT_SHORT_RESPONSE_THRESHOLD must be > 0.")
        if self.documents.conversion_timeout_seconds <= 0:
            raise ValueError("MS_AUDIT_CONVERSION_TIMEOUT_SECONDS must be > 0.")
        if not 0 < self.web.port < 65_536:
            raise ValueError(f"MS_AUDIT_WEB_PORT is out of range: {self.web.port}")


def _env_command(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return tuple(shlex.split(raw))


def _env_optional_int(name: str, default: int | None) -> int | None:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"", "none", "off", "0"}:
        return None
    try:
        return int(normalized)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
