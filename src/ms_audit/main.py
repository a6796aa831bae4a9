"""CLI entrypoint for ms-audit."""

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click
import uvicorn

from ms_audit import __version__
from ms_audit.agent.errors import AgentRunError
from ms_audit.config import Settings
from ms_audit.controllers import (
    SMOKE_PROMPT,
    AgentSmokeCommand,
    AnalyzeCommand,
    AuditCliController,
    DbInitCommand,
    DedupCommand,
    ExtractCommand,
    MicroserviceAddCommand,
    MicroserviceListCommand,
    MicroserviceSyncCommand,
    ResultAskCommand,
    ResultLinkCommand,
    ResultsListCommand,
)
from ms_audit.progress import ProgressEvent
from ms_audit.web.app import create_app

click.rich_click.USE_MARKDOWN = True
CONTROLLER = AuditCliController()
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

_db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path. Defaults to MS_AUDIT_DB_PATH.",
)
_show_chunks_option = click.option(
    "--show-chunks/--no-show-chunks",
    default=False,
    show_default=True,
    help="Echo every streamed agent line, not only phase changes.",
)


@click.group()
@click.version_option(version=__version__, prog_name="ms-audit")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for diagnostics on stderr.",
)
def ms_audit(log_level: str) -> None:
    """Microservice requirements audit driven by a CLI coding agent."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@ms_audit.group()
def db() -> None:
    """Database commands."""


@db.command("init")
@_db_path_option
def db_init(db_path: Path | None) -> None:
    """Create or migrate the SQLite database."""

    with _cli_errors():
        _emit_lines(CONTROLLER.init_db(DbInitCommand(db_path=db_path)))


@ms_audit.group()
def microservices() -> None:
    """Microservice registry commands."""


@microservices.command("add")
@_db_path_option
@click.argument("name")
@click.argument("path", type=click.Path(path_type=Path, exists=True, file_okay=False))
@click.option(
    "--document",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Requirements document (PDF or text).",
)
def microservices_add(db_path: Path | None, name: str, path: Path, document: Path | None) -> None:
    """Register a microservice or update its path and document."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.add_microservice(
                MicroserviceAddCommand(db_path=db_path, name=name, path=path, document=document),
            ),
        )


@microservices.command("sync")
@_db_path_option
@click.option(
    "--directory",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory holding one sub-directory per microservice.",
)
@click.option("--pattern", default=None, help="Glob filter for sub-directory names.")
def microservices_sync(db_path: Path | None, directory: Path | None, pattern: str | None) -> None:
    """Register every microservice found in a directory."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.sync_microservices(
                MicroserviceSyncCommand(db_path=db_path, directory=directory, pattern=pattern),
            ),
        )


@microservices.command("list")
@_db_path_option
def microservices_list(db_path: Path | None) -> None:
    """List registered microservices."""

    with _cli_errors():
        _emit_lines(CONTROLLER.list_microservices(MicroserviceListCommand(db_path=db_path)))


@ms_audit.command("extract")
@_db_path_option
@_show_chunks_option
@click.argument("name")
@click.option(
    "--document",
    "documents",
    multiple=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="Document to extract from instead of the registered one. Can be repeated.",
)
def extract(
    db_path: Path | None,
    show_chunks: bool,
    name: str,
    documents: tuple[Path, ...],
) -> None:
    """Extract use cases from requirements documents, replacing the stored ones."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.extract(
                ExtractCommand(db_path=db_path, name=name, documents=documents),
                on_progress=_progress_printer(show_chunks=show_chunks),
            ),
        )


@ms_audit.command("analyze")
@_db_path_option
@_show_chunks_option
@click.argument("name")
@click.option(
    "--prompt-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Custom analysis prompt template.",
)
def analyze(db_path: Path | None, show_chunks: bool, name: str, prompt_file: Path | None) -> None:
    """Analyze a microservice; tracker-linked results are never replaced."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.analyze(
                AnalyzeCommand(db_path=db_path, name=name, prompt_file=prompt_file),
                on_progress=_progress_printer(show_chunks=show_chunks),
            ),
        )


@ms_audit.command("dedup")
@_db_path_option
@_show_chunks_option
@click.argument("name")
def dedup(db_path: Path | None, show_chunks: bool, name: str) -> None:
    """Delete unlinked results the agent marks as duplicates."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.deduplicate(
                DedupCommand(db_path=db_path, name=name),
                on_progress=_progress_printer(show_chunks=show_chunks),
            ),
        )


@ms_audit.group()
def results() -> None:
    """Analysis result commands."""


@results.command("list")
@_db_path_option
@click.argument("name")
def results_list(db_path: Path | None, name: str) -> None:
    """List analysis results of a microservice."""

    with _cli_errors():
        _emit_lines(CONTROLLER.list_results(ResultsListCommand(db_path=db_path, name=name)))


@results.command("link")
@_db_path_option
@click.argument("result_id", type=int)
@click.argument("key")
@click.option("--summary", default=None, help="Tracker issue summary.")
def results_link(db_path: Path | None, result_id: int, key: str, summary: str | None) -> None:
    """Record the tracker issue filed for a result, protecting it from re-runs."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.link_result(
                ResultLinkCommand(db_path=db_path, result_id=result_id, key=key, summary=summary),
            ),
        )


@results.command("ask")
@_db_path_option
@_show_chunks_option
@click.argument("name")
@click.argument("result_id", type=int)
@click.argument("question")
def results_ask(
    db_path: Path | None,
    show_chunks: bool,
    name: str,
    result_id: int,
    question: str,
) -> None:
    """Ask the agent a question about one analysis result."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.ask_about_result(
                ResultAskCommand(
                    db_path=db_path,
                    name=name,
                    result_id=result_id,
                    question=question,
                ),
                on_progress=_progress_printer(show_chunks=show_chunks),
            ),
        )


@ms_audit.group()
def agent() -> None:
    """Agent diagnostics."""


@agent.command("smoke")
@_show_chunks_option
@click.option(
    "--agent-command",
    default=None,
    help="Agent command line to run instead of MS_AUDIT_AGENT_COMMAND.",
)
@click.option("--prompt", default=SMOKE_PROMPT, show_default=True, help="Prompt to send.")
@click.option(
    "--expect-substring",
    default="OK",
    show_default=True,
    help="Substring required in the final text.",
)
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=1),
    default=None,
    help="Silence timeout before the first output byte.",
)
def agent_smoke(
    show_chunks: bool,
    agent_command: str | None,
    prompt: str,
    expect_substring: str,
    timeout_seconds: float | None,
) -> None:
    """Run one prompt through the agent and check the decoded result."""

    with _cli_errors():
        result = CONTROLLER.smoke(
            AgentSmokeCommand(
                agent_command=agent_command,
                prompt=prompt,
                expect_substring=expect_substring,
                timeout_seconds=timeout_seconds,
            ),
            on_progress=_progress_printer(show_chunks=show_chunks),
        )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Agent smoke check failed.")


@ms_audit.command("serve")
@_db_path_option
@click.option("--host", default=None, help="Bind host. Defaults to MS_AUDIT_WEB_HOST.")
@click.option("--port", type=click.IntRange(min=1, max=65535), default=None, help="Bind port.")
def serve(db_path: Path | None, host: str | None, port: int | None) -> None:
    """Serve the SSE and WebSocket progress endpoints."""

    settings = Settings.from_env(db_path=db_path)
    with _cli_errors():
        settings.validate()
    uvicorn.run(
        create_app(settings),
        host=host or settings.web.host,
        port=port or settings.web.port,
    )


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except (AgentRunError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _progress_printer(*, show_chunks: bool) -> Callable[[ProgressEvent], None]:
    def _print(event: ProgressEvent) -> None:
        kind = event.get("type")
        if kind == "status":
            click.echo(f"[{event.get('progress', 0):>3}%] {event.get('message', '')}", err=True)
        elif kind == "chunk" and show_chunks:
            click.echo(f"       {event.get('text', '')}", err=True)
        elif kind == "error":
            click.echo(f"[error] {event.get('message', '')}", err=True)

    return _print


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ms_audit()
