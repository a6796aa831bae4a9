"""Controllers for ms-audit CLI commands."""

from __future__ import annotations

import shlex
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path

from ms_audit.agent.cli_runner import CliAgentRunner
from ms_audit.agent.errors import ExtractionError, PayloadParseError
from ms_audit.agent.extractor import extract_json_payload, load_json_object
from ms_audit.config import Settings
from ms_audit.progress import CallbackSink, ProgressEvent, ProgressRelay
from ms_audit.storage.repository import FindingRepository
from ms_audit.tasks.analysis import AnalysisRequest, AnalysisTask
from ms_audit.tasks.chat import ChatRequest, ChatTask
from ms_audit.tasks.converter import PdfTextConverter
from ms_audit.tasks.deduplication import DeduplicationRequest, DeduplicationTask
from ms_audit.tasks.extraction import ExtractionRequest, ExtractionTask
from ms_audit.tasks.models import ChatMessage, MicroserviceView

ProgressCallback = Callable[[ProgressEvent], None]

SMOKE_PROMPT = 'Reply with exactly this JSON and nothing else: {"status": "OK"}'


@dataclass(slots=True)
class DbInitCommand:
    db_path: Path | None


@dataclass(slots=True)
class MicroserviceAddCommand:
    """CLI input for registering one microservice."""

    db_path: Path | None
    name: str
    path: Path
    document: Path | None


@dataclass(slots=True)
class MicroserviceSyncCommand:
    """CLI input for directory discovery."""

    db_path: Path | None
    directory: Path | None
    pattern: str | None


@dataclass(slots=True)
class MicroserviceListCommand:
    db_path: Path | None


@dataclass(slots=True)
class ExtractCommand:
    """CLI input for use case extraction."""

    db_path: Path | None
    name: str
    documents: tuple[Path, ...]


@dataclass(slots=True)
class AnalyzeCommand:
    """CLI input for microservice analysis."""

    db_path: Path | None
    name: str
    prompt_file: Path | None


@dataclass(slots=True)
class DedupCommand:
    db_path: Path | None
    name: str


@dataclass(slots=True)
class ResultsListCommand:
    db_path: Path | None
    name: str


@dataclass(slots=True)
class ResultLinkCommand:
    """CLI input for recording a tracker key on a result."""

    db_path: Path | None
    result_id: int
    key: str
    summary: str | None


@dataclass(slots=True)
class ResultAskCommand:
    """CLI input for one question to the agent about a result."""

    db_path: Path | None
    name: str
    result_id: int
    question: str


@dataclass(slots=True)
class AgentSmokeCommand:
    """CLI input for a direct agent round-trip check."""

    agent_command: str | None
    prompt: str
    expect_substring: str
    timeout_seconds: float | None


@dataclass(slots=True)
class AgentSmokeResult:
    lines: list[str]
    success: bool


class AuditCliController:
    """Coordinates storage, tasks and agent checks for the CLI."""

    def init_db(self, command: DbInitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings):
            pass
        return [f"Database ready: {settings.db_path}"]

    def add_microservice(self, command: MicroserviceAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            microservice = repository.register_microservice(
                name=command.name,
                path=command.path.resolve(),
                document_path=command.document.resolve() if command.document else None,
            )
        return [
            f"Microservice registered: id={microservice.microservice_id} name={microservice.name}",
            f"Path: {microservice.path}",
            f"Document: {microservice.document_path or '-'}",
        ]

    def sync_microservices(self, command: MicroserviceSyncCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        directory = command.directory or settings.scan.microservices_directory
        if directory is None:
            raise ValueError(
                "No microservices directory: pass --directory or set MS_AUDIT_MICROSERVICES_DIRECTORY.",
            )
        pattern = command.pattern or settings.scan.microservices_pattern
        with _repository(settings) as repository:
            added = repository.sync_microservices(directory=directory.resolve(), pattern=pattern)
        lines = [f"Sync of {directory} (pattern {pattern!r}): {len(added)} new microservice(s)"]
        lines.extend(f"  + {microservice.name}" for microservice in added)
        return lines

    def list_microservices(self, command: MicroserviceListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            microservices = repository.list_microservices()
        if not microservices:
            return ["No microservices registered."]
        return [_format_microservice(microservice) for microservice in microservices]

    def extract(self, command: ExtractCommand, *, on_progress: ProgressCallback) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            microservice = _require_microservice(repository, command.name)
            documents = command.documents
            if not documents and microservice.document_path:
                documents = (Path(microservice.document_path),)
            task = ExtractionTask(
                runner=CliAgentRunner(settings.agent),
                store=repository,
                converter=PdfTextConverter(settings.documents),
                short_threshold=settings.extraction.short_response_threshold,
            )
            result = task.run(
                ExtractionRequest(
                    microservice_id=microservice.microservice_id,
                    documents=tuple(documents),
                ),
                ProgressRelay(CallbackSink(on_progress)),
            )

        lines = [f"Extracted {len(result.usecases)} use case(s) for {command.name}"]
        lines.extend(f"  {usecase.code or '-'}  {usecase.title}" for usecase in result.usecases)
        lines.append(_format_cost(result.cost_usd))
        return lines

    def analyze(self, command: AnalyzeCommand, *, on_progress: ProgressCallback) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        template = command.prompt_file.read_text(encoding="utf-8") if command.prompt_file else None
        with _repository(settings) as repository:
            microservice = _require_microservice(repository, command.name)
            task = AnalysisTask(
                runner=CliAgentRunner(settings.agent),
                store=repository,
                short_threshold=settings.extraction.short_response_threshold,
            )
            result = task.run(
                AnalysisRequest(
                    microservice_id=microservice.microservice_id,
                    microservice_path=Path(microservice.path),
                    document_path=(
                        Path(microservice.document_path) if microservice.document_path else None
                    ),
                    linked_issues=repository.linked_issues(microservice.microservice_id),
                    prompt_template=template,
                ),
                ProgressRelay(CallbackSink(on_progress)),
            )

        lines = [
            f"Analysis of {command.name}: {len(result.issues)} issue(s), "
            f"{len(result.implemented_codes)} implemented use case(s), "
            f"{result.protected_results} tracker-linked result(s) kept",
        ]
        lines.extend(
            f"  [{issue.severity}] {issue.code or '-'}  {issue.title}" for issue in result.issues
        )
        lines.append(_format_cost(result.cost_usd))
        return lines

    def deduplicate(self, command: DedupCommand, *, on_progress: ProgressCallback) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            microservice = _require_microservice(repository, command.name)
            task = DeduplicationTask(
                runner=CliAgentRunner(settings.agent),
                store=repository,
                short_threshold=settings.extraction.short_response_threshold,
            )
            result = task.run(
                DeduplicationRequest(microservice_id=microservice.microservice_id),
                ProgressRelay(CallbackSink(on_progress)),
            )

        lines = [result.message]
        if result.deleted_ids:
            lines.append("Deleted ids: " + ", ".join(str(result_id) for result_id in result.deleted_ids))
        return lines

    def list_results(self, command: ResultsListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            microservice = _require_microservice(repository, command.name)
            results = repository.list_results(microservice.microservice_id)
        if not results:
            return [f"No analysis results for {command.name}."]
        return [
            f"{result.result_id:>5}  {result.status:<11} {result.confidence or '-':<6} "
            f"{result.tracker_key or '-':<12} {result.display_title[:80]}"
            for result in results
        ]

    def link_result(self, command: ResultLinkCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            repository.link_tracker_issue(
                result_id=command.result_id,
                key=command.key,
                summary=command.summary,
            )
        return [f"Result {command.result_id} linked to {command.key}"]

    def ask_about_result(
        self,
        command: ResultAskCommand,
        *,
        on_progress: ProgressCallback,
    ) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            microservice = _require_microservice(repository, command.name)
            result = repository.get_result(command.result_id)
            if result is None or result.microservice_id != microservice.microservice_id:
                raise ValueError(f"Analysis result not found: {command.result_id}")
            task = ChatTask(
                runner=CliAgentRunner(settings.agent),
                store=repository,
                timeout_seconds=settings.agent.chat_silence_timeout_seconds,
            )
            reply = task.run(
                ChatRequest(
                    result_id=command.result_id,
                    microservice_name=microservice.name,
                    messages=[ChatMessage(role="user", content=command.question)],
                ),
                ProgressRelay(CallbackSink(on_progress)),
            )
        return [reply.text, _format_cost(reply.cost_usd)]

    def smoke(self, command: AgentSmokeCommand, *, on_progress: ProgressCallback) -> AgentSmokeResult:
        settings = Settings.from_env()
        agent_settings = settings.agent
        if command.agent_command:
            agent_settings = replace(agent_settings, command=tuple(shlex.split(command.agent_command)))
        runner = CliAgentRunner(agent_settings)
        invocation = runner.invocation(
            command.prompt,
            timeout_seconds=command.timeout_seconds,
            payload_markers=('"status"',),
        )
        run = runner.run(invocation, progress=ProgressRelay(CallbackSink(on_progress)))

        lines = [
            "Agent smoke check:",
            f"command: {' '.join(agent_settings.command)}",
            f"exit_code: {run.exit_code} elapsed: {run.elapsed_seconds:.1f}s "
            f"messages: {run.messages_seen}",
            _format_cost(run.cost_usd),
            f"text: {run.text[:200]}",
        ]
        try:
            payload = load_json_object(extract_json_payload(run.text))
        except (ExtractionError, PayloadParseError) as error:
            lines.append(f"json: {error}")
        else:
            lines.append(f"json keys: {', '.join(sorted(payload)) or '-'}")

        success = command.expect_substring in run.text
        if not success:
            lines.append(f"expected substring not found: {command.expect_substring!r}")
        return AgentSmokeResult(lines=lines, success=success)


def _require_microservice(repository: FindingRepository, name: str) -> MicroserviceView:
    microservice = repository.get_microservice(name)
    if microservice is None:
        raise ValueError(f"Microservice not found: {name}")
    return microservice


def _format_microservice(microservice: MicroserviceView) -> str:
    analyzed = (
        microservice.last_analysis.strftime("%Y-%m-%d %H:%M")
        if microservice.last_analysis is not None
        else "never"
    )
    flags = " (excluded)" if microservice.excluded else ""
    document = Path(microservice.document_path).name if microservice.document_path else "-"
    return (
        f"{microservice.microservice_id:>4}  {microservice.name}{flags}  "
        f"document={document} last_analysis={analyzed}"
    )


def _format_cost(cost_usd: float | None) -> str:
    return f"cost: ${cost_usd:.4f}" if cost_usd is not None else "cost: n/a"


@contextmanager
def _repository(settings: Settings) -> Iterator[FindingRepository]:
    settings.validate()
    repository = FindingRepository(settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
