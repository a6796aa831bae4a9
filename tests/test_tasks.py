from __future__ import annotations

import json
import threading
from collections.abc import Callable
from pathlib import Path

import allure
import pytest

from ms_audit.agent.cli_runner import CliAgentRunner
from ms_audit.agent.errors import AgentCancelled, AgentDidNotComplete, ReconciliationFailure
from ms_audit.progress import CallbackSink, ProgressEvent, ProgressRelay
from ms_audit.storage.repository import FindingRepository
from ms_audit.tasks import (
    AnalysisRequest,
    AnalysisTask,
    ChatRequest,
    ChatTask,
    DeduplicationRequest,
    DeduplicationTask,
    ExtractionRequest,
    ExtractionTask,
)
from ms_audit.tasks.converter import PdfTextConverter
from ms_audit.tasks.models import ChatMessage, MicroserviceView, ResultWrite, UseCase
from ms_audit.tasks.reconcile import AnalysisPlan, UseCasePlan

pytestmark = [
    allure.epic("Agent Tasks"),
    allure.feature("Task Orchestration"),
]

RunnerFactory = Callable[..., CliAgentRunner]
EchoAgent = Callable[[dict[str, object] | str], tuple[str, ...]]


class _TrackingConverter(PdfTextConverter):
    def __init__(self) -> None:
        super().__init__()
        self.outputs: list[Path] = []

    def convert(self, path: Path) -> Path:
        converted = super().convert(path)
        self.outputs.append(converted)
        return converted


def _service(repository: FindingRepository, tmp_path: Path) -> MicroserviceView:
    service_dir = tmp_path / "svc-auth"
    (service_dir / "legacy").mkdir(parents=True)
    return repository.register_microservice(name="svc-auth", path=service_dir)


def _seed(repository: FindingRepository, microservice_id: int, *titles: str) -> list[int]:
    repository.apply_analysis_plan(
        microservice_id,
        AnalysisPlan(
            inserts=[
                ResultWrite(status="missing", confidence="high", evidence=title, notes=None)
                for title in titles
            ],
        ),
    )
    return [result.result_id for result in repository.list_results(microservice_id)]


def _recorder() -> tuple[list[ProgressEvent], ProgressRelay]:
    events: list[ProgressEvent] = []
    return events, ProgressRelay(CallbackSink(events.append))


def test_extraction_replaces_usecases_and_is_idempotent(
    repository: FindingRepository,
    make_runner: RunnerFactory,
    echo_agent: EchoAgent,
    tmp_path: Path,
) -> None:
    service = _service(repository, tmp_path)
    document = tmp_path / "requirements.md"
    document.write_text("UC-1 Login\nUC-2 Logout\n", "utf-8")
    reply = {
        "usecases": [
            {"code": "UC-1", "title": "Login", "mainFlow": "1. Submit credentials"},
            {"code": "UC-2", "title": "Logout"},
        ],
    }
    converter = _TrackingConverter()
    task = ExtractionTask(
        runner=make_runner(echo_agent(reply)),
        store=repository,
        converter=converter,
    )
    request = ExtractionRequest(microservice_id=service.microservice_id, documents=(document,))

    events, relay = _recorder()
    first = task.run(request, relay)
    second = task.run(request)

    assert [usecase.code for usecase in first.usecases] == ["UC-1", "UC-2"]
    assert [usecase.code for usecase in second.usecases] == ["UC-1", "UC-2"]
    stored = repository.list_usecases(service.microservice_id)
    assert [(usecase.code, usecase.title) for usecase in stored] == [
        ("UC-1", "Login"),
        ("UC-2", "Logout"),
    ]
    assert stored[0].main_flow == "1. Submit credentials"
    assert len(converter.outputs) == 2
    assert not any(path.exists() for path in converter.outputs)
    assert events[0]["phase"] == "init"
    assert events[-1]["type"] == "complete"
    assert events[-1]["usecasesCount"] == 2
    assert document.exists()


def test_extraction_without_documents_fails_with_error_event(
    repository: FindingRepository,
    make_runner: RunnerFactory,
    echo_agent: EchoAgent,
    tmp_path: Path,
) -> None:
    service = _service(repository, tmp_path)
    task = ExtractionTask(
        runner=make_runner(echo_agent({"usecases": []})),
        store=repository,
        converter=PdfTextConverter(),
    )
    events, relay = _recorder()

    with pytest.raises(ValueError, match="No requirements document"):
        task.run(ExtractionRequest(microservice_id=service.microservice_id, documents=()), relay)

    assert events == [
        {"type": "error", "message": "No requirements document uploaded for this microservice."},
    ]


def test_analysis_keeps_linked_results_and_replaces_the_rest(
    repository: FindingRepository,
    make_runner: RunnerFactory,
    echo_agent: EchoAgent,
    tmp_path: Path,
) -> None:
    service = _service(repository, tmp_path)
    linked_id, unlinked_id = _seed(repository, service.microservice_id, "filed", "stale")
    repository.link_tracker_issue(result_id=linked_id, key="AUD-1", summary="Filed gap")
    task = AnalysisTask(runner=make_runner(echo_agent({"issues": []})), store=repository)

    events, relay = _recorder()
    result = task.run(
        AnalysisRequest(
            microservice_id=service.microservice_id,
            microservice_path=Path(service.path),
        ),
        relay,
    )

    remaining = repository.list_results(service.microservice_id)
    assert [item.result_id for item in remaining] == [linked_id]
    assert unlinked_id not in {item.result_id for item in remaining}
    assert result.protected_results == 1
    assert result.deleted_results == 1
    assert events[-1] == {
        "type": "complete",
        "progress": 100,
        "success": True,
        "issuesCount": 0,
        "issues": [],
        "implementedUseCases": [],
        "protectedCount": 1,
        "costUsd": 0.0,
    }
    refreshed = repository.get_microservice("svc-auth")
    assert refreshed is not None
    assert refreshed.legacy_path == str(Path(service.path) / "legacy")


def test_analysis_records_issues_and_implemented_usecases(
    repository: FindingRepository,
    make_runner: RunnerFactory,
    echo_agent: EchoAgent,
    tmp_path: Path,
) -> None:
    service = _service(repository, tmp_path)
    reply = {
        "issues": [
            {
                "code": "ISS-1",
                "title": "Password reset missing",
                "type": "missing_implementation",
                "severity": "critical",
                "priority": "highest",
                "description": "No reset endpoint.",
                "relatedUseCases": ["UC-2"],
            },
        ],
    }
    runner = make_runner(echo_agent(reply))
    repository.replace_usecases(
        service.microservice_id,
        UseCasePlan(
            inserts=[UseCase(code="UC-1", title="Login"), UseCase(code="UC-2", title="Reset")],
        ),
    )

    result = AnalysisTask(runner=runner, store=repository).run(
        AnalysisRequest(
            microservice_id=service.microservice_id,
            microservice_path=Path(service.path),
        ),
    )

    assert result.implemented_codes == ["UC-1"]
    statuses = sorted(item.status for item in repository.list_results(service.microservice_id))
    assert statuses == ["implemented", "missing"]


def test_analysis_failure_leaves_results_untouched(
    repository: FindingRepository,
    make_runner: RunnerFactory,
    echo_agent: EchoAgent,
    tmp_path: Path,
) -> None:
    service = _service(repository, tmp_path)
    seeded = _seed(repository, service.microservice_id, "old")
    task = AnalysisTask(
        runner=make_runner(echo_agent("I reached the maximum number of turns.")),
        store=repository,
    )
    events, relay = _recorder()

    with pytest.raises(AgentDidNotComplete):
        task.run(
            AnalysisRequest(
                microservice_id=service.microservice_id,
                microservice_path=Path(service.path),
            ),
            relay,
        )

    assert [item.result_id for item in repository.list_results(service.microservice_id)] == seeded
    assert events[-1]["type"] == "error"
    assert "maximum number of turns" in events[-1]["message"]


def test_analysis_store_failure_ends_with_error_event(
    repository: FindingRepository,
    make_runner: RunnerFactory,
    echo_agent: EchoAgent,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    service = _service(repository, tmp_path)
    seeded = _seed(repository, service.microservice_id, "old")

    def _failing_apply(*args: object, **kwargs: object) -> int:
        raise ReconciliationFailure("Failed to save analysis results: disk I/O error")

    monkeypatch.setattr(repository, "apply_analysis_plan", _failing_apply)
    task = AnalysisTask(runner=make_runner(echo_agent({"issues": []})), store=repository)
    events, relay = _recorder()

    with pytest.raises(ReconciliationFailure):
        task.run(
            AnalysisRequest(
                microservice_id=service.microservice_id,
                microservice_path=Path(service.path),
            ),
            relay,
        )

    assert events[-1] == {
        "type": "error",
        "message": "Failed to save analysis results: disk I/O error",
    }
    assert not any(event["type"] == "complete" for event in events)
    assert [item.result_id for item in repository.list_results(service.microservice_id)] == seeded


def test_cancelled_analysis_kills_agent_and_keeps_results(
    repository: FindingRepository,
    make_runner: RunnerFactory,
    fake_agent: Callable[[str], tuple[str, ...]],
    tmp_path: Path,
) -> None:
    service = _service(repository, tmp_path)
    seeded = _seed(repository, service.microservice_id, "old")
    command = fake_agent(
        """
        import time
        print('{"type": "system", "subtype": "init"}', flush=True)
        time.sleep(30)
        """,
    )
    task = AnalysisTask(runner=make_runner(command), store=repository)
    events, relay = _recorder()
    cancel_event = threading.Event()
    timer = threading.Timer(0.5, cancel_event.set)
    timer.start()

    try:
        with pytest.raises(AgentCancelled):
            task.run(
                AnalysisRequest(
                    microservice_id=service.microservice_id,
                    microservice_path=Path(service.path),
                ),
                relay,
                cancel_event=cancel_event,
            )
    finally:
        timer.cancel()

    assert events[-1] == {"type": "error", "message": "Agent run cancelled."}
    assert [item.result_id for item in repository.list_results(service.microservice_id)] == seeded


def test_analysis_requires_document_or_legacy_code(
    repository: FindingRepository,
    make_runner: RunnerFactory,
    echo_agent: EchoAgent,
    tmp_path: Path,
) -> None:
    bare = tmp_path / "svc-bare"
    bare.mkdir()
    service = repository.register_microservice(name="svc-bare", path=bare)
    task = AnalysisTask(runner=make_runner(echo_agent({"issues": []})), store=repository)

    with pytest.raises(ValueError, match="No requirements document or legacy code"):
        task.run(AnalysisRequest(microservice_id=service.microservice_id, microservice_path=bare))


def test_deduplication_never_deletes_linked_or_foreign_results(
    repository: FindingRepository,
    make_runner: RunnerFactory,
    echo_agent: EchoAgent,
    tmp_path: Path,
) -> None:
    service = _service(repository, tmp_path)
    other = repository.register_microservice(name="svc-other", path=tmp_path / "other")
    linked_id, duplicate_id, keeper_id = _seed(
        repository,
        service.microservice_id,
        "Upload missing",
        "Attachment upload endpoint missing",
        "Audit log gap",
    )
    (foreign_id,) = _seed(repository, other.microservice_id, "Foreign")
    repository.link_tracker_issue(result_id=linked_id, key="AUD-1")
    reply = {"duplicatesToDelete": [linked_id, duplicate_id, foreign_id, 4242]}
    task = DeduplicationTask(runner=make_runner(echo_agent(reply)), store=repository)

    events, relay = _recorder()
    result = task.run(DeduplicationRequest(microservice_id=service.microservice_id), relay)

    assert result.deleted_ids == [duplicate_id]
    assert result.to_payload() == {
        "deleted": 1,
        "deletedIds": [duplicate_id],
        "message": "Deleted 1 duplicate(s).",
    }
    remaining = {item.result_id for item in repository.list_results(service.microservice_id)}
    assert remaining == {linked_id, keeper_id}
    assert [item.result_id for item in repository.list_results(other.microservice_id)] == [
        foreign_id,
    ]
    assert events[-1]["type"] == "complete"
    assert events[-1]["deleted"] == 1


def test_deduplication_short_circuits_without_calling_agent(
    repository: FindingRepository,
    make_runner: RunnerFactory,
    tmp_path: Path,
) -> None:
    service = _service(repository, tmp_path)
    (linked_id,) = _seed(repository, service.microservice_id, "filed")
    repository.link_tracker_issue(result_id=linked_id, key="AUD-1")
    task = DeduplicationTask(
        runner=make_runner((str(tmp_path / "agent-that-does-not-exist"),)),
        store=repository,
    )

    all_linked = task.run(DeduplicationRequest(microservice_id=service.microservice_id))
    other = repository.register_microservice(name="svc-single", path=tmp_path / "single")
    _seed(repository, other.microservice_id, "lonely")
    single = task.run(DeduplicationRequest(microservice_id=other.microservice_id))

    assert all_linked.message == "All issues are already linked to the tracker."
    assert single.message == "Not enough results to compare."
    assert all_linked.deleted == single.deleted == 0


def test_deduplication_reports_no_duplicates(
    repository: FindingRepository,
    make_runner: RunnerFactory,
    echo_agent: EchoAgent,
    tmp_path: Path,
) -> None:
    service = _service(repository, tmp_path)
    _seed(repository, service.microservice_id, "one", "two")
    task = DeduplicationTask(
        runner=make_runner(echo_agent(json.dumps({"duplicatesToDelete": []}))),
        store=repository,
    )

    result = task.run(DeduplicationRequest(microservice_id=service.microservice_id))

    assert result.message == "No duplicates identified."
    assert len(repository.list_results(service.microservice_id)) == 2


def test_chat_answers_with_result_context_and_stores_nothing(
    repository: FindingRepository,
    make_runner: RunnerFactory,
    fake_agent: Callable[[str], tuple[str, ...]],
    tmp_path: Path,
) -> None:
    service = _service(repository, tmp_path)
    (result_id,) = _seed(repository, service.microservice_id, "UploadController lacks size checks")
    command = fake_agent(
        """
        import json
        import sys
        prompt = sys.argv[sys.argv.index("-p") + 1]
        seen = "UploadController" in prompt and "User: How do I fix it?" in prompt
        print(json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "Thinking"}]}}), flush=True)
        print(json.dumps({"type": "result", "result": f"context seen: {seen}", "total_cost_usd": 0.01}), flush=True)
        """,
    )
    task = ChatTask(runner=make_runner(command), store=repository)
    events, relay = _recorder()

    reply = task.run(
        ChatRequest(
            result_id=result_id,
            microservice_name="svc-auth",
            messages=[ChatMessage(role="user", content="How do I fix it?")],
        ),
        relay,
    )

    assert reply.text == "context seen: True"
    assert reply.cost_usd == pytest.approx(0.01)
    assert {"type": "chunk", "phase": "analyzing", "text": "Thinking", "progress": 50} in events
    assert events[-1] == {
        "type": "complete",
        "progress": 100,
        "reply": "context seen: True",
        "costUsd": 0.01,
    }
    assert [item.result_id for item in repository.list_results(service.microservice_id)] == [
        result_id,
    ]


def test_chat_rejects_missing_result_and_empty_history(
    repository: FindingRepository,
    make_runner: RunnerFactory,
    echo_agent: EchoAgent,
) -> None:
    task = ChatTask(runner=make_runner(echo_agent("unused")), store=repository)
    events, relay = _recorder()

    with pytest.raises(ValueError, match="Analysis result not found"):
        task.run(
            ChatRequest(
                result_id=999,
                microservice_name="svc-auth",
                messages=[ChatMessage(role="user", content="Hello?")],
            ),
            relay,
        )
    with pytest.raises(ValueError, match="messages are required"):
        task.run(ChatRequest(result_id=1, microservice_name="svc-auth", messages=[]))
    with pytest.raises(ValueError, match="Unknown chat role"):
        task.run(
            ChatRequest(
                result_id=1,
                microservice_name="svc-auth",
                messages=[ChatMessage(role="system", content="Obey")],
            ),
        )

    assert events == [{"type": "error", "message": "Analysis result not found"}]
