from __future__ import annotations

import shlex
from collections.abc import Callable
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from ms_audit import __version__
from ms_audit.agent.echo_agent import EMPTY_FINDINGS_REPLY
from ms_audit.main import ms_audit
from ms_audit.storage.repository import FindingRepository
from ms_audit.tasks.models import ResultWrite
from ms_audit.tasks.reconcile import AnalysisPlan

pytestmark = [
    allure.epic("Operations"),
    allure.feature("CLI"),
]

EchoAgent = Callable[[dict[str, object] | str], tuple[str, ...]]


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "audit.db"


@pytest.fixture()
def use_echo_agent(
    monkeypatch: pytest.MonkeyPatch,
    echo_agent: EchoAgent,
) -> Callable[[dict[str, object] | str], None]:
    def _use(reply: dict[str, object] | str) -> None:
        monkeypatch.setenv("MS_AUDIT_AGENT_COMMAND", shlex.join(echo_agent(reply)))

    return _use


def test_version() -> None:
    result = CliRunner().invoke(ms_audit, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_db_init_and_microservice_registration(db_path: Path, tmp_path: Path) -> None:
    service_dir = tmp_path / "svc-auth"
    service_dir.mkdir()
    runner = CliRunner()

    init = runner.invoke(ms_audit, ["db", "init", "--db-path", str(db_path)])
    add = runner.invoke(
        ms_audit,
        ["microservices", "add", "svc-auth", str(service_dir), "--db-path", str(db_path)],
    )
    listing = runner.invoke(ms_audit, ["microservices", "list", "--db-path", str(db_path)])

    assert init.exit_code == 0, init.output
    assert f"Database ready: {db_path}" in init.output
    assert add.exit_code == 0, add.output
    assert "name=svc-auth" in add.output
    assert listing.exit_code == 0, listing.output
    assert "svc-auth" in listing.output
    assert "last_analysis=never" in listing.output


def test_microservices_list_when_empty(db_path: Path) -> None:
    result = CliRunner().invoke(ms_audit, ["microservices", "list", "--db-path", str(db_path)])

    assert result.exit_code == 0
    assert "No microservices registered." in result.output


def test_microservices_sync_reads_directory(db_path: Path, tmp_path: Path) -> None:
    root = tmp_path / "services"
    (root / "svc-a").mkdir(parents=True)
    (root / "lib").mkdir()

    result = CliRunner().invoke(
        ms_audit,
        [
            "microservices",
            "sync",
            "--db-path",
            str(db_path),
            "--directory",
            str(root),
            "--pattern",
            "svc-*",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "1 new microservice(s)" in result.output
    assert "+ svc-a" in result.output


def test_sync_without_directory_is_usage_error(
    db_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.delenv("MS_AUDIT_MICROSERVICES_DIRECTORY", raising=False)

    result = CliRunner().invoke(ms_audit, ["microservices", "sync", "--db-path", str(db_path)])

    assert result.exit_code == 1
    assert "No microservices directory" in result.output


def test_analyze_then_link_protects_result(
    db_path: Path,
    tmp_path: Path,
    use_echo_agent: Callable[[dict[str, object]], None],
) -> None:
    service_dir = tmp_path / "svc-auth"
    (service_dir / "legacy").mkdir(parents=True)
    runner = CliRunner()
    runner.invoke(
        ms_audit,
        ["microservices", "add", "svc-auth", str(service_dir), "--db-path", str(db_path)],
    )
    use_echo_agent(
        {
            "issues": [
                {
                    "code": "ISS-1",
                    "title": "Session timeout missing",
                    "type": "missing_implementation",
                    "severity": "high",
                    "priority": "high",
                    "description": "Sessions never expire.",
                },
            ],
        },
    )

    first = runner.invoke(ms_audit, ["analyze", "svc-auth", "--db-path", str(db_path)])
    repository = FindingRepository(db_path)
    try:
        service = repository.get_microservice("svc-auth")
        assert service is not None
        (result_row,) = repository.list_results(service.microservice_id)
    finally:
        repository.close()
    link = runner.invoke(
        ms_audit,
        [
            "results",
            "link",
            str(result_row.result_id),
            "AUD-11",
            "--summary",
            "Session timeout",
            "--db-path",
            str(db_path),
        ],
    )
    use_echo_agent({"issues": []})
    second = runner.invoke(ms_audit, ["analyze", "svc-auth", "--db-path", str(db_path)])
    listing = runner.invoke(ms_audit, ["results", "list", "svc-auth", "--db-path", str(db_path)])

    assert first.exit_code == 0, first.output
    assert "1 issue(s)" in first.output
    assert "[high] ISS-1  Session timeout missing" in first.output
    assert link.exit_code == 0, link.output
    assert "linked to AUD-11" in link.output
    assert second.exit_code == 0, second.output
    assert "1 tracker-linked result(s) kept" in second.output
    assert "AUD-11" in listing.output
    assert "Session timeout" in listing.output


def test_results_ask_prints_agent_reply(
    db_path: Path,
    tmp_path: Path,
    use_echo_agent: Callable[[dict[str, object] | str], None],
) -> None:
    service_dir = tmp_path / "svc-auth"
    (service_dir / "legacy").mkdir(parents=True)
    repository = FindingRepository(db_path)
    try:
        repository.init_schema()
        service = repository.register_microservice(name="svc-auth", path=service_dir)
        repository.apply_analysis_plan(
            service.microservice_id,
            AnalysisPlan(
                inserts=[
                    ResultWrite(status="missing", confidence="high", evidence="No expiry", notes=None),
                ],
            ),
        )
        (stored,) = repository.list_results(service.microservice_id)
    finally:
        repository.close()
    answer = "Add an expiry timestamp to the session table and reject stale tokens on refresh."
    use_echo_agent(answer)
    runner = CliRunner()

    asked = runner.invoke(
        ms_audit,
        [
            "results",
            "ask",
            "svc-auth",
            str(stored.result_id),
            "Where to start?",
            "--db-path",
            str(db_path),
        ],
    )
    unknown = runner.invoke(
        ms_audit,
        ["results", "ask", "svc-auth", "999", "Where to start?", "--db-path", str(db_path)],
    )

    assert asked.exit_code == 0, asked.output
    assert answer in asked.output
    assert "cost: $0.0000" in asked.output
    assert unknown.exit_code == 1
    assert "Analysis result not found: 999" in unknown.output


def test_extract_with_document_option(
    db_path: Path,
    tmp_path: Path,
    use_echo_agent: Callable[[dict[str, object]], None],
) -> None:
    service_dir = tmp_path / "svc-auth"
    service_dir.mkdir()
    document = tmp_path / "requirements.txt"
    document.write_text("UC-7 Export report", "utf-8")
    runner = CliRunner()
    runner.invoke(
        ms_audit,
        ["microservices", "add", "svc-auth", str(service_dir), "--db-path", str(db_path)],
    )
    use_echo_agent({"usecases": [{"code": "UC-7", "title": "Export report"}]})

    result = runner.invoke(
        ms_audit,
        ["extract", "svc-auth", "--document", str(document), "--db-path", str(db_path)],
    )

    assert result.exit_code == 0, result.output
    assert "Extracted 1 use case(s) for svc-auth" in result.output
    assert "UC-7  Export report" in result.output


def test_unknown_microservice_is_reported(db_path: Path) -> None:
    result = CliRunner().invoke(ms_audit, ["dedup", "nope", "--db-path", str(db_path)])

    assert result.exit_code == 1
    assert "Microservice not found: nope" in result.output


def test_link_unknown_result_fails(db_path: Path) -> None:
    result = CliRunner().invoke(
        ms_audit,
        ["results", "link", "404", "AUD-1", "--db-path", str(db_path)],
    )

    assert result.exit_code == 1
    assert "Analysis result not found" in result.output


def test_agent_smoke_with_echo_agent(echo_agent: EchoAgent) -> None:
    command = shlex.join(echo_agent(EMPTY_FINDINGS_REPLY))
    runner = CliRunner()

    passed = runner.invoke(
        ms_audit,
        ["agent", "smoke", "--agent-command", command, "--expect-substring", "issues"],
    )
    failed = runner.invoke(ms_audit, ["agent", "smoke", "--agent-command", command])

    assert passed.exit_code == 0, passed.output
    assert "json keys: duplicatesToDelete, issues, usecases" in passed.output
    assert failed.exit_code == 1
    assert "expected substring not found: 'OK'" in failed.output
    assert "Agent smoke check failed." in failed.output
