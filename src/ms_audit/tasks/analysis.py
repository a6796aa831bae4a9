"""Microservice analysis against requirements and legacy code."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

from ms_audit.agent.cli_runner import CliAgentRunner
from ms_audit.agent.extractor import SHORT_RESPONSE_THRESHOLD, extract_json_payload, load_json_object
from ms_audit.progress import ProgressRelay
from ms_audit.tasks.models import Issue, LinkedIssue, StoredUseCase, parse_issues
from ms_audit.tasks.prompts import ANALYSIS_PAYLOAD_MARKERS, build_analysis_prompt
from ms_audit.tasks.reconcile import plan_analysis
from ms_audit.tasks.store import FindingStore, terminal_events

logger = logging.getLogger(__name__)

LEGACY_PATH_CANDIDATES: tuple[str, ...] = ("docs/aspx", "docs/legacy", "legacy", "aspx")


def find_legacy_path(microservice_path: Path) -> Path | None:
    """Return the first conventional legacy-code directory inside the microservice."""

    for candidate in LEGACY_PATH_CANDIDATES:
        path = microservice_path / candidate
        if path.is_dir():
            return path
    return None


@dataclass(slots=True)
class AnalysisRequest:
    microservice_id: int
    microservice_path: Path
    document_path: Path | None = None
    legacy_path: Path | None = None
    usecases: list[StoredUseCase] | None = None
    linked_issues: list[LinkedIssue] = field(default_factory=list)
    prompt_template: str | None = None


@dataclass(slots=True)
class AnalysisResult:
    issues: list[Issue] = field(default_factory=list)
    implemented_codes: list[str] = field(default_factory=list)
    deleted_results: int = 0
    protected_results: int = 0
    cost_usd: float | None = None

    def to_event_fields(self) -> dict[str, object]:
        return {
            "success": True,
            "issuesCount": len(self.issues),
            "issues": [issue.to_payload() for issue in self.issues],
            "implementedUseCases": list(self.implemented_codes),
            "protectedCount": self.protected_results,
            "costUsd": self.cost_usd,
        }


class AnalysisTask:
    """Ask the agent for issues and reconcile them with the stored results."""

    def __init__(
        self,
        *,
        runner: CliAgentRunner,
        store: FindingStore,
        short_threshold: int = SHORT_RESPONSE_THRESHOLD,
    ) -> None:
        self.runner = runner
        self.store = store
        self.short_threshold = short_threshold

    def run(
        self,
        request: AnalysisRequest,
        progress: ProgressRelay | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> AnalysisResult:
        relay = progress or ProgressRelay()
        with terminal_events(relay, task_name="Analysis"):
            result = self._run(request, relay, cancel_event)
        relay.complete(**result.to_event_fields())
        return result

    def _run(
        self,
        request: AnalysisRequest,
        relay: ProgressRelay,
        cancel_event: threading.Event | None,
    ) -> AnalysisResult:
        legacy_path = request.legacy_path or find_legacy_path(request.microservice_path)
        if request.document_path is None and legacy_path is None:
            raise ValueError("No requirements document or legacy code found.")

        relay.status("init", "Initializing analysis...")
        usecases = request.usecases
        if usecases is None:
            usecases = self.store.list_usecases(request.microservice_id)

        prompt = build_analysis_prompt(
            microservice_path=str(request.microservice_path),
            document_path=str(request.document_path) if request.document_path else None,
            legacy_path=str(legacy_path) if legacy_path else None,
            usecases=usecases,
            linked_issues=request.linked_issues,
            template=request.prompt_template,
        )
        relay.emit("preparing", "Preparing prompt...")
        relay.emit("info", f"Prompt length: {len(prompt)} chars")

        allowed_paths = [request.microservice_path]
        if request.document_path is not None:
            allowed_paths.append(request.document_path)
        if legacy_path is not None:
            allowed_paths.append(legacy_path)
        invocation = self.runner.invocation(
            prompt,
            allowed_paths=allowed_paths,
            payload_markers=ANALYSIS_PAYLOAD_MARKERS,
        )
        run = self.runner.run(invocation, progress=relay, cancel_event=cancel_event)

        relay.emit("parsing", "Parsing response...")
        payload = load_json_object(extract_json_payload(run.text, short_threshold=self.short_threshold))
        issues = parse_issues(payload)

        relay.status("saving", f"Saving {len(issues)} issue(s)...")
        plan = plan_analysis(
            existing_results=self.store.list_results(request.microservice_id),
            issues=issues,
            usecases=usecases,
        )
        self.store.apply_analysis_plan(
            request.microservice_id,
            plan,
            report_json=json.dumps(
                {"issues": [issue.to_payload() for issue in issues]},
                ensure_ascii=False,
                indent=2,
            ),
            legacy_path=str(legacy_path) if legacy_path else None,
        )
        logger.info(
            "Analysis of microservice %s: %d issue(s), %d implemented use case(s), "
            "%d result(s) replaced, %d protected",
            request.microservice_id,
            len(issues),
            len(plan.implemented_codes),
            len(plan.delete_result_ids),
            len(plan.protected_result_ids),
        )
        return AnalysisResult(
            issues=issues,
            implemented_codes=plan.implemented_codes,
            deleted_results=len(plan.delete_result_ids),
            protected_results=len(plan.protected_result_ids),
            cost_usd=run.cost_usd,
        )
