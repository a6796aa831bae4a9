"""Use case extraction from requirements documents."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

from ms_audit.agent.cli_runner import CliAgentRunner
from ms_audit.agent.extractor import SHORT_RESPONSE_THRESHOLD, extract_json_payload, load_json_object
from ms_audit.progress import ProgressRelay
from ms_audit.tasks.converter import DocumentConverter
from ms_audit.tasks.models import StoredUseCase, parse_usecases
from ms_audit.tasks.prompts import EXTRACTION_PAYLOAD_MARKERS, build_extraction_prompt
from ms_audit.tasks.reconcile import plan_usecase_replacement
from ms_audit.tasks.store import FindingStore, terminal_events

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ExtractionRequest:
    microservice_id: int
    documents: tuple[Path, ...]


@dataclass(slots=True)
class ExtractionResult:
    usecases: list[StoredUseCase] = field(default_factory=list)
    cost_usd: float | None = None

    def to_event_fields(self) -> dict[str, object]:
        return {
            "success": True,
            "usecasesCount": len(self.usecases),
            "usecases": [
                {"id": usecase.use_case_id, "code": usecase.code, "title": usecase.title}
                for usecase in self.usecases
            ],
            "costUsd": self.cost_usd,
        }


class ExtractionTask:
    """Convert documents, ask the agent for use cases and replace the stored set."""

    def __init__(
        self,
        *,
        runner: CliAgentRunner,
        store: FindingStore,
        converter: DocumentConverter,
        short_threshold: int = SHORT_RESPONSE_THRESHOLD,
    ) -> None:
        self.runner = runner
        self.store = store
        self.converter = converter
        self.short_threshold = short_threshold

    def run(
        self,
        request: ExtractionRequest,
        progress: ProgressRelay | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> ExtractionResult:
        relay = progress or ProgressRelay()
        with terminal_events(relay, task_name="Use case extraction"):
            result = self._run(request, relay, cancel_event)
        relay.complete(**result.to_event_fields())
        return result

    def _run(
        self,
        request: ExtractionRequest,
        relay: ProgressRelay,
        cancel_event: threading.Event | None,
    ) -> ExtractionResult:
        if not request.documents:
            raise ValueError("No requirements document uploaded for this microservice.")

        relay.status("init", "Initializing use case extraction...")
        converted: list[Path] = []
        try:
            for document in request.documents:
                relay.emit("converting", f"Converting {document.name}...")
                converted.append(self.converter.convert(document))

            prompt = build_extraction_prompt(converted)
            relay.emit("preparing", "Preparing prompt...")
            relay.emit("info", f"Prompt length: {len(prompt)} chars")
            invocation = self.runner.invocation(
                prompt,
                allowed_paths=converted,
                payload_markers=EXTRACTION_PAYLOAD_MARKERS,
            )
            run = self.runner.run(invocation, progress=relay, cancel_event=cancel_event)
        finally:
            for path in converted:
                path.unlink(missing_ok=True)

        relay.emit("parsing", "Parsing response...")
        payload = load_json_object(extract_json_payload(run.text, short_threshold=self.short_threshold))
        usecases = parse_usecases(payload)

        relay.status("saving", f"Saving {len(usecases)} use case(s)...")
        plan = plan_usecase_replacement(
            existing_usecases=self.store.list_usecases(request.microservice_id),
            usecases=usecases,
        )
        saved = self.store.replace_usecases(request.microservice_id, plan)
        logger.info(
            "Extracted %d use case(s) for microservice %s (replaced %d)",
            len(saved),
            request.microservice_id,
            len(plan.delete_usecase_ids),
        )
        return ExtractionResult(usecases=saved, cost_usd=run.cost_usd)
