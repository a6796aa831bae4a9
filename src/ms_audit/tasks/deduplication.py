"""Semantic de-duplication of unlinked analysis results."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from ms_audit.agent.cli_runner import CliAgentRunner
from ms_audit.agent.extractor import SHORT_RESPONSE_THRESHOLD, extract_json_payload, load_json_object
from ms_audit.progress import ProgressRelay
from ms_audit.tasks.models import parse_duplicate_ids
from ms_audit.tasks.prompts import DEDUP_PAYLOAD_MARKERS, build_dedup_prompt
from ms_audit.tasks.reconcile import select_deletable_ids
from ms_audit.tasks.store import FindingStore, terminal_events

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DeduplicationRequest:
    microservice_id: int


@dataclass(slots=True)
class DeduplicationResult:
    deleted_ids: list[int] = field(default_factory=list)
    proposed_ids: list[int] = field(default_factory=list)
    message: str = ""
    cost_usd: float | None = None

    @property
    def deleted(self) -> int:
        return len(self.deleted_ids)

    def to_payload(self) -> dict[str, object]:
        return {"deleted": self.deleted, "deletedIds": list(self.deleted_ids), "message": self.message}


class DeduplicationTask:
    """Let the agent spot duplicates; delete only unlinked results it names."""

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
        request: DeduplicationRequest,
        progress: ProgressRelay | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> DeduplicationResult:
        relay = progress or ProgressRelay()
        with terminal_events(relay, task_name="Deduplication"):
            result = self._run(request, relay, cancel_event)
        relay.complete(success=True, **result.to_payload())
        return result

    def _run(
        self,
        request: DeduplicationRequest,
        relay: ProgressRelay,
        cancel_event: threading.Event | None,
    ) -> DeduplicationResult:
        relay.status("init", "Loading analysis results...")
        results = self.store.list_results(request.microservice_id)
        linked = [result for result in results if result.is_linked]
        candidates = [result for result in results if not result.is_linked]

        if not candidates:
            return DeduplicationResult(message="All issues are already linked to the tracker.")
        if len(results) < 2:  # noqa: PLR2004
            return DeduplicationResult(message="Not enough results to compare.")

        prompt = build_dedup_prompt(linked=linked, candidates=candidates)
        relay.emit("preparing", "Preparing prompt...")
        relay.emit("info", f"Comparing {len(candidates)} issue(s) against {len(linked)} tracked")
        invocation = self.runner.invocation(prompt, payload_markers=DEDUP_PAYLOAD_MARKERS)
        run = self.runner.run(invocation, progress=relay, cancel_event=cancel_event)

        relay.emit("parsing", "Parsing response...")
        payload = load_json_object(extract_json_payload(run.text, short_threshold=self.short_threshold))
        proposed = parse_duplicate_ids(payload)
        selectable = select_deletable_ids(
            candidate_ids=proposed,
            results=results,
            microservice_id=request.microservice_id,
        )
        rejected = [result_id for result_id in proposed if result_id not in selectable]
        if rejected:
            logger.warning(
                "Ignoring %d proposed id(s) that are unknown, foreign or linked: %s",
                len(rejected),
                rejected,
            )

        if not selectable:
            return DeduplicationResult(
                proposed_ids=proposed,
                message="No duplicates identified.",
                cost_usd=run.cost_usd,
            )

        relay.status("saving", f"Deleting {len(selectable)} duplicate(s)...")
        deleted_ids = [
            result_id
            for result_id in selectable
            if self.store.delete_unlinked_result(
                result_id=result_id,
                microservice_id=request.microservice_id,
            )
        ]
        logger.info(
            "Deduplication of microservice %s deleted %d of %d proposed result(s)",
            request.microservice_id,
            len(deleted_ids),
            len(proposed),
        )
        return DeduplicationResult(
            deleted_ids=deleted_ids,
            proposed_ids=proposed,
            message=f"Deleted {len(deleted_ids)} duplicate(s).",
            cost_usd=run.cost_usd,
        )
