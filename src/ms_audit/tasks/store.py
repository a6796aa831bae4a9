"""Store contract consumed by task orchestrators."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Protocol

from ms_audit.agent.errors import AgentRunError
from ms_audit.progress import ProgressRelay
from ms_audit.tasks.models import StoredResult, StoredUseCase
from ms_audit.tasks.reconcile import AnalysisPlan, UseCasePlan

logger = logging.getLogger(__name__)

UNEXPECTED_ERROR_MESSAGE = "Unexpected error while running the agent task."


class FindingStore(Protocol):
    """Persistence operations an orchestrator needs for one microservice."""

    def list_usecases(self, microservice_id: int) -> list[StoredUseCase]: ...

    def replace_usecases(self, microservice_id: int, plan: UseCasePlan) -> list[StoredUseCase]: ...

    def list_results(self, microservice_id: int) -> list[StoredResult]: ...

    def apply_analysis_plan(
        self,
        microservice_id: int,
        plan: AnalysisPlan,
        *,
        report_json: str | None = None,
        legacy_path: str | None = None,
    ) -> int: ...

    def get_result(self, result_id: int) -> StoredResult | None: ...

    def get_usecase(self, usecase_id: int) -> StoredUseCase | None: ...

    def delete_unlinked_result(self, *, result_id: int, microservice_id: int) -> bool: ...


@contextmanager
def terminal_events(relay: ProgressRelay, *, task_name: str) -> Iterator[None]:
    """Turn an escaping error into the relay's final ``error`` event, then re-raise."""

    try:
        yield
    except (AgentRunError, ValueError) as error:
        logger.warning("%s failed: %s", task_name, error)
        relay.fail(str(error))
        raise
    except Exception:
        logger.exception("%s failed unexpectedly", task_name)
        relay.fail(UNEXPECTED_ERROR_MESSAGE)
        raise
