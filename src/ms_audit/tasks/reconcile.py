"""Pure reconciliation of extracted findings against persisted records.

Nothing here touches storage: each function turns findings plus a snapshot of
existing records into a plan that the store applies in one transaction.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass, field

from ms_audit.tasks.models import (
    Confidence,
    Issue,
    ResultStatus,
    ResultWrite,
    StoredResult,
    StoredUseCase,
    UseCase,
    build_tracker_description,
    issue_type_to_status,
    severity_to_confidence,
)


@dataclass(slots=True)
class AnalysisPlan:
    """Results to drop and results to insert for one analysis run."""

    delete_result_ids: list[int] = field(default_factory=list)
    protected_result_ids: list[int] = field(default_factory=list)
    inserts: list[ResultWrite] = field(default_factory=list)
    implemented_codes: list[str] = field(default_factory=list)


@dataclass(slots=True)
class UseCasePlan:
    """Full replacement of a microservice's use cases."""

    delete_usecase_ids: list[int] = field(default_factory=list)
    inserts: list[UseCase] = field(default_factory=list)


def normalize_code(code: str) -> str:
    return code.strip().casefold()


def referenced_usecase_codes(issues: Iterable[Issue]) -> set[str]:
    """Normalized use case codes referenced by at least one issue."""

    return {
        normalize_code(code)
        for issue in issues
        for code in issue.related_use_cases
        if code.strip()
    }


def plan_analysis(
    *,
    existing_results: Iterable[StoredResult],
    issues: list[Issue],
    usecases: list[StoredUseCase],
) -> AnalysisPlan:
    """Replace unlinked results with the new issues and implicit implemented use cases."""

    plan = AnalysisPlan()
    for result in existing_results:
        if result.is_linked:
            plan.protected_result_ids.append(result.result_id)
        else:
            plan.delete_result_ids.append(result.result_id)

    usecase_ids = {
        normalize_code(usecase.code): usecase.use_case_id
        for usecase in usecases
        if usecase.code.strip()
    }
    for issue in issues:
        plan.inserts.append(_issue_write(issue, usecase_ids))

    referenced = referenced_usecase_codes(issues)
    for usecase in usecases:
        if normalize_code(usecase.code) in referenced:
            continue
        plan.implemented_codes.append(usecase.code)
        plan.inserts.append(
            ResultWrite(
                status=ResultStatus.IMPLEMENTED.value,
                confidence=Confidence.HIGH.value,
                evidence=_usecase_label(usecase),
                notes="No open issue references this use case.",
                usecase_id=usecase.use_case_id,
            ),
        )
    return plan


def plan_usecase_replacement(
    *,
    existing_usecases: Iterable[StoredUseCase],
    usecases: list[UseCase],
) -> UseCasePlan:
    """Use cases are never protected: every run replaces the whole set."""

    return UseCasePlan(
        delete_usecase_ids=[usecase.use_case_id for usecase in existing_usecases],
        inserts=list(usecases),
    )


def select_deletable_ids(
    *,
    candidate_ids: Iterable[int],
    results: Iterable[StoredResult],
    microservice_id: int,
) -> list[int]:
    """Keep proposed ids that exist, belong to the microservice and are unlinked."""

    by_id = {result.result_id: result for result in results}
    selected: list[int] = []
    for candidate in candidate_ids:
        result = by_id.get(candidate)
        if result is None or result.microservice_id != microservice_id or result.is_linked:
            continue
        if candidate not in selected:
            selected.append(candidate)
    return selected


def _issue_write(issue: Issue, usecase_ids: dict[str, int]) -> ResultWrite:
    usecase_id = None
    for code in issue.related_use_cases:
        usecase_id = usecase_ids.get(normalize_code(code))
        if usecase_id is not None:
            break
    return ResultWrite(
        status=issue_type_to_status(issue.type).value,
        confidence=severity_to_confidence(issue.severity).value,
        evidence=issue.title or issue.microservice_reference or "",
        notes=build_tracker_description(issue),
        usecase_id=usecase_id,
        issue_code=issue.code or None,
        issue_json=json.dumps(issue.to_payload(), ensure_ascii=False),
    )


def _usecase_label(usecase: StoredUseCase) -> str:
    if usecase.code and usecase.title:
        return f"{usecase.code} - {usecase.title}"
    return usecase.code or usecase.title
