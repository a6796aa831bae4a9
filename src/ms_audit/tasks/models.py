"""Findings produced by agent tasks and the record views the store exchanges."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ms_audit.agent.errors import PayloadParseError


class ResultStatus(str, Enum):
    """Implementation status recorded for one analysis result."""

    IMPLEMENTED = "implemented"
    PARTIAL = "partial"
    MISSING = "missing"
    UNCLEAR = "unclear"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


ISSUE_TYPES: tuple[str, ...] = (
    "missing_implementation",
    "partial_implementation",
    "legacy_mismatch",
    "behavior_difference",
    "missing_test",
    "security_concern",
    "performance_concern",
    "documentation_gap",
)
SEVERITIES: tuple[str, ...] = ("critical", "high", "medium", "low")
PRIORITIES: tuple[str, ...] = ("highest", "high", "medium", "low", "lowest")
EFFORT_SIZES: tuple[str, ...] = ("XS", "S", "M", "L", "XL")


@dataclass(slots=True)
class Issue:
    """Implementation gap reported by the analysis task."""

    code: str
    title: str
    type: str
    severity: str
    priority: str
    description: str
    related_use_cases: list[str] = field(default_factory=list)
    legacy_reference: str | None = None
    microservice_reference: str | None = None
    acceptance_criteria: list[str] = field(default_factory=list)
    suggested_labels: list[str] = field(default_factory=list)
    estimated_effort: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "title": self.title,
            "type": self.type,
            "severity": self.severity,
            "priority": self.priority,
            "description": self.description,
            "relatedUseCases": list(self.related_use_cases),
            "legacyReference": self.legacy_reference,
            "microserviceReference": self.microservice_reference,
            "acceptanceCriteria": list(self.acceptance_criteria),
            "suggestedLabels": list(self.suggested_labels),
            "estimatedEffort": self.estimated_effort,
        }


@dataclass(slots=True)
class UseCase:
    """Use case extracted from a requirements document."""

    code: str
    title: str
    description: str = ""
    actors: str = ""
    preconditions: str = ""
    main_flow: str = ""
    alternative_flows: str = ""

    def to_payload(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "title": self.title,
            "description": self.description,
            "actors": self.actors,
            "preconditions": self.preconditions,
            "mainFlow": self.main_flow,
            "alternativeFlows": self.alternative_flows,
        }


@dataclass(slots=True)
class ChatMessage:
    """One turn of a conversation about an analysis result."""

    role: str
    content: str


@dataclass(slots=True)
class LinkedIssue:
    """Tracker issue already filed for a microservice."""

    key: str
    summary: str


@dataclass(slots=True)
class StoredUseCase:
    use_case_id: int
    microservice_id: int
    code: str
    title: str
    description: str
    actors: str
    preconditions: str
    main_flow: str
    alternative_flows: str


@dataclass(slots=True)
class StoredResult:
    """Persisted analysis result, protected once it carries a tracker key."""

    result_id: int
    microservice_id: int
    usecase_id: int | None
    status: str
    confidence: str | None
    evidence: str | None
    notes: str | None
    issue_code: str | None = None
    tracker_key: str | None = None
    tracker_summary: str | None = None
    analyzed_at: datetime | None = None

    @property
    def is_linked(self) -> bool:
        return bool(self.tracker_key)

    @property
    def display_title(self) -> str:
        if self.tracker_summary:
            return self.tracker_summary
        if self.evidence:
            return self.evidence
        if self.notes:
            return self.notes[:300]
        return "Untitled"


@dataclass(slots=True)
class ResultWrite:
    """Insert payload for one analysis result."""

    status: str
    confidence: str | None
    evidence: str | None
    notes: str | None
    usecase_id: int | None = None
    issue_code: str | None = None
    issue_json: str | None = None


@dataclass(slots=True)
class MicroserviceView:
    microservice_id: int
    name: str
    path: str
    document_path: str | None
    legacy_path: str | None
    excluded: bool
    last_analysis: datetime | None


def parse_issues(payload: dict[str, Any]) -> list[Issue]:
    """Normalize the ``issues`` array of an analysis payload."""

    raw_items = _require_list(payload, "issues")
    issues: list[Issue] = []
    for item in raw_items:
        if not isinstance(item, dict):
            continue
        issue_type = _text(item.get("type")) or "missing_implementation"
        issues.append(
            Issue(
                code=_text(item.get("code")),
                title=_text(item.get("title")),
                type=issue_type,
                severity=_choice(item.get("severity"), SEVERITIES, default="medium"),
                priority=_choice(item.get("priority"), PRIORITIES, default="medium"),
                description=_text(item.get("description")),
                related_use_cases=_string_list(item.get("relatedUseCases")),
                legacy_reference=_text(item.get("legacyReference")) or None,
                microservice_reference=_text(item.get("microserviceReference")) or None,
                acceptance_criteria=_string_list(item.get("acceptanceCriteria")),
                suggested_labels=_string_list(item.get("suggestedLabels")),
                estimated_effort=_effort(item.get("estimatedEffort")),
            ),
        )
    return issues


def parse_usecases(payload: dict[str, Any]) -> list[UseCase]:
    """Normalize the ``usecases`` array of an extraction payload."""

    raw_items = _require_list(payload, "usecases")
    usecases: list[UseCase] = []
    for item in raw_items:
        if not isinstance(item, dict):
            continue
        usecases.append(
            UseCase(
                code=_text(item.get("code")),
                title=_text(item.get("title")),
                description=_text(item.get("description")),
                actors=_text(item.get("actors")),
                preconditions=_text(item.get("preconditions")),
                main_flow=_text(item.get("mainFlow")),
                alternative_flows=_text(item.get("alternativeFlows")),
            ),
        )
    return usecases


def parse_duplicate_ids(payload: dict[str, Any]) -> list[int]:
    """Read the identifiers the agent proposes for deletion."""

    ids: list[int] = []
    seen: set[int] = set()
    for value in _require_list(payload, "duplicatesToDelete"):
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            candidate = value
        elif isinstance(value, str) and value.strip().isdigit():
            candidate = int(value.strip())
        else:
            continue
        if candidate in seen:
            continue
        seen.add(candidate)
        ids.append(candidate)
    return ids


def issue_type_to_status(issue_type: str) -> ResultStatus:
    if issue_type == "missing_implementation":
        return ResultStatus.MISSING
    if issue_type == "partial_implementation":
        return ResultStatus.PARTIAL
    return ResultStatus.UNCLEAR


def severity_to_confidence(severity: str) -> Confidence:
    if severity in {"critical", "high"}:
        return Confidence.HIGH
    if severity == "medium":
        return Confidence.MEDIUM
    return Confidence.LOW


def build_tracker_description(issue: Issue) -> str:
    """Render an issue as Jira wiki markup for the result notes."""

    lines: list[str] = [f"h3. {issue.title}", "", issue.description, ""]

    if issue.related_use_cases:
        lines.extend([f"*Related use cases:* {', '.join(issue.related_use_cases)}", ""])
    if issue.legacy_reference:
        lines.extend(["*Legacy reference:*", f"{{code}}{issue.legacy_reference}{{code}}", ""])
    if issue.microservice_reference:
        lines.extend([f"*Microservice reference:* {{{{{issue.microservice_reference}}}}}", ""])
    if issue.acceptance_criteria:
        lines.append("*Acceptance criteria:*")
        lines.extend(f"* {criterion}" for criterion in issue.acceptance_criteria)
        lines.append("")
    if issue.estimated_effort:
        lines.append(f"*Estimated effort:* {issue.estimated_effort}")

    return "\n".join(lines).strip()


def _require_list(payload: dict[str, Any], key: str) -> list[Any]:
    value = payload.get(key)
    if value is None:
        raise PayloadParseError(f"Agent JSON has no {key!r} array.")
    if not isinstance(value, list):
        raise PayloadParseError(f"Agent JSON field {key!r} is not an array.")
    return value


def _text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list):
        return "\n".join(str(part).strip() for part in value if part is not None)
    return str(value).strip()


def _string_list(value: object) -> list[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [text for text in (_text(item) for item in value) if text]


def _choice(value: object, allowed: tuple[str, ...], *, default: str) -> str:
    normalized = _text(value).lower()
    return normalized if normalized in allowed else default


def _effort(value: object) -> str | None:
    normalized = _text(value).upper()
    return normalized if normalized in EFFORT_SIZES else None
