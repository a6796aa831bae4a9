from __future__ import annotations

import allure
import pytest

from ms_audit.agent.errors import PayloadParseError
from ms_audit.tasks.models import (
    Confidence,
    Issue,
    ResultStatus,
    StoredResult,
    build_tracker_description,
    issue_type_to_status,
    parse_duplicate_ids,
    parse_issues,
    parse_usecases,
    severity_to_confidence,
)

pytestmark = [
    allure.epic("Findings"),
    allure.feature("Payload Models"),
]


def test_parse_issues_normalizes_fields_and_defaults() -> None:
    issues = parse_issues(
        {
            "issues": [
                {
                    "code": " ISS-1 ",
                    "title": "Token refresh missing",
                    "type": "missing_implementation",
                    "severity": "HIGH",
                    "priority": "urgent",
                    "description": ["Line one", "Line two"],
                    "relatedUseCases": "UC-1",
                    "acceptanceCriteria": ["Refresh works", ""],
                    "estimatedEffort": "m",
                },
                "not an object",
                {"title": "Bare issue"},
            ],
        },
    )

    assert len(issues) == 2
    first, bare = issues
    assert first.code == "ISS-1"
    assert first.severity == "high"
    assert first.priority == "medium"
    assert first.description == "Line one\nLine two"
    assert first.related_use_cases == ["UC-1"]
    assert first.acceptance_criteria == ["Refresh works"]
    assert first.estimated_effort == "M"
    assert bare.type == "missing_implementation"
    assert bare.severity == "medium"
    assert bare.estimated_effort is None


def test_parse_usecases_maps_camel_case_fields() -> None:
    usecases = parse_usecases(
        {
            "usecases": [
                {
                    "code": "UC-1",
                    "title": "Login",
                    "mainFlow": "1. Enter credentials",
                    "alternativeFlows": ["2a. Wrong password"],
                },
            ],
        },
    )

    assert usecases[0].main_flow == "1. Enter credentials"
    assert usecases[0].alternative_flows == "2a. Wrong password"
    assert usecases[0].actors == ""


def test_empty_arrays_are_valid_payloads() -> None:
    assert parse_issues({"issues": []}) == []
    assert parse_usecases({"usecases": []}) == []
    assert parse_duplicate_ids({"duplicatesToDelete": []}) == []


@pytest.mark.parametrize(
    ("parser", "payload"),
    [
        (parse_issues, {"usecases": []}),
        (parse_usecases, {"issues": []}),
        (parse_duplicate_ids, {}),
        (parse_issues, {"issues": {"code": "A"}}),
    ],
)
def test_missing_or_wrong_array_is_payload_parse_error(parser, payload) -> None:
    with pytest.raises(PayloadParseError):
        parser(payload)


def test_parse_duplicate_ids_accepts_digit_strings_and_skips_noise() -> None:
    ids = parse_duplicate_ids({"duplicatesToDelete": [3, "4", " 5 ", True, "x", 3, None, 2.5]})

    assert ids == [3, 4, 5]


@pytest.mark.parametrize(
    ("issue_type", "status"),
    [
        ("missing_implementation", ResultStatus.MISSING),
        ("partial_implementation", ResultStatus.PARTIAL),
        ("legacy_mismatch", ResultStatus.UNCLEAR),
    ],
)
def test_issue_type_to_status(issue_type: str, status: ResultStatus) -> None:
    assert issue_type_to_status(issue_type) is status


@pytest.mark.parametrize(
    ("severity", "confidence"),
    [
        ("critical", Confidence.HIGH),
        ("high", Confidence.HIGH),
        ("medium", Confidence.MEDIUM),
        ("low", Confidence.LOW),
    ],
)
def test_severity_to_confidence(severity: str, confidence: Confidence) -> None:
    assert severity_to_confidence(severity) is confidence


def test_tracker_description_renders_optional_sections() -> None:
    issue = Issue(
        code="ISS-2",
        title="Audit log gap",
        type="legacy_mismatch",
        severity="low",
        priority="low",
        description="Legacy wrote an audit entry on every login.",
        related_use_cases=["UC-1", "UC-3"],
        legacy_reference="AuthService.login()",
        microservice_reference="auth/handlers.py",
        acceptance_criteria=["Entry written"],
        estimated_effort="S",
    )

    description = build_tracker_description(issue)

    assert description.startswith("h3. Audit log gap")
    assert "*Related use cases:* UC-1, UC-3" in description
    assert "{code}AuthService.login(){code}" in description
    assert "{{auth/handlers.py}}" in description
    assert "* Entry written" in description
    assert description.endswith("*Estimated effort:* S")


def test_stored_result_display_title_fallbacks() -> None:
    base = StoredResult(
        result_id=1,
        microservice_id=1,
        usecase_id=None,
        status="missing",
        confidence=None,
        evidence=None,
        notes=None,
    )

    assert base.display_title == "Untitled"
    assert base.is_linked is False

    base.notes = "n" * 400
    assert base.display_title == "n" * 300
    base.evidence = "Evidence title"
    assert base.display_title == "Evidence title"
    base.tracker_summary = "Filed summary"
    base.tracker_key = "AUD-7"
    assert base.display_title == "Filed summary"
    assert base.is_linked is True
