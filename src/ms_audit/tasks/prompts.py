"""Prompt templates for the extraction, analysis, deduplication and chat tasks."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path

from ms_audit.tasks.models import ChatMessage, LinkedIssue, StoredResult, StoredUseCase

EXTRACTION_PAYLOAD_MARKERS: tuple[str, ...] = ('"usecases"',)
ANALYSIS_PAYLOAD_MARKERS: tuple[str, ...] = ('"issues"',)
DEDUP_PAYLOAD_MARKERS: tuple[str, ...] = ('"duplicatesToDelete"',)

_JSON_OUTPUT_RULES = """
CRITICAL RULES:
- Output ONLY JSON, no text before or after it
- No markdown, no code fences, no comments
- The JSON must start with { and end with }
"""

EXTRACTION_PROMPT = """\
# Use case extraction

You are a business analyst who extracts use cases from requirements documents.

## Instructions

1. FIRST read every document file listed below with the Read tool:
{{documentPaths}}
2. Extract every use case described in them.

## What to look for

1. **Code**: identifiers such as UC-001, UC-002, UseCase1
2. **Title**: descriptive name of the use case
3. **Description**: purpose and goal
4. **Actors**: who interacts with the system
5. **Preconditions**: what must hold before execution
6. **Main flow**: steps of the normal case
7. **Alternative flows**: variants, exceptions, error handling

## Output

After reading the documents return ONLY a valid JSON object with this structure:

{"usecases":[{"code":"UC-001","title":"Use case title","description":"Full description","actors":"Actor1, Actor2","preconditions":"Precondition 1.","mainFlow":"1. Step 1\\n2. Step 2","alternativeFlows":"A1: Alternative flow 1"}]}

- Use "" for fields the document does not provide
- Extract ALL use cases and keep their original codes
- If the documents contain no recognizable use case return {"usecases":[]}
""" + _JSON_OUTPUT_RULES

ANALYSIS_PROMPT = """\
# Microservice analysis

You are a senior software engineer migrating legacy ASPX systems to microservices.

## Context

- **Microservice**: `{{microservicePath}}`
{{#if pdfPath}}- **Requirements document**: `{{pdfPath}}`{{/if}}
{{#if legacyPath}}- **Legacy ASPX code**: `{{legacyPath}}`{{/if}}

{{#if useCases}}## Known use cases

{{useCases}}
{{else}}## Use cases

No use cases were extracted yet: derive them from the requirements document.
{{/if}}
{{#if linkedIssues}}## Already tracked issues

These issues are already filed in the issue tracker. Do NOT report them again:

{{linkedIssues}}
{{/if}}
## Goal

Analyze the microservice and identify the issues to resolve.

## Issue types

- `missing_implementation`: feature is absent
- `partial_implementation`: feature is incomplete
- `legacy_mismatch`: behavior differs from the legacy system
- `behavior_difference`: behavior differs from the requirements
- `missing_test`: feature is not tested
- `security_concern`: security problem
- `performance_concern`: performance problem
- `documentation_gap`: missing documentation

## Allowed values

- **severity**: critical, high, medium, low
- **priority**: highest, high, medium, low, lowest
- **estimatedEffort**: XS, S, M, L, XL

## Output

Return ONLY a valid JSON object with exactly this structure:

{"issues":[{"code":"ISSUE-001","title":"Title","type":"missing_implementation","severity":"high","priority":"high","description":"Description","relatedUseCases":["UC-001"],"legacyReference":null,"microserviceReference":"src/file.ts:45","acceptanceCriteria":["Criterion 1"],"suggestedLabels":["backend"],"estimatedEffort":"M"}]}

Use null for fields that do not apply.
""" + _JSON_OUTPUT_RULES

DEDUP_PROMPT = """\
You are an analyst who identifies DUPLICATE issues.

ISSUES ALREADY IN THE TRACKER (NOT deletable, use them as reference):
{{linkedIssues}}

ISSUES TO REVIEW (may be deleted when duplicated):
{{candidateIssues}}

TASK:
Find which "ISSUES TO REVIEW" are SEMANTIC DUPLICATES of:
1. An issue already in the tracker (same problem described differently)
2. Another issue to review (in that case keep the most descriptive one)

Two issues are duplicates when they describe the SAME problem, even in different words.
Examples of duplicates:
- "Attachment handling not implemented" = "Attachment upload endpoint missing"
- "State check before update" = "Verify registration state on update"

Answer ONLY with a JSON object listing the ids of the issues TO DELETE:
{"duplicatesToDelete":[123,456,789]}

When there are no duplicates:
{"duplicatesToDelete":[]}
"""

CHAT_SYSTEM_PROMPT = """\
You are a senior software engineer helping to analyze an issue found in a microservice.

## Issue context

**Microservice**: {{microserviceName}}
**Status**: {{status}} (confidence: {{confidence}})
{{#if useCase}}
{{useCase}}
{{/if}}{{#if evidence}}
### Evidence in the code
```
{{evidence}}
```
{{/if}}{{#if notes}}
### Analysis notes
{{notes}}
{{/if}}
## Your role

- Answer specific questions about this issue
- Suggest approaches to implement or fix it
- Explain the technical context and its implications
- Help identify dependencies and risks
- Propose acceptance criteria when asked
- Suggest test cases when appropriate

## Guidelines

- Be concise but complete
- Ask for clarification when the context above is not enough
- Base your answers on the context above
"""

STATUS_LABELS: dict[str, str] = {
    "implemented": "Implemented",
    "partial": "Partially implemented",
    "missing": "Not implemented",
    "unclear": "Unclear",
}

_CONDITIONAL_BLOCK = re.compile(
    r"\{\{#if (\w+)\}\}(.*?)(?:\{\{else\}\}(.*?))?\{\{/if\}\}",
    re.DOTALL,
)
_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


def render_template(template: str, values: Mapping[str, str | None]) -> str:
    """Render ``{{var}}`` placeholders and ``{{#if var}}..{{else}}..{{/if}}`` blocks.

    Blocks do not nest. A variable is truthy when it is a non-empty string.
    Placeholders without a value are left as they are.
    """

    def _block(match: re.Match[str]) -> str:
        if values.get(match.group(1)):
            return match.group(2)
        return match.group(3) or ""

    rendered = _CONDITIONAL_BLOCK.sub(_block, template)

    def _placeholder(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in values:
            return match.group(0)
        return values[name] or ""

    return _PLACEHOLDER.sub(_placeholder, rendered)


def build_extraction_prompt(document_paths: Sequence[Path]) -> str:
    listing = "\n".join(f"   - {path}" for path in document_paths)
    return render_template(EXTRACTION_PROMPT, {"documentPaths": listing})


def build_analysis_prompt(
    *,
    microservice_path: str,
    document_path: str | None = None,
    legacy_path: str | None = None,
    usecases: Iterable[StoredUseCase] = (),
    linked_issues: Iterable[LinkedIssue] = (),
    template: str | None = None,
) -> str:
    """Render the analysis prompt; a blank custom template falls back to the built-in one."""

    source = template if template and template.strip() else ANALYSIS_PROMPT
    return render_template(
        source,
        {
            "microservicePath": microservice_path,
            "pdfPath": document_path,
            "legacyPath": legacy_path,
            "useCases": format_usecases(usecases),
            "linkedIssues": format_linked_issues(linked_issues),
        },
    )


def build_dedup_prompt(*, linked: Iterable[StoredResult], candidates: Iterable[StoredResult]) -> str:
    linked_lines = [f"[JIRA:{result.tracker_key}] {result.display_title}" for result in linked]
    candidate_lines = [f"[ID:{result.result_id}] {result.display_title}" for result in candidates]
    return render_template(
        DEDUP_PROMPT,
        {
            "linkedIssues": "\n".join(linked_lines) or "(none)",
            "candidateIssues": "\n".join(candidate_lines),
        },
    )


def format_usecases(usecases: Iterable[StoredUseCase]) -> str:
    lines: list[str] = []
    for usecase in usecases:
        label = f"{usecase.code}: {usecase.title}" if usecase.code else usecase.title
        lines.append(f"- {label}")
        if usecase.description:
            lines.append(f"  {usecase.description}")
    return "\n".join(lines)


def format_linked_issues(linked_issues: Iterable[LinkedIssue]) -> str:
    return "\n".join(f"- [{issue.key}] {issue.summary}" for issue in linked_issues)


def build_chat_prompt(
    *,
    microservice_name: str,
    result: StoredResult,
    usecase: StoredUseCase | None,
    messages: Sequence[ChatMessage],
) -> str:
    """System context for one result followed by the conversation so far."""

    system = render_template(
        CHAT_SYSTEM_PROMPT,
        {
            "microserviceName": microservice_name,
            "status": STATUS_LABELS.get(result.status, result.status),
            "confidence": result.confidence or "unspecified",
            "useCase": format_chat_usecase(usecase) if usecase is not None else None,
            "evidence": result.evidence,
            "notes": result.notes,
        },
    )
    parts = ["## System instructions\n\n", system, "\n## Conversation\n"]
    for message in messages:
        speaker = "User" if message.role == "user" else "Assistant"
        parts.append(f"\n{speaker}: {message.content}\n")
    parts.append("\nAnswer the user's last question:")
    return "".join(parts)


def format_chat_usecase(usecase: StoredUseCase) -> str:
    heading = f"{usecase.code} - {usecase.title}" if usecase.code else usecase.title
    lines = [
        f"### Use case: {heading}",
        "",
        f"**Description**: {usecase.description or 'Not available'}",
    ]
    if usecase.actors:
        lines.append(f"**Actors**: {usecase.actors}")
    if usecase.preconditions:
        lines.append(f"**Preconditions**: {usecase.preconditions}")
    if usecase.main_flow:
        lines.append(f"**Main flow**:\n{usecase.main_flow}")
    if usecase.alternative_flows:
        lines.append(f"**Alternative flows**:\n{usecase.alternative_flows}")
    return "\n".join(lines)
