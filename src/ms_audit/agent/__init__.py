"""Agent process runner, stream decoder and payload extractor."""

from ms_audit.agent.cli_runner import AgentInvocation, AgentRunResult, CliAgentRunner
from ms_audit.agent.errors import (
    AgentCancelled,
    AgentDidNotComplete,
    AgentRunError,
    AgentTimeout,
    ExtractionError,
    NoJsonFound,
    NoOutput,
    PayloadParseError,
    ReconciliationFailure,
    SpawnFailure,
)
from ms_audit.agent.extractor import extract_json_payload, load_json_object

__all__ = [
    "AgentCancelled",
    "AgentDidNotComplete",
    "AgentInvocation",
    "AgentRunError",
    "AgentRunResult",
    "AgentTimeout",
    "CliAgentRunner",
    "ExtractionError",
    "NoJsonFound",
    "NoOutput",
    "PayloadParseError",
    "ReconciliationFailure",
    "SpawnFailure",
    "extract_json_payload",
    "load_json_object",
]
