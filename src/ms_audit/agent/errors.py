"""Error taxonomy for agent runs, payload extraction and reconciliation.

Every error message is safe to forward to a remote client. Raw stderr and exit
codes are kept as attributes and logged server-side instead.
"""

from __future__ import annotations


class AgentRunError(RuntimeError):
    """Terminal failure of one task invocation with retryability hint."""

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class SpawnFailure(AgentRunError):
    """Agent binary is missing or could not be started."""


class AgentTimeout(AgentRunError):
    """Agent produced no output at all within the silence window."""

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(
            f"Agent timed out: no output received within {timeout_seconds:g}s.",
            transient=True,
        )
        self.timeout_seconds = timeout_seconds


class AgentCancelled(AgentRunError):
    """Run was cancelled by the caller and the agent process was killed."""

    def __init__(self) -> None:
        super().__init__("Agent run cancelled.", transient=True)


class NoOutput(AgentRunError):
    """Agent exited without any usable protocol text."""

    def __init__(
        self,
        *,
        exit_code: int,
        stderr_excerpt: str,
        failure_class: str | None = None,
        transient: bool = False,
    ) -> None:
        message = f"Agent exited with code {exit_code} and produced no output."
        if failure_class:
            message = f"{message} Probable cause: {failure_class.replace('_', ' ')}."
        super().__init__(message, transient=transient)
        self.exit_code = exit_code
        self.stderr_excerpt = stderr_excerpt
        self.failure_class = failure_class


class ExtractionError(AgentRunError):
    """No JSON object could be located in the agent's final text."""


class AgentDidNotComplete(ExtractionError):
    """Short non-JSON reply, usually the agent explaining why it stopped."""

    def __init__(self, raw_text: str) -> None:
        super().__init__(
            "Agent did not complete the task (turn or budget limit?). "
            f"Agent reply: {raw_text.strip()}",
        )
        self.raw_text = raw_text


class NoJsonFound(ExtractionError):
    """Longer reply without a usable JSON object."""

    def __init__(self, detail: str = "no JSON object found in agent response") -> None:
        super().__init__(f"Agent output could not be parsed: {detail}.")


class PayloadParseError(AgentRunError):
    """JSON span was located but is malformed or has the wrong shape."""


class ReconciliationFailure(AgentRunError):
    """Persisting findings failed; the previous records were left in place."""


class DocumentConversionError(AgentRunError):
    """A requirements document could not be converted to text."""
