"""Agent-driven tasks: use case extraction, analysis, de-duplication and chat."""

from ms_audit.tasks.analysis import AnalysisRequest, AnalysisResult, AnalysisTask, find_legacy_path
from ms_audit.tasks.chat import ChatReply, ChatRequest, ChatTask
from ms_audit.tasks.deduplication import DeduplicationRequest, DeduplicationResult, DeduplicationTask
from ms_audit.tasks.extraction import ExtractionRequest, ExtractionResult, ExtractionTask

__all__ = [
    "AnalysisRequest",
    "AnalysisResult",
    "AnalysisTask",
    "ChatReply",
    "ChatRequest",
    "ChatTask",
    "DeduplicationRequest",
    "DeduplicationResult",
    "DeduplicationTask",
    "ExtractionRequest",
    "ExtractionResult",
    "ExtractionTask",
    "find_legacy_path",
]
