"""
Orchestrator module for managing interview sessions and their records.

The session registry lives in orchestrator.session_registry and is
imported from there directly.
"""

from interview_moderator.orchestrator.interview_state import ConversationState, SessionState
from interview_moderator.orchestrator.schemas import (
    AnswerResult,
    InterviewContext,
    OrchestratorEvent,
    QuestionRecord,
    SessionSnapshot,
    UsageSummary,
)

__all__ = [
    "AnswerResult",
    "ConversationState",
    "InterviewContext",
    "OrchestratorEvent",
    "QuestionRecord",
    "SessionSnapshot",
    "SessionState",
    "UsageSummary",
]
