"""
Interview session state.

Tracks the live state of one interview attempt: its questions, answered
results, usage totals and the per-question conversation state used by
the silence and intent handling.
"""

import asyncio
import time
from datetime import datetime, timezone
from uuid import uuid4

from interview_moderator.errors import UnknownQuestion
from interview_moderator.orchestrator.schemas import (
    AnswerResult,
    CandidateResponse,
    ConversationTurn,
    DeflectionRecord,
    InterventionLevel,
    InterventionRecord,
    InterviewContext,
    QuestionHistoryEntry,
    QuestionKind,
    QuestionRecord,
    UsageCounter,
)


class ConversationState:
    """
    Conversation state for a single question.

    Created when the question is first asked and discarded with the session.
    The intervention level only increases until a new question resets it.
    """

    def __init__(self, question_id: str) -> None:
        self.question_id = question_id
        self.intervention_level: InterventionLevel = InterventionLevel.NONE
        self.silence_duration_ms: float = 0.0
        self.candidate_response: CandidateResponse | None = None
        self.interventions: list[InterventionRecord] = []
        self.deflections: list[DeflectionRecord] = []
        self.question_attempts: int = 0
        self.turns: list[ConversationTurn] = []
        self.buffer: str = ""
        self.interim: str = ""
        self.last_analysis_ms: float = 0.0

    def reset(self) -> None:
        """Reset the live signals for a freshly asked question."""
        self.intervention_level = InterventionLevel.NONE
        self.silence_duration_ms = 0.0
        self.candidate_response = None
        self.buffer = ""
        self.interim = ""
        self.last_analysis_ms = 0.0

    @property
    def last_intervention(self) -> InterventionRecord | None:
        return self.interventions[-1] if self.interventions else None


class SessionState:
    """
    Manages the mutable state of an interview session.

    All mutations must happen while holding `lock`; the registry enforces
    this so that each session has a single writer at a time.
    """

    def __init__(
        self,
        interview_id: str,
        candidate_id: str,
        context: InterviewContext,
        model: str,
        session_id: str | None = None,
    ) -> None:
        """
        Initialize session state.

        Args:
            interview_id: Owning interview identifier.
            candidate_id: Candidate identifier.
            context: Immutable interview definition.
            model: Model selected for this session.
            session_id: Explicit session id, generated if omitted.
        """
        self._session_id = session_id or f"session_{uuid4().hex}"
        self._interview_id = interview_id
        self._candidate_id = candidate_id
        self._context = context
        self.model = model
        self.lock = asyncio.Lock()

        self._questions: list[QuestionRecord] = []
        self._conversations: dict[str, ConversationState] = {}
        self.answered: dict[str, AnswerResult] = {}
        self.usage = UsageCounter()
        self.question_history: list[QuestionHistoryEntry] = list(context.question_history)

        self._started_at: datetime = datetime.now(timezone.utc)
        self.last_activity: float = time.monotonic()
        self.closed: bool = False
        self.is_complete: bool = False

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def interview_id(self) -> str:
        return self._interview_id

    @property
    def candidate_id(self) -> str:
        return self._candidate_id

    @property
    def context(self) -> InterviewContext:
        return self._context

    @property
    def started_at(self) -> datetime:
        return self._started_at

    @property
    def questions(self) -> list[QuestionRecord]:
        """Questions in order of asking (copy)."""
        return list(self._questions)

    @property
    def current_question(self) -> QuestionRecord | None:
        return self._questions[-1] if self._questions else None

    @property
    def next_order(self) -> int:
        if not self._questions:
            return 1
        return max(q.order for q in self._questions) + 1

    @property
    def answered_questions(self) -> list[QuestionRecord]:
        return [q for q in self._questions if q.is_answered]

    @property
    def mandatory_asked(self) -> int:
        return sum(1 for q in self._questions if q.kind == QuestionKind.MANDATORY)

    @property
    def has_capacity(self) -> bool:
        return len(self._questions) < self._context.max_questions

    def touch(self) -> None:
        """Record activity for idle eviction."""
        self.last_activity = time.monotonic()

    def find_question(self, question_id: str) -> QuestionRecord | None:
        for question in self._questions:
            if question.question_id == question_id:
                return question
        return None

    def get_question(self, question_id: str) -> QuestionRecord:
        """
        Get a question by id.

        Raises:
            UnknownQuestion: If the question is not part of this session.
        """
        question = self.find_question(question_id)
        if question is None:
            raise UnknownQuestion(self._session_id, question_id)
        return question

    def has_question_after(self, order: int) -> bool:
        return any(q.order > order for q in self._questions)

    def add_question(self, question: QuestionRecord) -> bool:
        """
        Append a question if its id and order are new.

        Returns:
            True if appended, False if an equivalent question already exists.
        """
        if self.find_question(question.question_id) is not None:
            return False
        if self._questions and question.order <= max(q.order for q in self._questions):
            return False
        self._questions.append(question)
        self._conversations[question.question_id] = ConversationState(question.question_id)
        return True

    def conversation(self, question_id: str) -> ConversationState:
        """Get the conversation state for a question of this session."""
        state = self._conversations.get(question_id)
        if state is None:
            self.get_question(question_id)
            state = ConversationState(question_id)
            self._conversations[question_id] = state
        return state

    def previous_answers(self, before_order: int, limit: int = 3) -> list[QuestionRecord]:
        """Most recent answered questions asked before `before_order`, oldest first."""
        prior = [q for q in self._questions if q.is_answered and q.order < before_order]
        return prior[-limit:] if limit else []
