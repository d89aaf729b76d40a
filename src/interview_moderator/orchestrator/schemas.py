"""
Pydantic schemas for the orchestrator module.

Defines the interview context, question and evaluation records,
conversation records, usage counters and the result shapes returned
to the caller.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _now_utc() -> datetime:
    """Get current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


class QuestionKind(str, Enum):
    """Origin of an interview question."""

    MANDATORY = "mandatory"
    OPTIONAL_STYLE = "optional_style"
    GENERATED = "generated"
    FOLLOW_UP = "follow_up"


class ScoreLabel(str, Enum):
    PASS = "pass"
    WEAK = "weak"
    FAIL = "fail"


class CheatFlag(str, Enum):
    """Closed set of visual integrity flags."""

    MULTI_FACE = "multi_face"
    ABSENT_FACE = "absent_face"
    LOOKING_AWAY = "looking_away"
    SUSPICIOUS_BEHAVIOR = "suspicious_behavior"


class NextAction(str, Enum):
    ASK_FOLLOWUP = "ask_followup"
    NEXT_QUESTION = "next_question"
    END_INTERVIEW = "end_interview"


class Speaker(str, Enum):
    BOT = "bot"
    CANDIDATE = "candidate"


class InterventionLevel(str, Enum):
    """Silence escalation level; only ever increases within a question."""

    NONE = "none"
    THINKING_CHECK = "thinking_check"
    SUGGEST_MOVE_ON = "suggest_move_on"
    FORCE_MOVE = "force_move"


class InterventionType(str, Enum):
    THINKING_CHECK = "thinking_check"
    SUGGEST_MOVE_ON = "suggest_move_on"
    FORCE_MOVE = "force_move"


class ReplyIntent(str, Enum):
    """Intent of a candidate reply to an intervention."""

    CONTINUE = "continue"
    DONE = "done"
    THINKING = "thinking"
    SKIP = "skip"
    ANSWERING = "answering"


class CandidateResponse(str, Enum):
    """Last classified stance of the candidate towards the current question."""

    THINKING = "thinking"
    READY = "ready"
    CONTINUE = "continue"
    SKIP = "skip"
    DONE = "done"


class DeflectionType(str, Enum):
    ASKING_QUESTION = "asking_question"
    REQUESTING_ANSWER = "requesting_answer"
    ROLE_REVERSAL = "role_reversal"
    LEGITIMATE_CLARIFICATION = "legitimate_clarification"


class ChunkIntent(str, Enum):
    """Intent of a live transcript chunk, as screened for integrity."""

    ANSWERING = "answering"
    ASKING_QUESTION = "asking_question"
    REQUESTING_ANSWER = "requesting_answer"
    ROLE_REVERSAL = "role_reversal"
    LEGITIMATE_CLARIFICATION = "legitimate_clarification"


class IntegritySeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SkipReason(str, Enum):
    TIMEOUT = "timeout"
    CANDIDATE_REQUESTED = "candidate_requested"


class FitStatus(str, Enum):
    GOOD_FIT = "good_fit"
    MODERATE_FIT = "moderate_fit"
    NOT_FIT = "not_fit"


class EventType(str, Enum):
    """Side effects returned to the caller for dispatch."""

    ACKNOWLEDGMENT = "acknowledgment"
    DEFLECTION = "deflection"
    CLARIFICATION = "clarification"
    FOLLOWUP_PROPOSAL = "followup_proposal"
    INTERVENTION = "intervention"
    NEXT_QUESTION = "next_question"
    PROCESS_ANSWER = "process_answer"
    INTERVIEW_COMPLETE = "interview_complete"


# --- Interview context -------------------------------------------------------


class SkillWeight(BaseModel):
    """A skill the interview assesses, with its relative weight."""

    name: str = Field(..., description="Skill name")
    weight: float = Field(default=0.0, ge=0.0, le=100.0, description="Relative weight (0-100)")
    topics: list[str] = Field(default_factory=list, description="Topics within the skill")


class QuestionSpec(BaseModel):
    """
    A recruiter-curated question.

    Pools may hold either plain strings or objects with text and skills;
    both are normalized into this shape when the context is loaded.
    """

    text: str = Field(..., description="Question text")
    skills: list[str] = Field(default_factory=list, description="Skills the question is tagged with")

    @model_validator(mode="before")
    @classmethod
    def _from_legacy_text(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"text": data, "skills": []}
        if isinstance(data, dict) and "text" not in data and "question" in data:
            data = dict(data)
            data["text"] = data.pop("question")
        return data


class QuestionHistoryEntry(BaseModel):
    """A record of a curated question asked to some candidate."""

    question_text: str = Field(..., description="Text of the question as asked")
    candidate_id: str | None = Field(default=None, description="Candidate it was asked to")
    candidate_email: str | None = Field(default=None, description="Candidate e-mail, if known")
    asked_at: datetime = Field(default_factory=_now_utc, description="When it was asked")


class InterviewContext(BaseModel):
    """Immutable snapshot of the interview definition used by a session."""

    model_config = ConfigDict(frozen=True)

    job_title: str = Field(default="", description="Title of the position")
    job_description: str = Field(default="", description="Job description text")
    skills: list[SkillWeight] = Field(default_factory=list, description="Assessed skills and weights")
    mandatory_questions: list[QuestionSpec] = Field(
        default_factory=list,
        description="Curated questions that must be asked according to the mandatory weightage",
    )
    optional_questions: list[QuestionSpec] = Field(
        default_factory=list,
        description="Curated questions used as style references for generation",
    )
    mandatory_weightage: float = Field(default=0.0, ge=0.0, le=100.0)
    optional_weightage: float = Field(default=0.0, ge=0.0, le=100.0)
    max_questions: int = Field(default=5, ge=1, description="Maximum number of questions")
    pass_percentage: float = Field(default=60.0, ge=0.0, le=100.0, description="Pass threshold")
    candidate_email: str | None = Field(default=None, description="Candidate e-mail, if known")
    question_history: list[QuestionHistoryEntry] = Field(
        default_factory=list,
        description="Curated questions previously asked across interviews",
    )

    def skill_weight(self, name: str) -> float:
        for skill in self.skills:
            if skill.name == name:
                return skill.weight
        return 0.0


# --- Usage -------------------------------------------------------------------


class TokenUsage(BaseModel):
    """Token counts recovered from a single provider response."""

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    model: str = Field(default="", description="Model that served the call")

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class UsageCounter(BaseModel):
    """Running token and cost totals; only ever incremented."""

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)
    cost_usd: float = Field(default=0.0, ge=0.0)

    def add(self, input_tokens: int, output_tokens: int, cost_usd: float) -> None:
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        self.total_tokens = self.input_tokens + self.output_tokens
        self.cost_usd += cost_usd


class UsageSummary(BaseModel):
    """Final usage report returned when a session ends."""

    tokens: dict[str, int] = Field(..., description="input, output and total token counts")
    cost: float = Field(..., description="Accumulated cost in USD")
    cost_inr: float = Field(default=0.0, description="Accumulated cost converted to INR")
    model: str = Field(default="", description="Last model used by the session")


# --- Questions and evaluation -----------------------------------------------


class EvaluationResult(BaseModel):
    """Scores for one answered question."""

    relevance: int = Field(..., ge=0, le=100)
    technical_accuracy: int = Field(..., ge=0, le=100)
    fluency: int = Field(..., ge=0, le=100)
    overall_score: int = Field(..., ge=0, le=100)
    score_label: ScoreLabel = Field(..., description="pass, weak or fail against the pass threshold")
    comment: str = Field(default="", description="Evaluator comment")


class CheatingAssessment(BaseModel):
    """Visual and behavioural integrity assessment of one answer."""

    cheat_score: float = Field(default=0.0, ge=0.0, le=1.0)
    flags: list[CheatFlag] = Field(default_factory=list)
    summary: str = Field(default="")


class QuestionRecord(BaseModel):
    """A question asked during a session, with results attached after answering."""

    question_id: str = Field(default_factory=lambda: _new_id("q"), description="Unique question id")
    text: str = Field(..., description="Question text")
    kind: QuestionKind = Field(..., description="Question origin")
    order: int = Field(..., ge=1, description="1-based position in the interview")
    skills_targeted: list[str] = Field(default_factory=list)
    parent_question_id: str | None = Field(default=None, description="Question a follow-up refers to")
    token_usage: UsageCounter | None = Field(default=None, description="Usage attributed to this question")
    asked_at: datetime = Field(default_factory=_now_utc)

    transcript: str | None = Field(default=None, description="Flat transcript from evaluation")
    evaluation: EvaluationResult | None = None
    cheating: CheatingAssessment | None = None
    skipped: bool = False
    skip_reason: SkipReason | None = None

    @property
    def is_answered(self) -> bool:
        return self.evaluation is not None


class TimingWindows(BaseModel):
    """Millisecond timestamps bounding the question and the answer."""

    question_start: float | None = None
    question_end: float | None = None
    answer_start: float | None = None
    answer_end: float | None = None

    @property
    def gap_ms(self) -> float | None:
        if self.question_end is None or self.answer_start is None:
            return None
        return max(0.0, self.answer_start - self.question_end)


class MediaPayload(BaseModel):
    """Recorded answer media, base64 encoded."""

    data: str = Field(..., description="Base64-encoded media bytes")
    mime_type: Literal["video/webm", "audio/webm"] = Field(default="video/webm")


class AnswerEvaluation(BaseModel):
    """Validated output of the evaluation pipeline."""

    question_id: str
    transcript: str = ""
    evaluation: EvaluationResult
    cheating: CheatingAssessment
    token_usage: TokenUsage
    next_action: NextAction = NextAction.NEXT_QUESTION
    next_text: str | None = Field(default=None, description="Follow-up text when next_action is ask_followup")


# --- Conversation ------------------------------------------------------------


class ConversationTurn(BaseModel):
    turn_id: str = Field(default_factory=lambda: _new_id("turn"))
    speaker: Speaker
    text: str
    timestamp: datetime = Field(default_factory=_now_utc)
    media_ref: str | None = None


class InterventionRecord(BaseModel):
    timestamp: datetime = Field(default_factory=_now_utc)
    type: InterventionType
    message: str
    candidate_response: str | None = None
    response_timestamp: datetime | None = None
    response_intent: ReplyIntent | None = None


class DeflectionRecord(BaseModel):
    timestamp: datetime = Field(default_factory=_now_utc)
    type: DeflectionType
    candidate_text: str
    bot_response: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


# --- Caller-facing results ---------------------------------------------------


class OrchestratorEvent(BaseModel):
    """A side effect for the caller to dispatch to the candidate channel."""

    type: EventType
    question_id: str | None = None
    message: str | None = None
    question: QuestionRecord | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class SessionStartResult(BaseModel):
    session_id: str
    model: str
    first_question: QuestionRecord


class AnswerResult(BaseModel):
    """Outcome of submitting a recorded answer."""

    question_id: str
    transcript: str = ""
    final_transcript: str = Field(default="", description="Speaker-labeled transcript for the question")
    evaluation: EvaluationResult | None = None
    cheating: CheatingAssessment | None = None
    token_usage: TokenUsage | None = None
    next_action: NextAction = NextAction.NEXT_QUESTION
    next_question: QuestionRecord | None = None
    interview_complete: bool = False
    duplicate: bool = Field(default=False, description="The answer had already been processed")
    discarded: bool = Field(default=False, description="The session ended before the result arrived")


class AggregateScores(BaseModel):
    average_relevance: float = 0.0
    average_technical_accuracy: float = 0.0
    average_fluency: float = 0.0
    overall_score: float = 0.0
    overall_cheat_risk: float = 0.0


class Recommendation(BaseModel):
    """Overall hiring recommendation synthesized at the end of an interview."""

    fit_status: FitStatus
    summary: str = ""
    strengths: list[str] = Field(default_factory=list)
    weaknesses: list[str] = Field(default_factory=list)
    aggregate_scores: AggregateScores = Field(default_factory=AggregateScores)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


class QuestionConversationRecord(BaseModel):
    """Conversation history of one question, for the caller to persist."""

    question_id: str
    turns: list[ConversationTurn] = Field(default_factory=list, description="Ordered by timestamp")
    interventions: list[InterventionRecord] = Field(default_factory=list)
    deflections: list[DeflectionRecord] = Field(default_factory=list)
    question_attempts: int = 0
    integrity_severity: IntegritySeverity = IntegritySeverity.LOW
    final_transcript: str = ""


class SessionSnapshot(BaseModel):
    """Everything a session has produced so far, ready for persistence."""

    session_id: str
    interview_id: str
    candidate_id: str
    model: str
    is_complete: bool = False
    questions: list[QuestionRecord] = Field(default_factory=list)
    conversations: list[QuestionConversationRecord] = Field(default_factory=list)
    usage: UsageCounter = Field(default_factory=UsageCounter)
    question_history: list[QuestionHistoryEntry] = Field(default_factory=list)
