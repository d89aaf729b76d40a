"""
Transcript aggregator.

Buffers live transcript fragments per question, coalesces candidate
fragments into conversation turns, runs throttled follow-up analysis and
assembles the final speaker-labeled transcript.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from interview_moderator.config import Settings, get_settings
from interview_moderator.errors import MalformedResponse, ProviderError
from interview_moderator.models.gemini_client import LLMClientBase, Part
from interview_moderator.orchestrator.interview_state import ConversationState, SessionState
from interview_moderator.orchestrator.schemas import ConversationTurn, QuestionRecord, Speaker, TokenUsage

logger = logging.getLogger(__name__)

SPEAKER_LABELS = {
    Speaker.BOT: "Interviewer",
    Speaker.CANDIDATE: "Candidate",
}


def ms_to_datetime(timestamp_ms: float) -> datetime:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)


def datetime_to_ms(value: datetime) -> float:
    return value.timestamp() * 1000


class FollowupAnalysis(BaseModel):
    """Outcome of analysing buffered answer text for a follow-up."""

    has_substantial_content: bool = False
    should_ask_followup: bool = False
    followup_question: str | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: str = ""
    usage: TokenUsage | None = None


class Acknowledgment(BaseModel):
    message: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    usage: TokenUsage | None = None


class TranscriptAggregator:
    """
    Turns transcript fragments into conversation turns and follow-up proposals.
    """

    FOLLOWUP_PROMPT = """You are an AI interviewer listening to a candidate answer in real time.

Question: "{question_text}"
{previous_answers}
What the candidate has said so far:
"{buffer}"

Decide whether the answer so far has substantial content and whether a short
follow-up question would help explore it more deeply. Only suggest a follow-up
when something specific in the answer deserves probing.

Respond with a JSON object containing:
{{
    "has_substantial_content": true | false,
    "should_ask_followup": true | false,
    "followup_question": "<one concise question, or empty>",
    "confidence": <0.0-1.0>,
    "reasoning": "<one sentence>"
}}

Only return valid JSON, no other text."""

    ACKNOWLEDGMENT_PROMPT = """You are a friendly AI interviewer. The candidate just said:
"{text}"

If a brief, natural acknowledgment (2-5 words, such as "I see." or "That makes sense.")
would make the conversation feel natural, provide one. Never evaluate the answer.

Respond with a JSON object containing:
{{
    "should_acknowledge": true | false,
    "acknowledgment": "<short phrase>",
    "confidence": <0.0-1.0>
}}

Only return valid JSON, no other text."""

    def __init__(
        self,
        llm_client: LLMClientBase,
        settings: Settings | None = None,
    ) -> None:
        self._llm_client = llm_client
        self._settings = settings or get_settings()

    def add_candidate_fragment(
        self,
        conversation: ConversationState,
        text: str,
        is_final: bool,
        timestamp_ms: float,
    ) -> ConversationTurn | None:
        """
        Buffer a fragment and, when final, record it as a candidate turn.

        A final fragment arriving within the coalescing window of the most
        recent candidate turn is merged into it.

        Returns:
            The created or updated turn, or None for interim fragments.
        """
        cleaned = text.strip()
        conversation.silence_duration_ms = 0.0
        if not cleaned:
            return None

        if not is_final:
            conversation.interim = cleaned
            return None

        conversation.interim = ""
        conversation.buffer = f"{conversation.buffer} {cleaned}".strip()

        timestamp = ms_to_datetime(timestamp_ms)
        last_candidate = next(
            (t for t in reversed(conversation.turns) if t.speaker == Speaker.CANDIDATE),
            None,
        )
        if last_candidate is not None:
            gap_ms = timestamp_ms - datetime_to_ms(last_candidate.timestamp)
            if 0 <= gap_ms < self._settings.turn_coalesce_window_ms:
                last_candidate.text = f"{last_candidate.text} {cleaned}"
                last_candidate.timestamp = timestamp
                return last_candidate

        turn = ConversationTurn(speaker=Speaker.CANDIDATE, text=cleaned, timestamp=timestamp)
        conversation.turns.append(turn)
        return turn

    def add_bot_turn(
        self,
        conversation: ConversationState,
        text: str,
        timestamp: datetime | None = None,
    ) -> ConversationTurn:
        turn = ConversationTurn(
            speaker=Speaker.BOT,
            text=text,
            timestamp=timestamp or datetime.now(timezone.utc),
        )
        conversation.turns.append(turn)
        return turn

    def analysis_text(self, conversation: ConversationState) -> str:
        return f"{conversation.buffer} {conversation.interim}".strip()

    def should_analyze(self, conversation: ConversationState, is_final: bool, now_ms: float) -> bool:
        """Throttle follow-up analysis: always on final fragments, else by time and length."""
        length = len(self.analysis_text(conversation))
        if length <= self._settings.followup_min_buffer_chars:
            return False
        if is_final:
            return True
        elapsed = now_ms - conversation.last_analysis_ms
        return elapsed > self._settings.followup_debounce_ms and length > self._settings.followup_debounce_min_chars

    async def analyze_for_followup(
        self,
        state: SessionState,
        question: QuestionRecord,
        conversation: ConversationState,
        now_ms: float,
    ) -> FollowupAnalysis | None:
        """
        Ask the fast model whether the answer so far warrants a follow-up.

        Returns:
            The analysis, or None if the provider call failed.
        """
        conversation.last_analysis_ms = now_ms
        previous = state.previous_answers(question.order, limit=3)
        previous_answers = ""
        if previous:
            previous_answers = "Earlier answers:\n" + "\n".join(
                f"- Q: {q.text}\n  A: {(q.transcript or 'N/A')[:300]}" for q in previous
            ) + "\n"

        prompt = self.FOLLOWUP_PROMPT.format(
            question_text=question.text.replace('"', "'"),
            previous_answers=previous_answers,
            buffer=self.analysis_text(conversation).replace('"', "'"),
        )
        try:
            data, response = await self._llm_client.generate_json(
                self._settings.gemini_fast_model,
                [Part.from_text(prompt)],
                generation_config={"temperature": 0.3, "topP": 0.95, "topK": 40},
            )
        except (ProviderError, MalformedResponse) as e:
            logger.error(f"Follow-up analysis failed for {question.question_id}: {e}")
            return None

        try:
            confidence = max(0.0, min(1.0, float(data.get("confidence", 0.0))))
        except (TypeError, ValueError):
            confidence = 0.0

        followup = data.get("followup_question")
        if not isinstance(followup, str) or not followup.strip():
            followup = None

        return FollowupAnalysis(
            has_substantial_content=bool(data.get("has_substantial_content", False)),
            should_ask_followup=bool(data.get("should_ask_followup", False)),
            followup_question=followup.strip()[: self._settings.question_text_max_chars] if followup else None,
            confidence=confidence,
            reasoning=str(data.get("reasoning") or ""),
            usage=response.usage,
        )

    def is_followup_worthy(self, analysis: FollowupAnalysis | None) -> bool:
        return (
            analysis is not None
            and analysis.should_ask_followup
            and analysis.followup_question is not None
            and analysis.confidence >= self._settings.followup_min_confidence
        )

    async def acknowledge(self, text: str) -> Acknowledgment | None:
        """Short real-time acknowledgment for a substantial final fragment."""
        if len(text.strip()) <= self._settings.acknowledgment_min_chars:
            return None

        prompt = self.ACKNOWLEDGMENT_PROMPT.format(text=text.strip().replace('"', "'"))
        try:
            data, response = await self._llm_client.generate_json(
                self._settings.gemini_fast_model,
                [Part.from_text(prompt)],
                generation_config={"temperature": 0.5, "topP": 0.95, "topK": 40, "maxOutputTokens": 50},
            )
        except (ProviderError, MalformedResponse) as e:
            logger.error(f"Acknowledgment generation failed: {e}")
            return None

        message = data.get("acknowledgment")
        if not data.get("should_acknowledge") or not isinstance(message, str) or not message.strip():
            # Usage is still owed even when nothing is said.
            return Acknowledgment(message="", confidence=0.0, usage=response.usage)

        try:
            confidence = max(0.0, min(1.0, float(data.get("confidence", 0.5))))
        except (TypeError, ValueError):
            confidence = 0.5
        return Acknowledgment(message=message.strip(), confidence=confidence, usage=response.usage)

    @staticmethod
    def assemble(turns: list[ConversationTurn], fallback: str | None = None) -> str:
        """
        Render turns as speaker-labeled lines ordered by timestamp.

        Falls back to the flat evaluation transcript when no turns exist.
        """
        if not turns:
            return fallback or ""
        ordered = sorted(turns, key=lambda t: t.timestamp)
        return "\n".join(f"{SPEAKER_LABELS[t.speaker]}: {t.text}" for t in ordered)
