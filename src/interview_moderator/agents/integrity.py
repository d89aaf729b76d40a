"""
Integrity screening agent.

Screens live transcript chunks for attempts to extract answers from the
interviewer (direct questions, hint requests, role reversal, answer
confirmation) and prepares the deflection or clarification reply.
"""

from __future__ import annotations

import logging
import re

from pydantic import BaseModel, Field

from interview_moderator.config import Settings, get_settings
from interview_moderator.errors import MalformedResponse, ProviderError
from interview_moderator.models.gemini_client import LLMClientBase, Part
from interview_moderator.orchestrator.schemas import ChunkIntent, IntegritySeverity, TokenUsage

logger = logging.getLogger(__name__)


DIRECT_QUESTION_PATTERNS = [
    re.compile(r"^(what|how|why|when|where|can you|could you|would you|tell me|explain)", re.IGNORECASE),
    re.compile(r"^(what is|how do|why does|when should|where can)", re.IGNORECASE),
    re.compile(r"^(can you tell|could you explain|would you help)", re.IGNORECASE),
]

ANSWER_REQUEST_PATTERNS = [
    re.compile(r"(give me|provide|show me|tell me) (the )?(answer|solution|hint|clue)", re.IGNORECASE),
    re.compile(r"(what is|what's) (the )?(answer|solution|correct|right)", re.IGNORECASE),
    re.compile(r"(help me|assist me) (with|to|in)", re.IGNORECASE),
    re.compile(r"(can|could|would) (you )?(give|provide|tell|show|explain)", re.IGNORECASE),
]

ROLE_REVERSAL_PATTERNS = [
    re.compile(r"(you should|you need to|you can|you could)", re.IGNORECASE),
    re.compile(r"(what would you do|how would you|your approach)", re.IGNORECASE),
    re.compile(r"(your answer|your solution|your opinion)", re.IGNORECASE),
]

REVEALING_CLARIFICATION_PATTERNS = [
    re.compile(r"(is it|is this|does it|should it|must it) (the )?(answer|solution|correct|right|way)", re.IGNORECASE),
    re.compile(r"(is the answer|is the solution|does this mean)", re.IGNORECASE),
    re.compile(r"(confirm|verify|check) (if|that|whether) (it|this|the)", re.IGNORECASE),
]

DEFLECTING_INTENTS = {
    ChunkIntent.ASKING_QUESTION,
    ChunkIntent.REQUESTING_ANSWER,
    ChunkIntent.ROLE_REVERSAL,
}

ANSWER_REQUEST_RESPONSE = "I can't provide the answer, but I'd love to hear your approach. What would you do?"
ROLE_REVERSAL_RESPONSE = (
    "I appreciate the question, but I'm here to evaluate your skills. Could you share your own approach?"
)
CONFIRMATION_RESPONSE = "I can't confirm or deny specific approaches. What's your solution?"
DIRECT_QUESTION_RESPONSE = (
    "I appreciate your question, but I'm here to assess your knowledge. "
    "Could you share your thoughts on the question I asked?"
)
CLARIFICATION_RESPONSE = "Good question. Please answer based on your understanding of the question as asked."


def _matches(patterns: list[re.Pattern[str]], text: str) -> bool:
    return any(p.search(text) for p in patterns)


def severity_for_attempts(attempts: int) -> IntegritySeverity:
    """Integrity severity of a question from its deflection count."""
    if attempts >= 3:
        return IntegritySeverity.HIGH
    if attempts == 2:
        return IntegritySeverity.MEDIUM
    return IntegritySeverity.LOW


class ChunkScreening(BaseModel):
    """Result of screening one transcript chunk."""

    intent: ChunkIntent = Field(..., description="Detected chunk intent")
    confidence: float = Field(..., ge=0.0, le=1.0)
    bot_response: str | None = Field(default=None, description="Deflection or clarification reply")
    source: str = Field(default="pattern", description="pattern or model")
    usage: TokenUsage | None = Field(default=None)

    @property
    def requires_deflection(self) -> bool:
        return self.intent in DEFLECTING_INTENTS

    @property
    def is_clarification(self) -> bool:
        return self.intent == ChunkIntent.LEGITIMATE_CLARIFICATION


class IntegrityScreener:
    """
    Regex heuristics confirmed by the fast model.

    A model verdict may refine a pattern hit but cannot clear it back to
    plain answering.
    """

    SCREENING_PROMPT = """You are an AI interviewer. A candidate just said: "{text}"

Current interview question: "{question_text}"

Decide whether the candidate is:
- answering: giving an answer to the question
- asking_question: asking you a question instead of answering
- requesting_answer: asking for hints, answers or confirmation of an approach
- role_reversal: trying to make you answer or take their role
- legitimate_clarification: asking about wording, scope, format or constraints only

Clarifications that would reveal or confirm the answer are requesting_answer.

Respond with a JSON object containing:
{{
    "intent": "answering" | "asking_question" | "requesting_answer" | "role_reversal" | "legitimate_clarification",
    "confidence": <0.0-1.0>,
    "suggested_bot_response": "<polite deflection or clarification, 1-2 sentences>"
}}

Only return valid JSON, no other text."""

    def __init__(
        self,
        llm_client: LLMClientBase,
        settings: Settings | None = None,
    ) -> None:
        self._llm_client = llm_client
        self._settings = settings or get_settings()

    def screen_by_pattern(self, text: str) -> ChunkScreening | None:
        """Regex screening; None when nothing suspicious matched."""
        normalized = text.strip()
        if _matches(ANSWER_REQUEST_PATTERNS, normalized):
            return ChunkScreening(
                intent=ChunkIntent.REQUESTING_ANSWER, confidence=0.7, bot_response=ANSWER_REQUEST_RESPONSE
            )
        if _matches(ROLE_REVERSAL_PATTERNS, normalized):
            return ChunkScreening(
                intent=ChunkIntent.ROLE_REVERSAL, confidence=0.7, bot_response=ROLE_REVERSAL_RESPONSE
            )
        if _matches(REVEALING_CLARIFICATION_PATTERNS, normalized):
            return ChunkScreening(
                intent=ChunkIntent.REQUESTING_ANSWER, confidence=0.7, bot_response=CONFIRMATION_RESPONSE
            )
        if _matches(DIRECT_QUESTION_PATTERNS, normalized):
            return ChunkScreening(
                intent=ChunkIntent.ASKING_QUESTION, confidence=0.7, bot_response=DIRECT_QUESTION_RESPONSE
            )
        return None

    async def screen(self, text: str, question_text: str) -> ChunkScreening:
        """
        Screen a transcript chunk.

        Args:
            text: The chunk text.
            question_text: The question currently being answered.

        Returns:
            Screening result; provider failures fall back to the pattern verdict.
        """
        pattern_result = self.screen_by_pattern(text)
        answering = ChunkScreening(intent=ChunkIntent.ANSWERING, confidence=0.9)

        if pattern_result is None and len(text.strip()) <= self._settings.deflection_llm_min_chars:
            return answering

        prompt = self.SCREENING_PROMPT.format(
            text=text.strip().replace('"', "'"),
            question_text=question_text.replace('"', "'"),
        )
        try:
            data, response = await self._llm_client.generate_json(
                self._settings.gemini_fast_model,
                [Part.from_text(prompt)],
                generation_config={"temperature": 0.2, "topP": 0.95, "topK": 40},
            )
        except (ProviderError, MalformedResponse) as e:
            logger.error(f"Integrity screening call failed: {e}")
            return pattern_result or answering

        raw_intent = data.get("intent", "answering")
        try:
            intent = ChunkIntent(raw_intent)
        except ValueError:
            logger.warning(f"Unknown chunk intent '{raw_intent}', defaulting to answering")
            intent = ChunkIntent.ANSWERING

        if intent == ChunkIntent.ANSWERING and pattern_result is not None:
            pattern_result.usage = response.usage
            return pattern_result

        try:
            confidence = max(0.0, min(1.0, float(data.get("confidence", 0.8))))
        except (TypeError, ValueError):
            confidence = 0.8

        suggested = data.get("suggested_bot_response")
        bot_response: str | None = None
        if intent != ChunkIntent.ANSWERING:
            if isinstance(suggested, str) and suggested.strip():
                bot_response = suggested.strip()
            elif intent == ChunkIntent.LEGITIMATE_CLARIFICATION:
                bot_response = CLARIFICATION_RESPONSE
            elif pattern_result is not None and pattern_result.bot_response:
                bot_response = pattern_result.bot_response
            else:
                bot_response = DIRECT_QUESTION_RESPONSE

        return ChunkScreening(
            intent=intent,
            confidence=confidence,
            bot_response=bot_response,
            source="model",
            usage=response.usage,
        )
