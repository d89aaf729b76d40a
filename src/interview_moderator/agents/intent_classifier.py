"""
Intent classifier agent.

Classifies a candidate's free-text reply to an intervention so the
conversation state machine can decide whether to wait, move on or
process the answer.
"""

from __future__ import annotations

import logging
import re

from pydantic import BaseModel, Field

from interview_moderator.config import Settings, get_settings
from interview_moderator.errors import MalformedResponse, ProviderError
from interview_moderator.models.gemini_client import LLMClientBase, Part
from interview_moderator.orchestrator.schemas import ReplyIntent, TokenUsage

logger = logging.getLogger(__name__)


CONTINUE_PATTERNS = [
    re.compile(r"^(yes|yeah|yep|sure|okay|ok|continue|more|keep going|go ahead)\b", re.IGNORECASE),
    re.compile(r"(want|would like|will) (to )?(continue|keep going|say more|add more|elaborate)", re.IGNORECASE),
    re.compile(r"(still|more|another) (point|thing|thought|idea)", re.IGNORECASE),
    re.compile(r"(let me|i'll|i will) (continue|keep going|say more|add)", re.IGNORECASE),
]

DONE_PATTERNS = [
    re.compile(r"^(no|nope|nah|that's all|that's it|done|finished|complete)\b", re.IGNORECASE),
    re.compile(r"(that's|that is) (all|it|everything|complete|done|finished)", re.IGNORECASE),
    re.compile(r"(i'm|i am) (done|finished|complete)", re.IGNORECASE),
    re.compile(r"(nothing|no more|no further) (to add|to say)", re.IGNORECASE),
    re.compile(r"(move on|next question|skip|pass)", re.IGNORECASE),
]

THINKING_PATTERNS = [
    re.compile(r"(thinking|moment|time|wait|give me)", re.IGNORECASE),
    re.compile(r"(need|want|let me) (more )?(time|moment)", re.IGNORECASE),
]

SKIP_PATTERNS = [
    re.compile(r"(don't know|dunno|not sure|unsure)", re.IGNORECASE),
    re.compile(r"(can't|cannot) (answer|know|think)", re.IGNORECASE),
]


def _matches(patterns: list[re.Pattern[str]], text: str) -> bool:
    return any(p.search(text) for p in patterns)


class ReplyClassification(BaseModel):
    """Result of classifying an intervention reply."""

    intent: ReplyIntent = Field(..., description="Detected reply intent")
    confidence: float = Field(..., ge=0.0, le=1.0, description="Confidence score")
    source: str = Field(default="pattern", description="pattern, model or heuristic")
    usage: TokenUsage | None = Field(default=None, description="Provider usage when the model was consulted")


class IntentClassifier:
    """
    Pattern-first reply classifier with a model fallback.

    Patterns are checked in priority order; only unmatched replies long
    enough to carry meaning are sent to the fast model.
    """

    CLASSIFICATION_PROMPT = """You are an AI interviewer. You just checked in with a candidate who had gone quiet.
The candidate replied: "{text}"

Classify the reply as one of:
- continue: wants to keep answering
- done: has finished the answer
- thinking: needs more time
- skip: does not know and wants to move on
- answering: has started giving substantive answer content

Respond with a JSON object containing:
{{
    "intent": "continue" | "done" | "thinking" | "skip" | "answering",
    "confidence": <0.0-1.0>
}}

Only return valid JSON, no other text."""

    def __init__(
        self,
        llm_client: LLMClientBase,
        settings: Settings | None = None,
    ) -> None:
        """
        Initialize the intent classifier.

        Args:
            llm_client: Provider client for the model fallback.
            settings: Application settings (defaults to cached settings).
        """
        self._llm_client = llm_client
        self._settings = settings or get_settings()

    def classify_by_pattern(self, text: str) -> ReplyClassification | None:
        """Fast path; returns None when no pattern applies."""
        normalized = text.strip().lower()
        is_continue = _matches(CONTINUE_PATTERNS, normalized)
        is_done = _matches(DONE_PATTERNS, normalized)
        is_thinking = _matches(THINKING_PATTERNS, normalized)
        is_skip = _matches(SKIP_PATTERNS, normalized)

        if is_continue and not is_done:
            return ReplyClassification(intent=ReplyIntent.CONTINUE, confidence=0.9)
        if is_done:
            return ReplyClassification(intent=ReplyIntent.DONE, confidence=0.9)
        if is_thinking and not is_skip:
            return ReplyClassification(intent=ReplyIntent.THINKING, confidence=0.85)
        if is_skip:
            return ReplyClassification(intent=ReplyIntent.SKIP, confidence=0.85)
        return None

    def _heuristic(self, text: str) -> ReplyClassification:
        intent = ReplyIntent.ANSWERING if len(text.strip()) > 20 else ReplyIntent.THINKING
        return ReplyClassification(intent=intent, confidence=0.7, source="heuristic")

    async def classify(self, text: str) -> ReplyClassification:
        """
        Classify a candidate's reply to an intervention.

        Args:
            text: The reply text.

        Returns:
            Classification with intent, confidence and any provider usage.
        """
        matched = self.classify_by_pattern(text)
        if matched is not None:
            return matched

        if len(text.strip()) <= self._settings.reply_llm_min_chars:
            return self._heuristic(text)

        prompt = self.CLASSIFICATION_PROMPT.format(text=text.strip().replace('"', "'"))
        try:
            data, response = await self._llm_client.generate_json(
                self._settings.gemini_fast_model,
                [Part.from_text(prompt)],
                generation_config={"temperature": 0.2, "topP": 0.95, "topK": 40},
            )
        except (ProviderError, MalformedResponse) as e:
            logger.error(f"Reply intent classification failed: {e}")
            return self._heuristic(text)

        raw_intent = data.get("intent", "answering")
        try:
            intent = ReplyIntent(raw_intent)
        except ValueError:
            logger.warning(f"Unknown reply intent '{raw_intent}', defaulting to answering")
            intent = ReplyIntent.ANSWERING

        try:
            confidence = float(data.get("confidence", 0.7))
        except (TypeError, ValueError):
            confidence = 0.7
        confidence = max(0.0, min(1.0, confidence))

        return ReplyClassification(
            intent=intent,
            confidence=confidence,
            source="model",
            usage=response.usage,
        )
