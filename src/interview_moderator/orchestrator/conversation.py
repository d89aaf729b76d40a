"""
Conversation state machine.

Resolves silence lengths into escalating interventions, applies the
classified intent of a candidate's reply, and records deflections.
"""

from __future__ import annotations

import logging
import random
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from interview_moderator.agents.integrity import ChunkScreening, severity_for_attempts
from interview_moderator.agents.intent_classifier import IntentClassifier, ReplyClassification
from interview_moderator.config import Settings, get_settings
from interview_moderator.orchestrator.interview_state import ConversationState
from interview_moderator.orchestrator.schemas import (
    CandidateResponse,
    DeflectionRecord,
    DeflectionType,
    IntegritySeverity,
    InterventionLevel,
    InterventionRecord,
    InterventionType,
    ReplyIntent,
)

logger = logging.getLogger(__name__)

CHECK_IN_MESSAGES = [
    "I notice you've paused. Would you like to continue with your answer, or are you done?",
    "You've been quiet for a moment. Would you like to continue, or have you finished your answer?",
    "I see you've paused. Are you still working on your answer, or would you like to move on?",
    "Would you like to continue with your answer, or are you finished?",
]

SUGGEST_MOVE_ON_MESSAGES = [
    "That's perfectly fine. We can move on to the next question if you'd like.",
    "No worries at all. Would you like to move forward?",
    "It's okay if you're not sure. We can continue with the next question.",
    "That's alright. Shall we move on?",
]

FORCE_MOVE_MESSAGES = [
    "Let's move on to the next question.",
    "We'll continue with the next question.",
    "Moving forward to the next question.",
]

REPLY_ACKNOWLEDGMENTS = {
    ReplyIntent.CONTINUE: "Of course, please continue with your answer.",
    ReplyIntent.DONE: "Thank you. Let me process your answer and we'll move to the next question.",
    ReplyIntent.THINKING: "Take your time, I'm here when you're ready.",
    ReplyIntent.SKIP: "No problem at all. Let's move to the next question.",
    ReplyIntent.ANSWERING: "Go ahead, I'm listening.",
}


class ReplyOutcome(BaseModel):
    """State transition produced by an intervention reply."""

    intent: ReplyIntent
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    message: str = Field(..., description="Acknowledgment to speak to the candidate")
    process_answer: bool = Field(default=False, description="Candidate finished; process the answer now")
    skip_question: bool = Field(default=False, description="Candidate asked to skip the question")
    classification: ReplyClassification


class ConversationStateMachine:
    """
    Per-question silence escalation and reply handling.

    Escalation goes none -> thinking_check -> suggest_move_on -> force_move;
    a force move is emitted at most once per question.
    """

    def __init__(
        self,
        classifier: IntentClassifier,
        settings: Settings | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._classifier = classifier
        self._settings = settings or get_settings()
        self._rng = rng or random.Random()

    def on_silence(self, conversation: ConversationState, silence_ms: float) -> InterventionRecord | None:
        """
        Apply a reported silence length.

        Returns:
            The intervention to emit, or None when no escalation applies.
        """
        settings = self._settings
        conversation.silence_duration_ms = silence_ms
        level = conversation.intervention_level

        intervention: InterventionRecord | None = None
        if settings.silence_check_in_ms <= silence_ms < settings.silence_suggest_move_on_ms:
            if level == InterventionLevel.NONE:
                conversation.intervention_level = InterventionLevel.THINKING_CHECK
                intervention = InterventionRecord(
                    type=InterventionType.THINKING_CHECK,
                    message=self._rng.choice(CHECK_IN_MESSAGES),
                )
        elif settings.silence_suggest_move_on_ms <= silence_ms < settings.silence_force_move_ms:
            if level == InterventionLevel.THINKING_CHECK and conversation.candidate_response in (
                CandidateResponse.THINKING,
                CandidateResponse.CONTINUE,
            ):
                conversation.intervention_level = InterventionLevel.SUGGEST_MOVE_ON
                intervention = InterventionRecord(
                    type=InterventionType.SUGGEST_MOVE_ON,
                    message=self._rng.choice(SUGGEST_MOVE_ON_MESSAGES),
                )
        elif silence_ms >= settings.silence_force_move_ms:
            if level != InterventionLevel.FORCE_MOVE:
                conversation.intervention_level = InterventionLevel.FORCE_MOVE
                intervention = InterventionRecord(
                    type=InterventionType.FORCE_MOVE,
                    message=self._rng.choice(FORCE_MOVE_MESSAGES),
                )

        if intervention is not None:
            conversation.interventions.append(intervention)
            logger.info(
                f"Intervention {intervention.type.value} for {conversation.question_id} after {silence_ms:.0f}ms"
            )
        return intervention

    async def on_reply(self, conversation: ConversationState, text: str) -> ReplyOutcome:
        """
        Classify a reply to an intervention and apply its state transition.
        """
        classification = await self._classifier.classify(text)
        intent = classification.intent

        last = conversation.last_intervention
        if last is not None and last.candidate_response is None:
            last.candidate_response = text
            last.response_timestamp = datetime.now(timezone.utc)
            last.response_intent = intent

        if intent == ReplyIntent.CONTINUE:
            conversation.candidate_response = CandidateResponse.CONTINUE
            conversation.silence_duration_ms = 0.0
            conversation.intervention_level = InterventionLevel.NONE
        elif intent == ReplyIntent.DONE:
            conversation.candidate_response = CandidateResponse.DONE
        elif intent == ReplyIntent.THINKING:
            conversation.candidate_response = CandidateResponse.THINKING
            conversation.silence_duration_ms = 0.0
        elif intent == ReplyIntent.SKIP:
            conversation.candidate_response = CandidateResponse.SKIP
        else:
            conversation.candidate_response = CandidateResponse.READY
            conversation.silence_duration_ms = 0.0
            conversation.intervention_level = InterventionLevel.NONE

        logger.info(f"Reply intent for {conversation.question_id}: {intent.value} ({classification.source})")
        return ReplyOutcome(
            intent=intent,
            confidence=classification.confidence,
            message=REPLY_ACKNOWLEDGMENTS[intent],
            process_answer=intent == ReplyIntent.DONE,
            skip_question=intent == ReplyIntent.SKIP,
            classification=classification,
        )

    def record_screening(
        self,
        conversation: ConversationState,
        text: str,
        screening: ChunkScreening,
    ) -> DeflectionRecord | None:
        """
        Record a deflection or clarification for a screened chunk.

        Only deflections count as attempts against the question's integrity.
        """
        if not (screening.requires_deflection or screening.is_clarification) or not screening.bot_response:
            return None

        record = DeflectionRecord(
            type=DeflectionType(screening.intent.value),
            candidate_text=text,
            bot_response=screening.bot_response,
            confidence=screening.confidence,
        )
        conversation.deflections.append(record)
        if screening.requires_deflection:
            conversation.question_attempts += 1
            logger.info(
                f"Deflected {record.type.value} on {conversation.question_id} "
                f"(attempt {conversation.question_attempts})"
            )
        return record

    @staticmethod
    def severity(conversation: ConversationState) -> IntegritySeverity:
        return severity_for_attempts(conversation.question_attempts)
