"""
Session registry.

Owns one state record per active interview and routes every caller event
(session start, transcript chunk, silence, reply, answer submission)
through the question engine, evaluation pipeline, transcript aggregator
and conversation state machine. Mutations of a session are serialized
through its lock.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable

from interview_moderator.agents.evaluation import EvaluationPipeline
from interview_moderator.agents.integrity import IntegrityScreener
from interview_moderator.agents.intent_classifier import IntentClassifier
from interview_moderator.agents.question_engine import QuestionEngine
from interview_moderator.agents.transcript_aggregator import TranscriptAggregator
from interview_moderator.agents.usage_accountant import UsageAccountant
from interview_moderator.config import Settings, get_settings
from interview_moderator.errors import InvalidSession, PersistenceConflict
from interview_moderator.models.gemini_client import GeminiClient, LLMClientBase
from interview_moderator.orchestrator.conversation import ConversationStateMachine
from interview_moderator.orchestrator.interview_state import ConversationState, SessionState
from interview_moderator.orchestrator.schemas import (
    AnswerResult,
    ConversationTurn,
    EventType,
    InterventionType,
    InterviewContext,
    MediaPayload,
    NextAction,
    OrchestratorEvent,
    QuestionConversationRecord,
    QuestionHistoryEntry,
    QuestionKind,
    QuestionRecord,
    Recommendation,
    SessionSnapshot,
    SessionStartResult,
    SkipReason,
    TimingWindows,
    TokenUsage,
    UsageSummary,
)

logger = logging.getLogger(__name__)

TurnSink = Callable[[str, str, ConversationTurn], Awaitable[None]]
"""Caller hook persisting a turn: (session_id, question_id, turn). May raise PersistenceConflict."""

PendingTurns = list[tuple[str, ConversationTurn]]


def _now_ms() -> float:
    return time.time() * 1000


class SessionRegistry:
    """
    The orchestrator's root object.

    The caller creates one registry per process and dispatches the
    returned events and records; the registry never persists anything
    itself beyond handing conversation turns to an optional sink.
    """

    def __init__(
        self,
        llm_client: LLMClientBase | None = None,
        settings: Settings | None = None,
        turn_sink: TurnSink | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """
        Initialize the session registry.

        Args:
            llm_client: Provider client shared by all components. Creates default if None.
            settings: Application settings (defaults to cached settings).
            turn_sink: Optional coroutine that persists conversation turns.
            rng: Random source for question picks and intervention wording.
        """
        self._settings = settings or get_settings()
        self._owns_client = llm_client is None
        self._llm_client = llm_client or GeminiClient(
            api_key=self._settings.gemini_api_key,
            base_url=self._settings.gemini_base_url,
            timeout=self._settings.llm_timeout,
        )
        self._turn_sink = turn_sink
        self._sessions: dict[str, SessionState] = {}

        rng = rng or random.Random()
        self._accountant = UsageAccountant(
            default_model=self._settings.default_pricing_model,
            exchange_rate=self._settings.usd_to_inr_rate,
        )
        self._question_engine = QuestionEngine(self._llm_client, settings=self._settings, rng=rng)
        self._evaluation = EvaluationPipeline(self._llm_client, settings=self._settings)
        self._aggregator = TranscriptAggregator(self._llm_client, settings=self._settings)
        self._screener = IntegrityScreener(self._llm_client, settings=self._settings)
        self._conversation = ConversationStateMachine(
            IntentClassifier(self._llm_client, settings=self._settings),
            settings=self._settings,
            rng=rng,
        )

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    @property
    def accountant(self) -> UsageAccountant:
        return self._accountant

    async def close(self) -> None:
        """Close every session and release the provider client if owned."""
        for state in self._sessions.values():
            state.closed = True
        self._sessions.clear()
        if self._owns_client and isinstance(self._llm_client, GeminiClient):
            await self._llm_client.close()

    # --- Lifecycle -----------------------------------------------------------

    async def start_session(
        self,
        interview_id: str,
        candidate_id: str,
        context: InterviewContext,
    ) -> SessionStartResult:
        """
        Create a session and produce its first question.

        Raises:
            QuestionGenerationFailed: If the first question could not be generated.
        """
        state = SessionState(
            interview_id=interview_id,
            candidate_id=candidate_id,
            context=context,
            model=self._settings.gemini_model,
        )
        logger.info(f"Starting session {state.session_id} for interview {interview_id}")

        async with state.lock:
            first_question = await self._next_question(state)

        self._sessions[state.session_id] = state
        return SessionStartResult(
            session_id=state.session_id,
            model=state.model,
            first_question=first_question,
        )

    def get_session(self, session_id: str) -> SessionState:
        """
        Look up an active session.

        Raises:
            InvalidSession: If the session is unknown, ended or evicted.
        """
        state = self._sessions.get(session_id)
        if state is None or state.closed:
            raise InvalidSession(session_id)
        return state

    async def end_session(self, session_id: str) -> UsageSummary:
        """
        End a session and return its final usage.

        Does not wait for in-flight operations; their late results are discarded.
        """
        state = self._sessions.pop(session_id, None)
        if state is None or state.closed:
            raise InvalidSession(session_id)
        state.closed = True
        summary = self._accountant.summary(state)
        logger.info(
            f"Ended session {session_id}: {summary.tokens['total']} tokens, ${summary.cost:.4f}"
        )
        return summary

    def evict_idle(self, now: float | None = None) -> list[str]:
        """Evict sessions idle longer than the configured timeout."""
        now = now if now is not None else time.monotonic()
        timeout = self._settings.session_idle_timeout_seconds
        evicted = [sid for sid, s in self._sessions.items() if now - s.last_activity > timeout]
        for sid in evicted:
            state = self._sessions.pop(sid)
            state.closed = True
            logger.info(f"Evicted idle session {sid}")
        return evicted

    def snapshot(self, session_id: str) -> SessionSnapshot:
        """Records produced by a session so far, for the caller to persist."""
        state = self.get_session(session_id)
        conversations = []
        for question in state.questions:
            conversation = state.conversation(question.question_id)
            turns = sorted(conversation.turns, key=lambda t: t.timestamp)
            conversations.append(
                QuestionConversationRecord(
                    question_id=question.question_id,
                    turns=turns,
                    interventions=list(conversation.interventions),
                    deflections=list(conversation.deflections),
                    question_attempts=conversation.question_attempts,
                    integrity_severity=self._conversation.severity(conversation),
                    final_transcript=self._aggregator.assemble(turns, question.transcript),
                )
            )
        return SessionSnapshot(
            session_id=state.session_id,
            interview_id=state.interview_id,
            candidate_id=state.candidate_id,
            model=state.model,
            is_complete=state.is_complete,
            questions=state.questions,
            conversations=conversations,
            usage=state.usage.model_copy(),
            question_history=list(state.question_history),
        )

    # --- Questions -----------------------------------------------------------

    def _record_usage(self, state: SessionState, usage: TokenUsage | None, question_id: str | None) -> None:
        if usage is not None and (usage.input_tokens or usage.output_tokens):
            self._accountant.record_usage(state, usage, question_id=question_id)

    @staticmethod
    def _adopt_model(state: SessionState, usage: TokenUsage | None) -> None:
        """Track the model that served a primary-path call (generation or evaluation)."""
        if usage is not None and usage.model and usage.model != state.model:
            logger.info(f"Session {state.session_id} now on {usage.model} (was {state.model})")
            state.model = usage.model

    def _append_question(self, state: SessionState, question: QuestionRecord, usage: TokenUsage | None) -> bool:
        if not state.add_question(question):
            logger.warning(f"Discarding duplicate question {question.question_id} (order {question.order})")
            return False
        self._record_usage(state, usage, question.question_id)
        state.question_history.append(
            QuestionHistoryEntry(
                question_text=question.text,
                candidate_id=state.candidate_id,
                candidate_email=state.context.candidate_email,
            )
        )
        logger.info(
            f"Session {state.session_id} question {question.order}: {question.kind.value} {question.question_id}"
        )
        return True

    async def _next_question(self, state: SessionState, prior_answer: str | None = None) -> QuestionRecord:
        """Produce and append the next question. Caller holds the lock."""
        question, usage = await self._question_engine.select_or_generate(state, prior_answer)
        if state.closed:
            logger.info(f"Session {state.session_id} ended during question generation; discarding result")
            return question
        if self._append_question(state, question, usage):
            self._adopt_model(state, usage)
        return question

    async def _advance(
        self,
        state: SessionState,
        after: QuestionRecord,
        prior_answer: str | None = None,
    ) -> list[OrchestratorEvent]:
        """
        Move past `after`: generate the next question unless one already exists.
        """
        if state.has_question_after(after.order):
            return []
        if state.is_complete or not state.has_capacity:
            state.is_complete = True
            return [OrchestratorEvent(type=EventType.INTERVIEW_COMPLETE, question_id=after.question_id)]
        question = await self._next_question(state, prior_answer)
        return [OrchestratorEvent(type=EventType.NEXT_QUESTION, question_id=question.question_id, question=question)]

    async def request_next_question(self, session_id: str) -> QuestionRecord | None:
        """
        Produce the next question if none is pending, e.g. after a failed generation.

        Returns:
            The newest question, or None if the interview is complete.
        """
        state = self.get_session(session_id)
        async with state.lock:
            state = self.get_session(session_id)
            state.touch()
            if state.is_complete:
                return None
            current = state.current_question
            if current is None:
                return await self._next_question(state)
            if not (current.is_answered or current.skipped):
                return current
            events = await self._advance(state, current, current.transcript)
            for event in events:
                if event.question is not None:
                    return event.question
            return None

    async def question_started(self, session_id: str, question_id: str) -> ConversationTurn:
        """The interviewer began speaking a question: reset its live state and log the turn."""
        state = self.get_session(session_id)
        async with state.lock:
            state = self.get_session(session_id)
            state.touch()
            question = state.get_question(question_id)
            conversation = state.conversation(question_id)
            conversation.reset()
            turn = self._aggregator.add_bot_turn(conversation, question.text)
        await self._persist_turns(session_id, [(question_id, turn)])
        return turn

    async def followup_asked(self, session_id: str, question_id: str, text: str) -> ConversationTurn:
        """The interviewer asked a proposed follow-up within the current question."""
        state = self.get_session(session_id)
        async with state.lock:
            state = self.get_session(session_id)
            state.touch()
            conversation = state.conversation(question_id)
            turn = self._aggregator.add_bot_turn(conversation, text)
        await self._persist_turns(session_id, [(question_id, turn)])
        return turn

    # --- Answers -------------------------------------------------------------

    async def submit_answer(
        self,
        session_id: str,
        question_id: str,
        media: MediaPayload | None,
        frames: list[str] | None = None,
        timing: TimingWindows | None = None,
    ) -> AnswerResult:
        """
        Evaluate a recorded answer and advance the interview.

        Re-submitting an already evaluated question returns the stored
        result without another provider call.

        Raises:
            InvalidSession: Unknown session.
            UnknownQuestion: Unknown question id.
            ProviderUnavailable: Evaluation failed on every model.
            QuestionGenerationFailed: The next question could not be generated.
        """
        state = self.get_session(session_id)
        async with state.lock:
            state = self.get_session(session_id)
            state.touch()
            question = state.get_question(question_id)

            cached = state.answered.get(question_id)
            if cached is not None:
                logger.info(f"Duplicate submission for {question_id}; returning stored result")
                if cached.next_question is None and not state.is_complete:
                    events = await self._advance(state, question, cached.transcript)
                    cached = self._apply_advance(state, cached, events)
                return cached.model_copy(update={"duplicate": True})

            result = await self._evaluation.evaluate_answer(state, question, media, frames, timing)

            if state.closed or question_id in state.answered:
                logger.info(f"Discarding late evaluation for {question_id} in session {session_id}")
                return AnswerResult(question_id=question_id, discarded=True)

            self._record_usage(state, result.token_usage, question_id)
            self._adopt_model(state, result.token_usage)
            question.transcript = result.transcript
            question.evaluation = result.evaluation
            question.cheating = result.cheating

            conversation = state.conversation(question_id)
            answer = AnswerResult(
                question_id=question_id,
                transcript=result.transcript,
                final_transcript=self._aggregator.assemble(conversation.turns, result.transcript),
                evaluation=result.evaluation,
                cheating=result.cheating,
                token_usage=result.token_usage,
                next_action=result.next_action,
            )
            state.answered[question_id] = answer

            if self._evaluation.should_end(state, result):
                state.is_complete = True
                answer.interview_complete = True
                logger.info(f"Interview complete for session {session_id}")
                return answer

            if (
                result.next_action == NextAction.ASK_FOLLOWUP
                and result.next_text
                and state.has_capacity
                and not state.has_question_after(question.order)
            ):
                followup = QuestionRecord(
                    text=result.next_text[: self._settings.question_text_max_chars],
                    kind=QuestionKind.FOLLOW_UP,
                    order=state.next_order,
                    skills_targeted=list(question.skills_targeted),
                    parent_question_id=question_id,
                )
                self._append_question(state, followup, None)
                answer.next_question = followup
                return answer

            events = await self._advance(state, question, result.transcript)
            return self._apply_advance(state, answer, events)

    @staticmethod
    def _apply_advance(state: SessionState, answer: AnswerResult, events: list[OrchestratorEvent]) -> AnswerResult:
        for event in events:
            if event.type == EventType.NEXT_QUESTION:
                answer.next_question = event.question
            elif event.type == EventType.INTERVIEW_COMPLETE:
                answer.interview_complete = True
        state.answered[answer.question_id] = answer
        return answer

    async def synthesize_recommendation(self, session_id: str) -> Recommendation:
        """
        Synthesize the overall recommendation for a session before it is ended.

        Raises:
            InsufficientData: Fewer than three answered questions.
            ProviderUnavailable: Every model failed.
        """
        state = self.get_session(session_id)
        async with state.lock:
            state = self.get_session(session_id)
            state.touch()
            recommendation = await self._evaluation.synthesize_recommendation(state)
            if not state.closed:
                self._record_usage(state, recommendation.token_usage, None)
            return recommendation

    # --- Live signals ----------------------------------------------------------

    def _is_current(self, state: SessionState, question_id: str) -> bool:
        state.get_question(question_id)
        current = state.current_question
        return current is not None and current.question_id == question_id

    async def transcript_chunk(
        self,
        session_id: str,
        question_id: str,
        text: str,
        is_final: bool,
        timestamp_ms: float | None = None,
    ) -> list[OrchestratorEvent]:
        """
        Handle a live transcript fragment.

        Returns:
            Zero or more acknowledgment, deflection, clarification and
            follow-up proposal events.
        """
        state = self.get_session(session_id)
        events: list[OrchestratorEvent] = []
        pending: PendingTurns = []
        now_ms = timestamp_ms if timestamp_ms is not None else _now_ms()

        async with state.lock:
            state = self.get_session(session_id)
            state.touch()
            if not self._is_current(state, question_id) or state.is_complete:
                logger.debug(f"Ignoring transcript chunk for stale question {question_id}")
                return []

            question = state.get_question(question_id)
            conversation = state.conversation(question_id)

            turn = self._aggregator.add_candidate_fragment(conversation, text, is_final, now_ms)
            if turn is not None:
                pending.append((question_id, turn))

            deflected = False
            if len(text.strip()) > self._settings.deflection_min_chars:
                screening = await self._screener.screen(text, question.text)
                if state.closed:
                    return []
                self._record_usage(state, screening.usage, question_id)
                record = self._conversation.record_screening(conversation, text.strip(), screening)
                if record is not None:
                    deflected = screening.requires_deflection
                    bot_turn = self._aggregator.add_bot_turn(conversation, record.bot_response)
                    pending.append((question_id, bot_turn))
                    events.append(
                        OrchestratorEvent(
                            type=EventType.DEFLECTION if deflected else EventType.CLARIFICATION,
                            question_id=question_id,
                            message=record.bot_response,
                            data={
                                "intent": record.type.value,
                                "confidence": record.confidence,
                                "question_attempts": conversation.question_attempts,
                                "severity": self._conversation.severity(conversation).value,
                            },
                        )
                    )

            if is_final and not deflected:
                acknowledgment = await self._aggregator.acknowledge(text)
                if state.closed:
                    return []
                if acknowledgment is not None:
                    self._record_usage(state, acknowledgment.usage, question_id)
                    if acknowledgment.message:
                        events.append(
                            OrchestratorEvent(
                                type=EventType.ACKNOWLEDGMENT,
                                question_id=question_id,
                                message=acknowledgment.message,
                                data={"kind": "realtime", "confidence": acknowledgment.confidence},
                            )
                        )

            if self._aggregator.should_analyze(conversation, is_final, now_ms):
                analysis = await self._aggregator.analyze_for_followup(state, question, conversation, now_ms)
                if state.closed:
                    return []
                if analysis is not None:
                    self._record_usage(state, analysis.usage, question_id)
                    if self._aggregator.is_followup_worthy(analysis):
                        events.append(
                            OrchestratorEvent(
                                type=EventType.FOLLOWUP_PROPOSAL,
                                question_id=question_id,
                                message=analysis.followup_question,
                                data={
                                    "followup_question_id": f"{question_id}_followup_{int(now_ms)}",
                                    "parent_question_id": question_id,
                                    "confidence": analysis.confidence,
                                    "reasoning": analysis.reasoning,
                                },
                            )
                        )

        await self._persist_turns(session_id, pending)
        return events

    async def silence_signal(
        self,
        session_id: str,
        question_id: str,
        silence_ms: float,
    ) -> list[OrchestratorEvent]:
        """
        Handle a reported silence length for the current question.

        Returns:
            At most one intervention, plus the next question (or completion)
            on a forced move.
        """
        state = self.get_session(session_id)
        pending: PendingTurns = []

        async with state.lock:
            state = self.get_session(session_id)
            state.touch()
            if not self._is_current(state, question_id) or state.is_complete:
                logger.debug(f"Ignoring silence signal for stale question {question_id}")
                return []

            question = state.get_question(question_id)
            conversation = state.conversation(question_id)
            intervention = self._conversation.on_silence(conversation, silence_ms)
            if intervention is None:
                return []

            pending.append((question_id, self._aggregator.add_bot_turn(conversation, intervention.message)))
            events = [
                OrchestratorEvent(
                    type=EventType.INTERVENTION,
                    question_id=question_id,
                    message=intervention.message,
                    data={"intervention_type": intervention.type.value, "silence_ms": silence_ms},
                )
            ]

            if intervention.type == InterventionType.FORCE_MOVE:
                events.extend(await self._skip(state, question, conversation, SkipReason.TIMEOUT))

        await self._persist_turns(session_id, pending)
        return events

    async def candidate_intent_reply(
        self,
        session_id: str,
        question_id: str,
        text: str,
    ) -> list[OrchestratorEvent]:
        """
        Handle a candidate's reply to an intervention.

        Returns:
            An acknowledgment, plus a process-answer request or the next
            question depending on the classified intent.
        """
        state = self.get_session(session_id)
        pending: PendingTurns = []

        async with state.lock:
            state = self.get_session(session_id)
            state.touch()
            question = state.get_question(question_id)
            if state.is_complete:
                logger.debug(f"Ignoring intent reply for {question_id}; interview is complete")
                return []
            conversation = state.conversation(question_id)

            outcome = await self._conversation.on_reply(conversation, text)
            if state.closed:
                return []
            self._record_usage(state, outcome.classification.usage, question_id)

            pending.append((question_id, self._aggregator.add_bot_turn(conversation, outcome.message)))
            events = [
                OrchestratorEvent(
                    type=EventType.ACKNOWLEDGMENT,
                    question_id=question_id,
                    message=outcome.message,
                    data={"intent": outcome.intent.value, "confidence": outcome.confidence},
                )
            ]

            if outcome.process_answer:
                events.append(
                    OrchestratorEvent(
                        type=EventType.PROCESS_ANSWER,
                        question_id=question_id,
                        data={"reason": "candidate_done"},
                    )
                )
            elif outcome.skip_question and self._is_current(state, question_id):
                events.extend(await self._skip(state, question, conversation, SkipReason.CANDIDATE_REQUESTED))

        await self._persist_turns(session_id, pending)
        return events

    async def _skip(
        self,
        state: SessionState,
        question: QuestionRecord,
        conversation: ConversationState,
        reason: SkipReason,
    ) -> list[OrchestratorEvent]:
        if not question.is_answered:
            question.skipped = True
            question.skip_reason = reason
        logger.info(f"Question {question.question_id} skipped ({reason.value})")
        prior = self._aggregator.analysis_text(conversation) or None
        return await self._advance(state, question, prior)

    # --- Persistence -------------------------------------------------------------

    async def _persist_turns(self, session_id: str, pending: PendingTurns) -> None:
        if self._turn_sink is None:
            return
        for question_id, turn in pending:
            await self._persist_turn(session_id, question_id, turn)

    async def _persist_turn(self, session_id: str, question_id: str, turn: ConversationTurn) -> bool:
        """
        Hand a turn to the sink, retrying conflicts with increasing backoff.

        Returns:
            True if persisted, False if dropped.
        """
        max_attempts = max(1, self._settings.turn_write_max_retries)
        for attempt in range(1, max_attempts + 1):
            try:
                await self._turn_sink(session_id, question_id, turn)
                return True
            except PersistenceConflict as e:
                if attempt >= max_attempts:
                    logger.error(
                        f"Dropping turn {turn.turn_id} for {question_id} after {attempt} conflicting writes: {e}"
                    )
                    return False
                await asyncio.sleep(self._settings.turn_write_backoff_ms * attempt / 1000)
            except Exception as e:
                logger.error(f"Failed to persist turn {turn.turn_id} for {question_id}: {e}", exc_info=True)
                return False
        return False
