"""
Console interview driver.

Drives one session from the terminal: typed lines are sent as final
transcript chunks and slash commands stand in for the signals a real
client would emit.
"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path

from interview_moderator.errors import InsufficientData, InterviewModeratorError
from interview_moderator.orchestrator.schemas import (
    AnswerResult,
    EventType,
    InterviewContext,
    OrchestratorEvent,
    QuestionRecord,
    Recommendation,
    UsageSummary,
)
from interview_moderator.orchestrator.session_registry import SessionRegistry

logger = logging.getLogger(__name__)

HELP_TEXT = """Commands:
  <text>          send a final transcript chunk
  /silence <ms>   report silence for the current question
  /reply <text>   reply to the last intervention
  /ask            ask the last proposed follow-up
  /submit         submit the current answer for evaluation
  /end            end the session
  /help           show this message"""


def load_context(path: str | Path) -> InterviewContext:
    """Load an interview context from a JSON file."""
    with open(path, encoding="utf-8") as f:
        return InterviewContext.model_validate(json.load(f))


class InterviewInterface(ABC):
    """Abstract base class for interview interfaces."""

    @abstractmethod
    async def run(self) -> None:
        ...

    @abstractmethod
    async def send_message(self, message: str) -> None:
        ...

    @abstractmethod
    async def receive_input(self) -> str:
        ...


class ConsoleInterface(InterviewInterface):
    """
    Command-line driver for a single interview session.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        context: InterviewContext,
        interview_id: str,
        candidate_id: str,
    ) -> None:
        """
        Initialize the console driver.

        Args:
            registry: Session registry to drive.
            context: Interview definition.
            interview_id: Interview identifier.
            candidate_id: Candidate identifier.
        """
        self._registry = registry
        self._context = context
        self._interview_id = interview_id
        self._candidate_id = candidate_id
        self._session_id: str | None = None
        self._current: QuestionRecord | None = None
        self._pending_followup: str | None = None
        self._active = False

    async def run(self) -> None:
        """Run the interactive session until /end or completion."""
        print("\n" + "=" * 60)
        print(f"Interview: {self._context.job_title}")
        print("=" * 60 + "\n")

        started = await self._registry.start_session(self._interview_id, self._candidate_id, self._context)
        self._session_id = started.session_id
        self._active = True
        print(f"Session {started.session_id} on {started.model}")
        print(HELP_TEXT)
        await self._ask(started.first_question)

        while self._active:
            line = (await self.receive_input()).strip()
            if not line:
                continue
            try:
                await self._dispatch(line)
            except InterviewModeratorError as e:
                logger.error(f"Command failed: {e}")
                await self.send_message(f"[error] {e}")

    async def send_message(self, message: str) -> None:
        print(f"\n{message}\n")

    async def receive_input(self) -> str:
        try:
            return input("You: ")
        except EOFError:
            return "/end"

    async def _dispatch(self, line: str) -> None:
        command, _, arg = line.partition(" ")
        session_id = self._session_id
        question_id = self._current.question_id if self._current else ""

        if command == "/help":
            print(HELP_TEXT)
        elif command == "/silence":
            try:
                silence_ms = float(arg)
            except ValueError:
                await self.send_message("Usage: /silence <ms>")
                return
            await self._show_events(await self._registry.silence_signal(session_id, question_id, silence_ms))
        elif command == "/reply":
            await self._show_events(await self._registry.candidate_intent_reply(session_id, question_id, arg))
        elif command == "/ask":
            if self._pending_followup is None:
                await self.send_message("No follow-up proposed yet.")
                return
            await self._registry.followup_asked(session_id, question_id, self._pending_followup)
            await self.send_message(f"Interviewer: {self._pending_followup}")
            self._pending_followup = None
        elif command == "/submit":
            await self._submit()
        elif command == "/end":
            await self._end()
        else:
            events = await self._registry.transcript_chunk(session_id, question_id, line, is_final=True)
            await self._show_events(events)

    async def _ask(self, question: QuestionRecord) -> None:
        self._current = question
        self._pending_followup = None
        await self._registry.question_started(self._session_id, question.question_id)
        await self.send_message(f"Interviewer [{question.order}/{self._context.max_questions}]: {question.text}")

    async def _show_events(self, events: list[OrchestratorEvent]) -> None:
        for event in events:
            if event.type == EventType.FOLLOWUP_PROPOSAL:
                self._pending_followup = event.message
                print(f"  (follow-up proposed: {event.message})")
            elif event.type == EventType.PROCESS_ANSWER:
                await self.send_message("Interviewer: Thank you.")
                await self._submit()
            elif event.type == EventType.NEXT_QUESTION and event.question is not None:
                await self._ask(event.question)
            elif event.type == EventType.INTERVIEW_COMPLETE:
                await self._end()
            elif event.message:
                await self.send_message(f"Interviewer: {event.message}")

    async def _submit(self) -> None:
        result = await self._registry.submit_answer(self._session_id, self._current.question_id, media=None)
        self._display_answer(result)
        if result.next_question is not None:
            await self._ask(result.next_question)
        elif result.interview_complete:
            await self._end()

    async def _end(self) -> None:
        if not self._active:
            return
        self._active = False
        recommendation: Recommendation | None = None
        try:
            recommendation = await self._registry.synthesize_recommendation(self._session_id)
        except InsufficientData as e:
            logger.info(f"Skipping recommendation: {e}")
        usage = await self._registry.end_session(self._session_id)
        self._display_summary(recommendation, usage)

    def _display_answer(self, result: AnswerResult) -> None:
        if result.evaluation is None:
            return
        ev = result.evaluation
        print(
            f"  [score {ev.overall_score} {ev.score_label.value}: relevance={ev.relevance} "
            f"technical={ev.technical_accuracy} fluency={ev.fluency}]"
        )

    def _display_summary(self, recommendation: Recommendation | None, usage: UsageSummary) -> None:
        print("\n" + "=" * 60)
        print("Interview Summary")
        print("=" * 60)
        if recommendation is not None:
            print(f"\nFit: {recommendation.fit_status.value}")
            print(f"Overall score: {recommendation.aggregate_scores.overall_score:.2f}")
            print(f"Summary: {recommendation.summary}")
            for strength in recommendation.strengths:
                print(f"  + {strength}")
            for weakness in recommendation.weaknesses:
                print(f"  - {weakness}")
        print(f"\nTokens: {usage.tokens['total']} (in {usage.tokens['input']}, out {usage.tokens['output']})")
        print(f"Cost: ${usage.cost:.4f} / INR {usage.cost_inr:.2f} on {usage.model}")
        print("\n" + "=" * 60)
