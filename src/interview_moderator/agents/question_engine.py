"""
Question engine.

Decides whether the next question comes from the curated mandatory pool
or must be generated, and runs the generation request with model fallback.
"""

from __future__ import annotations

import logging
import math
import random
from datetime import datetime, timedelta, timezone
from typing import Any

from interview_moderator.config import Settings, get_settings
from interview_moderator.errors import MalformedResponse, ProviderUnavailable, QuestionGenerationFailed
from interview_moderator.models.gemini_client import LLMClientBase, LLMResponse, Part
from interview_moderator.orchestrator.interview_state import SessionState
from interview_moderator.orchestrator.schemas import (
    InterviewContext,
    QuestionKind,
    QuestionRecord,
    QuestionSpec,
    TokenUsage,
)

logger = logging.getLogger(__name__)

REQUIRED_QUESTION_FIELDS = ("question_id", "question_text", "type", "order")


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def mandatory_target(context: InterviewContext) -> int:
    """Number of curated mandatory questions the interview should contain."""
    return round_half_up(context.mandatory_weightage / 100 * context.max_questions)


class QuestionEngine:
    """
    Selects curated questions and generates new ones.

    Mandatory questions are chosen by skill weight and coverage with a
    random pick among the top scorers; everything else is generated.
    """

    GENERATION_PROMPT = """You are a technical interviewer conducting a live interview.
Write the next interview question for the candidate.

Position: {job_title}
Job description:
{job_description}

Skills to assess (name, weight out of 100, topics):
{skills}

Skill coverage from mandatory questions:
{mandatory_coverage}

Questions already asked in this interview:
{asked_questions}

{samples_section}{priority_section}{prior_answer_section}Rules:
- Ask exactly one clear, spoken-style question answerable in a few minutes.
- Do not repeat or paraphrase a question already asked.
- Prefer the priority skills when they are listed.

Respond with a JSON object containing:
{{
    "question_id": "<short unique id>",
    "question_text": "<the question>",
    "type": "dynamic",
    "order": {order},
    "skills_targeted": ["<skill>", ...]
}}

Only return valid JSON, no other text."""

    def __init__(
        self,
        llm_client: LLMClientBase,
        settings: Settings | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """
        Initialize the question engine.

        Args:
            llm_client: Provider client used for generation.
            settings: Application settings (defaults to cached settings).
            rng: Random source for the top-candidate pick.
        """
        self._llm_client = llm_client
        self._settings = settings or get_settings()
        self._rng = rng or random.Random()

    def should_ask_mandatory(self, state: SessionState) -> bool:
        """Whether the mandatory quota still requires a curated question."""
        context = state.context
        remaining_questions = context.max_questions - len(state.questions)
        remaining_mandatory = max(0, mandatory_target(context) - state.mandatory_asked)
        return (
            bool(context.mandatory_questions)
            and context.mandatory_weightage > 0
            and remaining_mandatory > 0
            and remaining_questions > 0
        )

    def _recently_asked_texts(self, state: SessionState, now: datetime) -> set[str]:
        cutoff = now - timedelta(hours=self._settings.recent_question_window_hours)
        email = state.context.candidate_email
        texts: set[str] = set()
        for entry in state.question_history:
            same_candidate = (entry.candidate_id is not None and entry.candidate_id == state.candidate_id) or (
                email is not None and entry.candidate_email == email
            )
            if same_candidate and entry.asked_at > cutoff:
                texts.add(entry.question_text.lower())
        return texts

    def _asked_skill_counts(self, state: SessionState, mandatory_only: bool = False) -> dict[str, int]:
        counts: dict[str, int] = {}
        for question in state.questions:
            if mandatory_only and question.kind != QuestionKind.MANDATORY:
                continue
            for skill in question.skills_targeted:
                counts[skill] = counts.get(skill, 0) + 1
        return counts

    def score_question(self, spec: QuestionSpec, context: InterviewContext, asked_counts: dict[str, int]) -> float:
        return sum(
            context.skill_weight(skill) / (1 + asked_counts.get(skill, 0) * 0.5)
            for skill in spec.skills
        )

    def select_mandatory(self, state: SessionState, now: datetime | None = None) -> QuestionSpec | None:
        """
        Pick a curated mandatory question.

        Questions asked to the same candidate within the recent window are
        excluded unless that would empty the pool.
        """
        pool = state.context.mandatory_questions
        if not pool:
            return None

        recent = self._recently_asked_texts(state, now or datetime.now(timezone.utc))
        available = [q for q in pool if q.text.lower() not in recent] or list(pool)

        asked_counts = self._asked_skill_counts(state, mandatory_only=True)
        scored = sorted(
            available,
            key=lambda q: self.score_question(q, state.context, asked_counts),
            reverse=True,
        )
        top = scored[: max(1, math.ceil(len(scored) * 0.3))]
        return self._rng.choice(top)

    def priority_skills(self, state: SessionState) -> list[str]:
        """Skills with the highest weight relative to their coverage so far."""
        context = state.context
        mandatory_coverage = self._mandatory_coverage(context)
        asked_counts = self._asked_skill_counts(state)
        ranked = sorted(
            context.skills,
            key=lambda s: s.weight / (1 + mandatory_coverage.get(s.name, 0) + asked_counts.get(s.name, 0)),
            reverse=True,
        )
        return [s.name for s in ranked[: self._settings.priority_skill_count] if s.weight > 0]

    @staticmethod
    def _mandatory_coverage(context: InterviewContext) -> dict[str, int]:
        coverage: dict[str, int] = {}
        for question in context.mandatory_questions:
            for skill in question.skills:
                coverage[skill] = coverage.get(skill, 0) + 1
        return coverage

    def build_generation_prompt(self, state: SessionState, prior_answer: str | None = None) -> str:
        context = state.context

        skills = "\n".join(
            f"- {s.name} ({s.weight:g}): {', '.join(s.topics) if s.topics else 'general'}"
            for s in context.skills
        ) or "- (no skills specified)"

        coverage = self._mandatory_coverage(context)
        mandatory_coverage = "\n".join(f"- {name}: {count}" for name, count in coverage.items()) or "- none"

        asked = "\n".join(f"{q.order}. {q.text}" for q in state.questions) or "(none yet)"

        samples_section = ""
        if context.optional_questions and context.optional_weightage > 0:
            samples = context.optional_questions[: self._settings.sample_question_limit]
            sample_lines = "\n".join(f"- {q.text}" for q in samples)
            samples_section = (
                "Reference questions showing the expected style and difficulty "
                f"(do not copy them):\n{sample_lines}\n\n"
            )

        priority_section = ""
        priority = self.priority_skills(state)
        if priority:
            priority_section = f"Priority skills (least covered relative to weight): {', '.join(priority)}\n\n"

        prior_answer_section = ""
        if prior_answer:
            prior_answer_section = f"The candidate's previous answer:\n{prior_answer[:1500]}\n\n"

        return self.GENERATION_PROMPT.format(
            job_title=context.job_title or "Not specified",
            job_description=context.job_description or "Not specified",
            skills=skills,
            mandatory_coverage=mandatory_coverage,
            asked_questions=asked,
            samples_section=samples_section,
            priority_section=priority_section,
            prior_answer_section=prior_answer_section,
            order=state.next_order,
        )

    def _parse_generated(
        self,
        state: SessionState,
        payload: dict[str, Any],
        response: LLMResponse,
    ) -> tuple[QuestionRecord, TokenUsage]:
        missing = [f for f in REQUIRED_QUESTION_FIELDS if payload.get(f) in (None, "")]
        if missing:
            raise MalformedResponse(
                f"Generated question missing fields: {', '.join(missing)}",
                model=response.model,
                missing_fields=missing,
            )

        text = str(payload["question_text"]).strip()
        if not text:
            raise MalformedResponse("Generated question text is empty", model=response.model)
        text = text[: self._settings.question_text_max_chars]

        skills_raw = payload.get("skills_targeted") or []
        known_skills = {s.name for s in state.context.skills}
        skills = [str(s) for s in skills_raw if isinstance(s, str)] if isinstance(skills_raw, list) else []
        if known_skills:
            skills = [s for s in skills if s in known_skills] or skills

        kind = QuestionKind.GENERATED
        if state.context.optional_questions and state.context.optional_weightage > 0:
            kind = QuestionKind.OPTIONAL_STYLE

        record_kwargs: dict[str, Any] = {
            "text": text,
            "kind": kind,
            "order": state.next_order,
            "skills_targeted": skills,
        }
        proposed_id = str(payload["question_id"]).strip()
        if proposed_id and state.find_question(proposed_id) is None:
            record_kwargs["question_id"] = proposed_id

        return QuestionRecord(**record_kwargs), response.usage

    async def generate(
        self,
        state: SessionState,
        prior_answer: str | None = None,
    ) -> tuple[QuestionRecord, TokenUsage]:
        """
        Generate the next question with model fallback.

        Raises:
            QuestionGenerationFailed: If every model failed or returned malformed output.
            ProviderError: On a non-fallback provider error.
        """
        prompt = self.build_generation_prompt(state, prior_answer)
        models = [state.model, *self._settings.gemini_fallback_models]

        try:
            return await self._llm_client.generate_json_with_fallback(
                models,
                [Part.from_text(prompt)],
                lambda payload, response: self._parse_generated(state, payload, response),
                generation_config={"temperature": 0.7, "topP": 0.95, "topK": 40},
            )
        except ProviderUnavailable as e:
            logger.error(f"Question generation failed for session {state.session_id}: {e}")
            raise QuestionGenerationFailed(str(e), attempted_models=e.attempted_models) from e

    async def select_or_generate(
        self,
        state: SessionState,
        prior_answer: str | None = None,
    ) -> tuple[QuestionRecord, TokenUsage | None]:
        """
        Produce the next question for a session without appending it.

        Returns:
            The new question record and the provider usage it cost, if any.
        """
        if self.should_ask_mandatory(state):
            spec = self.select_mandatory(state)
            if spec is not None:
                logger.info(f"Selected mandatory question for session {state.session_id}")
                record = QuestionRecord(
                    text=spec.text,
                    kind=QuestionKind.MANDATORY,
                    order=state.next_order,
                    skills_targeted=list(spec.skills),
                )
                return record, None

        return await self.generate(state, prior_answer)
