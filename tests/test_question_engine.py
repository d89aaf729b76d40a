import json
import random
from datetime import datetime, timedelta, timezone

import pytest

from conftest import GENERATION_MARKER, ScriptedLLMClient, question_replies
from interview_moderator.agents.question_engine import QuestionEngine, mandatory_target
from interview_moderator.config import Settings
from interview_moderator.errors import ModelUnavailableError, QuestionGenerationFailed
from interview_moderator.orchestrator.interview_state import SessionState
from interview_moderator.orchestrator.schemas import (
    InterviewContext,
    QuestionHistoryEntry,
    QuestionKind,
    QuestionSpec,
    SkillWeight,
)


def _context(**overrides) -> InterviewContext:
    values = dict(
        job_title="Backend Engineer",
        skills=[SkillWeight(name="Python", weight=70), SkillWeight(name="SQL", weight=30)],
        mandatory_questions=[
            QuestionSpec(text="Question A", skills=["Python"]),
            QuestionSpec(text="Question B", skills=["SQL"]),
        ],
        mandatory_weightage=50,
        max_questions=4,
    )
    values.update(overrides)
    return InterviewContext(**values)


def _state(context: InterviewContext) -> SessionState:
    return SessionState("interview-1", "candidate-1", context, model="gemini-2.5-pro")


class TestQuestionPools:
    def test_plain_strings_and_tagged_objects_normalize(self) -> None:
        context = InterviewContext.model_validate(
            {
                "mandatory_questions": [
                    "What is a closure?",
                    {"question": "Explain MVCC.", "skills": ["SQL"]},
                    {"text": "Describe the GIL.", "skills": ["Python"]},
                ]
            }
        )
        questions = context.mandatory_questions
        assert [q.text for q in questions] == ["What is a closure?", "Explain MVCC.", "Describe the GIL."]
        assert questions[0].skills == []
        assert questions[1].skills == ["SQL"]


class TestMandatoryDistribution:
    def test_target_rounds_half_up(self) -> None:
        assert mandatory_target(_context(mandatory_weightage=40, max_questions=5)) == 2
        assert mandatory_target(_context(mandatory_weightage=50, max_questions=5)) == 3
        assert mandatory_target(_context(mandatory_weightage=0, max_questions=5)) == 0

    @pytest.mark.asyncio
    async def test_five_questions_at_forty_percent_has_two_mandatory(
        self,
        context: InterviewContext,
        settings: Settings,
    ) -> None:
        client = ScriptedLLMClient({GENERATION_MARKER: question_replies()})
        engine = QuestionEngine(client, settings=settings, rng=random.Random(7))
        state = _state(context)

        for _ in range(context.max_questions):
            question, _usage = await engine.select_or_generate(state)
            assert state.add_question(question)

        kinds = [q.kind for q in state.questions]
        assert kinds.count(QuestionKind.MANDATORY) == 2
        assert kinds.count(QuestionKind.GENERATED) == 3
        assert [q.order for q in state.questions] == [1, 2, 3, 4, 5]
        assert len(client.calls) == 3

    def test_no_mandatory_without_pool(self, settings: Settings) -> None:
        engine = QuestionEngine(ScriptedLLMClient(), settings=settings)
        state = _state(_context(mandatory_questions=[]))
        assert not engine.should_ask_mandatory(state)


class TestMandatorySelection:
    def test_recent_question_for_same_candidate_is_excluded(self, settings: Settings) -> None:
        now = datetime.now(timezone.utc)
        history = [QuestionHistoryEntry(question_text="question a", candidate_id="candidate-1", asked_at=now - timedelta(hours=1))]
        state = _state(_context(question_history=history))
        engine = QuestionEngine(ScriptedLLMClient(), settings=settings, rng=random.Random(1))

        picks = {engine.select_mandatory(state, now=now).text for _ in range(20)}
        assert picks == {"Question B"}

    def test_old_history_is_not_excluded(self, settings: Settings) -> None:
        now = datetime.now(timezone.utc)
        history = [QuestionHistoryEntry(question_text="Question A", candidate_id="candidate-1", asked_at=now - timedelta(hours=30))]
        state = _state(_context(question_history=history))
        engine = QuestionEngine(ScriptedLLMClient(), settings=settings)

        assert engine.select_mandatory(state, now=now).text == "Question A"

    def test_history_matched_by_email(self, settings: Settings) -> None:
        now = datetime.now(timezone.utc)
        history = [QuestionHistoryEntry(question_text="Question A", candidate_email="c@example.com", asked_at=now)]
        state = _state(_context(question_history=history, candidate_email="c@example.com"))
        engine = QuestionEngine(ScriptedLLMClient(), settings=settings)

        assert engine.select_mandatory(state, now=now).text == "Question B"

    def test_other_candidates_history_is_ignored(self, settings: Settings) -> None:
        now = datetime.now(timezone.utc)
        history = [QuestionHistoryEntry(question_text="Question A", candidate_id="someone-else", asked_at=now)]
        state = _state(_context(question_history=history))
        engine = QuestionEngine(ScriptedLLMClient(), settings=settings)

        assert engine.select_mandatory(state, now=now).text == "Question A"

    def test_falls_back_to_full_pool_when_everything_is_recent(self, settings: Settings) -> None:
        now = datetime.now(timezone.utc)
        history = [
            QuestionHistoryEntry(question_text=text, candidate_id="candidate-1", asked_at=now)
            for text in ("Question A", "Question B")
        ]
        state = _state(_context(question_history=history))
        engine = QuestionEngine(ScriptedLLMClient(), settings=settings)

        assert engine.select_mandatory(state, now=now) is not None


class TestGeneration:
    @pytest.mark.asyncio
    async def test_malformed_output_falls_back_to_next_model(self, settings: Settings) -> None:
        valid = json.dumps(
            {"question_id": "q_x", "question_text": "Describe connection pooling.", "type": "dynamic", "order": 1}
        )
        client = ScriptedLLMClient({GENERATION_MARKER: ['{"question_text": "incomplete"}', valid]})
        engine = QuestionEngine(client, settings=settings)
        state = _state(_context(mandatory_weightage=0))

        question, usage = await engine.select_or_generate(state)

        assert question.text == "Describe connection pooling."
        assert question.question_id == "q_x"
        assert question.kind == QuestionKind.GENERATED
        assert usage is not None and usage.model == "gemini-pro"
        assert [call[0] for call in client.calls] == ["gemini-2.5-pro", "gemini-pro"]

    @pytest.mark.asyncio
    async def test_all_models_failing_raises(self, settings: Settings) -> None:
        client = ScriptedLLMClient({GENERATION_MARKER: ModelUnavailableError("gone")})
        engine = QuestionEngine(client, settings=settings)
        state = _state(_context(mandatory_weightage=0))

        with pytest.raises(QuestionGenerationFailed) as exc_info:
            await engine.select_or_generate(state)
        assert exc_info.value.attempted_models == ["gemini-2.5-pro", "gemini-pro", "gemini-1.5-flash"]

    @pytest.mark.asyncio
    async def test_optional_pool_marks_style_and_truncates(self, settings: Settings) -> None:
        long_text = "Why " + "x" * 800
        client = ScriptedLLMClient(
            {
                GENERATION_MARKER: json.dumps(
                    {
                        "question_id": "q_long",
                        "question_text": long_text,
                        "type": "dynamic",
                        "order": 1,
                        "skills_targeted": ["Python", "Rust"],
                    }
                )
            }
        )
        engine = QuestionEngine(client, settings=settings)
        context = _context(
            mandatory_weightage=0,
            optional_questions=[QuestionSpec(text="Sample style question")],
            optional_weightage=30,
        )
        question, _usage = await engine.select_or_generate(_state(context))

        assert question.kind == QuestionKind.OPTIONAL_STYLE
        assert len(question.text) == settings.question_text_max_chars
        assert question.skills_targeted == ["Python"]
        assert "Sample style question" in client.calls[0][1]

    def test_prompt_includes_prior_answer_and_priority_skills(self, settings: Settings) -> None:
        engine = QuestionEngine(ScriptedLLMClient(), settings=settings)
        prompt = engine.build_generation_prompt(_state(_context()), prior_answer="I used asyncio.gather")
        assert "I used asyncio.gather" in prompt
        assert "Priority skills" in prompt
