import json

import pytest

from conftest import EVALUATION_MARKER, RECOMMENDATION_MARKER, ScriptedLLMClient, evaluation_reply
from interview_moderator.agents.evaluation import EvaluationPipeline, score_label_for
from interview_moderator.config import Settings
from interview_moderator.errors import InsufficientData, MalformedResponse
from interview_moderator.models.gemini_client import LLMResponse
from interview_moderator.orchestrator.interview_state import SessionState
from interview_moderator.orchestrator.schemas import (
    AnswerEvaluation,
    CheatFlag,
    CheatingAssessment,
    EvaluationResult,
    FitStatus,
    MediaPayload,
    NextAction,
    QuestionKind,
    QuestionRecord,
    ScoreLabel,
    TimingWindows,
    TokenUsage,
)


def _answered(order: int, overall: int, cheat: float = 0.0) -> QuestionRecord:
    return QuestionRecord(
        text=f"Question {order}",
        kind=QuestionKind.GENERATED,
        order=order,
        transcript=f"Answer {order}",
        evaluation=EvaluationResult(
            relevance=overall,
            technical_accuracy=overall,
            fluency=overall,
            overall_score=overall,
            score_label=score_label_for(overall, 60),
        ),
        cheating=CheatingAssessment(cheat_score=cheat),
    )


class TestScoreLabel:
    def test_label_matches_threshold(self) -> None:
        assert score_label_for(60, 60) == ScoreLabel.PASS
        assert score_label_for(59, 60) == ScoreLabel.WEAK
        assert score_label_for(42, 60) == ScoreLabel.WEAK
        assert score_label_for(41, 60) == ScoreLabel.FAIL


class TestValidate:
    @pytest.fixture
    def pipeline(self, settings: Settings) -> EvaluationPipeline:
        return EvaluationPipeline(ScriptedLLMClient(), settings=settings)

    @pytest.fixture
    def response(self) -> LLMResponse:
        return LLMResponse(content="", model="gemini-2.5-pro", usage=TokenUsage(input_tokens=10, output_tokens=5))

    def test_clamps_scores_and_computes_overall(self, pipeline: EvaluationPipeline, response: LLMResponse) -> None:
        payload = {
            "transcript": "  An answer.  ",
            "evaluation": {"relevance": 150, "fluency": -5, "score_label": "fail"},
            "cheating": {"cheat_score": 1.7, "cheat_flags": ["looking_away", "phone", "looking_away"]},
        }
        result = pipeline.validate(payload, "q_1", 60, response)

        assert result.transcript == "An answer."
        assert result.evaluation.relevance == 100
        assert result.evaluation.technical_accuracy == 50
        assert result.evaluation.fluency == 0
        assert result.evaluation.overall_score == 60
        assert result.evaluation.score_label == ScoreLabel.PASS
        assert result.cheating.cheat_score == 1.0
        assert result.cheating.flags == [CheatFlag.LOOKING_AWAY]
        assert result.next_action == NextAction.NEXT_QUESTION

    def test_model_label_is_overridden(self, pipeline: EvaluationPipeline, response: LLMResponse) -> None:
        payload = {
            "evaluation": {"relevance": 40, "technical_accuracy": 40, "fluency": 40, "overall_score": 45, "score_label": "pass"},
            "cheating": {},
        }
        result = pipeline.validate(payload, "q_1", 60, response)
        assert result.evaluation.score_label == ScoreLabel.WEAK

    def test_half_scores_round_up(self, pipeline: EvaluationPipeline, response: LLMResponse) -> None:
        payload = {
            "evaluation": {"relevance": 72.5, "technical_accuracy": 70, "fluency": 70, "overall_score": 70.5},
            "cheating": {},
        }
        result = pipeline.validate(payload, "q_1", 60, response)
        assert result.evaluation.relevance == 73
        assert result.evaluation.overall_score == 71

    def test_missing_cheating_section_is_malformed(self, pipeline: EvaluationPipeline, response: LLMResponse) -> None:
        with pytest.raises(MalformedResponse) as exc_info:
            pipeline.validate({"evaluation": {"relevance": 50}}, "q_1", 60, response)
        assert exc_info.value.missing_fields == ["cheating"]

    def test_followup_without_text_moves_on(self, pipeline: EvaluationPipeline, response: LLMResponse) -> None:
        payload = {"evaluation": {}, "cheating": {}, "next_action": "ask_followup", "next_text": "  "}
        result = pipeline.validate(payload, "q_1", 60, response)
        assert result.next_action == NextAction.NEXT_QUESTION
        assert result.next_text is None

    def test_unknown_next_action_defaults(self, pipeline: EvaluationPipeline, response: LLMResponse) -> None:
        payload = {"evaluation": {}, "cheating": {}, "next_action": "celebrate"}
        assert pipeline.validate(payload, "q_1", 60, response).next_action == NextAction.NEXT_QUESTION


class TestEvaluateAnswer:
    @pytest.mark.asyncio
    async def test_sends_media_and_frames(self, settings: Settings, state: SessionState) -> None:
        client = ScriptedLLMClient({EVALUATION_MARKER: evaluation_reply()})
        pipeline = EvaluationPipeline(client, settings=settings)
        question = QuestionRecord(text="Explain async generators.", kind=QuestionKind.MANDATORY, order=1)
        state.add_question(question)

        result = await pipeline.evaluate_answer(
            state,
            question,
            MediaPayload(data="data:video/webm;base64,VIDEO", mime_type="video/webm"),
            frames=["FRAME1", "FRAME2"],
            timing=TimingWindows(question_start=1000, question_end=4000, answer_start=9000, answer_end=20000),
        )

        assert result.evaluation.overall_score == 78
        assert result.token_usage.total_tokens == 150
        _model, prompt, parts = client.calls[0]
        assert "Gap period: 5.0 seconds" in prompt
        assert [p.mime_type for p in parts[1:]] == ["video/webm", "image/jpeg", "image/jpeg"]
        assert parts[1].data == "VIDEO"

    @pytest.mark.asyncio
    async def test_malformed_primary_falls_back(self, settings: Settings, state: SessionState) -> None:
        client = ScriptedLLMClient({EVALUATION_MARKER: ['{"transcript": "only"}', evaluation_reply()]})
        pipeline = EvaluationPipeline(client, settings=settings)
        question = QuestionRecord(text="Q", kind=QuestionKind.GENERATED, order=1)
        state.add_question(question)

        result = await pipeline.evaluate_answer(state, question, None)

        assert result.token_usage.model == "gemini-pro"
        assert len(client.calls) == 2

    def test_should_end_on_request_or_capacity(self, settings: Settings, state: SessionState) -> None:
        result = AnswerEvaluation(
            question_id="q",
            evaluation=EvaluationResult(
                relevance=50, technical_accuracy=50, fluency=50, overall_score=50, score_label=ScoreLabel.WEAK
            ),
            cheating=CheatingAssessment(),
            token_usage=TokenUsage(),
            next_action=NextAction.END_INTERVIEW,
        )
        assert EvaluationPipeline.should_end(state, result)
        result.next_action = NextAction.NEXT_QUESTION
        assert not EvaluationPipeline.should_end(state, result)


class TestRecommendation:
    def test_aggregate_scores(self) -> None:
        aggregate = EvaluationPipeline.aggregate_scores([_answered(1, 80, 0.2), _answered(2, 60, 0.4)])
        assert aggregate.overall_score == 70
        assert aggregate.average_relevance == 70
        assert aggregate.overall_cheat_risk == pytest.approx(0.3)

    @pytest.mark.asyncio
    async def test_requires_three_answers(self, settings: Settings, state: SessionState) -> None:
        pipeline = EvaluationPipeline(ScriptedLLMClient(), settings=settings)
        state.add_question(_answered(1, 80))
        state.add_question(_answered(2, 70))

        with pytest.raises(InsufficientData):
            await pipeline.synthesize_recommendation(state)

    @pytest.mark.asyncio
    async def test_synthesizes_with_alternate_keys(self, settings: Settings, state: SessionState) -> None:
        client = ScriptedLLMClient(
            {
                RECOMMENDATION_MARKER: json.dumps(
                    {
                        "fitStatus": "moderate_fit",
                        "recommendationSummary": "Solid fundamentals.",
                        "strengths": ["asyncio"],
                        "weaknesses": ["indexing"],
                    }
                )
            }
        )
        pipeline = EvaluationPipeline(client, settings=settings)
        for order, score in enumerate((70, 55, 50), start=1):
            state.add_question(_answered(order, score))

        recommendation = await pipeline.synthesize_recommendation(state)

        assert recommendation.fit_status == FitStatus.MODERATE_FIT
        assert recommendation.summary == "Solid fundamentals."
        assert recommendation.strengths == ["asyncio"]
        assert recommendation.aggregate_scores.overall_score == pytest.approx(58.33)
        assert recommendation.token_usage.total_tokens == 150
