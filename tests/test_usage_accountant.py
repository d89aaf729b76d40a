import pytest

from interview_moderator.agents.usage_accountant import ModelPrice, UsageAccountant
from interview_moderator.orchestrator.interview_state import SessionState
from interview_moderator.orchestrator.schemas import QuestionKind, QuestionRecord, TokenUsage


class TestUsageAccountant:
    @pytest.fixture
    def accountant(self) -> UsageAccountant:
        return UsageAccountant(default_model="gemini-1.5-flash", exchange_rate=83.5)

    def test_cost_per_million_tokens(self, accountant: UsageAccountant) -> None:
        assert accountant.compute_cost(1_000_000, 0, "gemini-1.5-flash") == pytest.approx(0.075)
        assert accountant.compute_cost(0, 1_000_000, "gemini-1.5-flash") == pytest.approx(0.30)
        assert accountant.compute_cost(1_000_000, 1_000_000, "gemini-2.5-pro") == pytest.approx(7.50)

    def test_unknown_model_uses_default_price(self, accountant: UsageAccountant) -> None:
        assert accountant.price_for("gemini-9-ultra") == accountant.price_for("gemini-1.5-flash")

    def test_missing_default_row_is_free(self) -> None:
        accountant = UsageAccountant(
            pricing={"only-model": ModelPrice(input_per_million=1.0, output_per_million=1.0)},
            default_model="absent",
            exchange_rate=80.0,
        )
        assert accountant.compute_cost(1000, 1000, "unknown") == 0.0

    def test_record_usage_increments_session_and_question(
        self,
        accountant: UsageAccountant,
        state: SessionState,
    ) -> None:
        question = QuestionRecord(text="Q1", kind=QuestionKind.GENERATED, order=1)
        state.add_question(question)

        first = accountant.record_usage(
            state, TokenUsage(input_tokens=1000, output_tokens=200, model="gemini-1.5-flash"), question.question_id
        )
        second = accountant.record_usage(state, TokenUsage(input_tokens=500, output_tokens=100, model="gemini-pro"))

        assert state.usage.input_tokens == 1500
        assert state.usage.output_tokens == 300
        assert state.usage.total_tokens == 1800
        assert state.usage.cost_usd == pytest.approx(first + second)
        assert state.model == "gemini-2.5-pro"

        assert question.token_usage is not None
        assert question.token_usage.total_tokens == 1200
        assert question.token_usage.cost_usd == pytest.approx(first)

    def test_summary_converts_currency(self, accountant: UsageAccountant, state: SessionState) -> None:
        accountant.record_usage(state, TokenUsage(input_tokens=2_000_000, output_tokens=0, model="gemini-1.5-flash"))
        summary = accountant.summary(state)
        assert summary.tokens == {"input": 2_000_000, "output": 0, "total": 2_000_000}
        assert summary.cost == pytest.approx(0.15)
        assert summary.cost_inr == pytest.approx(0.15 * 83.5)
        assert summary.model == "gemini-2.5-pro"

    def test_convert_currency_with_explicit_rate(self, accountant: UsageAccountant) -> None:
        assert accountant.convert_currency(2.0, rate=80.0) == pytest.approx(160.0)
