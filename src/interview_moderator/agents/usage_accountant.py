"""
Usage accountant.

Translates model token consumption into monetary cost and keeps the
session and per-question usage counters.
"""

import logging

from pydantic import BaseModel, Field

from interview_moderator.config import get_settings
from interview_moderator.orchestrator.interview_state import SessionState
from interview_moderator.orchestrator.schemas import TokenUsage, UsageCounter, UsageSummary

logger = logging.getLogger(__name__)


class ModelPrice(BaseModel):
    """Price per million tokens, in USD."""

    input_per_million: float = Field(..., ge=0.0)
    output_per_million: float = Field(..., ge=0.0)


MODEL_PRICING: dict[str, ModelPrice] = {
    "gemini-1.5-flash": ModelPrice(input_per_million=0.075, output_per_million=0.30),
    "gemini-1.5-pro": ModelPrice(input_per_million=1.25, output_per_million=5.00),
    "gemini-2.0-flash-exp": ModelPrice(input_per_million=0.075, output_per_million=0.30),
    "gemini-2.5-pro": ModelPrice(input_per_million=1.50, output_per_million=6.00),
    "gemini-pro": ModelPrice(input_per_million=0.50, output_per_million=1.50),
}


class UsageAccountant:
    """Computes cost from a pricing table and applies usage increments."""

    def __init__(
        self,
        pricing: dict[str, ModelPrice] | None = None,
        default_model: str | None = None,
        exchange_rate: float | None = None,
    ) -> None:
        settings = get_settings()
        self._pricing = pricing if pricing is not None else dict(MODEL_PRICING)
        self._default_model = default_model or settings.default_pricing_model
        self._exchange_rate = exchange_rate if exchange_rate is not None else settings.usd_to_inr_rate

    def price_for(self, model: str) -> ModelPrice:
        """Price row for a model, falling back to the default model's row."""
        price = self._pricing.get(model)
        if price is None:
            logger.debug(f"No pricing for model '{model}', using {self._default_model}")
            price = self._pricing.get(self._default_model)
        if price is None:
            return ModelPrice(input_per_million=0.0, output_per_million=0.0)
        return price

    def compute_cost(self, input_tokens: int, output_tokens: int, model: str) -> float:
        price = self.price_for(model)
        return (
            input_tokens / 1_000_000 * price.input_per_million
            + output_tokens / 1_000_000 * price.output_per_million
        )

    def record_usage(
        self,
        state: SessionState,
        usage: TokenUsage,
        question_id: str | None = None,
    ) -> float:
        """
        Apply one provider call's usage to the session and, optionally, a question.

        Cost is computed for this increment only and added to the running
        totals; totals are never recomputed.

        Returns:
            The cost of this increment in USD.
        """
        model = usage.model or state.model
        cost = self.compute_cost(usage.input_tokens, usage.output_tokens, model)
        state.usage.add(usage.input_tokens, usage.output_tokens, cost)

        if question_id is not None:
            question = state.find_question(question_id)
            if question is not None:
                if question.token_usage is None:
                    question.token_usage = UsageCounter()
                question.token_usage.add(usage.input_tokens, usage.output_tokens, cost)

        logger.debug(
            f"Recorded {usage.input_tokens}+{usage.output_tokens} tokens on {model} "
            f"for session {state.session_id}: ${cost:.6f}"
        )
        return cost

    def convert_currency(self, amount_usd: float, rate: float | None = None) -> float:
        return amount_usd * (rate if rate is not None else self._exchange_rate)

    def summary(self, state: SessionState) -> UsageSummary:
        usage = state.usage
        return UsageSummary(
            tokens={
                "input": usage.input_tokens,
                "output": usage.output_tokens,
                "total": usage.total_tokens,
            },
            cost=usage.cost_usd,
            cost_inr=self.convert_currency(usage.cost_usd),
            model=state.model,
        )
