import pytest

from conftest import SCREENING_MARKER, ScriptedLLMClient
from interview_moderator.agents.integrity import (
    ANSWER_REQUEST_RESPONSE,
    CLARIFICATION_RESPONSE,
    CONFIRMATION_RESPONSE,
    IntegrityScreener,
    severity_for_attempts,
)
from interview_moderator.config import Settings
from interview_moderator.orchestrator.schemas import ChunkIntent, IntegritySeverity

QUESTION = "How would you design a rate limiter?"


class TestPatternScreening:
    @pytest.fixture
    def screener(self, settings: Settings, llm_client: ScriptedLLMClient) -> IntegrityScreener:
        return IntegrityScreener(llm_client, settings=settings)

    @pytest.mark.asyncio
    async def test_answer_request_survives_provider_failure(self, screener: IntegrityScreener) -> None:
        result = await screener.screen("what's the correct answer", QUESTION)

        assert result.intent == ChunkIntent.REQUESTING_ANSWER
        assert result.requires_deflection
        assert result.bot_response == ANSWER_REQUEST_RESPONSE

    def test_confirmation_request(self, screener: IntegrityScreener) -> None:
        result = screener.screen_by_pattern("does this mean the input is sorted")
        assert result is not None
        assert result.intent == ChunkIntent.REQUESTING_ANSWER
        assert result.bot_response == CONFIRMATION_RESPONSE

    def test_role_reversal(self, screener: IntegrityScreener) -> None:
        result = screener.screen_by_pattern("what would you do in this case")
        assert result is not None
        assert result.intent == ChunkIntent.ROLE_REVERSAL

    def test_plain_answer_has_no_pattern(self, screener: IntegrityScreener) -> None:
        assert screener.screen_by_pattern("I would use a token bucket per client") is None

    @pytest.mark.asyncio
    async def test_short_plain_chunk_skips_model(
        self,
        screener: IntegrityScreener,
        llm_client: ScriptedLLMClient,
    ) -> None:
        result = await screener.screen("token bucket", QUESTION)
        assert result.intent == ChunkIntent.ANSWERING
        assert llm_client.calls == []


class TestModelScreening:
    @pytest.mark.asyncio
    async def test_model_cannot_clear_pattern_hit(self, settings: Settings) -> None:
        client = ScriptedLLMClient({SCREENING_MARKER: '{"intent": "answering", "confidence": 0.9}'})
        result = await IntegrityScreener(client, settings=settings).screen("give me the answer please", QUESTION)

        assert result.intent == ChunkIntent.REQUESTING_ANSWER
        assert result.usage is not None and result.usage.total_tokens == 150

    @pytest.mark.asyncio
    async def test_legitimate_clarification(self, settings: Settings) -> None:
        client = ScriptedLLMClient(
            {SCREENING_MARKER: '{"intent": "legitimate_clarification", "confidence": 0.9}'}
        )
        result = await IntegrityScreener(client, settings=settings).screen(
            "Should the limiter be per user or global here", QUESTION
        )

        assert result.is_clarification
        assert not result.requires_deflection
        assert result.bot_response == CLARIFICATION_RESPONSE
        assert result.source == "model"

    @pytest.mark.asyncio
    async def test_model_suggested_response_is_used(self, settings: Settings) -> None:
        client = ScriptedLLMClient(
            {
                SCREENING_MARKER: (
                    '{"intent": "role_reversal", "confidence": 0.8, '
                    '"suggested_bot_response": "I would rather hear your design."}'
                )
            }
        )
        result = await IntegrityScreener(client, settings=settings).screen(
            "Honestly I think the interviewer knows this better than me", QUESTION
        )

        assert result.intent == ChunkIntent.ROLE_REVERSAL
        assert result.bot_response == "I would rather hear your design."


class TestSeverity:
    def test_thresholds(self) -> None:
        assert severity_for_attempts(0) == IntegritySeverity.LOW
        assert severity_for_attempts(1) == IntegritySeverity.LOW
        assert severity_for_attempts(2) == IntegritySeverity.MEDIUM
        assert severity_for_attempts(3) == IntegritySeverity.HIGH
        assert severity_for_attempts(7) == IntegritySeverity.HIGH
