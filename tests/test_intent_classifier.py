import pytest

from conftest import CLASSIFICATION_MARKER, ScriptedLLMClient
from interview_moderator.agents.intent_classifier import IntentClassifier
from interview_moderator.config import Settings
from interview_moderator.orchestrator.schemas import ReplyIntent


class TestPatternClassification:
    @pytest.fixture
    def classifier(self, settings: Settings, llm_client: ScriptedLLMClient) -> IntentClassifier:
        return IntentClassifier(llm_client, settings=settings)

    @pytest.mark.parametrize(
        ("text", "intent"),
        [
            ("no that's all", ReplyIntent.DONE),
            ("I'm done", ReplyIntent.DONE),
            ("yes, I want to continue", ReplyIntent.CONTINUE),
            ("give me a moment please", ReplyIntent.THINKING),
            ("I don't know this one", ReplyIntent.SKIP),
        ],
    )
    @pytest.mark.asyncio
    async def test_patterns(
        self,
        classifier: IntentClassifier,
        llm_client: ScriptedLLMClient,
        text: str,
        intent: ReplyIntent,
    ) -> None:
        result = await classifier.classify(text)
        assert result.intent == intent
        assert result.source == "pattern"
        assert result.usage is None
        assert llm_client.calls == []

    def test_done_wins_over_continue(self, classifier: IntentClassifier) -> None:
        result = classifier.classify_by_pattern("yes, that's all")
        assert result is not None
        assert result.intent == ReplyIntent.DONE

    @pytest.mark.asyncio
    async def test_short_unmatched_reply_uses_heuristic(
        self,
        classifier: IntentClassifier,
        llm_client: ScriptedLLMClient,
    ) -> None:
        result = await classifier.classify("hmm")
        assert result.intent == ReplyIntent.THINKING
        assert result.source == "heuristic"
        assert llm_client.calls == []


class TestModelClassification:
    LONG_REPLY = "Well the garbage collector relies on reference counting plus cycle detection"

    @pytest.mark.asyncio
    async def test_model_verdict(self, settings: Settings) -> None:
        client = ScriptedLLMClient({CLASSIFICATION_MARKER: '{"intent": "answering", "confidence": 0.8}'})
        result = await IntentClassifier(client, settings=settings).classify(self.LONG_REPLY)

        assert result.intent == ReplyIntent.ANSWERING
        assert result.source == "model"
        assert result.confidence == pytest.approx(0.8)
        assert result.usage is not None and result.usage.model == settings.gemini_fast_model

    @pytest.mark.asyncio
    async def test_unknown_intent_defaults_to_answering(self, settings: Settings) -> None:
        client = ScriptedLLMClient({CLASSIFICATION_MARKER: '{"intent": "confused", "confidence": 3}'})
        result = await IntentClassifier(client, settings=settings).classify(self.LONG_REPLY)

        assert result.intent == ReplyIntent.ANSWERING
        assert result.confidence == 1.0

    @pytest.mark.asyncio
    async def test_provider_failure_falls_back_to_heuristic(
        self,
        settings: Settings,
        llm_client: ScriptedLLMClient,
    ) -> None:
        result = await IntentClassifier(llm_client, settings=settings).classify(self.LONG_REPLY)

        assert result.intent == ReplyIntent.ANSWERING
        assert result.source == "heuristic"
        assert len(llm_client.calls) == 1
