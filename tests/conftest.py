"""
Shared fixtures: settings, an interview context and a scripted provider client.
"""

import itertools
import json
from typing import Any, Callable

import pytest

from interview_moderator.config import Settings
from interview_moderator.errors import ProviderError
from interview_moderator.models.gemini_client import LLMClientBase, LLMResponse, Part
from interview_moderator.orchestrator.interview_state import SessionState
from interview_moderator.orchestrator.schemas import InterviewContext, QuestionSpec, SkillWeight, TokenUsage

GENERATION_MARKER = "Write the next interview question"
EVALUATION_MARKER = "evaluating a candidate's recorded answer"
RECOMMENDATION_MARKER = "overall hiring recommendation"
SCREENING_MARKER = "Current interview question:"
CLASSIFICATION_MARKER = "You just checked in with a candidate"
FOLLOWUP_MARKER = "listening to a candidate answer in real time"
ACKNOWLEDGMENT_MARKER = "friendly AI interviewer"


class ScriptedLLMClient(LLMClientBase):
    """
    Offline provider client.

    Replies are chosen by the first route whose marker occurs in the
    prompt. A route is a content string, an exception to raise, a list
    consumed one item per call (the last item repeats), or a callable
    taking (model, prompt). Unrouted prompts raise ProviderError.
    """

    def __init__(
        self,
        routes: dict[str, Any] | None = None,
        input_tokens: int = 100,
        output_tokens: int = 50,
    ) -> None:
        self.routes = routes or {}
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.calls: list[tuple[str, str, list[Part]]] = []

    def calls_for(self, marker: str) -> list[tuple[str, str, list[Part]]]:
        return [call for call in self.calls if marker in call[1]]

    async def generate(
        self,
        model: str,
        parts: list[Part],
        generation_config: dict[str, Any] | None = None,
    ) -> LLMResponse:
        prompt = parts[0].text or ""
        self.calls.append((model, prompt, parts))
        for marker, reply in self.routes.items():
            if marker not in prompt:
                continue
            if isinstance(reply, list):
                reply = reply.pop(0) if len(reply) > 1 else reply[0]
            if callable(reply):
                reply = reply(model, prompt)
            if isinstance(reply, Exception):
                raise reply
            return LLMResponse(
                content=reply,
                usage=TokenUsage(
                    input_tokens=self.input_tokens,
                    output_tokens=self.output_tokens,
                    model=model,
                ),
                model=model,
            )
        raise ProviderError("No scripted reply", model=model)


def question_replies() -> Callable[[str, str], str]:
    """Generated-question route producing unique ids."""
    counter = itertools.count(1)

    def reply(model: str, prompt: str) -> str:
        n = next(counter)
        return json.dumps(
            {
                "question_id": f"gen_{n}",
                "question_text": f"Generated question {n}?",
                "type": "dynamic",
                "order": n,
                "skills_targeted": ["Python"],
            }
        )

    return reply


def evaluation_reply(
    overall: int = 78,
    next_action: str = "next_question",
    next_text: str | None = None,
    transcript: str = "I would use a dictionary keyed by id.",
) -> str:
    payload: dict[str, Any] = {
        "transcript": transcript,
        "evaluation": {
            "relevance": 80,
            "technical_accuracy": 75,
            "fluency": 80,
            "overall_score": overall,
            "score_label": "pass",
            "comment": "Clear answer.",
        },
        "cheating": {"cheat_score": 0.1, "cheat_flags": [], "summary": "Normal behavior."},
        "next_action": next_action,
    }
    if next_text is not None:
        payload["next_text"] = next_text
    return json.dumps(payload)


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment."""
    return Settings(
        _env_file=None,
        gemini_api_key="test-key",
        gemini_model="gemini-2.5-pro",
        gemini_fallback_models=["gemini-pro", "gemini-1.5-flash"],
        gemini_fast_model="gemini-1.5-flash",
        turn_write_backoff_ms=0,
    )


@pytest.fixture
def context() -> InterviewContext:
    """A five-question backend interview with a 40% mandatory share."""
    return InterviewContext(
        job_title="Backend Engineer",
        job_description="Build and operate Python services backed by PostgreSQL.",
        skills=[
            SkillWeight(name="Python", weight=60, topics=["asyncio", "typing"]),
            SkillWeight(name="SQL", weight=40, topics=["indexes"]),
        ],
        mandatory_questions=[
            QuestionSpec(text="How does the GIL affect threaded code?", skills=["Python"]),
            QuestionSpec(text="When would you add a composite index?", skills=["SQL"]),
            QuestionSpec(text="Explain async generators.", skills=["Python"]),
        ],
        mandatory_weightage=40,
        max_questions=5,
        pass_percentage=60,
        candidate_email="candidate@example.com",
    )


@pytest.fixture
def state(context: InterviewContext) -> SessionState:
    return SessionState(
        interview_id="interview-1",
        candidate_id="candidate-1",
        context=context,
        model="gemini-2.5-pro",
    )


@pytest.fixture
def llm_client() -> ScriptedLLMClient:
    return ScriptedLLMClient()
