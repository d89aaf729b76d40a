"""
Evaluation pipeline.

Submits a recorded answer with its visual frames and timing to the model
provider, validates and clamps the structured result, and decides the next
interview action. Also synthesizes the overall recommendation once an
interview has ended.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Any

from interview_moderator.config import Settings, get_settings
from interview_moderator.errors import InsufficientData, MalformedResponse
from interview_moderator.models.gemini_client import LLMClientBase, LLMResponse, Part
from interview_moderator.orchestrator.interview_state import SessionState
from interview_moderator.orchestrator.schemas import (
    AggregateScores,
    AnswerEvaluation,
    CheatFlag,
    CheatingAssessment,
    EvaluationResult,
    FitStatus,
    MediaPayload,
    NextAction,
    QuestionRecord,
    Recommendation,
    ScoreLabel,
    TimingWindows,
)

logger = logging.getLogger(__name__)

MIN_ANSWERS_FOR_RECOMMENDATION = 3
WEAK_THRESHOLD_FACTOR = 0.7

# Low randomness keeps transcription close to verbatim.
EVALUATION_GENERATION_CONFIG = {"temperature": 0.1, "topP": 0.95, "topK": 40}

TECHNICAL_VOCABULARY = (
    "API, SQL, JSON, REST, HTTP, HTTPS, DOM, CSS, HTML, JavaScript, TypeScript, React, "
    "Node.js, Python, Java, database, algorithm, asynchronous, callback, promise, async/await, "
    "framework, library, dependency, module, component, interface, inheritance, polymorphism, "
    "encapsulation, abstraction, authentication, authorization, encryption, hash, token, session, "
    "cookie, cache, scalability, microservices, container, Docker, Kubernetes, CI/CD, Git, "
    "GraphQL, WebSocket, middleware, endpoint, schema, exception, unit test, integration test, "
    "refactoring, pull request, repository"
)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp_score(value: Any, default: int = 50) -> int:
    """Coerce a model-supplied score into an integer in [0, 100]."""
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number):
        return default
    return _round_half_up(max(0.0, min(100.0, number)))


def _clamp_unit(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number):
        return 0.0
    return max(0.0, min(1.0, number))


def score_label_for(overall_score: float, pass_percentage: float) -> ScoreLabel:
    """Label an overall score against the pass threshold and its weak boundary."""
    if overall_score >= pass_percentage:
        return ScoreLabel.PASS
    if overall_score >= pass_percentage * WEAK_THRESHOLD_FACTOR:
        return ScoreLabel.WEAK
    return ScoreLabel.FAIL


def _strip_data_url(data: str) -> str:
    if data.startswith("data:") and "," in data:
        return data.split(",", 1)[1]
    return data


class EvaluationPipeline:
    """
    Evaluates recorded answers and synthesizes the final recommendation.
    """

    EVALUATION_PROMPT = """You are an expert technical interviewer evaluating a candidate's recorded answer.

INTERVIEW CONTEXT:
- Position: {job_title}
- Expected skills: {skills}
- Pass threshold: {pass_percentage}%
{previous_answers}
CURRENT QUESTION ({question_id}): {question_text}

You will receive {media_description} of the answer and {frame_count} image frame(s) captured during it.

TRANSCRIPTION:
- Transcribe verbatim from the recording; do not correct grammar or rephrase.
- Pay close attention to technical vocabulary and acronyms, for example: {vocabulary}.
- When a term is unclear, use the question and the expected skills to pick the most likely technical term.

EVALUATION (each 0-100):
1. relevance: how directly and completely the answer addresses the question.
2. technical_accuracy: correctness of concepts, terminology and reasoning.
3. fluency: clarity, structure and confidence of communication.
4. overall_score: 40% relevance + 40% technical_accuracy + 20% fluency.
5. score_label: "pass" if overall_score >= {pass_percentage}, "weak" if >= {weak_threshold}, otherwise "fail".

CHEATING DETECTION (cheat_score 0.0-1.0):
- The recording covers the question being spoken, the gap before the candidate starts, and the answer.
- The gap period and any pause of 5 seconds or more inside the answer are the highest-priority windows:
  look for consulting phones, screens, notes or other people.
- Across all frames, check for multiple faces, an absent face, looking away, and other suspicious behavior.
- Allowed cheat_flags: "multi_face", "absent_face", "looking_away", "suspicious_behavior".
- 0.0-0.3 normal, 0.4-0.6 some concerns, 0.7-1.0 strong indicators.
{timing}
NEXT ACTION:
- "ask_followup" if the answer needs deeper exploration (put the follow-up in next_text, 1-2 sentences)
- "next_question" if the answer is sufficient
- "end_interview" if all skills are covered

Respond with a JSON object containing:
{{
    "question_id": "{question_id}",
    "transcript": "<verbatim transcript>",
    "evaluation": {{
        "relevance": <0-100>,
        "technical_accuracy": <0-100>,
        "fluency": <0-100>,
        "overall_score": <0-100>,
        "score_label": "pass|weak|fail",
        "comment": "<specific feedback>"
    }},
    "cheating": {{
        "cheat_score": <0.0-1.0>,
        "cheat_flags": [],
        "summary": "<visual behavior analysis>"
    }},
    "next_action": "next_question",
    "next_text": "<only for ask_followup>"
}}

Only return valid JSON, no other text."""

    RECOMMENDATION_PROMPT = """You are an expert technical recruiter giving an overall hiring recommendation.

INTERVIEW CONTEXT:
- Position: {job_title}
- Job description: {job_description}
- Expected skills:
{skills}
- Pass threshold: {pass_percentage}%

PERFORMANCE SUMMARY:
- Overall score: {overall_score}/100
- Average relevance: {average_relevance}/100
- Average technical accuracy: {average_technical_accuracy}/100
- Average fluency: {average_fluency}/100
- Overall cheat risk: {cheat_risk}%
- Questions answered: {answered} of {asked}

QUESTION-BY-QUESTION:
{questions}

Fit status rules:
- "good_fit": overall >= {pass_percentage}%, strong technical accuracy, low cheat risk
- "moderate_fit": overall >= {weak_threshold}% but below {pass_percentage}%
- "not_fit": overall below {weak_threshold}%, weak technical performance or high cheat risk

Respond with a JSON object containing:
{{
    "fit_status": "good_fit|moderate_fit|not_fit",
    "summary": "<2-3 paragraph assessment>",
    "strengths": ["<specific strength>", ...],
    "weaknesses": ["<specific weakness>", ...]
}}

Only return valid JSON, no other text."""

    def __init__(
        self,
        llm_client: LLMClientBase,
        settings: Settings | None = None,
    ) -> None:
        self._llm_client = llm_client
        self._settings = settings or get_settings()

    def _skills_line(self, state: SessionState) -> str:
        parts = []
        for skill in state.context.skills:
            topics = f" (topics: {', '.join(skill.topics)})" if skill.topics else ""
            parts.append(f"{skill.name} ({skill.weight:g}%){topics}")
        return ", ".join(parts) or "Not specified"

    def _timing_section(self, timing: TimingWindows | None) -> str:
        if timing is None:
            return ""
        lines = ["TIMING (ms since epoch):"]
        for label, value in (
            ("Question started", timing.question_start),
            ("Question ended", timing.question_end),
            ("Answer started", timing.answer_start),
            ("Answer ended", timing.answer_end),
        ):
            if value is not None:
                stamp = datetime.fromtimestamp(value / 1000, tz=timezone.utc).isoformat()
                lines.append(f"- {label}: {stamp}")
        gap = timing.gap_ms
        if gap is not None:
            lines.append(f"- Gap period: {gap / 1000:.1f} seconds; scrutinize it closely")
        return "\n".join(lines) + "\n"

    def build_prompt(
        self,
        state: SessionState,
        question: QuestionRecord,
        media: MediaPayload | None,
        frame_count: int,
        timing: TimingWindows | None = None,
    ) -> str:
        previous = state.previous_answers(question.order, limit=3)
        previous_answers = ""
        if previous:
            lines = ["PREVIOUS ANSWERS:"]
            for idx, prior in enumerate(previous, start=1):
                score = prior.evaluation.overall_score if prior.evaluation else "N/A"
                lines.append(f"{idx}. Q: {prior.text}\n   A: {prior.transcript or 'N/A'}\n   Score: {score}")
            previous_answers = "\n".join(lines) + "\n"

        if media is None:
            media_description = "no recording"
        elif media.mime_type.startswith("video/"):
            media_description = "the full video recording"
        else:
            media_description = "the audio recording"

        pass_percentage = state.context.pass_percentage
        return self.EVALUATION_PROMPT.format(
            job_title=state.context.job_title or "Not specified",
            skills=self._skills_line(state),
            pass_percentage=f"{pass_percentage:g}",
            weak_threshold=f"{pass_percentage * WEAK_THRESHOLD_FACTOR:g}",
            previous_answers=previous_answers,
            question_id=question.question_id,
            question_text=question.text,
            media_description=media_description,
            frame_count=frame_count,
            vocabulary=TECHNICAL_VOCABULARY,
            timing=self._timing_section(timing),
        )

    def validate(
        self,
        payload: dict[str, Any],
        question_id: str,
        pass_percentage: float,
        response: LLMResponse,
    ) -> AnswerEvaluation:
        """
        Validate and clamp a parsed evaluation payload.

        Raises:
            MalformedResponse: If the evaluation or cheating sections are missing.
        """
        raw_eval = payload.get("evaluation")
        raw_cheat = payload.get("cheating")
        missing = [
            name
            for name, value in (("evaluation", raw_eval), ("cheating", raw_cheat))
            if not isinstance(value, dict)
        ]
        if missing:
            raise MalformedResponse(
                f"Evaluation response missing fields: {', '.join(missing)}",
                model=response.model,
                missing_fields=missing,
            )

        relevance = _clamp_score(raw_eval.get("relevance"))
        technical_accuracy = _clamp_score(raw_eval.get("technical_accuracy"))
        fluency = _clamp_score(raw_eval.get("fluency"))

        supplied_overall = raw_eval.get("overall_score")
        if supplied_overall is None:
            overall = _clamp_score(0.4 * relevance + 0.4 * technical_accuracy + 0.2 * fluency)
        else:
            overall = _clamp_score(
                supplied_overall,
                default=_clamp_score(0.4 * relevance + 0.4 * technical_accuracy + 0.2 * fluency),
            )

        label = score_label_for(overall, pass_percentage)
        if raw_eval.get("score_label") != label.value:
            logger.debug(f"Overriding model score label {raw_eval.get('score_label')!r} with {label.value}")

        flags: list[CheatFlag] = []
        for flag in raw_cheat.get("cheat_flags") or raw_cheat.get("flags") or []:
            try:
                parsed_flag = CheatFlag(flag)
            except ValueError:
                logger.debug(f"Ignoring unknown cheat flag {flag!r}")
                continue
            if parsed_flag not in flags:
                flags.append(parsed_flag)

        try:
            next_action = NextAction(payload.get("next_action"))
        except ValueError:
            next_action = NextAction.NEXT_QUESTION

        next_text = payload.get("next_text")
        if not isinstance(next_text, str) or not next_text.strip():
            next_text = None
        if next_action == NextAction.ASK_FOLLOWUP and next_text is None:
            next_action = NextAction.NEXT_QUESTION

        transcript = payload.get("transcript")
        return AnswerEvaluation(
            question_id=question_id,
            transcript=transcript.strip() if isinstance(transcript, str) else "",
            evaluation=EvaluationResult(
                relevance=relevance,
                technical_accuracy=technical_accuracy,
                fluency=fluency,
                overall_score=overall,
                score_label=label,
                comment=str(raw_eval.get("comment") or ""),
            ),
            cheating=CheatingAssessment(
                cheat_score=_clamp_unit(raw_cheat.get("cheat_score")),
                flags=flags,
                summary=str(raw_cheat.get("summary") or ""),
            ),
            token_usage=response.usage,
            next_action=next_action,
            next_text=next_text.strip() if next_text else None,
        )

    async def evaluate_answer(
        self,
        state: SessionState,
        question: QuestionRecord,
        media: MediaPayload | None,
        frames: list[str] | None = None,
        timing: TimingWindows | None = None,
    ) -> AnswerEvaluation:
        """
        Evaluate a recorded answer.

        Args:
            state: Session the question belongs to.
            question: Question being answered.
            media: Recorded answer (video or audio).
            frames: Base64 JPEG frames captured during the answer.
            timing: Question and answer timestamps.

        Raises:
            ProviderUnavailable: If every model failed.
        """
        frames = frames or []
        parts = [Part.from_text(self.build_prompt(state, question, media, len(frames), timing))]
        if media is not None:
            parts.append(Part.from_media(_strip_data_url(media.data), media.mime_type))
        for frame in frames:
            parts.append(Part.from_media(_strip_data_url(frame), "image/jpeg"))

        models = [state.model, *self._settings.gemini_fallback_models]
        pass_percentage = state.context.pass_percentage
        result = await self._llm_client.generate_json_with_fallback(
            models,
            parts,
            lambda payload, response: self.validate(payload, question.question_id, pass_percentage, response),
            generation_config=EVALUATION_GENERATION_CONFIG,
        )
        logger.info(
            f"Evaluated {question.question_id}: overall={result.evaluation.overall_score} "
            f"label={result.evaluation.score_label.value} next={result.next_action.value}"
        )
        return result

    @staticmethod
    def should_end(state: SessionState, result: AnswerEvaluation) -> bool:
        """End when the model asks to, or when the answered count reaches the maximum."""
        if result.next_action == NextAction.END_INTERVIEW:
            return True
        return len(state.answered_questions) >= state.context.max_questions

    @staticmethod
    def aggregate_scores(questions: list[QuestionRecord]) -> AggregateScores:
        evaluated = [q for q in questions if q.evaluation is not None]
        if not evaluated:
            return AggregateScores()
        count = len(evaluated)

        def _avg(values: list[float]) -> float:
            return round(sum(values) / count, 2)

        return AggregateScores(
            average_relevance=_avg([q.evaluation.relevance for q in evaluated]),
            average_technical_accuracy=_avg([q.evaluation.technical_accuracy for q in evaluated]),
            average_fluency=_avg([q.evaluation.fluency for q in evaluated]),
            overall_score=_avg([q.evaluation.overall_score for q in evaluated]),
            overall_cheat_risk=round(
                sum(q.cheating.cheat_score if q.cheating else 0.0 for q in evaluated) / count, 4
            ),
        )

    def _parse_recommendation(
        self,
        payload: dict[str, Any],
        response: LLMResponse,
        aggregate: AggregateScores,
    ) -> Recommendation:
        try:
            fit_status = FitStatus(payload.get("fit_status") or payload.get("fitStatus"))
        except ValueError as e:
            raise MalformedResponse("Invalid fit_status in recommendation", model=response.model) from e

        summary = payload.get("summary") or payload.get("recommendationSummary")
        if not isinstance(summary, str) or not summary.strip():
            raise MalformedResponse(
                "Recommendation missing summary",
                model=response.model,
                missing_fields=["summary"],
            )

        strengths = payload.get("strengths")
        weaknesses = payload.get("weaknesses")
        return Recommendation(
            fit_status=fit_status,
            summary=summary.strip(),
            strengths=[str(s) for s in strengths] if isinstance(strengths, list) else [],
            weaknesses=[str(w) for w in weaknesses] if isinstance(weaknesses, list) else [],
            aggregate_scores=aggregate,
            token_usage=response.usage,
        )

    async def synthesize_recommendation(self, state: SessionState) -> Recommendation:
        """
        Produce the overall hiring recommendation.

        Raises:
            InsufficientData: If fewer than three questions were answered.
            ProviderUnavailable: If every model failed.
        """
        answered = state.answered_questions
        if len(answered) < MIN_ANSWERS_FOR_RECOMMENDATION:
            raise InsufficientData(len(answered), MIN_ANSWERS_FOR_RECOMMENDATION)

        aggregate = self.aggregate_scores(answered)
        context = state.context
        skills = "\n".join(
            f"  - {s.name} (weight: {s.weight:g}%)" + (f" (topics: {', '.join(s.topics)})" if s.topics else "")
            for s in context.skills
        ) or "  - Not specified"

        question_lines = []
        for idx, q in enumerate(answered, start=1):
            skills_str = f" [Skills: {', '.join(q.skills_targeted)}]" if q.skills_targeted else ""
            ev = q.evaluation
            cheat = q.cheating.cheat_score if q.cheating else 0.0
            question_lines.append(
                f"{idx}. Q: {q.text}{skills_str}\n"
                f"   Answer: {q.transcript or 'No transcript'}\n"
                f"   Scores: relevance={ev.relevance}, technical={ev.technical_accuracy}, "
                f"fluency={ev.fluency}, overall={ev.overall_score}\n"
                f"   Comment: {ev.comment or 'No comment'}\n"
                f"   Cheat risk: {cheat * 100:.1f}%"
            )

        prompt = self.RECOMMENDATION_PROMPT.format(
            job_title=context.job_title or "Not specified",
            job_description=context.job_description or "Not specified",
            skills=skills,
            pass_percentage=f"{context.pass_percentage:g}",
            weak_threshold=f"{context.pass_percentage * WEAK_THRESHOLD_FACTOR:g}",
            overall_score=aggregate.overall_score,
            average_relevance=aggregate.average_relevance,
            average_technical_accuracy=aggregate.average_technical_accuracy,
            average_fluency=aggregate.average_fluency,
            cheat_risk=f"{aggregate.overall_cheat_risk * 100:.1f}",
            answered=len(answered),
            asked=len(state.questions),
            questions="\n\n".join(question_lines),
        )

        models = [self._settings.gemini_model, *self._settings.gemini_fallback_models]
        return await self._llm_client.generate_json_with_fallback(
            models,
            [Part.from_text(prompt)],
            lambda payload, response: self._parse_recommendation(payload, response, aggregate),
            generation_config={"temperature": 0.3, "topP": 0.95, "topK": 40},
        )
