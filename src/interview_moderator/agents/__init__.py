"""
Agents module containing the interview components.

Each agent handles one aspect of moderating an interview: picking
questions, evaluating answers, classifying replies, screening for
integrity, aggregating transcripts and accounting for usage.
"""

from interview_moderator.agents.evaluation import EvaluationPipeline
from interview_moderator.agents.integrity import IntegrityScreener
from interview_moderator.agents.intent_classifier import IntentClassifier
from interview_moderator.agents.question_engine import QuestionEngine
from interview_moderator.agents.transcript_aggregator import TranscriptAggregator
from interview_moderator.agents.usage_accountant import UsageAccountant

__all__ = [
    "EvaluationPipeline",
    "IntegrityScreener",
    "IntentClassifier",
    "QuestionEngine",
    "TranscriptAggregator",
    "UsageAccountant",
]
