"""
Application configuration using pydantic-settings.

Loads configuration from environment variables and .env files.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Model provider (Gemini)
    gemini_api_key: str = Field(
        default="",
        description="API key for the Gemini generateContent endpoint",
    )
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Base URL of the Gemini REST API",
    )
    gemini_model: str = Field(
        default="gemini-2.5-pro",
        description="Primary model used for generation and evaluation",
    )
    gemini_fallback_models: list[str] = Field(
        default_factory=lambda: ["gemini-pro", "gemini-1.5-flash", "gemini-1.5-pro"],
        description="Models tried in order when the primary model is unavailable",
    )
    gemini_fast_model: str = Field(
        default="gemini-1.5-flash",
        description="Low-latency model for follow-up analysis, acknowledgments and intent detection",
    )
    llm_timeout: int = Field(
        default=120,
        description="Timeout in seconds for model provider requests",
    )

    # Usage accounting
    usd_to_inr_rate: float = Field(
        default=83.5,
        description="Exchange rate used to convert USD cost to INR",
    )
    default_pricing_model: str = Field(
        default="gemini-1.5-flash",
        description="Price row used when the active model has no pricing entry",
    )

    # Silence escalation (milliseconds)
    silence_check_in_ms: int = Field(default=5000, description="Silence before a thinking check")
    silence_suggest_move_on_ms: int = Field(default=15000, description="Silence before suggesting to move on")
    silence_force_move_ms: int = Field(default=30000, description="Silence before forcing the next question")

    # Transcript aggregation
    turn_coalesce_window_ms: int = Field(
        default=5000,
        description="Candidate fragments closer than this are merged into one turn",
    )
    followup_debounce_ms: int = Field(
        default=3000,
        description="Minimum interval between non-final follow-up analyses",
    )
    followup_min_buffer_chars: int = Field(
        default=20,
        description="Buffered text shorter than this is never analysed for follow-ups",
    )
    followup_debounce_min_chars: int = Field(
        default=50,
        description="Buffered text needed before a non-final chunk triggers analysis",
    )
    followup_min_confidence: float = Field(
        default=0.6,
        description="Minimum model confidence to propose a follow-up question",
    )
    acknowledgment_min_chars: int = Field(
        default=30,
        description="Final chunks shorter than this never get an acknowledgment",
    )

    # Intent detection
    deflection_min_chars: int = Field(default=10, description="Chunks at or below this length skip integrity screening")
    deflection_llm_min_chars: int = Field(
        default=20,
        description="Chunks longer than this are confirmed by the model even without a pattern hit",
    )
    reply_llm_min_chars: int = Field(
        default=30,
        description="Unmatched intervention replies longer than this are classified by the model",
    )

    # Questions
    question_text_max_chars: int = Field(default=500, description="Generated question text is truncated to this")
    recent_question_window_hours: int = Field(
        default=24,
        description="Mandatory questions asked to the same candidate within this window are excluded",
    )
    sample_question_limit: int = Field(default=10, description="Maximum optional-pool samples in a generation prompt")
    priority_skill_count: int = Field(default=3, description="Number of under-covered skills to prioritise")

    # Sessions
    session_idle_timeout_seconds: int = Field(
        default=3600,
        description="Sessions idle for longer than this are evicted",
    )
    turn_write_max_retries: int = Field(default=3, description="Attempts for a conflicting turn write")
    turn_write_backoff_ms: int = Field(default=100, description="Backoff unit between turn write attempts")

    # Application
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns:
        Settings: Application settings instance.
    """
    return Settings()
