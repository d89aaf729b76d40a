"""
Model provider client.

Provides a unified interface for the Gemini generateContent REST API,
including loose JSON repair of model output and ordered model fallback.
"""

import ast
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Callable, TypeVar

import httpx
from pydantic import BaseModel, Field

from interview_moderator.config import get_settings
from interview_moderator.errors import (
    MalformedResponse,
    ModelUnavailableError,
    ProviderError,
    ProviderUnavailable,
)
from interview_moderator.orchestrator.schemas import TokenUsage

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Part(BaseModel):
    """One part of a multimodal request: either text or inline media."""

    text: str | None = Field(default=None, description="Text content")
    mime_type: str | None = Field(default=None, description="MIME type of inline data")
    data: str | None = Field(default=None, description="Base64-encoded inline data")

    @classmethod
    def from_text(cls, text: str) -> "Part":
        return cls(text=text)

    @classmethod
    def from_media(cls, data: str, mime_type: str) -> "Part":
        return cls(data=data, mime_type=mime_type)

    def to_wire(self) -> dict[str, Any]:
        if self.data is not None:
            return {"inline_data": {"mime_type": self.mime_type, "data": self.data}}
        return {"text": self.text or ""}


class LLMResponse(BaseModel):
    """Response from the model provider."""

    content: str = Field(..., description="Generated text content")
    finish_reason: str = Field(default="STOP", description="Reason for completion")
    usage: TokenUsage = Field(default_factory=TokenUsage, description="Token usage from the response envelope")
    model: str = Field(default="", description="Model used for generation")
    raw_response: dict[str, Any] = Field(
        default_factory=dict,
        description="Raw response from the API",
    )


class LLMClientBase(ABC):
    """
    Abstract base class for model provider clients.

    Subclasses implement a single raw `generate` call; JSON extraction and
    model fallback are shared.
    """

    @abstractmethod
    async def generate(
        self,
        model: str,
        parts: list[Part],
        generation_config: dict[str, Any] | None = None,
    ) -> LLMResponse:
        """
        Generate content from a list of request parts.

        Args:
            model: Model identifier.
            parts: Text and inline media parts, in order.
            generation_config: Provider sampling options.

        Returns:
            Generated response with usage.

        Raises:
            ModelUnavailableError: If the model is not served.
            ProviderError: For any other failed call.
        """
        ...

    async def generate_json(
        self,
        model: str,
        parts: list[Part],
        generation_config: dict[str, Any] | None = None,
    ) -> tuple[dict[str, Any], LLMResponse]:
        """
        Generate content and parse the first JSON object in it.

        Returns:
            The parsed object and the raw response.

        Raises:
            MalformedResponse: If no JSON object could be recovered.
        """
        response = await self.generate(model, parts, generation_config)
        parsed = extract_json(response.content)
        if parsed is None:
            logger.debug(f"Unparseable response content: {response.content[:500]}")
            raise MalformedResponse(f"Model {model} did not return valid JSON", model=model)
        return parsed, response

    async def generate_json_with_fallback(
        self,
        models: list[str],
        parts: list[Part],
        parse: Callable[[dict[str, Any], LLMResponse], T],
        generation_config: dict[str, Any] | None = None,
    ) -> T:
        """
        Try each model in order until one returns a payload that `parse` accepts.

        Unavailable models and malformed payloads move on to the next model;
        any other provider error fails immediately.

        Args:
            models: Ordered model identifiers, primary first.
            parts: Request parts.
            parse: Validates the payload; raises MalformedResponse to reject it.
            generation_config: Provider sampling options.

        Raises:
            ProviderUnavailable: If every model was tried without success.
            ProviderError: On a non-fallback error class.
        """
        attempted: list[str] = []
        last_error: Exception | None = None

        for model in _dedupe(models):
            attempted.append(model)
            try:
                payload, response = await self.generate_json(model, parts, generation_config)
                return parse(payload, response)
            except ModelUnavailableError as e:
                logger.warning(f"Model {model} unavailable, trying next fallback: {e}")
                last_error = e
            except MalformedResponse as e:
                logger.warning(f"Malformed response from {model}, trying next fallback: {e}")
                last_error = e

        raise ProviderUnavailable(
            f"All models failed ({', '.join(attempted)}): {last_error}",
            attempted_models=attempted,
        )


class GeminiClient(LLMClientBase):
    """
    Gemini REST client.

    Sends generateContent requests over a shared httpx.AsyncClient.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: int | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize the Gemini client.

        Args:
            api_key: API key (defaults to settings).
            base_url: REST base URL (defaults to settings).
            timeout: Request timeout in seconds (defaults to settings).
            http_client: Optional pre-built client, mainly for tests.
        """
        settings = get_settings()
        self._api_key = api_key if api_key is not None else settings.gemini_api_key
        self._base_url = (base_url or settings.gemini_base_url).rstrip("/")
        self._timeout = timeout or settings.llm_timeout
        self._http = http_client or httpx.AsyncClient(timeout=self._timeout)

        logger.info(f"Initialized Gemini client against {self._base_url}")

    def _build_body(self, parts: list[Part], generation_config: dict[str, Any] | None) -> dict[str, Any]:
        body: dict[str, Any] = {
            "contents": [
                {
                    "role": "user",
                    "parts": [part.to_wire() for part in parts],
                }
            ],
        }
        if generation_config:
            body["generationConfig"] = generation_config
        return body

    async def generate(
        self,
        model: str,
        parts: list[Part],
        generation_config: dict[str, Any] | None = None,
    ) -> LLMResponse:
        url = f"{self._base_url}/models/{model}:generateContent"
        body = self._build_body(parts, generation_config)

        try:
            resp = await self._http.post(
                url,
                params={"key": self._api_key},
                json=body,
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            raise ProviderError(f"Request to {model} timed out after {self._timeout}s", model=model) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Request to {model} failed: {e}", model=model) from e

        if resp.status_code >= 400:
            message = f"Gemini error {resp.status_code} for {model}: {resp.text[:300]}"
            if resp.status_code == 404 or "not found" in resp.text.lower():
                raise ModelUnavailableError(message, model=model, status_code=resp.status_code)
            raise ProviderError(message, model=model, status_code=resp.status_code)

        try:
            payload = resp.json()
        except ValueError as e:
            raise MalformedResponse(f"Non-JSON envelope from {model}", model=model) from e

        return self._parse_response(payload, model)

    def _parse_response(self, payload: dict[str, Any], model: str) -> LLMResponse:
        candidates = payload.get("candidates") or []
        texts: list[str] = []
        finish_reason = "STOP"
        if candidates:
            first = candidates[0]
            finish_reason = first.get("finishReason", finish_reason)
            for part in first.get("content", {}).get("parts", []):
                if isinstance(part, dict) and isinstance(part.get("text"), str):
                    texts.append(part["text"])

        return LLMResponse(
            content="".join(texts),
            finish_reason=finish_reason,
            usage=usage_from_metadata(payload.get("usageMetadata") or {}, model),
            model=model,
            raw_response=payload,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._http.aclose()


def usage_from_metadata(metadata: dict[str, Any], model: str) -> TokenUsage:
    """
    Recover actual token counts from a response's usage metadata.

    When only a total is reported it is split 70/30 between input and output.
    """
    input_tokens = int(metadata.get("promptTokenCount") or 0)
    output_tokens = int(metadata.get("candidatesTokenCount") or 0)
    if not input_tokens and not output_tokens:
        total = int(metadata.get("totalTokenCount") or 0)
        if total:
            input_tokens = int(total * 0.7)
            output_tokens = total - input_tokens
    return TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens, model=model)


def _dedupe(models: list[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for model in models:
        if model and model not in seen:
            seen.add(model)
            ordered.append(model)
    return ordered


def extract_json(content: str) -> dict[str, Any] | None:
    """
    Find and parse the first JSON object in model output.

    The model may wrap the object in prose or fences; the outermost
    bracket-matched object is parsed with best-effort repair.
    """
    if not content:
        return None
    content = content.strip()

    start_idx = content.find("{")
    if start_idx != -1:
        depth = 0
        end_idx = len(content)
        for i, char in enumerate(content[start_idx:], start=start_idx):
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    end_idx = i + 1
                    break
        parsed = _parse_json_loose(content[start_idx:end_idx])
        if isinstance(parsed, dict):
            return parsed

    parsed = _parse_json_loose(content)
    return parsed if isinstance(parsed, dict) else None


def _fix_json_string(json_str: str) -> str:
    """
    Attempt to fix common JSON issues from model output.

    Args:
        json_str: Raw JSON string that may have issues.

    Returns:
        Cleaned JSON string.
    """
    if not json_str:
        return ""

    result = json_str.strip()

    # Drop markdown code fences around the payload.
    result = re.sub(r"^```(?:json)?\s*", "", result, flags=re.IGNORECASE)
    result = re.sub(r"\s*```$", "", result)

    # Typographic quotes become plain ones.
    result = (
        result.replace("“", '"')
        .replace("”", '"')
        .replace("‘", "'")
        .replace("’", "'")
    )

    # Trailing commas before a closing brace or bracket.
    result = re.sub(r",(\s*[}\]])", r"\1", result)

    # Python literals to their JSON spelling.
    result = re.sub(r"\bNone\b", "null", result)
    result = re.sub(r"\bTrue\b", "true", result)
    result = re.sub(r"\bFalse\b", "false", result)

    # Quote bare keys, e.g. {score: 80}.
    # Only keys directly after { or , are touched so values stay intact.
    result = re.sub(
        r"([\{,]\s*)([A-Za-z_][A-Za-z0-9_\-]*)(\s*:)",
        r'\1"\2"\3',
        result,
    )

    # Single-quoted dicts with no double quotes at all: swap the quote style.
    # Runs after key quoting so fewer escapes get mangled.
    if result.count("'") > 0 and result.count('"') == 0:
        result = result.replace("'", '"')

    return result


def _coerce_to_json_types(obj: Any) -> Any:
    """Coerce an `ast.literal_eval` result to JSON-safe types.

    Keeps Python-only values such as `Ellipsis`, tuples and sets from
    reaching the evaluation and question parsers.
    """
    if obj is ...:
        return None
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    if isinstance(obj, dict):
        return {str(k): _coerce_to_json_types(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [_coerce_to_json_types(v) for v in obj]
    # Anything else is stringified.
    return str(obj)


def _parse_json_loose(raw: str) -> dict[str, Any] | list[Any] | None:
    """Parse JSON with best-effort repair.

    Returns a dict/list on success, else None.
    """
    if not raw:
        return None

    cleaned = _fix_json_string(raw)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    # Fall back to reading it as a Python literal (single quotes, trailing
    # commas), then round-trip through json so only JSON types come out.
    try:
        obj = ast.literal_eval(raw.strip())
    except (ValueError, SyntaxError, MemoryError, RecursionError):
        try:
            obj = ast.literal_eval(cleaned)
        except (ValueError, SyntaxError, MemoryError, RecursionError):
            return None

    if not isinstance(obj, (dict, list, tuple, set)):
        return None

    try:
        return json.loads(json.dumps(_coerce_to_json_types(obj)))
    except (TypeError, ValueError):
        return None
