"""
AI analysis of sales conversations.

Sends one rendered transcript per request to the OpenAI chat completions API
and turns the JSON answer into an AnalysisResult. The client never raises for
a per-conversation failure: quota exhaustion, transient service errors and
malformed answers all come back as the canonical empty result annotated with
the failure kind, so every conversation is accounted for.
"""

import asyncio
import json
import logging
import math
import time
from typing import Any, Dict, Optional, get_args

from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    InternalServerError,
    RateLimitError,
)
from pydantic import ValidationError

from .config import DEFAULT_MODEL
from .db.models import (
    AI_FIELDS,
    CONFIDENCE_EMPTY,
    CONFIDENCE_ERROR,
    CONFIDENCE_UNSCORED,
    AnalysisResult,
    LeadStage,
    ProductCategory,
    Sentiment,
    TranscriptMetadata,
    Transcript,
    Urgency,
)
from .errors import AnalysisError, MalformedResponse, QuotaExceeded, TransientServiceError
from .prompts import SALES_ANALYSIS_SYSTEM_PROMPT, build_sales_analysis_prompt

logger = logging.getLogger(__name__)

QUOTA_ERROR_CODE = "insufficient_quota"
DEFAULT_TIMEOUT = 60.0
DEFAULT_MAX_RETRIES = 2
ERROR_MODEL_MARKER = "error"

EMPTY_NEXT_ACTION = "Initial contact or follow-up needed"
EMPTY_SALES_STATUS = "No meaningful conversation detected"

LIST_FIELDS = {
    "specific_products", "product_models", "additional_agents", "customer_objections",
    "accessories_discussed", "color_preferences", "competitive_products",
    "upsell_opportunities", "pain_points_identified",
}
BOOL_FIELDS = {
    "agent_handoff_detected", "pricing_discussed", "demo_scheduled", "follow_up_required",
}
ENUM_FIELDS = {
    "product_category": set(get_args(ProductCategory)),
    "lead_stage": set(get_args(LeadStage)),
    "customer_sentiment": set(get_args(Sentiment)),
    "urgency_level": set(get_args(Urgency)),
}


def empty_result(
    conversation_id: str,
    metadata: Optional[TranscriptMetadata] = None,
) -> AnalysisResult:
    """Canonical result for a conversation with nothing to analyze."""
    return AnalysisResult(
        conversation_id=conversation_id,
        next_action_required=EMPTY_NEXT_ACTION,
        sales_status=EMPTY_SALES_STATUS,
        follow_up_required=True,
        analysis_confidence=CONFIDENCE_EMPTY,
        metadata=metadata or TranscriptMetadata(),
    )


def failure_result(
    conversation_id: str,
    error: AnalysisError,
    metadata: Optional[TranscriptMetadata] = None,
    processing_time_ms: int = 0,
) -> AnalysisResult:
    """Canonical empty result annotated with why analysis failed."""
    result = empty_result(conversation_id, metadata)
    result.analysis_confidence = CONFIDENCE_ERROR
    result.ai_model_used = ERROR_MODEL_MARKER
    result.processing_time_ms = processing_time_ms
    result.failure_kind = error.kind
    result.error = _sanitize_error_message(error)
    return result


def _sanitize_error_message(error: Exception) -> str:
    """
    Sanitize error message for safe logging and storage.

    Keeps API keys, endpoints and request ids out of stored results.
    """
    if isinstance(error, QuotaExceeded):
        return "AI service quota exceeded"
    if isinstance(error, MalformedResponse):
        return f"Malformed AI response: {str(error)[:200]}"

    error_lower = str(error).lower()
    patterns = {
        "timed out": "Request timed out",
        "timeout": "Request timed out",
        "rate limit": "Rate limit exceeded - retry later",
        "connection": "Network connection error",
        "invalid_api_key": "AI service authentication failed",
        "server": "AI service temporarily unavailable",
    }
    for pattern, safe_message in patterns.items():
        if pattern in error_lower:
            return safe_message
    return f"Analysis failed ({type(error).__name__})"


def _error_code(error: APIStatusError) -> Optional[str]:
    """Pull the machine-readable error code out of an OpenAI API error."""
    code = getattr(error, "code", None)
    if code:
        return str(code)
    body = getattr(error, "body", None)
    if isinstance(body, dict):
        inner = body.get("error") if isinstance(body.get("error"), dict) else body
        code = inner.get("code") or inner.get("type")
        if code:
            return str(code)
    return None


def classify_error(error: Exception) -> AnalysisError:
    """Map any exception from an AI call onto the failure taxonomy."""
    if isinstance(error, AnalysisError):
        return error

    if isinstance(error, asyncio.TimeoutError):
        return TransientServiceError("Request timed out", code="timeout")

    if isinstance(error, APIStatusError):
        code = _error_code(error)
        if code == QUOTA_ERROR_CODE:
            return QuotaExceeded(str(error), code=code)
        if isinstance(error, (RateLimitError, InternalServerError)):
            return TransientServiceError(str(error), code=code or str(error.status_code))
        # Remaining 4xx: the request itself was refused; recorded, not retried
        return TransientServiceError(
            f"Non-retryable API error {error.status_code}: {error}",
            code=code or str(error.status_code),
        )

    if isinstance(error, (APITimeoutError, APIConnectionError)):
        return TransientServiceError(str(error), code=type(error).__name__)

    return TransientServiceError(str(error), code=type(error).__name__)


def _is_retryable(error: Exception) -> bool:
    if isinstance(error, (QuotaExceeded, MalformedResponse)):
        return False
    if isinstance(error, APIStatusError):
        return isinstance(error, (RateLimitError, InternalServerError)) and _error_code(error) != QUOTA_ERROR_CODE
    return isinstance(error, (asyncio.TimeoutError, APITimeoutError, APIConnectionError))


def _parse_json_response(content: Optional[str]) -> dict:
    """
    Parse JSON from LLM response, handling markdown code blocks.

    Raises:
        MalformedResponse: If content is empty, not JSON, or not a JSON object
    """
    if not content or not content.strip():
        raise MalformedResponse("Empty response content")

    content = content.strip()
    if content.startswith("```"):
        lines = content.split("\n")
        json_lines = []
        in_block = False
        for line in lines:
            if line.startswith("```"):
                in_block = not in_block
                continue
            if in_block:
                json_lines.append(line)
        content = "\n".join(json_lines)

    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise MalformedResponse(f"Invalid JSON: {e}")

    if not isinstance(data, dict):
        raise MalformedResponse(f"Expected a JSON object, got {type(data).__name__}")
    return data


def _coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "1"):
            return True
        if lowered in ("false", "no", "0"):
            return False
    if isinstance(value, (int, float)):
        return bool(value)
    return default


def _coerce_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v is not None and str(v).strip()]
    return [str(value)]


def _coerce_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None
    except OverflowError:
        raise MalformedResponse(f"quantity_mentioned is not finite: {value!r}")


def _coerce_enum(name: str, value: Any, default: str) -> str:
    if value is None:
        return default
    if isinstance(value, (dict, list)):
        raise MalformedResponse(f"{name} must be a string, got {type(value).__name__}")
    allowed = ENUM_FIELDS[name]
    if value in allowed:
        return value
    lookup = {a.lower(): a for a in allowed}
    match = lookup.get(str(value).strip().lower())
    if match:
        return match
    logger.warning(f"Invalid {name} {value!r}, defaulting to {default!r}")
    return default


def _coerce_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return CONFIDENCE_UNSCORED
    if math.isnan(confidence):
        return CONFIDENCE_UNSCORED
    return min(1.0, max(0.0, confidence))


def coerce_response(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize a parsed AI answer onto the AnalysisResult schema.

    Missing keys take the schema default, list fields always become lists of
    strings, booleans accept "true"/"false", enum values are matched
    case-insensitively and fall back to their default, and confidence is
    clamped to [0, 1]. Unknown keys are dropped.

    Raises:
        MalformedResponse: an enum field holds an object or list, or the
            quantity is not a finite number
    """
    defaults = AnalysisResult.model_fields
    coerced: Dict[str, Any] = {}

    for name in AI_FIELDS:
        value = data.get(name)
        default = defaults[name].get_default(call_default_factory=True)

        if name == "analysis_confidence":
            coerced[name] = _coerce_confidence(value)
        elif name in LIST_FIELDS:
            coerced[name] = _coerce_list(value)
        elif name in BOOL_FIELDS:
            coerced[name] = _coerce_bool(value, default)
        elif name in ENUM_FIELDS:
            coerced[name] = _coerce_enum(name, value, default)
        elif name == "quantity_mentioned":
            coerced[name] = _coerce_int(value)
        elif name == "product_specifications":
            coerced[name] = value if isinstance(value, dict) else None
        else:
            if value is None or (isinstance(value, str) and not value.strip()):
                coerced[name] = default
            elif isinstance(value, (dict, list)):
                coerced[name] = json.dumps(value)
            else:
                coerced[name] = str(value)

    return coerced


class AnalysisClient:
    """
    Wraps the OpenAI chat completions API for sales conversation analysis.

    The AsyncOpenAI handle is injected (or lazily created once) and shared by
    all concurrent calls; it holds no per-call state.
    """

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: str = DEFAULT_MODEL,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = 1.0,
        api_key: Optional[str] = None,
    ):
        self.model = model
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._api_key = api_key
        self._async_client = client

    @property
    def async_client(self) -> AsyncOpenAI:
        """Lazy-initialize async OpenAI client."""
        if self._async_client is None:
            # Retries are handled here, per failure kind, not inside the SDK
            self._async_client = AsyncOpenAI(api_key=self._api_key, max_retries=0)
        return self._async_client

    async def _request(self, transcript_text: str) -> Dict[str, Any]:
        response = await asyncio.wait_for(
            self.async_client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SALES_ANALYSIS_SYSTEM_PROMPT},
                    {"role": "user", "content": build_sales_analysis_prompt(transcript_text)},
                ],
                temperature=0.3,
                max_tokens=2000,
                response_format={"type": "json_object"},
                timeout=self.timeout,
            ),
            # Outer guard in case the SDK timeout does not fire
            timeout=self.timeout + 5,
        )

        if not response.choices:
            raise MalformedResponse("Response contained no choices")
        return _parse_json_response(response.choices[0].message.content)

    async def request_analysis(self, transcript: Transcript) -> AnalysisResult:
        """
        Analyze one transcript, raising on failure.

        Transient failures are retried with exponential backoff (1s, 2s, 4s...);
        quota and malformed-response failures are not.

        Raises:
            QuotaExceeded, TransientServiceError, MalformedResponse
        """
        start = time.monotonic()

        for attempt in range(self.max_retries + 1):
            try:
                data = await self._request(transcript.text)
                break
            except Exception as e:
                if attempt < self.max_retries and _is_retryable(e):
                    delay = self.base_delay * (2 ** attempt)
                    logger.info(
                        f"Transient error for {transcript.conversation_id} on attempt "
                        f"{attempt + 1}, retrying in {delay}s: {type(e).__name__}"
                    )
                    await asyncio.sleep(delay)
                    continue
                classified = classify_error(e)
                if classified is e:
                    raise
                raise classified from e

        try:
            result = AnalysisResult(
                conversation_id=transcript.conversation_id,
                **coerce_response(data),
                ai_model_used=self.model,
                processing_time_ms=int((time.monotonic() - start) * 1000),
                metadata=transcript.metadata,
                analysis_success=True,
            )
        except ValidationError as e:
            raise MalformedResponse(f"Response failed schema validation: {e.error_count()} errors") from e
        except (TypeError, ValueError, OverflowError) as e:
            raise MalformedResponse(f"Response has an unusable shape: {type(e).__name__}") from e

        return result

    async def analyze(self, transcript: Transcript) -> AnalysisResult:
        """
        Analyze one transcript. Never raises for per-conversation failures.

        Empty or whitespace-only transcripts return the canonical empty
        result without calling the service.
        """
        if transcript.is_empty:
            return empty_result(transcript.conversation_id, transcript.metadata)

        start = time.monotonic()
        try:
            return await self.request_analysis(transcript)
        except AnalysisError as e:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            if isinstance(e, QuotaExceeded):
                logger.error(f"AI QUOTA EXCEEDED for {transcript.conversation_id}")
            else:
                logger.warning(
                    f"AI analysis failed for {transcript.conversation_id} "
                    f"({e.kind.value}, code={e.code or 'none'}): {_sanitize_error_message(e)}"
                )
            return failure_result(transcript.conversation_id, e, transcript.metadata, elapsed_ms)
