"""
HTTP client for the hosted AI functions (ai-translation, ai-summary).

Every call returns a result object; failures are classified into a
FunctionErrorKind with a user-facing troubleshooting message instead of
being raised.
"""
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
from prometheus_client import Counter, Histogram
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_exponential

from .language import detect_language

logger = logging.getLogger(__name__)

FUNCTION_CALLS = Counter(
    "translation_function_calls_total",
    "AI function invocations by outcome",
    ["function", "outcome"],
)
FUNCTION_LATENCY = Histogram(
    "translation_function_duration_seconds",
    "AI function call latency in seconds",
    ["function"],
    buckets=(0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
)

QUOTA_MESSAGE = (
    "OpenAI API quota exceeded. Please add credits to your OpenAI account to continue using AI features. "
    "Visit https://platform.openai.com/account/billing to add credits."
)
RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please wait a moment and try again."
INVALID_KEY_MESSAGE = "Invalid OpenAI API key. Please check the API key configured for the AI functions."
EMPTY_MESSAGE = "Empty response from server. The AI function may not be deployed."


class FunctionErrorKind(str, Enum):
    QUOTA_EXCEEDED = "quota_exceeded"
    RATE_LIMIT = "rate_limit"
    INVALID_KEY = "invalid_key"
    NOT_DEPLOYED = "not_deployed"
    EMPTY_RESPONSE = "empty_response"
    MALFORMED_RESPONSE = "malformed_response"
    MISSING_FIELD = "missing_field"
    HTTP_ERROR = "http_error"
    NETWORK = "network"


class FunctionError(Exception):
    def __init__(self, kind: FunctionErrorKind, message: str, status_code: Optional[int] = None, details: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "status_code": self.status_code}


TranslationError = FunctionError


@dataclass
class TranslationResult:
    text: str
    source_language: str
    target_language: str
    error: Optional[FunctionError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class SummaryResult:
    summary: Optional[str] = None
    error: Optional[FunctionError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class FunctionResponse:
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[FunctionError] = None


def _is_quota_error(data: Dict[str, Any], status: int) -> bool:
    if data.get("errorType") == "quota_exceeded" or data.get("statusCode") == 429 or status == 429:
        return True
    error = str(data.get("error") or "").lower()
    details = str(data.get("details") or "").lower()
    return (
        "quota exceeded" in error
        or "429" in error
        or "429" in details
        or "exceeded your current quota" in details
        or "insufficient_quota" in details
    )


def classify_response(function: str, status: int, text: str, required_field: str) -> FunctionResponse:
    """Turn a raw function response into data or a classified error."""
    if not text or not text.strip():
        return FunctionResponse(error=FunctionError(FunctionErrorKind.EMPTY_RESPONSE, EMPTY_MESSAGE, status))

    try:
        data = json.loads(text)
    except ValueError:
        if status == 404:
            return FunctionResponse(error=_not_deployed(function))
        if status == 429:
            return FunctionResponse(error=FunctionError(FunctionErrorKind.QUOTA_EXCEEDED, QUOTA_MESSAGE, status, text))
        if status >= 400:
            return FunctionResponse(error=FunctionError(FunctionErrorKind.HTTP_ERROR, f"HTTP {status}: {text}", status))
        return FunctionResponse(
            error=FunctionError(FunctionErrorKind.MALFORMED_RESPONSE, f"Invalid response format: {text[:100]}...", status)
        )
    if not isinstance(data, dict):
        return FunctionResponse(
            error=FunctionError(FunctionErrorKind.MALFORMED_RESPONSE, f"Invalid response format: {text[:100]}...", status)
        )

    # error bodies are checked before the status code
    if data.get("error"):
        details = str(data.get("details")) if data.get("details") is not None else None
        if _is_quota_error(data, status):
            return FunctionResponse(error=FunctionError(FunctionErrorKind.QUOTA_EXCEEDED, QUOTA_MESSAGE, status, details))
        if data.get("errorType") == "rate_limit":
            return FunctionResponse(error=FunctionError(FunctionErrorKind.RATE_LIMIT, RATE_LIMIT_MESSAGE, status, details))
        if data.get("errorType") == "invalid_key":
            return FunctionResponse(error=FunctionError(FunctionErrorKind.INVALID_KEY, INVALID_KEY_MESSAGE, status, details))
        if status == 404:
            return FunctionResponse(error=_not_deployed(function))
        return FunctionResponse(error=FunctionError(FunctionErrorKind.HTTP_ERROR, str(data["error"]), status, details))

    if status >= 400:
        if status == 404:
            return FunctionResponse(error=_not_deployed(function))
        if status == 429:
            return FunctionResponse(error=FunctionError(FunctionErrorKind.QUOTA_EXCEEDED, QUOTA_MESSAGE, status))
        return FunctionResponse(error=FunctionError(FunctionErrorKind.HTTP_ERROR, f"HTTP {status}: {text}", status))

    if not data.get(required_field):
        return FunctionResponse(error=FunctionError(FunctionErrorKind.MISSING_FIELD, f"No {required_field} in response", status))
    return FunctionResponse(data=data)


def _not_deployed(function: str) -> FunctionError:
    return FunctionError(
        FunctionErrorKind.NOT_DEPLOYED,
        f"AI function not found. Please deploy the {function} function.",
        404,
    )


class FunctionsClient:
    def __init__(
        self,
        base_url: str,
        anon_key: Optional[str] = None,
        timeout: float = 30.0,
        retry_attempts: int = 3,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.anon_key = anon_key
        self.retry_attempts = max(1, retry_attempts)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.anon_key:
            headers["Authorization"] = f"Bearer {self.anon_key}"
        return headers

    async def _post(self, function: str, payload: Dict[str, Any]) -> httpx.Response:
        retrying = AsyncRetrying(
            reraise=False,
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
            retry=retry_if_exception_type(httpx.TransportError),
        )
        async for attempt in retrying:
            with attempt:
                return await self._client.post(f"{self.base_url}/{function}", json=payload, headers=self._headers())

    async def invoke(self, function: str, payload: Dict[str, Any], required_field: str) -> FunctionResponse:
        start = time.perf_counter()
        try:
            response = await self._post(function, payload)
        except RetryError as e:
            cause = e.last_attempt.exception()
            FUNCTION_CALLS.labels(function, FunctionErrorKind.NETWORK.value).inc()
            logger.error(f"Network error calling {function}: {cause}")
            return FunctionResponse(error=FunctionError(FunctionErrorKind.NETWORK, f"Network error calling {function}: {cause}"))
        finally:
            FUNCTION_LATENCY.labels(function).observe(time.perf_counter() - start)

        result = classify_response(function, response.status_code, response.text, required_field)
        if result.error:
            FUNCTION_CALLS.labels(function, result.error.kind.value).inc()
            logger.warning(f"{function} failed ({result.error.kind.value}): {result.error.message}")
        else:
            FUNCTION_CALLS.labels(function, "ok").inc()
        return result

    async def translate(
        self,
        meeting_id: str,
        text: str,
        source_language: str,
        target_language: str,
        speaker: Optional[str] = None,
    ) -> TranslationResult:
        if source_language == target_language:
            return TranslationResult(text, source_language, target_language)
        payload = {
            "meetingId": meeting_id,
            "sourceText": text,
            "sourceLanguage": source_language,
            "targetLanguage": target_language,
            "speaker": speaker,
        }
        result = await self.invoke("ai-translation", payload, "translatedText")
        if result.error:
            return TranslationResult(text, source_language, target_language, error=result.error)
        return TranslationResult(str(result.data["translatedText"]), source_language, target_language)

    async def translate_auto(
        self,
        meeting_id: str,
        text: str,
        target_language: str,
        default_language: str = "en",
        speaker: Optional[str] = None,
    ) -> TranslationResult:
        source_language = detect_language(text, default_language)
        return await self.translate(meeting_id, text, source_language, target_language, speaker)

    async def summarize(self, meeting_id: str, participants: List[Any]) -> SummaryResult:
        result = await self.invoke("ai-summary", {"meetingId": meeting_id, "participants": participants}, "summary")
        if result.error:
            return SummaryResult(error=result.error)
        return SummaryResult(summary=str(result.data["summary"]))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
