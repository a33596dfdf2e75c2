import json

import httpx
import pytest

from services.translation.client import (
    EMPTY_MESSAGE,
    QUOTA_MESSAGE,
    FunctionErrorKind,
    FunctionsClient,
    classify_response,
)


def make_client(handler, retry_attempts=1):
    transport = httpx.MockTransport(handler)
    return FunctionsClient(
        "http://functions.test/v1/",
        anon_key="anon-key",
        retry_attempts=retry_attempts,
        client=httpx.AsyncClient(transport=transport),
    )


def test_empty_body_is_not_deployed_hint():
    result = classify_response("ai-translation", 200, "", "translatedText")
    assert result.error.kind == FunctionErrorKind.EMPTY_RESPONSE
    assert result.error.message == EMPTY_MESSAGE


def test_quota_error_body():
    body = json.dumps({"error": "OpenAI API error", "details": "You exceeded your current quota"})
    result = classify_response("ai-translation", 500, body, "translatedText")
    assert result.error.kind == FunctionErrorKind.QUOTA_EXCEEDED
    assert result.error.message == QUOTA_MESSAGE


def test_plain_429_is_quota():
    result = classify_response("ai-summary", 429, "Too Many Requests", "summary")
    assert result.error.kind == FunctionErrorKind.QUOTA_EXCEEDED


def test_rate_limit_and_invalid_key():
    limited = classify_response("ai-summary", 400, json.dumps({"error": "slow down", "errorType": "rate_limit"}), "summary")
    assert limited.error.kind == FunctionErrorKind.RATE_LIMIT
    bad_key = classify_response("ai-summary", 401, json.dumps({"error": "bad key", "errorType": "invalid_key"}), "summary")
    assert bad_key.error.kind == FunctionErrorKind.INVALID_KEY


def test_404_is_not_deployed():
    result = classify_response("ai-summary", 404, "Not Found", "summary")
    assert result.error.kind == FunctionErrorKind.NOT_DEPLOYED
    assert "deploy the ai-summary function" in result.error.message


def test_non_json_success_is_malformed():
    result = classify_response("ai-summary", 200, "<html>oops</html>", "summary")
    assert result.error.kind == FunctionErrorKind.MALFORMED_RESPONSE
    assert result.error.message.startswith("Invalid response format: <html>")


def test_missing_field():
    result = classify_response("ai-translation", 200, json.dumps({"other": 1}), "translatedText")
    assert result.error.kind == FunctionErrorKind.MISSING_FIELD
    assert result.error.message == "No translatedText in response"


def test_other_http_error():
    result = classify_response("ai-translation", 500, json.dumps({"error": "boom"}), "translatedText")
    assert result.error.kind == FunctionErrorKind.HTTP_ERROR
    assert result.error.message == "boom"


@pytest.mark.asyncio
async def test_translate_posts_payload():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"translatedText": "hola"})

    client = make_client(handler)
    result = await client.translate("m-1", "hello", "en", "es", speaker="Ana")
    assert result.ok
    assert result.text == "hola"
    assert seen["url"] == "http://functions.test/v1/ai-translation"
    assert seen["auth"] == "Bearer anon-key"
    assert seen["body"] == {
        "meetingId": "m-1",
        "sourceText": "hello",
        "sourceLanguage": "en",
        "targetLanguage": "es",
        "speaker": "Ana",
    }


@pytest.mark.asyncio
async def test_same_language_makes_no_call():
    def handler(request):
        raise AssertionError("should not be called")

    result = await make_client(handler).translate("m-1", "hello", "en", "en")
    assert result.ok
    assert result.text == "hello"


@pytest.mark.asyncio
async def test_failed_translation_keeps_original_text():
    client = make_client(lambda request: httpx.Response(429, text="quota"))
    result = await client.translate("m-1", "hello", "en", "es")
    assert not result.ok
    assert result.text == "hello"
    assert result.error.kind == FunctionErrorKind.QUOTA_EXCEEDED


@pytest.mark.asyncio
async def test_network_error_is_classified():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    result = await make_client(handler).summarize("m-1", [])
    assert not result.ok
    assert result.error.kind == FunctionErrorKind.NETWORK


@pytest.mark.asyncio
async def test_network_errors_are_retried():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"summary": "All good"})

    result = await make_client(handler, retry_attempts=2).summarize("m-1", [{"name": "Ana"}])
    assert result.ok
    assert result.summary == "All good"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_translate_auto_detects_source():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"translatedText": "hello"})

    result = await make_client(handler).translate_auto("m-1", "こんにちは", "en")
    assert result.source_language == "ja"
    assert seen["body"]["sourceLanguage"] == "ja"
