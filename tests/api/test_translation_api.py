import json

import httpx
import pytest
from fastapi.testclient import TestClient

from services.translation import main
from services.translation.client import FunctionsClient


def functions_handler(request):
    body = json.loads(request.content)
    if request.url.path.endswith("/ai-translation"):
        return httpx.Response(200, json={"translatedText": f"es:{body['sourceText']}"})
    if body["meetingId"] == "m-quota":
        return httpx.Response(429, json={"error": "quota", "errorType": "quota_exceeded", "statusCode": 429})
    if body["meetingId"] == "m-missing":
        return httpx.Response(404, text="Not Found")
    return httpx.Response(200, json={"summary": "Short meeting."})


@pytest.fixture
def client(monkeypatch, fake_redis, fake_pool):
    async def connect_redis():
        return fake_redis

    async def connect_postgres():
        return fake_pool

    def make_functions_client(base_url, **kwargs):
        transport = httpx.MockTransport(functions_handler)
        return FunctionsClient(base_url, client=httpx.AsyncClient(transport=transport), retry_attempts=1)

    monkeypatch.setattr(main, "_connect_redis", connect_redis)
    monkeypatch.setattr(main, "_connect_postgres", connect_postgres)
    monkeypatch.setattr(main, "FunctionsClient", make_functions_client)
    main.consumers.clear()
    with TestClient(main.app) as test_client:
        yield test_client
    main.consumers.clear()


def test_translate_single_text(client):
    r = client.post("/translation/translate", json={"text": "hello", "target_language": "es"})
    assert r.status_code == 200
    assert r.json() == {"translated_text": "es:hello", "source_language": "en", "target_language": "es"}


def test_summary_quota_is_429(client):
    r = client.post("/summary/meetings/m-quota", json={"participants": []})
    assert r.status_code == 429
    assert r.json()["kind"] == "quota_exceeded"


def test_summary_not_deployed_is_502(client):
    r = client.post("/summary/meetings/m-missing", json={})
    assert r.status_code == 502
    assert r.json()["kind"] == "not_deployed"


def test_summary_ok(client):
    r = client.post("/summary/meetings/m-1", json={"participants": ["Ana"]})
    assert r.status_code == 200
    assert r.json()["summary"] == "Short meeting."


def test_panel_lifecycle(client, fake_pool):
    fake_pool.rows = [
        {
            "id": "msg-1",
            "meeting_id": "m-1",
            "user_id": "u-1",
            "user_name": "Ana",
            "message": "good morning",
            "timestamp": "2024-05-01T10:00:00+00:00",
        }
    ]
    r = client.post("/translation/meetings/m-1/start", json={"target_language": "es"})
    assert r.status_code == 200
    assert r.json()["panel"]["is_translating"] is True

    segments = client.get("/translation/meetings/m-1/segments").json()
    assert segments["text"] == "[Ana] es:good morning"

    assert client.post("/translation/meetings/m-1/pause").json()["panel"]["is_paused"] is True
    assert client.post("/translation/meetings/m-1/resume").json()["panel"]["is_paused"] is False
    assert client.post("/translation/meetings/m-1/stop").json()["panel"]["is_translating"] is False


def test_controls_require_started_panel(client):
    assert client.post("/translation/meetings/nope/pause").status_code == 404
    assert client.get("/translation/meetings/nope/segments").status_code == 404


def test_languages(client):
    assert client.get("/translation/languages").json()["languages"]["ja"] == "Japanese"
