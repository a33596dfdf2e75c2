import importlib

import pytest
from fastapi.testclient import TestClient


@pytest.mark.parametrize("service,metric", [
    ("realtime", "realtime_http_requests_total"),
    ("translation", "translation_http_requests_total"),
])
def test_service_metrics(service, metric):
    app = importlib.import_module(f"services.{service}.main").app
    client = TestClient(app)
    client.get("/health")
    r = client.get("/metrics")
    assert r.status_code == 200
    assert r.headers.get("content-type", "").startswith("text/plain")
    assert metric in r.text
