import json

import flask
import pytest

from src.functions.frame_analysis.core.contracts import FrameProcessingReport, FrameResult
from src.functions.frame_analysis.functions import main


@pytest.fixture
def app():
    return flask.Flask(__name__)


class FakeService:
    requests = []

    def __init__(self, request_model):
        FakeService.requests.append(request_model)

    async def process(self):
        return FrameProcessingReport(
            status="success",
            results=[FrameResult(frame_id="f1", operation="analyze", status="completed", output="A punt return.")],
            progress={"completed_frames": 1, "total_frames": 1},
            processing_time_ms=12,
        )


def _call(app, method="POST", payload=None):
    with app.test_request_context("/", method=method, json=payload):
        response = main.frame_analysis_handler(flask.request)
    return response.status_code, json.loads(response.get_data(as_text=True) or "{}"), response.headers


def test_options_returns_cors_preflight(app):
    status, _, headers = _call(app, method="OPTIONS")

    assert status == 204
    assert headers["Access-Control-Allow-Origin"] == "*"


def test_get_is_rejected(app):
    status, body, _ = _call(app, method="GET")

    assert status == 405
    assert body["status"] == "error"


def test_invalid_payload_returns_400(app, monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setattr("src.functions.frame_analysis.core.factory.load_env", lambda *a, **k: [])

    status, body, _ = _call(app, payload={"frames": []})

    assert status == 400
    assert "frames" in body["message"]


def test_successful_request_returns_report(app, monkeypatch):
    FakeService.requests = []
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setattr("src.functions.frame_analysis.core.factory.load_env", lambda *a, **k: [])
    monkeypatch.setattr(main, "FrameProcessingService", FakeService)

    status, body, headers = _call(
        app,
        payload={"frames": [{"id": "f1", "image_data": "data:image/png;base64,AAAA"}]},
    )

    assert status == 200
    assert headers["Content-Type"] == "application/json"
    assert body["status"] == "success"
    assert body["results"][0]["output"] == "A punt return."
    assert "error" not in body
    assert FakeService.requests[0].tasks[0].frame_id == "f1"


def test_unexpected_failure_returns_500(app, monkeypatch):
    def explode(payload):
        raise RuntimeError("boom")

    monkeypatch.setattr(main, "request_from_payload", explode)

    status, body, _ = _call(app, payload={"frames": []})

    assert status == 500
    assert body["message"] == "Internal server error"


def test_health_check(app):
    with app.test_request_context("/health"):
        response = main.health_check_handler(flask.request)

    assert json.loads(response.get_data(as_text=True)) == {"status": "healthy", "service": "frame_analysis"}
