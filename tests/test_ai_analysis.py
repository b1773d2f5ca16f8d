import pytest
import requests

import ai_analysis
import config
from ai_analysis import AnalysisError, analyze_test_result_image, image_to_data_uri, is_analysis_available, resolve_api_key

KEY = "sk-test-123"


class FakeResponse:
    def __init__(self, status_code=200, payload=None, reason="OK"):
        self.status_code = status_code
        self.reason = reason
        self._payload = payload
        self.text = "" if payload is None else str(payload)

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


@pytest.fixture(autouse=True)
def no_env_key(monkeypatch):
    monkeypatch.setattr(config, "OPENAI_API_KEY", "")


@pytest.fixture
def image(tmp_path):
    path = tmp_path / "scan.jpg"
    path.write_bytes(b"\xff\xd8fake-jpeg")
    return path


def _respond(monkeypatch, response=None, exc=None):
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if exc is not None:
            raise exc
        return response

    monkeypatch.setattr(ai_analysis.requests, "post", fake_post)
    return calls


def test_resolve_api_key_order(monkeypatch):
    assert resolve_api_key(None) == ""
    assert resolve_api_key({"aiProvider": "openai", "aiApiKey": " sk-a ", "openaiApiKey": "sk-b"}) == "sk-a"
    assert resolve_api_key({"aiProvider": "other", "aiApiKey": "sk-a", "openaiApiKey": "sk-b"}) == "sk-b"
    assert resolve_api_key({"aiApiKey": "sk-a"}) == "sk-a"

    monkeypatch.setattr(config, "OPENAI_API_KEY", "sk-env")
    assert resolve_api_key({"aiProvider": "openai", "aiApiKey": "sk-a"}) == "sk-env"


def test_is_analysis_available():
    assert not is_analysis_available({})
    assert is_analysis_available({"openaiApiKey": KEY})


def test_image_to_data_uri(tmp_path, image):
    assert image_to_data_uri(image).startswith("data:image/jpeg;base64,")
    png = tmp_path / "scan.png"
    png.write_bytes(b"\x89PNG")
    assert image_to_data_uri(png).startswith("data:image/png;base64,")
    with pytest.raises(FileNotFoundError):
        image_to_data_uri(tmp_path / "missing.jpg")


def test_missing_and_malformed_keys(image):
    with pytest.raises(AnalysisError) as info:
        analyze_test_result_image(image, "Blood", "")
    assert info.value.kind == "missing-key"
    with pytest.raises(AnalysisError) as info:
        analyze_test_result_image(image, "Blood", "abc")
    assert info.value.kind == "invalid-key-format"


def test_successful_analysis(monkeypatch, image):
    calls = _respond(monkeypatch, FakeResponse(payload={"choices": [{"message": {"content": "All values normal."}}]}))

    assert analyze_test_result_image(image, "Blood", KEY) == "All values normal."
    sent = calls[0]
    assert sent["headers"]["Authorization"] == f"Bearer {KEY}"
    assert sent["json"]["model"] == config.OPENAI_MODEL
    assert sent["json"]["max_tokens"] == config.AI_MAX_TOKENS
    content = sent["json"]["messages"][0]["content"]
    assert "Blood" in content[0]["text"]
    assert content[1]["image_url"]["url"].startswith("data:image/jpeg;base64,")


@pytest.mark.parametrize(
    "status_code, payload, kind",
    [
        (401, {"error": {"code": "invalid_api_key", "message": "bad key"}}, "invalid-key-format"),
        (429, {"error": {"code": "insufficient_quota", "message": "quota"}}, "quota-exceeded"),
        (429, {"error": {"code": "rate_limit_exceeded", "message": "slow down"}}, "rate-limited"),
        (429, None, "rate-limited"),
        (500, {"error": {"message": "upstream broke"}}, "api-error"),
    ],
)
def test_error_mapping(monkeypatch, image, status_code, payload, kind):
    _respond(monkeypatch, FakeResponse(status_code=status_code, payload=payload, reason="Error"))
    with pytest.raises(AnalysisError) as info:
        analyze_test_result_image(image, "Blood", KEY)
    assert info.value.kind == kind


def test_generic_error_keeps_service_message(monkeypatch, image):
    _respond(monkeypatch, FakeResponse(status_code=500, payload={"error": {"message": "upstream broke"}}))
    with pytest.raises(AnalysisError, match="upstream broke"):
        analyze_test_result_image(image, "Blood", KEY)


def test_network_failure(monkeypatch, image):
    _respond(monkeypatch, exc=requests.ConnectionError("offline"))
    with pytest.raises(AnalysisError) as info:
        analyze_test_result_image(image, "Blood", KEY)
    assert info.value.kind == "network"


def test_empty_answer(monkeypatch, image):
    _respond(monkeypatch, FakeResponse(payload={"choices": []}))
    with pytest.raises(AnalysisError) as info:
        analyze_test_result_image(image, "Blood", KEY)
    assert info.value.kind == "no-content"


def test_too_large(monkeypatch, image):
    calls = _respond(monkeypatch, FakeResponse(payload={"choices": []}))
    monkeypatch.setattr(config, "AI_MAX_IMAGE_MB", 0.000001)
    with pytest.raises(AnalysisError) as info:
        analyze_test_result_image(image, "Blood", KEY)
    assert info.value.kind == "too-large"
    assert calls == []


@pytest.mark.parametrize(
    "payload, message",
    [
        ([{"error": "unexpected list"}], "API error: 500 Error"),
        ({"error": "Service temporarily unavailable"}, "Service temporarily unavailable"),
        ({"detail": "no error key"}, "API error: 500 Error"),
    ],
)
def test_unusual_error_bodies_map_to_api_error(monkeypatch, image, payload, message):
    _respond(monkeypatch, FakeResponse(status_code=500, payload=payload, reason="Error"))
    with pytest.raises(AnalysisError) as info:
        analyze_test_result_image(image, "Blood", KEY)
    assert info.value.kind == "api-error"
    assert str(info.value) == message


def test_unreadable_success_body(monkeypatch, image):
    _respond(monkeypatch, FakeResponse(status_code=200, payload=None))
    with pytest.raises(AnalysisError) as info:
        analyze_test_result_image(image, "Blood", KEY)
    assert info.value.kind == "api-error"
