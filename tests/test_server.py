"""HTTP boundary tests for the snapcalc server."""
import io

import pytest

from snapcalc.ocr_provider import OCRProvider, OCRProviderError
from snapcalc.server import create_app

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


class StubProvider(OCRProvider):
    provider_name = "stub"

    def __init__(self, text: str = "", error: Exception | None = None, healthy: bool = True):
        super().__init__()
        self.text = text
        self.error = error
        self.healthy = healthy

    def _request(self, image, media_type, filename):
        if self.error:
            raise self.error
        return self.text, {}

    def health_check(self):
        return (True, "ok") if self.healthy else (False, "stub down")


@pytest.fixture
def make_client(monkeypatch):
    monkeypatch.setenv("SNAPCALC_RATE_LIMIT_ENABLED", "0")

    def _make(provider=None):
        app = create_app(provider=provider or StubProvider("12 × 3 ="))
        return app, app.test_client()

    return _make


def _upload(data=PNG, filename="expr.png", media_type="image/png"):
    return {"image": (io.BytesIO(data), filename, media_type)}


def test_health(make_client):
    _app, client = make_client()
    response = client.get("/api/health")
    assert response.status_code == 200
    data = response.get_json()
    assert data["status"] == "ok"
    assert data["ocr"] == "stub"
    assert response.headers["X-Request-ID"]


def test_request_id_is_echoed(make_client):
    _app, client = make_client()
    response = client.get("/api/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


def test_ready_reflects_provider_health(make_client):
    _app, client = make_client(StubProvider(healthy=False))
    response = client.get("/ready")
    assert response.status_code == 503
    assert response.get_json()["reason"] == "stub down"

    _app, client = make_client()
    assert client.get("/ready").status_code == 200


def test_metrics_endpoint(make_client):
    _app, client = make_client()
    client.get("/api/health")
    response = client.get("/metrics")
    assert response.status_code == 200
    assert b"snapcalc_requests_total" in response.data


def test_ocr_returns_cleaned_expression(make_client):
    _app, client = make_client()
    response = client.post("/api/ocr", data=_upload(), content_type="multipart/form-data")
    assert response.status_code == 200
    data = response.get_json()
    assert data["success"] is True
    assert data["expression"] == "12 * 3"
    assert data["filename"] == "expr.png"


def test_ocr_requires_image(make_client):
    _app, client = make_client()
    response = client.post("/api/ocr", data={}, content_type="multipart/form-data")
    assert response.status_code == 400
    assert response.get_json()["error"]["message"] == "No image file provided"


def test_ocr_rejects_wrong_type(make_client):
    _app, client = make_client()
    response = client.post(
        "/api/ocr",
        data=_upload(filename="expr.gif", media_type="image/gif"),
        content_type="multipart/form-data",
    )
    assert response.status_code == 400
    assert response.get_json()["error"]["type"] == "validation_error"


def test_ocr_rejects_oversized_image(make_client, monkeypatch):
    monkeypatch.setenv("SNAPCALC_MAX_IMAGE_BYTES", "16")
    _app, client = make_client()
    response = client.post("/api/ocr", data=_upload(), content_type="multipart/form-data")
    assert response.status_code == 400
    assert "File size exceeds" in response.get_json()["error"]["message"]


def test_ocr_empty_text(make_client):
    _app, client = make_client(StubProvider("no digits here"))
    response = client.post("/api/ocr", data=_upload(), content_type="multipart/form-data")
    assert response.status_code == 400
    assert response.get_json()["error"]["type"] == "no_expression"


def test_ocr_provider_error(make_client):
    _app, client = make_client(StubProvider(error=OCRProviderError("vision_error:denied")))
    response = client.post("/api/ocr", data=_upload(), content_type="multipart/form-data")
    assert response.status_code == 502
    assert "vision_error:denied" in response.get_json()["error"]["message"]


def test_session_actions_chain(make_client):
    _app, client = make_client()
    steps = [
        {"action": "digit", "value": "5"},
        {"action": "operator", "value": "+"},
        {"action": "digit", "value": "3"},
        {"action": "operator", "value": "×"},
        {"action": "digit", "value": "2"},
        {"action": "equals"},
    ]
    for step in steps:
        response = client.post("/api/sessions/s1/actions", json=step)
        assert response.status_code == 200
    state = response.get_json()
    assert state["current"] == "16"
    assert state["history"][0]["expression"] == "8 × 2"

    other = client.get("/api/sessions/s2").get_json()
    assert other["current"] == "0"


def test_session_action_validation(make_client):
    _app, client = make_client()
    assert client.post("/api/sessions/s1/actions", json={}).status_code == 400
    response = client.post("/api/sessions/s1/actions", json={"action": "digit", "value": "x"})
    assert response.status_code == 400
    assert response.get_json()["error"]["type"] == "validation_error"


def test_session_keys(make_client):
    _app, client = make_client()
    for key in ["9", "/", "3", "Enter"]:
        response = client.post("/api/sessions/k/keys", json={"key": key})
    data = response.get_json()
    assert data["handled"] is True
    assert data["state"]["current"] == "3"
    assert client.post("/api/sessions/k/keys", json={"key": "Tab"}).get_json()["handled"] is False


def test_session_evaluate(make_client):
    _app, client = make_client()
    ok = client.post("/api/sessions/e/evaluate", json={"expression": "2+3*4"}).get_json()
    assert ok["result"] == "14"
    assert ok["valid"] is True
    bad = client.post("/api/sessions/e/evaluate", json={"expression": "2+"}).get_json()
    assert bad["result"] == "Invalid expression"
    assert bad["valid"] is False
    assert bad["state"]["current"] == "14"


def test_session_solve_and_replay(make_client):
    _app, client = make_client()
    response = client.post("/api/sessions/o/solve", data=_upload(), content_type="multipart/form-data")
    assert response.status_code == 200
    data = response.get_json()
    assert data["expression"] == "12*3"
    assert data["display_expression"] == "12×3"
    assert data["result"] == "36"

    history = client.get("/api/sessions/o/history").get_json()["history"]
    assert history[0] == {**history[0], "expression": "12*3", "result": "36"}

    client.post("/api/sessions/o/actions", json={"action": "clear"})
    replay = client.post("/api/sessions/o/history/0/replay").get_json()
    assert replay["result"] == "36"
    assert client.post("/api/sessions/o/history/5/replay").status_code == 404

    assert client.delete("/api/sessions/o/history").get_json() == {"history": []}


def test_session_solve_while_busy(make_client):
    app, client = make_client()
    session = app.config["SNAPCALC_SESSIONS"].get("busy")
    token = session.ocr.begin()
    response = client.post("/api/sessions/busy/solve", data=_upload(), content_type="multipart/form-data")
    assert response.status_code == 409
    session.ocr.finish(token)
    response = client.post("/api/sessions/busy/solve", data=_upload(), content_type="multipart/form-data")
    assert response.status_code == 200


def test_session_solve_error_mapping(make_client):
    _app, client = make_client(StubProvider("1 / 0"))
    response = client.post("/api/sessions/z/solve", data=_upload(), content_type="multipart/form-data")
    assert response.status_code == 422
    assert response.get_json()["error"]["type"] == "invalid_expression"

    _app, client = make_client(StubProvider(error=OCRProviderError("down")))
    response = client.post("/api/sessions/z/solve", data=_upload(), content_type="multipart/form-data")
    assert response.status_code == 502


def test_unknown_route_lists_endpoints(make_client):
    _app, client = make_client()
    response = client.get("/nope")
    assert response.status_code == 404
    assert "POST /api/ocr" in response.get_json()["available_endpoints"]


class HookProvider(StubProvider):
    """Runs ``hook`` while the OCR request is in flight."""

    def __init__(self, text: str, hook=None):
        super().__init__(text)
        self.hook = hook

    def _request(self, image, media_type, filename):
        if self.hook:
            self.hook()
        return super()._request(image, media_type, filename)


def test_session_action_rejects_non_string_operator(make_client):
    _app, client = make_client()
    for value in (["+"], {"op": "+"}):
        response = client.post("/api/sessions/s1/actions", json={"action": "operator", "value": value})
        assert response.status_code == 400
        assert response.get_json()["error"]["type"] == "validation_error"


def test_close_session(make_client):
    app, client = make_client()
    client.post("/api/sessions/c/actions", json={"action": "digit", "value": "7"})
    assert "c" in app.config["SNAPCALC_SESSIONS"]
    assert client.delete("/api/sessions/c").get_json() == {"closed": "c"}
    assert "c" not in app.config["SNAPCALC_SESSIONS"]
    assert client.delete("/api/sessions/c").status_code == 404
    assert client.get("/api/sessions/c").get_json()["current"] == "0"


def test_solve_result_lands_on_requesting_session_despite_eviction(make_client, monkeypatch):
    monkeypatch.setenv("SNAPCALC_MAX_SESSIONS", "1")
    provider = HookProvider("6 × 7")
    app, client = make_client(provider)
    store = app.config["SNAPCALC_SESSIONS"]
    provider.hook = lambda: store.get("other")

    response = client.post("/api/sessions/mine/solve", data=_upload(), content_type="multipart/form-data")
    assert response.status_code == 200
    assert response.get_json()["result"] == "42"
    assert "mine" in store
    assert store.get("mine").calculator.display == "42"


def test_solve_on_session_closed_during_ocr(make_client):
    provider = HookProvider("6 × 7")
    app, client = make_client(provider)
    store = app.config["SNAPCALC_SESSIONS"]
    provider.hook = lambda: store.drop("gone")

    response = client.post("/api/sessions/gone/solve", data=_upload(), content_type="multipart/form-data")
    assert response.status_code == 404
    assert store.get("gone").history.entries() == []
