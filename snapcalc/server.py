from __future__ import annotations

import logging
import os
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from dotenv import load_dotenv
from flask import Flask, Response, g, jsonify, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Histogram, generate_latest

from snapcalc.calculator import INVALID_EXPRESSION, InvalidInput
from snapcalc.logs import configure_logging
from snapcalc.ocr import (
    ImageValidationError,
    OCRBusyError,
    OCRError,
    OCRUnavailableError,
    max_image_bytes,
    validate_image,
)
from snapcalc.ocr_provider import OCRProvider, OCRProviderError, get_provider
from snapcalc.sanitize import normalize_ocr_text
from snapcalc.session import CalculatorSession
from snapcalc.sessions import SessionStore

load_dotenv()

logger = logging.getLogger("snapcalc.server")

SERVICE_NAME = "snapcalc"

AVAILABLE_ENDPOINTS = [
    "GET /api/health",
    "GET /ready",
    "GET /metrics",
    "POST /api/ocr",
    "GET /api/sessions/<id>",
    "DELETE /api/sessions/<id>",
    "POST /api/sessions/<id>/actions",
    "POST /api/sessions/<id>/keys",
    "POST /api/sessions/<id>/evaluate",
    "POST /api/sessions/<id>/solve",
    "GET /api/sessions/<id>/history",
    "DELETE /api/sessions/<id>/history",
    "POST /api/sessions/<id>/history/<index>/replay",
]


def _error(message: str, error_type: str, code: int) -> Tuple[Response, int]:
    return jsonify({"error": {"message": message, "type": error_type, "code": code}}), code


def _read_upload() -> Tuple[bytes, str, Optional[str]]:
    upload = request.files.get("image")
    if upload is None:
        return b"", "", None
    return upload.read(), upload.mimetype or "", upload.filename or None


def _build_metrics() -> Dict[str, Any]:
    registry = CollectorRegistry(auto_describe=True)
    return {
        "registry": registry,
        "requests": Counter(
            "snapcalc_requests_total",
            "Total requests",
            ["route", "method", "status"],
            registry=registry,
        ),
        "latency": Histogram(
            "snapcalc_request_latency_seconds",
            "Request latency",
            ["route", "method"],
            registry=registry,
        ),
        "errors": Counter(
            "snapcalc_errors_total",
            "Total errors",
            ["route", "method", "status"],
            registry=registry,
        ),
        "ocr": Counter(
            "snapcalc_ocr_requests_total",
            "OCR requests by outcome",
            ["outcome"],
            registry=registry,
        ),
    }


def create_app(provider: Optional[OCRProvider] = None, store: Optional[SessionStore] = None) -> Flask:
    configure_logging()
    app = Flask(__name__)
    # Room for multipart framing on top of the largest accepted image.
    app.config["MAX_CONTENT_LENGTH"] = int(
        os.getenv("SNAPCALC_MAX_REQUEST_BYTES", str(max_image_bytes() + 1024 * 1024))
    )

    provider = provider or get_provider()
    store = store or SessionStore(lambda: CalculatorSession(provider=provider))
    metrics = _build_metrics()
    app.config["SNAPCALC_PROVIDER"] = provider
    app.config["SNAPCALC_SESSIONS"] = store

    rate_limit = os.getenv("SNAPCALC_RATE_LIMIT", "30 per minute")
    limiter = (
        Limiter(
            key_func=get_remote_address,
            app=app,
            default_limits=[],
            storage_uri=os.getenv("SNAPCALC_RATE_LIMIT_STORAGE_URL", "memory://"),
        )
        if os.getenv("SNAPCALC_RATE_LIMIT_ENABLED", "1") == "1"
        else None
    )

    def _limit_route(func):
        if limiter:
            return limiter.limit(rate_limit)(func)
        return func

    @app.before_request
    def start_request():
        g.request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        g.request_start = time.time()

    @app.after_request
    def finalize_request(response):
        request_id = getattr(g, "request_id", None)
        if request_id:
            response.headers["X-Request-ID"] = request_id
        route = request.url_rule.rule if request.url_rule else "unmatched"
        method = request.method
        status = str(response.status_code)
        duration = time.time() - getattr(g, "request_start", time.time())
        metrics["requests"].labels(route, method, status).inc()
        metrics["latency"].labels(route, method).observe(duration)
        if response.status_code >= 500:
            metrics["errors"].labels(route, method, status).inc()

        logger.info(
            "request",
            extra={
                "extra": {
                    "request_id": request_id,
                    "route": route,
                    "method": method,
                    "status": response.status_code,
                    "latency_ms": int(duration * 1000),
                }
            },
        )
        return response

    @app.errorhandler(404)
    def not_found(_exc):
        return jsonify({
            "error": {"message": "Endpoint not found", "type": "not_found", "code": 404},
            "available_endpoints": AVAILABLE_ENDPOINTS,
        }), 404

    @app.errorhandler(413)
    def too_large(_exc):
        limit_mb = max_image_bytes() // (1024 * 1024)
        return _error(f"File size too large. Maximum size is {limit_mb}MB.", "validation_error", 413)

    @app.get("/api/health")
    def health():
        return {
            "status": "ok",
            "service": SERVICE_NAME,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "ocr": provider.provider_name,
        }

    @app.get("/ready")
    def ready():
        ok, reason = provider.health_check()
        if not ok:
            return {"status": "unready", "service": SERVICE_NAME, "reason": reason}, 503
        return {"status": "ready", "service": SERVICE_NAME}

    @app.get("/metrics")
    def metrics_endpoint():
        if os.getenv("SNAPCALC_METRICS_ENABLED", "1") != "1":
            return {"status": "disabled", "service": SERVICE_NAME}, 503
        return Response(generate_latest(metrics["registry"]), mimetype=CONTENT_TYPE_LATEST)

    @app.post("/api/ocr")
    @_limit_route
    def ocr():
        data, media_type, filename = _read_upload()
        try:
            validate_image(data, media_type, filename)
        except ImageValidationError as exc:
            metrics["ocr"].labels("rejected").inc()
            return _error(str(exc), "validation_error", 400)

        logger.info(
            "processing image",
            extra={"extra": {"filename": filename, "media_type": media_type, "bytes": len(data)}},
        )
        try:
            result = provider.extract_text(data, media_type.lower(), filename)
        except OCRProviderError as exc:
            metrics["ocr"].labels("provider_error").inc()
            logger.warning("ocr provider error", extra={"extra": {"error": str(exc)}})
            return _error(f"OCR provider error: {exc}", "provider_error", 502)

        expression = normalize_ocr_text(result.text)
        if not expression:
            metrics["ocr"].labels("empty").inc()
            return _error("No mathematical expression found in the image", "no_expression", 400)

        metrics["ocr"].labels("ok").inc()
        return jsonify({
            "success": True,
            "expression": expression,
            "filename": filename,
            "processed_at": datetime.now(timezone.utc).isoformat(),
        })

    @app.get("/api/sessions/<session_id>")
    def session_state(session_id: str):
        with store.lock(session_id) as session:
            return jsonify(session.snapshot())

    @app.post("/api/sessions/<session_id>/actions")
    def session_action(session_id: str):
        payload = request.get_json(force=True, silent=True) or {}
        action = payload.get("action")
        if not action:
            return _error("action is required", "validation_error", 400)
        with store.lock(session_id) as session:
            try:
                state = session.press(action, payload.get("value"))
            except InvalidInput as exc:
                return _error(str(exc), "validation_error", 400)
            return jsonify(state)

    @app.post("/api/sessions/<session_id>/keys")
    def session_key(session_id: str):
        payload = request.get_json(force=True, silent=True) or {}
        key = payload.get("key")
        if not isinstance(key, str) or not key:
            return _error("key is required", "validation_error", 400)
        with store.lock(session_id) as session:
            handled = session.handle_key(key)
            return jsonify({"handled": handled, "state": session.snapshot()})

    @app.post("/api/sessions/<session_id>/evaluate")
    def session_evaluate(session_id: str):
        payload = request.get_json(force=True, silent=True) or {}
        with store.lock(session_id) as session:
            result = session.evaluate(payload.get("expression"))
            return jsonify({
                "result": result,
                "valid": result != INVALID_EXPRESSION,
                "state": session.snapshot(),
            })

    @app.post("/api/sessions/<session_id>/solve")
    @_limit_route
    def session_solve(session_id: str):
        data, media_type, filename = _read_upload()
        # OCR runs outside the session lock so a concurrent solve sees the busy
        # token. The pin keeps the session from being evicted meanwhile.
        with store.pinned(session_id) as session:
            try:
                extracted = session.ocr.process_image(data, media_type, filename)
            except OCRBusyError as exc:
                metrics["ocr"].labels("busy").inc()
                return _error(str(exc), "busy", 409)
            except ImageValidationError as exc:
                metrics["ocr"].labels("rejected").inc()
                return _error(str(exc), "validation_error", 400)
            except OCRUnavailableError as exc:
                metrics["ocr"].labels("provider_error").inc()
                return _error(str(exc), "provider_error", 502)
            except OCRError as exc:
                metrics["ocr"].labels("no_expression").inc()
                return _error(str(exc), "no_expression", 422)

            with store.lock(session_id) as locked:
                if locked is not session:
                    metrics["ocr"].labels("session_gone").inc()
                    return _error("Session was closed during OCR", "not_found", 404)
                try:
                    solved = locked.apply_extracted(extracted)
                except OCRError as exc:
                    metrics["ocr"].labels("invalid_expression").inc()
                    return _error(str(exc), "invalid_expression", 422)
                metrics["ocr"].labels("ok").inc()
                return jsonify({**solved.to_dict(), "state": locked.snapshot()})

    @app.delete("/api/sessions/<session_id>")
    def session_close(session_id: str):
        if not store.drop(session_id):
            return _error("Session not found", "not_found", 404)
        return jsonify({"closed": session_id})

    @app.get("/api/sessions/<session_id>/history")
    def session_history(session_id: str):
        with store.lock(session_id) as session:
            return jsonify({"history": [entry.to_dict() for entry in session.history.entries()]})

    @app.delete("/api/sessions/<session_id>/history")
    def session_history_clear(session_id: str):
        with store.lock(session_id) as session:
            session.clear_history()
            return jsonify({"history": []})

    @app.post("/api/sessions/<session_id>/history/<int:index>/replay")
    def session_history_replay(session_id: str, index: int):
        with store.lock(session_id) as session:
            if session.history.get(index) is None:
                return _error("History entry not found", "not_found", 404)
            result = session.replay_history(index)
            return jsonify({
                "result": result,
                "valid": result != INVALID_EXPRESSION,
                "state": session.snapshot(),
            })

    return app


def main() -> None:
    port = int(os.getenv("SNAPCALC_PORT", "8787"))
    host = os.getenv("SNAPCALC_HOST", "127.0.0.1")
    app = create_app()
    logger.info("starting server", extra={"extra": {"host": host, "port": port}})
    app.run(host=host, port=port, debug=False)


if __name__ == "__main__":
    main()
