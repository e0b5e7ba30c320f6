from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests
from google.cloud import vision
from google.oauth2 import service_account

logger = logging.getLogger("snapcalc.ocr_provider")

ALLOWED_MEDIA_TYPES = frozenset({"image/png", "image/jpeg", "image/jpg"})


class OCRProviderError(RuntimeError):
    pass


@dataclass(frozen=True)
class OCRResult:
    text: str
    provider: str
    latency_ms: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class OCRProviderConfig:
    base_url: str
    timeout_sec: int
    health_timeout_sec: int
    circuit_max_failures: int
    circuit_reset_sec: int
    credentials_path: Optional[str]

    @classmethod
    def from_env(cls) -> "OCRProviderConfig":
        return cls(
            base_url=os.getenv("SNAPCALC_OCR_URL", "http://127.0.0.1:8787").rstrip("/"),
            timeout_sec=int(os.getenv("SNAPCALC_OCR_TIMEOUT_SEC", "30")),
            health_timeout_sec=int(os.getenv("SNAPCALC_OCR_HEALTH_TIMEOUT_SEC", "5")),
            circuit_max_failures=int(os.getenv("SNAPCALC_OCR_CIRCUIT_MAX_FAILURES", "3")),
            circuit_reset_sec=int(os.getenv("SNAPCALC_OCR_CIRCUIT_RESET_SEC", "30")),
            credentials_path=(
                os.getenv("SNAPCALC_GCP_SERVICE_ACCOUNT_JSON")
                or os.getenv("GOOGLE_APPLICATION_CREDENTIALS")
                or None
            ),
        )


class CircuitBreaker:
    def __init__(self, max_failures: int, reset_sec: int) -> None:
        self.max_failures = max_failures
        self.reset_sec = reset_sec
        self.failures = 0
        self.opened_at: Optional[float] = None

    def allow(self) -> bool:
        if self.failures < self.max_failures:
            return True
        if self.opened_at is None:
            self.opened_at = time.time()
            return False
        if (time.time() - self.opened_at) >= self.reset_sec:
            self.failures = 0
            self.opened_at = None
            return True
        return False

    def record_success(self) -> None:
        self.failures = 0
        self.opened_at = None

    def record_failure(self) -> None:
        self.failures += 1
        if self.failures >= self.max_failures and self.opened_at is None:
            self.opened_at = time.time()


class OCRProvider:
    """Image bytes in, best-effort raw text out."""

    provider_name = "unknown"

    def __init__(self, config: Optional[OCRProviderConfig] = None) -> None:
        self.config = config or OCRProviderConfig.from_env()
        self._breaker = CircuitBreaker(
            max_failures=self.config.circuit_max_failures,
            reset_sec=self.config.circuit_reset_sec,
        )

    def extract_text(self, image: bytes, media_type: str, filename: Optional[str] = None) -> OCRResult:
        if media_type not in ALLOWED_MEDIA_TYPES:
            raise OCRProviderError(f"unsupported_media_type:{media_type}")
        if not self._breaker.allow():
            raise OCRProviderError("circuit_open: OCR provider temporarily unavailable")

        start = time.time()
        try:
            text, raw = self._request(image, media_type, filename)
        except Exception:
            self._breaker.record_failure()
            raise
        self._breaker.record_success()
        latency_ms = int((time.time() - start) * 1000)
        logger.info(
            "ocr text extracted",
            extra={"extra": {"provider": self.provider_name, "chars": len(text), "latency_ms": latency_ms}},
        )
        return OCRResult(text=text, provider=self.provider_name, latency_ms=latency_ms, raw=raw)

    def _request(self, image: bytes, media_type: str, filename: Optional[str]) -> tuple[str, Dict[str, Any]]:  # pragma: no cover - interface
        raise NotImplementedError

    def health_check(self) -> tuple[bool, str]:  # pragma: no cover - interface
        return False, "health_check not implemented"


class VisionOCRProvider(OCRProvider):
    """Google Cloud Vision text detection."""

    provider_name = "google-vision"

    def __init__(self, config: Optional[OCRProviderConfig] = None, client: Any = None) -> None:
        super().__init__(config)
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            path = self.config.credentials_path
            if path:
                creds = service_account.Credentials.from_service_account_file(path)
                self._client = vision.ImageAnnotatorClient(credentials=creds)
            else:
                self._client = vision.ImageAnnotatorClient()
        return self._client

    def _request(self, image: bytes, media_type: str, filename: Optional[str]) -> tuple[str, Dict[str, Any]]:
        client = self._get_client()
        try:
            response = client.text_detection(
                image=vision.Image(content=image),
                timeout=self.config.timeout_sec,
            )
        except Exception as exc:
            raise OCRProviderError(f"vision_request_failed:{exc}") from exc

        if response.error.message:
            raise OCRProviderError(f"vision_error:{response.error.message}")

        annotations = response.text_annotations
        if not annotations:
            return "", {"annotations": 0}
        # The first annotation is the whole detected text block.
        text = (annotations[0].description or "").strip()
        return text, {"annotations": len(annotations)}

    def health_check(self) -> tuple[bool, str]:
        if not self._breaker.allow():
            return False, "circuit_open"
        try:
            self._get_client()
        except Exception as exc:
            return False, f"vision client error: {exc}"
        return True, "ok"


class RemoteOCRProvider(OCRProvider):
    """Delegates OCR to another snapcalc server's /api/ocr endpoint."""

    provider_name = "remote"

    def __init__(self, config: Optional[OCRProviderConfig] = None, base_url: Optional[str] = None) -> None:
        super().__init__(config)
        if base_url:
            self.config.base_url = base_url.rstrip("/")

    @staticmethod
    def _error_message(resp: requests.Response) -> str:
        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        error = payload.get("error") if isinstance(payload, dict) else None
        if isinstance(error, dict):
            error = error.get("message")
        return error or f"HTTP {resp.status_code}: {resp.reason}"

    def _request(self, image: bytes, media_type: str, filename: Optional[str]) -> tuple[str, Dict[str, Any]]:
        upload_name = filename or ("image.png" if media_type == "image/png" else "image.jpg")
        try:
            resp = requests.post(
                f"{self.config.base_url}/api/ocr",
                files={"image": (upload_name, image, media_type)},
                timeout=self.config.timeout_sec,
            )
        except requests.RequestException as exc:
            raise OCRProviderError(f"provider_request_failed:{exc}") from exc

        if resp.status_code >= 400:
            raise OCRProviderError(self._error_message(resp))
        try:
            data = resp.json()
        except ValueError as exc:
            raise OCRProviderError("provider_invalid_response") from exc
        if not isinstance(data, dict):
            raise OCRProviderError("provider_invalid_response")
        return str(data.get("expression") or ""), data

    def health_check(self) -> tuple[bool, str]:
        if not self._breaker.allow():
            return False, "circuit_open"
        try:
            resp = requests.get(f"{self.config.base_url}/api/health", timeout=self.config.health_timeout_sec)
            if resp.status_code != 200:
                return False, f"remote status {resp.status_code}"
            return True, "ok"
        except requests.RequestException as exc:
            self._breaker.record_failure()
            return False, f"remote error: {exc}"


def get_provider(name: Optional[str] = None) -> OCRProvider:
    provider = (name or os.getenv("SNAPCALC_OCR_PROVIDER", "vision")).lower()
    if provider in ("vision", "google", "google-vision"):
        return VisionOCRProvider()
    if provider == "remote":
        return RemoteOCRProvider()
    raise ValueError(f"Unsupported OCR provider: {provider}")
