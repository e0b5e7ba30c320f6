"""Image validation and the single-flight OCR processor."""
from __future__ import annotations

import logging
import os
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import PurePath
from typing import Dict, Optional

from snapcalc.ocr_provider import ALLOWED_MEDIA_TYPES, OCRProvider, OCRProviderError, get_provider
from snapcalc.sanitize import normalize_for_display, normalize_ocr_text, sanitize

logger = logging.getLogger("snapcalc.ocr")

DEFAULT_MAX_IMAGE_BYTES = 5 * 1024 * 1024
ALLOWED_EXTENSIONS = frozenset({".png", ".jpg", ".jpeg"})


class OCRError(RuntimeError):
    """User-facing failure of the image-to-expression pipeline."""


class OCRBusyError(OCRError):
    pass


class ImageValidationError(OCRError):
    pass


class OCRUnavailableError(OCRError):
    """The OCR provider failed or could not be reached."""


def max_image_bytes() -> int:
    return int(os.getenv("SNAPCALC_MAX_IMAGE_BYTES", str(DEFAULT_MAX_IMAGE_BYTES)))


def validate_image(data: bytes, media_type: str, filename: Optional[str] = None) -> None:
    if not data:
        raise ImageValidationError("No image file provided")
    limit = max_image_bytes()
    if len(data) > limit:
        raise ImageValidationError(f"File size exceeds {limit // (1024 * 1024)}MB limit")
    if (media_type or "").lower() not in ALLOWED_MEDIA_TYPES:
        raise ImageValidationError("Invalid file type. Only PNG, JPEG, and JPG images are allowed.")
    if filename and PurePath(filename).suffix.lower() not in ALLOWED_EXTENSIONS:
        raise ImageValidationError("Invalid file extension. Only .png, .jpg, and .jpeg files are allowed.")


@dataclass(frozen=True)
class OCRRequestToken:
    request_id: str
    started_at: str


class OCRProcessor:
    """Runs one OCR request at a time and returns a sanitized expression.

    A second request while one is outstanding fails with OCRBusyError instead
    of queueing. The token has no expiry of its own; the provider's request
    timeout bounds how long it can be held.
    """

    def __init__(self, provider: Optional[OCRProvider] = None) -> None:
        self._provider = provider
        self._lock = threading.Lock()
        self._active: Optional[OCRRequestToken] = None

    @property
    def provider(self) -> OCRProvider:
        if self._provider is None:
            self._provider = get_provider()
        return self._provider

    @property
    def is_processing(self) -> bool:
        return self._active is not None

    def begin(self) -> OCRRequestToken:
        with self._lock:
            if self._active is not None:
                raise OCRBusyError("OCR already in progress")
            token = OCRRequestToken(
                request_id=str(uuid.uuid4()),
                started_at=datetime.now(timezone.utc).isoformat(),
            )
            self._active = token
            return token

    def finish(self, token: OCRRequestToken) -> bool:
        with self._lock:
            if self._active is None or self._active.request_id != token.request_id:
                return False
            self._active = None
            return True

    def process_image(self, image: bytes, media_type: str, filename: Optional[str] = None) -> Dict[str, str]:
        token = self.begin()
        try:
            validate_image(image, media_type, filename)
            try:
                result = self.provider.extract_text(image, media_type.lower(), filename)
            except OCRProviderError as exc:
                logger.warning(
                    "ocr provider failed",
                    extra={"extra": {"request_id": token.request_id, "error": str(exc)}},
                )
                raise OCRUnavailableError(f"Failed to process image: {exc}") from exc

            text = normalize_ocr_text(result.text)
            if not text:
                raise OCRError("No mathematical expression found in the image")

            expression = sanitize(text)
            if not expression:
                raise OCRError("Could not extract a valid mathematical expression")

            logger.info(
                "ocr expression extracted",
                extra={"extra": {"request_id": token.request_id, "expression": expression}},
            )
            return {
                "expression": expression,
                "display_expression": normalize_for_display(expression),
            }
        finally:
            self.finish(token)
