#!/usr/bin/env python3
"""Solve the arithmetic expression in an image file.

Usage:
  ./scripts/solve_image.py photo.jpg
  ./scripts/solve_image.py photo.png --provider remote --base-url http://127.0.0.1:8787

Outputs JSON:
  {"status":"ok","expression":"12*3","display_expression":"12×3","result":"36"}
"""
from __future__ import annotations

import argparse
import json
import mimetypes
import sys
from pathlib import Path

from dotenv import load_dotenv

from snapcalc.logs import configure_logging
from snapcalc.ocr import OCRError
from snapcalc.ocr_provider import RemoteOCRProvider, get_provider
from snapcalc.session import CalculatorSession


def _media_type(path: Path) -> str:
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or "application/octet-stream"


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Read and solve an arithmetic expression from an image")
    parser.add_argument("image", type=Path, help="PNG or JPEG file")
    parser.add_argument("--provider", choices=["vision", "remote"], default=None, help="OCR provider (default: SNAPCALC_OCR_PROVIDER)")
    parser.add_argument("--base-url", default=None, help="snapcalc server URL for --provider remote")
    args = parser.parse_args(argv)

    configure_logging()
    if args.provider == "remote" or args.base_url:
        provider = RemoteOCRProvider(base_url=args.base_url)
    else:
        provider = get_provider(args.provider)

    if not args.image.is_file():
        print(json.dumps({"status": "error", "error": f"file not found: {args.image}"}))
        return 2

    session = CalculatorSession(provider=provider)
    try:
        solved = session.solve_image(args.image.read_bytes(), _media_type(args.image), args.image.name)
    except OCRError as exc:
        print(json.dumps({"status": "error", "error": str(exc)}, ensure_ascii=False))
        return 1

    print(json.dumps({"status": "ok", **solved.to_dict()}, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
