"""Turn OCR output into a whitelisted arithmetic string."""
from __future__ import annotations

import re

MULTIPLY_GLYPHS = re.compile(r"[×✕✖⋅·]")
DIVIDE_GLYPHS = re.compile(r"[÷∕]")
DASH_GLYPHS = re.compile(r"[−–—]")

ALLOWED = re.compile(r"^[0-9+\-*/().]+$")
OPERATOR_RUN = re.compile(r"[+\-*/]{2,}")
DOT_RUN = re.compile(r"\.{2,}")
LEADING_OPERATOR = re.compile(r"^[+*/]")
TRAILING_OPERATOR = re.compile(r"[+\-*/]$")
NOT_ARITHMETIC = re.compile(r"[^0-9+\-*/().\s]")


def _ascii_glyphs(text: str) -> str:
    text = MULTIPLY_GLYPHS.sub("*", text)
    text = DIVIDE_GLYPHS.sub("/", text)
    text = DASH_GLYPHS.sub("-", text)
    return text.replace(",", ".")


def _collapse_operators(match: re.Match) -> str:
    run = match.group(0)
    if set(run) == {"-"}:
        return "-"
    return run[0]


def has_balanced_parentheses(text: str) -> bool:
    depth = 0
    for char in text:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        if depth < 0:
            return False
    return depth == 0


def sanitize(text: str) -> str:
    """Return a safe arithmetic expression, or "" when nothing usable remains.

    The operator-run rule is a heuristic: "5*+-3" becomes "5*3" while "5--3"
    becomes "5-3".
    """
    if not text or not isinstance(text, str):
        return ""

    cleaned = _ascii_glyphs(re.sub(r"\s+", "", text))
    if not ALLOWED.match(cleaned):
        return ""

    cleaned = OPERATOR_RUN.sub(_collapse_operators, cleaned)
    cleaned = DOT_RUN.sub(".", cleaned)

    if LEADING_OPERATOR.match(cleaned):
        cleaned = cleaned[1:]
    if TRAILING_OPERATOR.search(cleaned):
        cleaned = cleaned[:-1]

    if not has_balanced_parentheses(cleaned):
        return ""
    if not re.search(r"\d", cleaned):
        return ""
    return cleaned


def normalize_for_display(expression: str) -> str:
    if not expression:
        return ""
    return expression.replace("*", "×").replace("/", "÷")


def normalize_ocr_text(text: str) -> str:
    """Server-side cleanup of provider text.

    Glyphs become ASCII, decimal commas become dots, and anything that is not
    arithmetic turns into whitespace, so "2 + 3 =" comes back as "2 + 3".
    """
    if not text:
        return ""
    text = _ascii_glyphs(text.strip())
    text = NOT_ARITHMETIC.sub(" ", text)
    return re.sub(r"\s+", " ", text).strip()
