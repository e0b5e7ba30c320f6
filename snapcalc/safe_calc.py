"""AST-safe arithmetic evaluator.

Usage:
  snapcalc-eval "2 + 2 * (3 - 1)"
  echo "10/4" | snapcalc-eval

Outputs JSON:
  {"status":"ok","result":6.0}
"""
from __future__ import annotations

import ast
import json
import math
import operator
import os
import re
import sys

OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

GLYPHS = str.maketrans({"×": "*", "÷": "/", "−": "-"})
# "007" is a SyntaxError for the Python parser but plain decimal to a reader.
LEADING_ZEROS = re.compile(r"(?<![\d.])0+(?=\d)")


class SafeCalcError(ValueError):
    pass


def _max_chars() -> int:
    return int(os.getenv("SNAPCALC_EVAL_MAX_CHARS", "512"))


def _eval_node(node: ast.AST) -> float:
    if isinstance(node, ast.BinOp) and type(node.op) in OPS:
        left = _eval_node(node.left)
        right = _eval_node(node.right)
        if isinstance(node.op, ast.Div) and right == 0:
            raise SafeCalcError("division_by_zero")
        return float(OPS[type(node.op)](left, right))
    if isinstance(node, ast.UnaryOp) and type(node.op) in OPS:
        return float(OPS[type(node.op)](_eval_node(node.operand)))
    if isinstance(node, ast.Constant) and type(node.value) in (int, float):
        try:
            return float(node.value)
        except OverflowError as exc:
            raise SafeCalcError("non_finite_result") from exc
    raise SafeCalcError("unsupported_expression")


def safe_eval(expr: str) -> float:
    if not isinstance(expr, str) or not expr.strip():
        raise SafeCalcError("missing_expression")
    if len(expr) > _max_chars():
        raise SafeCalcError("expression_too_long")
    source = LEADING_ZEROS.sub("", expr.translate(GLYPHS).strip())
    try:
        tree = ast.parse(source, mode="eval")
    except (SyntaxError, ValueError, RecursionError, MemoryError) as exc:
        raise SafeCalcError("invalid_syntax") from exc
    try:
        result = _eval_node(tree.body)
    except RecursionError as exc:
        raise SafeCalcError("invalid_syntax") from exc
    if not math.isfinite(result):
        raise SafeCalcError("non_finite_result")
    return result


def _read_expression(argv: list[str]) -> str:
    if len(argv) > 1:
        return " ".join(argv[1:]).strip()
    return sys.stdin.read().strip()


def main() -> int:
    expr = _read_expression(sys.argv)
    try:
        result = safe_eval(expr)
        print(json.dumps({"status": "ok", "result": result}))
        return 0
    except SafeCalcError as exc:
        print(json.dumps({"status": "error", "error": str(exc)}))
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
