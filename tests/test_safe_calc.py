import json

import pytest

from snapcalc import safe_calc
from snapcalc.safe_calc import SafeCalcError, safe_eval


def test_precedence_and_parentheses():
    assert safe_eval("2+3*4") == 14.0
    assert safe_eval("(2+3)*4") == 20.0
    assert safe_eval("-(2+3)") == -5.0
    assert safe_eval("10/4") == 2.5


def test_leading_zeros_are_decimal():
    assert safe_eval("007+1") == 8.0
    assert safe_eval("0.5*2") == 1.0


def test_display_glyphs_are_accepted():
    assert safe_eval("5 × 3") == 15.0
    assert safe_eval("9 ÷ 3 − 1") == 2.0


@pytest.mark.parametrize(
    "expr,code",
    [
        ("", "missing_expression"),
        ("   ", "missing_expression"),
        ("2**3", "unsupported_expression"),
        ("__import__('os')", "unsupported_expression"),
        ("abs(-1)", "unsupported_expression"),
        ("True + 1", "unsupported_expression"),
        ("2 % 3", "unsupported_expression"),
        ("1/0", "division_by_zero"),
        ("2+", "invalid_syntax"),
        ("1e999", "non_finite_result"),
    ],
)
def test_rejections(expr, code):
    with pytest.raises(SafeCalcError, match=code):
        safe_eval(expr)


def test_length_cap(monkeypatch):
    monkeypatch.setenv("SNAPCALC_EVAL_MAX_CHARS", "8")
    with pytest.raises(SafeCalcError, match="expression_too_long"):
        safe_eval("1+2+3+4+5")


def test_cli_outputs_json(monkeypatch, capsys):
    monkeypatch.setattr("sys.argv", ["snapcalc-eval", "6", "*", "7"])
    assert safe_calc.main() == 0
    assert json.loads(capsys.readouterr().out) == {"status": "ok", "result": 42.0}


def test_cli_reports_errors(monkeypatch, capsys):
    monkeypatch.setattr("sys.argv", ["snapcalc-eval", "1/0"])
    assert safe_calc.main() == 2
    assert json.loads(capsys.readouterr().out)["error"] == "division_by_zero"
