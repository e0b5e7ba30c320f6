"""Four-function calculator state machine.

The calculator keeps string operands so the display shows exactly what was
typed. Every numeric result goes through ``format_number``. Expected failures
show up as sentinel display values and never raise. Only contract violations
(a non-digit passed to ``input_digit``, an unknown operator) raise
``InvalidInput``.
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from snapcalc.safe_calc import SafeCalcError, safe_eval

logger = logging.getLogger("snapcalc.calculator")

ERROR = "Error"
DIVIDE_BY_ZERO = "Cannot divide by zero"
INVALID_EXPRESSION = "Invalid expression"
SENTINELS = frozenset({ERROR, DIVIDE_BY_ZERO})

MAX_INPUT_CHARS = 12
SIGNIFICANT_DIGITS = 12
EXPONENT_UPPER = 1e12
EXPONENT_LOWER = 1e-12

NUMERIC = re.compile(r"^-?(\d+\.?\d*|\.\d+)(e[+-]?\d+)?$")


class InvalidInput(ValueError):
    """Raised when a caller breaks the calculator's input contract."""


class Operator(str, Enum):
    ADD = "+"
    SUBTRACT = "-"
    MULTIPLY = "×"
    DIVIDE = "÷"

    @classmethod
    def parse(cls, symbol: str) -> "Operator":
        if not isinstance(symbol, str):
            raise InvalidInput(f"Invalid operator: {symbol!r}")
        aliases = {"*": cls.MULTIPLY, "/": cls.DIVIDE}
        if symbol in aliases:
            return aliases[symbol]
        try:
            return cls(symbol)
        except ValueError as exc:
            raise InvalidInput(f"Invalid operator: {symbol!r}") from exc

    def apply(self, left: float, right: float) -> float:
        if self is Operator.ADD:
            return left + right
        if self is Operator.SUBTRACT:
            return left - right
        if self is Operator.MULTIPLY:
            return left * right
        return left / right


class Phase(str, Enum):
    """Where the machine is: pending operation present/absent × overwrite."""

    ENTRY = "entry"
    RESULT = "result"
    AWAITING_OPERAND = "awaiting_operand"
    OPERAND_ENTRY = "operand_entry"


@dataclass(frozen=True)
class PendingOperation:
    previous: str
    operator: Operator


@dataclass
class CalculatorState:
    current: str = "0"
    pending: Optional[PendingOperation] = None
    overwrite: bool = False
    expression: str = ""

    @property
    def previous(self) -> Optional[str]:
        return self.pending.previous if self.pending else None

    @property
    def operator(self) -> Optional[Operator]:
        return self.pending.operator if self.pending else None


def format_number(value: float) -> str:
    """Display form: exponential outside [1e-12, 1e12), else 12 significant digits."""
    magnitude = abs(value)
    if magnitude >= EXPONENT_UPPER or (0 < magnitude < EXPONENT_LOWER):
        return f"{value:.6e}"
    if value == 0:
        return "0"
    rounded = float(f"{value:.{SIGNIFICANT_DIGITS}g}")
    if rounded.is_integer():
        return str(int(rounded))
    return format(Decimal(repr(rounded)), "f")


def parse_operand(text: Optional[str]) -> Optional[float]:
    if text is None or not NUMERIC.match(text):
        return None
    value = float(text)
    return value if math.isfinite(value) else None


class Calculator:
    def __init__(self) -> None:
        self.state = CalculatorState()

    def reset(self) -> None:
        self.state = CalculatorState()

    @property
    def phase(self) -> Phase:
        if self.state.pending is None:
            return Phase.RESULT if self.state.overwrite else Phase.ENTRY
        return Phase.AWAITING_OPERAND if self.state.overwrite else Phase.OPERAND_ENTRY

    @property
    def display(self) -> str:
        return self.state.current

    @property
    def expression(self) -> str:
        return self.state.expression

    @property
    def current_expression(self) -> str:
        pending = self.state.pending
        if pending is not None:
            return f"{pending.previous} {pending.operator.value} {self.state.current}"
        return self.state.current

    @property
    def showing_sentinel(self) -> bool:
        return self.state.current in SENTINELS

    def input_digit(self, digit: str) -> None:
        if not isinstance(digit, str) or not re.fullmatch(r"[0-9]", digit):
            raise InvalidInput(f"Invalid digit: {digit!r}")
        if self.showing_sentinel and not self.state.overwrite:
            return

        state = self.state
        if state.overwrite:
            state.current = digit
            state.overwrite = False
        elif len(state.current) >= MAX_INPUT_CHARS:
            return
        elif state.current == "0":
            state.current = digit
        else:
            state.current += digit

    def input_dot(self) -> None:
        if self.showing_sentinel and not self.state.overwrite:
            return
        state = self.state
        if state.overwrite:
            state.current = "0."
            state.overwrite = False
        elif "." not in state.current:
            state.current += "."

    def set_operator(self, symbol: str) -> None:
        operator = Operator.parse(symbol)
        if self.state.pending is not None and not self.state.overwrite:
            self.compute()

        state = self.state
        state.pending = PendingOperation(previous=state.current, operator=operator)
        state.overwrite = True
        state.expression = f"{state.current} {operator.value}"

    def toggle_sign(self) -> None:
        current = self.state.current
        if current == "0" or self.showing_sentinel:
            return
        self.state.current = current[1:] if current.startswith("-") else f"-{current}"

    def input_percent(self) -> None:
        value = parse_operand(self.state.current)
        if value is None:
            return
        self.state.current = format_number(value / 100)

    def clear_all(self) -> None:
        self.reset()

    def clear_entry(self) -> None:
        self.state.current = "0"
        self.state.overwrite = False

    def compute(self) -> bool:
        """Apply the pending operation. Returns True if a result was produced."""
        state = self.state
        pending = state.pending
        if pending is None:
            return False

        left = parse_operand(pending.previous)
        right = parse_operand(state.current)
        if left is None or right is None:
            state.current = ERROR
            return False

        if pending.operator is Operator.DIVIDE and right == 0:
            state.current = DIVIDE_BY_ZERO
            state.pending = None
            return False

        result = pending.operator.apply(left, right)
        if not math.isfinite(result):
            state.current = ERROR
            state.pending = None
            return False

        original_current = state.current
        state.current = format_number(result)
        state.expression = f"{pending.previous} {pending.operator.value} {original_current}"
        state.pending = None
        state.overwrite = True
        return True

    def evaluate_expression(self, text: Any) -> str:
        """Evaluate free-form arithmetic (OCR output, history replay).

        Returns the formatted result, or ``"Invalid expression"`` without
        touching the state.
        """
        if not text or not isinstance(text, str):
            return INVALID_EXPRESSION

        cleaned = re.sub(r"\s*=\s*$", "", text).strip()
        try:
            result = safe_eval(cleaned)
        except SafeCalcError as exc:
            logger.info("expression rejected", extra={"extra": {"reason": str(exc)}})
            return INVALID_EXPRESSION

        formatted = format_number(result)
        state = self.state
        state.current = formatted
        state.expression = text
        state.overwrite = True
        state.pending = None
        return formatted

    def snapshot(self) -> Dict[str, Any]:
        state = self.state
        return {
            "current": state.current,
            "previous": state.previous,
            "operator": state.operator.value if state.operator else None,
            "overwrite": state.overwrite,
            "expression": state.expression,
            "current_expression": self.current_expression,
            "phase": self.phase.value,
        }
