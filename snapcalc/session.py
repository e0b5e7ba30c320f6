"""One user's calculator, history and OCR processor behind a single boundary.

The session renders nothing. A presentation adapter subscribes to
``StateChange`` notifications and reads ``snapshot()``.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional

from snapcalc.calculator import INVALID_EXPRESSION, Calculator, InvalidInput
from snapcalc.history import History
from snapcalc.ocr import OCRError, OCRProcessor
from snapcalc.ocr_provider import OCRProvider

logger = logging.getLogger("snapcalc.session")

DIGIT_KEYS = frozenset("0123456789")
OPERATOR_KEYS = {"+": "+", "-": "-", "*": "×", "/": "÷"}


@dataclass(frozen=True)
class StateChange:
    kind: str
    snapshot: Dict[str, Any]


@dataclass(frozen=True)
class SolveResult:
    expression: str
    display_expression: str
    result: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


Listener = Callable[[StateChange], None]


class CalculatorSession:
    def __init__(
        self,
        provider: Optional[OCRProvider] = None,
        history: Optional[History] = None,
        ocr: Optional[OCRProcessor] = None,
    ) -> None:
        self.calculator = Calculator()
        self.history = history or History()
        self.ocr = ocr or OCRProcessor(provider)
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, kind: str) -> None:
        change = StateChange(kind=kind, snapshot=self.snapshot())
        for listener in list(self._listeners):
            listener(change)

    def press(self, action: str, value: Optional[str] = None) -> Dict[str, Any]:
        calc = self.calculator
        if action == "digit":
            calc.input_digit(value)
        elif action == "dot":
            calc.input_dot()
        elif action == "operator":
            calc.set_operator(value)
        elif action == "equals":
            self._equals()
        elif action == "clear":
            calc.clear_all()
        elif action == "clear_entry":
            calc.clear_entry()
        elif action == "toggle_sign":
            calc.toggle_sign()
        elif action == "percent":
            calc.input_percent()
        else:
            raise InvalidInput(f"Unknown action: {action}")
        self._notify(action)
        return self.snapshot()

    def equals(self) -> Dict[str, Any]:
        return self.press("equals")

    def _equals(self) -> None:
        if self.calculator.compute() and self.calculator.expression:
            self.history.add(self.calculator.expression, self.calculator.display)

    def handle_key(self, key: str) -> bool:
        """Apply a keyboard key. Returns False for keys the calculator ignores."""
        if key in DIGIT_KEYS:
            self.press("digit", key)
        elif key == ".":
            self.press("dot")
        elif key in OPERATOR_KEYS:
            self.press("operator", OPERATOR_KEYS[key])
        elif key in ("Enter", "="):
            self.press("equals")
        elif key == "Escape":
            self.press("clear")
        elif key == "Backspace":
            self.press("clear_entry")
        elif key == "%":
            self.press("percent")
        else:
            return False
        return True

    def evaluate(self, text: Any) -> str:
        result = self.calculator.evaluate_expression(text)
        if result != INVALID_EXPRESSION:
            self._notify("evaluate")
        return result

    def solve_image(self, image: bytes, media_type: str, filename: Optional[str] = None) -> SolveResult:
        return self.apply_extracted(self.ocr.process_image(image, media_type, filename))

    def apply_extracted(self, extracted: Dict[str, str]) -> SolveResult:
        """Evaluate an expression produced by ``OCRProcessor.process_image``."""
        expression = extracted["expression"]
        result = self.calculator.evaluate_expression(expression)
        if result == INVALID_EXPRESSION:
            raise OCRError("Could not evaluate the expression")

        self.history.add(expression, result)
        logger.info("image solved", extra={"extra": {"expression": expression, "result": result}})
        self._notify("solve")
        return SolveResult(
            expression=expression,
            display_expression=extracted["display_expression"],
            result=result,
        )

    def replay_history(self, index: int) -> str:
        entry = self.history.get(index)
        if entry is None:
            return INVALID_EXPRESSION
        result = self.calculator.evaluate_expression(entry.expression)
        if result != INVALID_EXPRESSION:
            self._notify("replay")
        return result

    def clear_history(self) -> None:
        self.history.clear()
        self._notify("clear_history")

    def snapshot(self) -> Dict[str, Any]:
        data = self.calculator.snapshot()
        data["history"] = [entry.to_dict() for entry in self.history.entries()]
        data["ocr_busy"] = self.ocr.is_processing
        return data
