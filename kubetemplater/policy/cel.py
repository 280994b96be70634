"""CEL expression evaluation on top of cel-python."""

import logging
import threading
from typing import Any, Dict

import celpy
from celpy import celtypes

from kubetemplater.exceptions import CelCompileError, CelEvaluationError

logger = logging.getLogger(__name__)


class CelEvaluator:
    """Compiles and evaluates CEL expressions, caching compiled programs."""

    def __init__(self):
        self._env = celpy.Environment()
        self._programs: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def compile(self, expression: str):
        """Compile an expression into an evaluable program (cached)."""
        with self._lock:
            program = self._programs.get(expression)
        if program is not None:
            return program

        try:
            ast = self._env.compile(expression)
            program = self._env.program(ast)
        except celpy.CELParseError as e:
            raise CelCompileError(f"failed to parse CEL rule {expression!r}: {e}") from e

        with self._lock:
            self._programs[expression] = program
        return program

    def evaluate(self, program, bindings: Dict[str, Any]) -> bool:
        """Evaluate a compiled program; the result must be a CEL bool."""
        activation = {name: celpy.json_to_cel(value) for name, value in bindings.items()}

        try:
            result = program.evaluate(activation)
        except Exception as e:
            raise CelEvaluationError(f"failed to evaluate CEL rule: {e}") from e

        if isinstance(result, Exception):
            raise CelEvaluationError(f"failed to evaluate CEL rule: {result}")
        if not isinstance(result, celtypes.BoolType):
            raise CelEvaluationError(
                f"CEL rule returned {type(result).__name__}, expected bool"
            )
        return bool(result)

    def check(self, expression: str, bindings: Dict[str, Any]) -> bool:
        """Compile (cached) and evaluate in one call."""
        return self.evaluate(self.compile(expression), bindings)
