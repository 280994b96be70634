"""Field-level validation of target objects against a ValidationRule."""

import logging
import re
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from kubetemplater.core.metrics import ObservabilityContext
from kubetemplater.exceptions import CelError
from kubetemplater.models.policy import (FieldValidation, FieldValidationType,
                                         ValidationRule)
from kubetemplater.policy.cel import CelEvaluator

logger = logging.getLogger(__name__)

INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1

_MISSING = object()


@dataclass
class FieldValidationFailure:
    """The first failing check of a rule."""

    rule_name: str
    field_path: str
    message: str


@dataclass
class ValidationResult:
    passed: bool
    failure: Optional[FieldValidationFailure] = None


def get_field(obj: Dict[str, Any], field_path: str) -> Tuple[bool, Any]:
    """Look up a dot-notation path. Returns (found, value)."""
    current: Any = obj
    for key in field_path.split("."):
        if not isinstance(current, dict):
            return False, None
        current = current.get(key, _MISSING)
        if current is _MISSING:
            return False, None
    return True, current


def is_empty(value: Any) -> bool:
    """None, empty string, zero and empty collections count as empty.

    Booleans never do: an explicit ``false`` is a set value.
    """
    if value is None:
        return True
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return value == 0
    if isinstance(value, (str, list, dict, tuple, set)):
        return len(value) == 0
    return False


def to_int64(value: Any) -> Optional[int]:
    """Coerce a JSON value to a signed 64-bit integer, or None if it is not one."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        result = value
    elif isinstance(value, float) and value.is_integer():
        result = int(value)
    elif isinstance(value, str):
        try:
            result = int(value.strip())
        except ValueError:
            return None
    else:
        return None
    if result < INT64_MIN or result > INT64_MAX:
        return None
    return result


class FieldValidationEngine:
    """Evaluates a rule's legacy expression and field validations, in that order.

    Evaluation is side-effect free apart from metrics and may be called
    concurrently from several workers.
    """

    def __init__(self, cel: CelEvaluator, observability: Optional[ObservabilityContext] = None):
        self.cel = cel
        self.observability = observability
        self._regex_cache: Dict[str, re.Pattern] = {}
        self._regex_lock = threading.Lock()

    def validate(self, obj: Dict[str, Any], rule: ValidationRule) -> ValidationResult:
        failure = self._validate_legacy(obj, rule)
        if failure is None:
            for validation in rule.field_validations:
                failure = self.validate_field(obj, validation)
                if failure is not None:
                    break

        result = ValidationResult(passed=failure is None, failure=failure)
        if self.observability:
            self.observability.validations.labels(
                result="success" if result.passed else "failure"
            ).inc()
        return result

    def validate_all(self, obj: Dict[str, Any], rules: List[ValidationRule]) -> ValidationResult:
        for rule in rules:
            result = self.validate(obj, rule)
            if not result.passed:
                return result
        return ValidationResult(passed=True)

    def validate_field(
        self, obj: Dict[str, Any], validation: FieldValidation
    ) -> Optional[FieldValidationFailure]:
        """Run one field validation; returns the failure or None."""
        logger.debug(
            f"Validating field {validation.display_path} with "
            f"{validation.type.value} rule {validation.name}"
        )

        handlers = {
            FieldValidationType.REQUIRED: self._check_required,
            FieldValidationType.FORBIDDEN: self._check_forbidden,
            FieldValidationType.REGEX: self._check_regex,
            FieldValidationType.RANGE: self._check_range,
            FieldValidationType.CEL: self._check_cel,
        }
        detail = handlers[validation.type](obj, validation)
        if detail is None:
            return None
        return self._failure(validation, detail)

    # ------------------------------------------------------------------
    # Checks; each returns None on success or a default failure detail
    # ------------------------------------------------------------------

    def _validate_legacy(
        self, obj: Dict[str, Any], rule: ValidationRule
    ) -> Optional[FieldValidationFailure]:
        if not rule.rule:
            return None

        kind = obj.get("kind", rule.kind)
        name = (obj.get("metadata") or {}).get("name", "")
        try:
            passed = self.cel.check(rule.rule, {"object": obj})
        except CelError as e:
            return FieldValidationFailure(
                rule_name="rule",
                field_path="object",
                message=f"{kind}/{name} failed validation rule: {rule.rule}: {e}",
            )
        if passed:
            return None
        return FieldValidationFailure(
            rule_name="rule",
            field_path="object",
            message=f"{kind}/{name} failed validation rule: {rule.rule}",
        )

    def _check_required(self, obj, validation: FieldValidation) -> Optional[str]:
        found, value = get_field(obj, validation.field_path)
        if not found or is_empty(value):
            return "required field is missing or empty"
        return None

    def _check_forbidden(self, obj, validation: FieldValidation) -> Optional[str]:
        found, value = get_field(obj, validation.field_path)
        if found and not is_empty(value):
            return "forbidden field is present"
        return None

    def _check_regex(self, obj, validation: FieldValidation) -> Optional[str]:
        found, value = get_field(obj, validation.field_path)
        if not found:
            return "field not found"
        if not isinstance(value, str):
            return f"type mismatch: expected string, got {type(value).__name__}"
        # Substring match; policy authors anchor with ^...$ for a full match
        if not self._pattern(validation.regex).search(value):
            return f"value '{value}' does not match regex pattern '{validation.regex}'"
        return None

    def _check_range(self, obj, validation: FieldValidation) -> Optional[str]:
        found, raw = get_field(obj, validation.field_path)
        if not found:
            return "field not found"
        value = to_int64(raw)
        if value is None:
            return f"type mismatch: expected integer, got {type(raw).__name__}"
        if validation.min is not None and value < validation.min:
            return f"value {value} is less than minimum {validation.min}"
        if validation.max is not None and value > validation.max:
            return f"value {value} is greater than maximum {validation.max}"
        return None

    def _check_cel(self, obj, validation: FieldValidation) -> Optional[str]:
        if validation.object_scope:
            bindings = {"object": obj}
        else:
            _, value = get_field(obj, validation.field_path)
            bindings = {"value": value}

        try:
            passed = self.cel.check(validation.cel, bindings)
        except CelError as e:
            return f"{validation.cel}: {e}"
        if not passed:
            return validation.cel
        return None

    # ------------------------------------------------------------------

    def _pattern(self, regex: str) -> re.Pattern:
        with self._regex_lock:
            pattern = self._regex_cache.get(regex)
            if pattern is None:
                pattern = re.compile(regex)
                self._regex_cache[regex] = pattern
            return pattern

    def _failure(self, validation: FieldValidation, detail: str) -> FieldValidationFailure:
        path = validation.display_path
        if validation.message:
            message = f"{path} failed validation rule: {validation.name}: {validation.message}"
        else:
            message = f"{path} failed validation rule: {validation.name}: {detail}"
        return FieldValidationFailure(
            rule_name=validation.name, field_path=path, message=message
        )
