"""Policy compilation, storage, resolution and field validation."""

from .cel import CelEvaluator
from .compiler import PolicyCompiler
from .resolver import AuthorizationResult, PolicyCache, PolicyResolver
from .store import PolicyStore
from .validation import (FieldValidationEngine, FieldValidationFailure,
                         ValidationResult)

__all__ = [
    "CelEvaluator",
    "PolicyCompiler",
    "AuthorizationResult",
    "PolicyCache",
    "PolicyResolver",
    "PolicyStore",
    "FieldValidationEngine",
    "FieldValidationFailure",
    "ValidationResult",
]
