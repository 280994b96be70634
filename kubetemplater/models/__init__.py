"""Data models for templates and policies."""

from .policy import (CompiledPolicy, FieldValidation, FieldValidationType,
                     PolicyState, ValidationRule)
from .template import (KubeTemplate, NamespacedName, TemplateEntry,
                       TemplatePhase, TemplateStatus, calculate_spec_hash)

__all__ = [
    "CompiledPolicy",
    "FieldValidation",
    "FieldValidationType",
    "PolicyState",
    "ValidationRule",
    "KubeTemplate",
    "NamespacedName",
    "TemplateEntry",
    "TemplatePhase",
    "TemplateStatus",
    "calculate_spec_hash",
]
