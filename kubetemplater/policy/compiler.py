"""Compiles KubeTemplatePolicy specs into immutable, pre-checked policies."""

import hashlib
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from kubetemplater.core.metrics import ObservabilityContext
from kubetemplater.exceptions import CelError, PolicyCompilationError
from kubetemplater.models.policy import (CompiledPolicy, FieldValidation,
                                         FieldValidationType, ValidationRule)
from kubetemplater.policy.cel import CelEvaluator

logger = logging.getLogger(__name__)


class PolicyCompiler:
    """Turns a raw policy spec into a CompiledPolicy.

    Configuration errors (unknown validation type, parameters that do not
    match the type, unparsable CEL or regex) are raised here, at load time.
    """

    def __init__(
        self,
        cel: Optional[CelEvaluator] = None,
        observability: Optional[ObservabilityContext] = None,
    ):
        self.cel = cel
        self.observability = observability

    def compile_policy(
        self, name: str, namespace: str, spec: Dict[str, Any]
    ) -> CompiledPolicy:
        """Compile a policy spec"""
        logger.info(f"Compiling policy {namespace}/{name}")

        if self.observability:
            with self.observability.policy_compilation_duration.time():
                return self._compile(name, namespace, spec)
        return self._compile(name, namespace, spec)

    def _compile(self, name: str, namespace: str, spec: Dict[str, Any]) -> CompiledPolicy:
        try:
            self._validate_spec(spec)
            rules = [
                self._compile_rule(idx, rule)
                for idx, rule in enumerate(spec.get("validationRules") or [])
            ]
        except PolicyCompilationError:
            self._count_error()
            raise
        except (KeyError, TypeError, ValueError) as e:
            self._count_error()
            raise PolicyCompilationError(f"Failed to compile policy: {e}") from e

        return CompiledPolicy(
            name=name,
            namespace=namespace,
            source_namespace=spec["sourceNamespace"],
            validation_rules=rules,
            compiled_at=datetime.now(timezone.utc).isoformat(),
            hash=self._generate_hash(spec),
        )

    def _validate_spec(self, spec: Dict[str, Any]):
        if not isinstance(spec, dict):
            raise PolicyCompilationError("Policy spec must be a dictionary")

        if not spec.get("sourceNamespace"):
            raise PolicyCompilationError("Policy must specify a sourceNamespace")

        if not isinstance(spec.get("validationRules", []), list):
            raise PolicyCompilationError("validationRules must be a list")

    def _compile_rule(self, idx: int, data: Dict[str, Any]) -> ValidationRule:
        if not data.get("kind"):
            raise PolicyCompilationError(f"validationRules[{idx}]: kind is required")
        if not data.get("version"):
            raise PolicyCompilationError(f"validationRules[{idx}]: version is required")

        target_namespaces = data.get("targetNamespaces") or []
        if not isinstance(target_namespaces, list):
            raise PolicyCompilationError(
                f"validationRules[{idx}]: targetNamespaces must be a list"
            )

        legacy_rule = data.get("rule") or ""
        if legacy_rule:
            self._compile_cel(legacy_rule, f"validationRules[{idx}].rule")

        field_validations = [
            self._compile_field_validation(idx, fv_idx, fv)
            for fv_idx, fv in enumerate(data.get("fieldValidations") or [])
        ]

        return ValidationRule(
            kind=data["kind"],
            version=data["version"],
            group=data.get("group") or "",
            rule=legacy_rule,
            field_validations=field_validations,
            target_namespaces=list(target_namespaces),
        )

    def _compile_field_validation(
        self, rule_idx: int, idx: int, data: Dict[str, Any]
    ) -> FieldValidation:
        where = f"validationRules[{rule_idx}].fieldValidations[{idx}]"
        name = data.get("name") or f"{where}"

        try:
            vtype = FieldValidationType(data.get("type"))
        except ValueError:
            raise PolicyCompilationError(
                f"{where} ({name}): unknown validation type: {data.get('type')}"
            )

        validation = FieldValidation.from_dict({**data, "name": name, "type": vtype.value})

        if vtype == FieldValidationType.CEL:
            if not validation.cel:
                raise PolicyCompilationError(
                    f"{where} ({name}): CEL expression is required for type 'cel'"
                )
            self._compile_cel(validation.cel, f"{where} ({name})")
            return validation

        # Every other type addresses a concrete field
        if validation.object_scope:
            raise PolicyCompilationError(
                f"{where} ({name}): fieldPath is required for type '{vtype.value}'"
            )

        if vtype == FieldValidationType.REGEX:
            if not validation.regex:
                raise PolicyCompilationError(
                    f"{where} ({name}): regex pattern is required for type 'regex'"
                )
            try:
                re.compile(validation.regex)
            except re.error as e:
                raise PolicyCompilationError(
                    f"{where} ({name}): invalid regex pattern {validation.regex}: {e}"
                )

        if vtype == FieldValidationType.RANGE:
            if validation.min is None and validation.max is None:
                raise PolicyCompilationError(
                    f"{where} ({name}): at least one of min or max must be "
                    f"specified for type 'range'"
                )
            for bound in (validation.min, validation.max):
                if bound is not None and (isinstance(bound, bool) or not isinstance(bound, int)):
                    raise PolicyCompilationError(
                        f"{where} ({name}): range bounds must be integers"
                    )
            if (
                validation.min is not None
                and validation.max is not None
                and validation.min > validation.max
            ):
                raise PolicyCompilationError(
                    f"{where} ({name}): min {validation.min} is greater than max {validation.max}"
                )

        return validation

    def _compile_cel(self, expression: str, where: str):
        if self.cel is None:
            return
        try:
            self.cel.compile(expression)
        except CelError as e:
            raise PolicyCompilationError(f"{where}: {e}")

    def _count_error(self):
        if self.observability:
            self.observability.policy_errors.labels(error_type="compilation").inc()

    def _generate_hash(self, spec: Dict[str, Any]) -> str:
        """Generate hash of the policy spec"""
        spec_json = json.dumps(spec, sort_keys=True)
        return hashlib.sha256(spec_json.encode()).hexdigest()[:16]
