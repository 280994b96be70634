"""KubeTemplatePolicy data model."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class FieldValidationType(str, Enum):
    CEL = "cel"
    REGEX = "regex"
    RANGE = "range"
    REQUIRED = "required"
    FORBIDDEN = "forbidden"


class PolicyState(str, Enum):
    ACTIVE = "Active"
    ERROR = "Error"


OBJECT_SCOPE_PATHS = ("", "object")


@dataclass(frozen=True)
class FieldValidation:
    """A single named constraint on one field (or the whole object)."""

    name: str
    type: FieldValidationType
    field_path: str = ""
    cel: str = ""
    regex: str = ""
    min: Optional[int] = None
    max: Optional[int] = None
    message: str = ""

    @property
    def object_scope(self) -> bool:
        return self.field_path in OBJECT_SCOPE_PATHS

    @property
    def display_path(self) -> str:
        return "object" if self.object_scope else self.field_path

    def to_dict(self) -> Dict[str, Any]:
        result = {"name": self.name, "type": self.type.value, "fieldPath": self.field_path}
        if self.cel:
            result["cel"] = self.cel
        if self.regex:
            result["regex"] = self.regex
        if self.min is not None:
            result["min"] = self.min
        if self.max is not None:
            result["max"] = self.max
        if self.message:
            result["message"] = self.message
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> "FieldValidation":
        return cls(
            name=data.get("name", ""),
            type=FieldValidationType(data["type"]),
            field_path=data.get("fieldPath", "") or "",
            cel=data.get("cel", "") or "",
            regex=data.get("regex", "") or "",
            min=data.get("min"),
            max=data.get("max"),
            message=data.get("message", "") or "",
        )


@dataclass(frozen=True)
class ValidationRule:
    """Policy entry scoping one (group, version, kind) to namespaces and checks."""

    kind: str
    version: str
    group: str = ""
    rule: str = ""  # legacy whole-object CEL expression
    field_validations: List[FieldValidation] = field(default_factory=list)
    target_namespaces: List[str] = field(default_factory=list)

    @property
    def gvk(self) -> str:
        group_version = f"{self.group}/{self.version}" if self.group else self.version
        return f"{group_version}, Kind={self.kind}"

    def matches(self, group: str, version: str, kind: str) -> bool:
        return self.group == group and self.version == version and self.kind == kind

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "group": self.group,
            "version": self.version,
            "rule": self.rule,
            "fieldValidations": [fv.to_dict() for fv in self.field_validations],
            "targetNamespaces": list(self.target_namespaces),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "ValidationRule":
        return cls(
            kind=data.get("kind", ""),
            version=data.get("version", ""),
            group=data.get("group", "") or "",
            rule=data.get("rule", "") or "",
            field_validations=[
                FieldValidation.from_dict(fv) for fv in data.get("fieldValidations") or []
            ],
            target_namespaces=list(data.get("targetNamespaces") or []),
        )


@dataclass(frozen=True)
class CompiledPolicy:
    """Compiled KubeTemplatePolicy, immutable once built."""

    name: str
    namespace: str
    source_namespace: str
    validation_rules: List[ValidationRule]
    compiled_at: str = ""
    hash: str = ""

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "namespace": self.namespace,
            "sourceNamespace": self.source_namespace,
            "validationRules": [r.to_dict() for r in self.validation_rules],
            "compiledAt": self.compiled_at,
            "hash": self.hash,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "CompiledPolicy":
        return cls(
            name=data["name"],
            namespace=data["namespace"],
            source_namespace=data["sourceNamespace"],
            validation_rules=[
                ValidationRule.from_dict(r) for r in data.get("validationRules", [])
            ],
            compiled_at=data.get("compiledAt", ""),
            hash=data.get("hash", ""),
        )
