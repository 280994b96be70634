"""KubeTemplate data model and reconciliation status."""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional

from kubetemplater.exceptions import MalformedTemplateError

TEMPLATE_GROUP = "kubetemplater.io"
TEMPLATE_VERSION = "v1alpha1"
TEMPLATE_KIND = "KubeTemplate"
TEMPLATE_PLURAL = "kubetemplates"
POLICY_KIND = "KubeTemplatePolicy"
POLICY_PLURAL = "kubetemplatepolicies"

RESUME_ANNOTATION = "kubetemplater.io/resume"
TEMPLATE_NAME_LABEL = "kubetemplater.io/template-name"
TEMPLATE_NAMESPACE_LABEL = "kubetemplater.io/template-namespace"


class NamespacedName(NamedTuple):
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class TemplatePhase(str, Enum):
    """Per-template reconciliation phase."""

    PENDING = "Pending"
    VALIDATING = "Validating"
    APPLYING = "Applying"
    REJECTED = "Rejected"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    REQUEUED = "Requeued"
    PAUSED = "Paused"

    @property
    def terminal(self) -> bool:
        return self in (TemplatePhase.REJECTED, TemplatePhase.SUCCEEDED, TemplatePhase.PAUSED)


@dataclass
class TemplateEntry:
    """One target object descriptor of a KubeTemplate."""

    object: Dict[str, Any]
    replace: bool = False
    referenced: bool = False

    @property
    def api_version(self) -> str:
        return self.object.get("apiVersion", "")

    @property
    def group(self) -> str:
        return self.api_version.rpartition("/")[0]

    @property
    def version(self) -> str:
        return self.api_version.rpartition("/")[2]

    @property
    def kind(self) -> str:
        return self.object.get("kind", "")

    @property
    def name(self) -> str:
        return (self.object.get("metadata") or {}).get("name", "")

    @property
    def namespace(self) -> str:
        return (self.object.get("metadata") or {}).get("namespace", "")

    @property
    def gvk(self) -> str:
        return f"{self.api_version}, Kind={self.kind}"


@dataclass
class KubeTemplate:
    """A user-authored template listing objects to materialize."""

    name: str
    namespace: str
    templates: List[TemplateEntry] = field(default_factory=list)
    uid: str = ""
    annotations: Dict[str, str] = field(default_factory=dict)
    spec: Dict[str, Any] = field(default_factory=dict)
    status: Dict[str, Any] = field(default_factory=dict)

    @property
    def identity(self) -> NamespacedName:
        return NamespacedName(self.namespace, self.name)

    @property
    def phase(self) -> str:
        return self.status.get("processingPhase", "")

    @property
    def spec_hash(self) -> str:
        return calculate_spec_hash(self.spec)

    @classmethod
    def from_resource(cls, body: Dict[str, Any]) -> "KubeTemplate":
        """Build from a raw KubeTemplate resource body."""
        metadata = body.get("metadata") or {}
        spec = dict(body.get("spec") or {})
        identity = f"{metadata.get('namespace')}/{metadata.get('name')}"

        entries = []
        for idx, entry in enumerate(spec.get("templates") or []):
            if not isinstance(entry, dict) or not isinstance(entry.get("object") or {}, dict):
                raise MalformedTemplateError(
                    f"KubeTemplate {identity}: template[{idx}] must be an object with an "
                    f"'object' mapping"
                )
            entries.append(
                TemplateEntry(
                    object=dict(entry.get("object") or {}),
                    replace=bool(entry.get("replace", False)),
                    referenced=bool(entry.get("referenced", False)),
                )
            )
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            templates=entries,
            uid=metadata.get("uid", ""),
            annotations=dict(metadata.get("annotations") or {}),
            spec=spec,
            status=dict(body.get("status") or {}),
        )


@dataclass
class TemplateStatus:
    """Aggregated outcome of one reconciliation pass; overwritten every pass."""

    phase: TemplatePhase
    message: str = ""
    errors: List[str] = field(default_factory=list)
    resources_total: int = 0
    resources_synced: int = 0
    retry_count: int = 0
    retry_cycle: int = 0
    processed_at: Optional[datetime] = None
    applied_spec_hash: str = ""
    paused_reason: str = ""
    paused_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "status": self.message or self.phase.value,
            "processingPhase": self.phase.value,
            "errors": list(self.errors),
            "resourcesTotal": self.resources_total,
            "resourcesSynced": self.resources_synced,
            "retryCount": self.retry_count,
            "retryCycle": self.retry_cycle,
            "processedAt": _isoformat(self.processed_at),
            "appliedSpecHash": self.applied_spec_hash or None,
            "pausedReason": self.paused_reason or None,
            "pausedAt": _isoformat(self.paused_at),
        }
        return result


def calculate_spec_hash(spec: Dict[str, Any]) -> str:
    """SHA256 of the canonical JSON form of a template spec."""
    spec_json = json.dumps(spec, sort_keys=True, default=str)
    return hashlib.sha256(spec_json.encode()).hexdigest()


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
