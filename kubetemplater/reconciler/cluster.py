"""Access to target objects and KubeTemplate resources in the cluster."""

import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from kubernetes import client
from kubernetes.client.rest import ApiException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import (ConflictError, DynamicApiError,
                                           NotFoundError,
                                           ResourceNotFoundError,
                                           UnprocessibleEntityError)
from urllib3.exceptions import HTTPError

from kubetemplater.exceptions import (ImmutableFieldError, ObjectNotFoundError,
                                      StatusConflictError, TransientApplyError,
                                      UnknownResourceError)
from kubetemplater.models.template import (TEMPLATE_GROUP, TEMPLATE_PLURAL,
                                           TEMPLATE_VERSION, NamespacedName)

logger = logging.getLogger(__name__)

MERGE_PATCH = "application/merge-patch+json"

# Fields the API server refuses to change once set, keyed by (group, kind)
IMMUTABLE_FIELDS: Dict[Tuple[str, str], List[str]] = {
    ("", "Service"): ["spec.clusterIP", "spec.clusterIPs", "spec.ipFamilies"],
    ("", "PersistentVolumeClaim"): ["spec.storageClassName", "spec.volumeName"],
    ("", "Secret"): ["type"],
    ("apps", "Deployment"): ["spec.selector"],
    ("apps", "StatefulSet"): ["spec.selector", "spec.serviceName", "spec.volumeClaimTemplates"],
    ("apps", "DaemonSet"): ["spec.selector"],
    ("apps", "ReplicaSet"): ["spec.selector"],
    ("batch", "Job"): ["spec.selector", "spec.template", "spec.completions"],
    ("rbac.authorization.k8s.io", "RoleBinding"): ["roleRef"],
    ("rbac.authorization.k8s.io", "ClusterRoleBinding"): ["roleRef"],
}

_MISSING = object()

# e.g. `spec.clusterIPs[0]: Invalid value: []string{"10.0.0.9"}: may not change once set`
_INVALID_FIELD_RE = re.compile(r"([A-Za-z][\w.\[\]]*): Invalid value")


def _lookup(obj: Dict[str, Any], path: str) -> Any:
    current: Any = obj
    for key in path.split("."):
        if not isinstance(current, dict) or key not in current:
            return _MISSING
        current = current[key]
    return current


def _conflicts(wanted: Any, current: Any) -> bool:
    """True when ``wanted`` sets a value the live ``current`` does not hold.

    Keys present only on the live side are server defaults and never conflict,
    and neither do empty values the server dropped.
    Lists are compared element by element and must have the same length.
    """
    if isinstance(wanted, dict):
        if not isinstance(current, dict):
            return True
        for key, value in wanted.items():
            if key not in current:
                if value not in (None, {}, []):
                    return True
            elif _conflicts(value, current[key]):
                return True
        return False
    if isinstance(wanted, list):
        if not isinstance(current, list) or len(wanted) != len(current):
            return True
        return any(_conflicts(w, c) for w, c in zip(wanted, current))
    return wanted != current


def changed_immutable_fields(
    group: str, kind: str, live: Dict[str, Any], desired: Dict[str, Any]
) -> List[str]:
    """Known immutable fields the desired object would change on the live one.

    Fields left unset in the desired object are kept by a merge patch, and
    fields the API server filled in on the live object are ignored, so only
    values the desired object sets and the live object disagrees with count.
    """
    changed = []
    for path in IMMUTABLE_FIELDS.get((group, kind), []):
        wanted = _lookup(desired, path)
        current = _lookup(live, path)
        if wanted is _MISSING or current is _MISSING or current in (None, "", []):
            continue
        if _conflicts(wanted, current):
            changed.append(path)
    return changed


def fields_from_invalid_error(message: str) -> List[str]:
    """Pull field paths out of a 422 Invalid error message."""
    return sorted(set(_INVALID_FIELD_RE.findall(message or "")))


class ObjectStore(ABC):
    """Minimal CRUD surface the reconciler needs over target objects."""

    @abstractmethod
    def get(self, api_version: str, kind: str, namespace: str, name: str) -> Dict[str, Any]:
        """Return the live object or raise ObjectNotFoundError."""

    @abstractmethod
    def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def patch(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Merge-patch the live object towards ``obj``.

        Raises ImmutableFieldError when the API server refuses the change.
        """

    @abstractmethod
    def delete(self, api_version: str, kind: str, namespace: str, name: str) -> None:
        pass


class DynamicObjectStore(ObjectStore):
    """ObjectStore on top of the kubernetes DynamicClient."""

    def __init__(self, dynamic_client: DynamicClient, field_manager: str = "kubetemplater"):
        self.dynamic_client = dynamic_client
        self.field_manager = field_manager

    def get(self, api_version: str, kind: str, namespace: str, name: str) -> Dict[str, Any]:
        resource = self._resource(api_version, kind)
        try:
            return resource.get(name=name, namespace=namespace).to_dict()
        except NotFoundError as e:
            raise ObjectNotFoundError(f"{kind} {namespace}/{name} not found") from e
        except (DynamicApiError, HTTPError) as e:
            raise self._translate(e, f"Failed to get {kind} {namespace}/{name}")

    def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        resource = self._resource(obj["apiVersion"], obj["kind"])
        namespace = obj["metadata"].get("namespace")
        try:
            return resource.create(
                body=obj, namespace=namespace, field_manager=self.field_manager
            ).to_dict()
        except (DynamicApiError, HTTPError) as e:
            raise self._translate(e, f"Failed to create {describe(obj)}")

    def patch(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        resource = self._resource(obj["apiVersion"], obj["kind"])
        metadata = obj["metadata"]
        try:
            return resource.patch(
                body=obj,
                name=metadata["name"],
                namespace=metadata.get("namespace"),
                content_type=MERGE_PATCH,
                field_manager=self.field_manager,
            ).to_dict()
        except (DynamicApiError, HTTPError) as e:
            raise self._translate(e, f"Failed to patch {describe(obj)}")

    def delete(self, api_version: str, kind: str, namespace: str, name: str) -> None:
        resource = self._resource(api_version, kind)
        try:
            resource.delete(name=name, namespace=namespace, propagation_policy="Background")
        except NotFoundError:
            logger.debug(f"{kind} {namespace}/{name} already gone")
        except (DynamicApiError, HTTPError) as e:
            raise self._translate(e, f"Failed to delete {kind} {namespace}/{name}")

    def _resource(self, api_version: str, kind: str):
        try:
            return self.dynamic_client.resources.get(api_version=api_version, kind=kind)
        except ResourceNotFoundError as e:
            raise UnknownResourceError(
                f"resource {api_version}, Kind={kind} is not served by the cluster"
            ) from e
        except (DynamicApiError, HTTPError) as e:
            raise self._translate(e, f"Failed to discover {api_version}, Kind={kind}")

    @staticmethod
    def _translate(error: Exception, context: str) -> Exception:
        if isinstance(error, UnprocessibleEntityError):
            message = error.summary()
            return ImmutableFieldError(
                f"{context}: {message}", fields_from_invalid_error(message)
            )
        if isinstance(error, ConflictError):
            return TransientApplyError(f"{context}: conflict: {error}")
        return TransientApplyError(f"{context}: {error}")


class KubeTemplateClient:
    """Reads KubeTemplates and writes their status subresource."""

    def __init__(self, custom_api: client.CustomObjectsApi):
        self.custom_api = custom_api

    def get(self, identity: NamespacedName) -> Optional[Dict[str, Any]]:
        """Return the KubeTemplate body, or None when it no longer exists."""
        try:
            return self.custom_api.get_namespaced_custom_object(
                TEMPLATE_GROUP,
                TEMPLATE_VERSION,
                identity.namespace,
                TEMPLATE_PLURAL,
                identity.name,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise TransientApplyError(f"Failed to get KubeTemplate {identity}: {e.reason}") from e
        except HTTPError as e:
            raise TransientApplyError(f"Failed to get KubeTemplate {identity}: {e}") from e

    def list(self, namespace: str) -> List[Dict[str, Any]]:
        """All KubeTemplates in a namespace."""
        try:
            result = self.custom_api.list_namespaced_custom_object(
                TEMPLATE_GROUP, TEMPLATE_VERSION, namespace, TEMPLATE_PLURAL
            )
        except ApiException as e:
            raise TransientApplyError(
                f"Failed to list KubeTemplates in {namespace}: {e.reason}"
            ) from e
        except HTTPError as e:
            raise TransientApplyError(f"Failed to list KubeTemplates in {namespace}: {e}") from e
        return result.get("items", [])

    def replace_status(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """Replace the status subresource; the body carries its resourceVersion."""
        metadata = body["metadata"]
        identity = NamespacedName(metadata["namespace"], metadata["name"])
        try:
            return self.custom_api.replace_namespaced_custom_object_status(
                TEMPLATE_GROUP,
                TEMPLATE_VERSION,
                identity.namespace,
                TEMPLATE_PLURAL,
                identity.name,
                body,
            )
        except ApiException as e:
            if e.status == 409:
                raise StatusConflictError(
                    f"Status update conflict for KubeTemplate {identity}"
                ) from e
            if e.status == 404:
                raise ObjectNotFoundError(f"KubeTemplate {identity} not found") from e
            raise TransientApplyError(
                f"Failed to update status of KubeTemplate {identity}: {e.reason}"
            ) from e
        except HTTPError as e:
            raise TransientApplyError(
                f"Failed to update status of KubeTemplate {identity}: {e}"
            ) from e


def describe(obj: Dict[str, Any]) -> str:
    metadata = obj.get("metadata") or {}
    return f"{obj.get('kind')} {metadata.get('namespace')}/{metadata.get('name')}"
