"""Pytest configuration and shared fixtures for KubeTemplater tests."""

import copy
from typing import Any, Dict, List, Optional, Tuple

import pytest
from fakeredis import FakeStrictRedis

from kubetemplater.core.metrics import ObservabilityContext
from kubetemplater.exceptions import (ImmutableFieldError, ObjectNotFoundError,
                                      StatusConflictError, TransientApplyError)
from kubetemplater.models.template import NamespacedName
from kubetemplater.policy import (CelEvaluator, FieldValidationEngine,
                                  PolicyCache, PolicyCompiler, PolicyResolver,
                                  PolicyStore)
from kubetemplater.reconciler.cluster import (ObjectStore,
                                              changed_immutable_fields)
from kubetemplater.reconciler.template_reconciler import (TemplateReconciler,
                                                          TemplateValidator)

OPERATOR_NAMESPACE = "kubetemplater-system"
SOURCE_NAMESPACE = "app-namespace"

# ============================================================================
# Redis Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def fake_redis_session():
    """Single FakeRedis instance for entire test session."""
    return FakeStrictRedis(decode_responses=True)


@pytest.fixture(autouse=True)
def fake_redis(fake_redis_session):
    """
    Function-scoped fixture that clears session redis before each test.
    This ensures test isolation while using a single redis instance.
    """
    fake_redis_session.flushdb()
    yield fake_redis_session


# ============================================================================
# Component Fixtures
# ============================================================================


@pytest.fixture
def observability():
    """Metrics bound to a private registry."""
    return ObservabilityContext()


@pytest.fixture(scope="session")
def cel():
    """Real CEL evaluator; compiled programs are cached across tests."""
    return CelEvaluator()


@pytest.fixture
def compiler(cel, observability):
    return PolicyCompiler(cel, observability)


@pytest.fixture
def policy_store(fake_redis, observability):
    return PolicyStore(fake_redis, observability)


@pytest.fixture
def resolver(policy_store, observability):
    return PolicyResolver(policy_store, PolicyCache(ttl=60), observability)


@pytest.fixture
def engine(cel, observability):
    return FieldValidationEngine(cel, observability)


@pytest.fixture
def validator(resolver, engine):
    return TemplateValidator(resolver, engine)


@pytest.fixture
def object_store():
    return FakeObjectStore()


@pytest.fixture
def reconciler(validator, object_store, policy_store, observability):
    return TemplateReconciler(validator, object_store, policy_store, observability)


# ============================================================================
# Policy Fixtures
# ============================================================================


@pytest.fixture
def app_policy_spec():
    """Policy governing app-namespace with a rule per commonly used kind."""
    return {
        "sourceNamespace": SOURCE_NAMESPACE,
        "validationRules": [
            {
                "kind": "ConfigMap",
                "version": "v1",
                "targetNamespaces": [SOURCE_NAMESPACE],
            },
            {
                "kind": "Secret",
                "version": "v1",
                "targetNamespaces": [],
            },
            {
                "kind": "Service",
                "version": "v1",
                "targetNamespaces": [SOURCE_NAMESPACE],
            },
            {
                "kind": "Deployment",
                "group": "apps",
                "version": "v1",
                "targetNamespaces": [SOURCE_NAMESPACE, "shared"],
                "fieldValidations": [
                    {
                        "name": "has-app-label",
                        "type": "required",
                        "fieldPath": "metadata.labels.app",
                    },
                    {
                        "name": "replica-limits",
                        "type": "range",
                        "fieldPath": "spec.replicas",
                        "min": 1,
                        "max": 5,
                    },
                ],
            },
        ],
    }


@pytest.fixture
def app_policy(compiler, policy_store, app_policy_spec):
    """Compiled and stored policy for app-namespace."""
    compiled = compiler.compile_policy("app-policy", OPERATOR_NAMESPACE, app_policy_spec)
    policy_store.store_policy(compiled)
    return compiled


# ============================================================================
# Template Fixtures
# ============================================================================


def make_template(
    entries: List[Dict[str, Any]],
    name: str = "my-template",
    namespace: str = SOURCE_NAMESPACE,
    status: Optional[Dict[str, Any]] = None,
    annotations: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Raw KubeTemplate body as the API server would return it."""
    return {
        "apiVersion": "kubetemplater.io/v1alpha1",
        "kind": "KubeTemplate",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": f"uid-{name}",
            "resourceVersion": "1",
            "annotations": dict(annotations or {}),
        },
        "spec": {"templates": entries},
        "status": dict(status or {}),
    }


def configmap(name: str = "app-config", namespace: Optional[str] = None, **data) -> Dict[str, Any]:
    metadata = {"name": name}
    if namespace:
        metadata["namespace"] = namespace
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": metadata,
        "data": data or {"key": "value"},
    }


def service(name: str = "web", cluster_ip: Optional[str] = None) -> Dict[str, Any]:
    spec = {"ports": [{"port": 80, "targetPort": 8080}], "selector": {"app": name}}
    if cluster_ip:
        spec["clusterIP"] = cluster_ip
    return {"apiVersion": "v1", "kind": "Service", "metadata": {"name": name}, "spec": spec}


@pytest.fixture
def template_body():
    """Factory for KubeTemplate bodies."""
    return make_template


# ============================================================================
# Cluster Fakes
# ============================================================================


def _merge(live: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in patch.items():
        if value is None:
            live.pop(key, None)
        elif isinstance(value, dict) and isinstance(live.get(key), dict):
            _merge(live[key], value)
        else:
            live[key] = copy.deepcopy(value)
    return live


def _default_pod_template(pod_template: Dict[str, Any], labels: Dict[str, str]):
    metadata = pod_template.setdefault("metadata", {})
    metadata.setdefault("labels", {}).update(labels)
    spec = pod_template.setdefault("spec", {})
    spec.setdefault("dnsPolicy", "ClusterFirst")
    spec.setdefault("schedulerName", "default-scheduler")
    spec.setdefault("terminationGracePeriodSeconds", 30)
    for container in spec.get("containers", []):
        container.setdefault("imagePullPolicy", "IfNotPresent")
        container.setdefault("terminationMessagePath", "/dev/termination-log")
        container.setdefault("resources", {})


def apply_server_defaults(stored: Dict[str, Any], uid: str) -> Dict[str, Any]:
    """Fill in what the API server adds on create, including inside immutable subtrees."""
    kind = stored["kind"]
    metadata = stored["metadata"]
    metadata.setdefault("uid", uid)
    metadata.setdefault("resourceVersion", "1")
    spec = stored.get("spec")

    if kind == "Secret":
        stored.setdefault("type", "Opaque")
    elif kind in ("RoleBinding", "ClusterRoleBinding"):
        stored["roleRef"].setdefault("apiGroup", "rbac.authorization.k8s.io")
    elif spec is None:
        pass
    elif kind == "PersistentVolumeClaim":
        spec.setdefault("storageClassName", "standard")
        spec.setdefault("volumeName", f"pvc-{uid}")
        spec.setdefault("volumeMode", "Filesystem")
    elif kind in ("Deployment", "DaemonSet", "ReplicaSet", "StatefulSet"):
        spec.setdefault("revisionHistoryLimit", 10)
        _default_pod_template(spec.setdefault("template", {}), {})
        for claim in spec.get("volumeClaimTemplates", []):
            claim.setdefault("apiVersion", "v1")
            claim.setdefault("kind", "PersistentVolumeClaim")
            claim.setdefault("spec", {}).setdefault("volumeMode", "Filesystem")
            claim.setdefault("status", {"phase": "Pending"})
    elif kind == "Job":
        job_labels = {
            "batch.kubernetes.io/controller-uid": uid,
            "batch.kubernetes.io/job-name": metadata["name"],
        }
        spec.setdefault("selector", {"matchLabels": {"batch.kubernetes.io/controller-uid": uid}})
        spec.setdefault("completions", 1)
        spec.setdefault("backoffLimit", 6)
        _default_pod_template(spec.setdefault("template", {}), job_labels)
    return stored


class FakeObjectStore(ObjectStore):
    """In-memory object store that enforces immutable fields like the API server.

    Created objects get the defaults the API server would add, such as a
    cluster IP for Services and pod template labels for Jobs.
    ``failures`` holds exceptions raised by the next calls, in order; a None
    entry lets that call through.
    """

    def __init__(self):
        self.objects: Dict[Tuple[str, str, str, str], Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.failures: List[Optional[Exception]] = []
        self._next_ip = 10
        self._next_uid = 1

    @staticmethod
    def key(obj: Dict[str, Any]) -> Tuple[str, str, str, str]:
        metadata = obj["metadata"]
        return (obj["apiVersion"], obj["kind"], metadata.get("namespace", ""), metadata["name"])

    def _maybe_fail(self, op: str, name: str):
        self.calls.append((op, name))
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure

    def get(self, api_version, kind, namespace, name):
        self._maybe_fail("get", name)
        try:
            return copy.deepcopy(self.objects[(api_version, kind, namespace, name)])
        except KeyError:
            raise ObjectNotFoundError(f"{kind} {namespace}/{name} not found")

    def create(self, obj):
        self._maybe_fail("create", obj["metadata"]["name"])
        key = self.key(obj)
        if key in self.objects:
            raise TransientApplyError(f"{obj['kind']} {obj['metadata']['name']} already exists")

        stored = apply_server_defaults(copy.deepcopy(obj), f"object-uid-{self._next_uid}")
        self._next_uid += 1
        if stored["kind"] == "Service":
            spec = stored["spec"]
            spec.setdefault("type", "ClusterIP")
            spec.setdefault("ipFamilies", ["IPv4"])
            if not spec.get("clusterIP"):
                spec["clusterIP"] = f"10.96.0.{self._next_ip}"
                self._next_ip += 1
            spec["clusterIPs"] = [spec["clusterIP"]]
        self.objects[key] = stored
        return copy.deepcopy(stored)

    def patch(self, obj):
        self._maybe_fail("patch", obj["metadata"]["name"])
        key = self.key(obj)
        live = self.objects[key]
        group = obj["apiVersion"].rpartition("/")[0]
        changed = changed_immutable_fields(group, obj["kind"], live, obj)
        if changed:
            raise ImmutableFieldError(
                f"{obj['kind']} \"{obj['metadata']['name']}\" is invalid: "
                f"{changed[0]}: Invalid value: field is immutable",
                changed,
            )
        _merge(live, obj)
        return copy.deepcopy(live)

    def delete(self, api_version, kind, namespace, name):
        self._maybe_fail("delete", name)
        self.objects.pop((api_version, kind, namespace, name), None)

    def find(self, kind: str, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        for (_, obj_kind, obj_ns, obj_name), obj in self.objects.items():
            if (obj_kind, obj_ns, obj_name) == (kind, namespace, name):
                return obj
        return None


class FakeTemplateClient:
    """Stands in for KubeTemplateClient; ``conflicts`` 409s precede each success."""

    def __init__(self):
        self.bodies: Dict[NamespacedName, Dict[str, Any]] = {}
        self.conflicts = 0
        self.status_writes: List[Dict[str, Any]] = []

    def add(self, body: Dict[str, Any]) -> NamespacedName:
        identity = NamespacedName(body["metadata"]["namespace"], body["metadata"]["name"])
        self.bodies[identity] = copy.deepcopy(body)
        return identity

    def get(self, identity):
        body = self.bodies.get(identity)
        return copy.deepcopy(body) if body is not None else None

    def list(self, namespace):
        return [copy.deepcopy(b) for i, b in self.bodies.items() if i.namespace == namespace]

    def replace_status(self, body):
        if self.conflicts > 0:
            self.conflicts -= 1
            raise StatusConflictError("conflict")
        metadata = body["metadata"]
        identity = NamespacedName(metadata["namespace"], metadata["name"])
        self.bodies[identity]["status"] = copy.deepcopy(body["status"])
        self.status_writes.append(copy.deepcopy(body["status"]))
        return body

    def status(self, identity) -> Dict[str, Any]:
        return self.bodies[identity]["status"]


@pytest.fixture
def template_client():
    return FakeTemplateClient()


# ============================================================================
# Test Markers
# ============================================================================


def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "slow: Slow running tests")
    config.addinivalue_line("markers", "redis: Redis-dependent tests")
    config.addinivalue_line("markers", "cel: Tests evaluating real CEL expressions")
