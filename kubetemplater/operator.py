"""
kopf operator for KubeTemplate and KubeTemplatePolicy resources.
Policies are compiled into Redis; templates are fed to a worker pool through
the priority work queue.

Run with: kopf run -m kubetemplater.operator --all-namespaces
"""

import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import kopf
import redis
from kubernetes import client, config
from kubernetes.dynamic import DynamicClient
from prometheus_client import start_http_server
from redis.exceptions import RedisError

from kubetemplater.admission import validate_template
from kubetemplater.core.config import get_settings
from kubetemplater.core.logging import log_event, setup_logging
from kubetemplater.core.metrics import ObservabilityContext
from kubetemplater.exceptions import (AdmissionRejected, KubeTemplaterError,
                                      MalformedTemplateError,
                                      PolicyCompilationError,
                                      PolicyStorageError, QueueClosedError)
from kubetemplater.models.policy import PolicyState
from kubetemplater.models.template import (POLICY_PLURAL, RESUME_ANNOTATION,
                                           TEMPLATE_GROUP, TEMPLATE_PLURAL,
                                           TEMPLATE_VERSION, KubeTemplate,
                                           TemplatePhase)
from kubetemplater.policy import (CelEvaluator, FieldValidationEngine,
                                  PolicyCache, PolicyCompiler, PolicyResolver,
                                  PolicyStore)
from kubetemplater.queue import WorkQueue
from kubetemplater.reconciler import (DynamicObjectStore, KubeTemplateClient,
                                      TemplateReconciler, TemplateStatusWriter,
                                      TemplateValidator, WorkerPool,
                                      start_workers)

logger = logging.getLogger(__name__)

WORKER_JOIN_TIMEOUT = 30.0  # seconds
PERIODIC_PRIORITY = -1  # drift checks yield to user-driven work

# Re-enqueue decisions keyed on the phase recorded by the last pass
RETRIED_PHASES = {TemplatePhase.FAILED.value, TemplatePhase.REQUEUED.value}
FINISHED_PHASES = {TemplatePhase.SUCCEEDED.value, TemplatePhase.REJECTED.value}

_settings = get_settings()

# ============================================================================
# RUNTIME
# ============================================================================


@dataclass
class OperatorRuntime:
    """Components built at startup and shared by the handlers."""

    redis_client: redis.Redis
    observability: ObservabilityContext
    policy_store: PolicyStore
    compiler: PolicyCompiler
    resolver: PolicyResolver
    validator: TemplateValidator
    queue: WorkQueue
    templates: KubeTemplateClient
    workers: Optional[WorkerPool] = None


runtime: Optional[OperatorRuntime] = None


def build_runtime(settings, redis_client: redis.Redis, api_client: client.ApiClient) -> OperatorRuntime:
    """Wire the queue, policy layer and reconciler together."""
    observability = ObservabilityContext()
    cel = CelEvaluator()

    policy_store = PolicyStore(redis_client, observability)
    resolver = PolicyResolver(
        policy_store, PolicyCache(ttl=settings.policy_cache_ttl), observability
    )
    validator = TemplateValidator(resolver, FieldValidationEngine(cel, observability))

    return OperatorRuntime(
        redis_client=redis_client,
        observability=observability,
        policy_store=policy_store,
        compiler=PolicyCompiler(cel, observability),
        resolver=resolver,
        validator=validator,
        queue=WorkQueue.from_settings(settings, observability),
        templates=KubeTemplateClient(client.CustomObjectsApi(api_client)),
    )


def _runtime() -> OperatorRuntime:
    if runtime is None:
        raise kopf.TemporaryError("Operator is still starting up", delay=5)
    return runtime


@dataclass
class EnqueueDecision:
    enqueue: bool
    status: Dict[str, Any] = field(default_factory=dict)
    reason: str = ""


def plan_enqueue(template: KubeTemplate, now: Optional[datetime] = None) -> EnqueueDecision:
    """Decide whether a template event should schedule a reconciliation pass.

    Paused templates wait for the resume annotation; finished or retrying
    templates are only reset when their spec hash changed since the last pass.
    """
    now = now or datetime.now(timezone.utc)
    queued = {
        "processingPhase": TemplatePhase.PENDING.value,
        "queuedAt": now.isoformat(),
        "retryCount": 0,
        "retryCycle": 0,
    }
    phase = template.phase

    if phase == TemplatePhase.PAUSED.value:
        if template.annotations.get(RESUME_ANNOTATION) == "true":
            return EnqueueDecision(
                True, {**queued, "pausedReason": None, "pausedAt": None}, "resumed"
            )
        return EnqueueDecision(False, reason="paused")

    if phase in RETRIED_PHASES or phase in FINISHED_PHASES:
        applied = template.status.get("appliedSpecHash")
        if applied and applied != template.spec_hash:
            return EnqueueDecision(True, queued, "spec changed")
        return EnqueueDecision(False, reason="spec unchanged")

    return EnqueueDecision(True, queued, "new")


def enqueue_template(rt: OperatorRuntime, template: KubeTemplate, priority: int = 0) -> bool:
    try:
        rt.queue.enqueue(template.identity, priority)
        return True
    except QueueClosedError as e:
        logger.warning(f"Not enqueueing {template.identity}: {e}")
        return False


# ============================================================================
# KOPF HANDLERS: POLICIES
# ============================================================================


@kopf.on.create(TEMPLATE_GROUP, TEMPLATE_VERSION, POLICY_PLURAL)
@kopf.on.update(TEMPLATE_GROUP, TEMPLATE_VERSION, POLICY_PLURAL)
@kopf.on.resume(TEMPLATE_GROUP, TEMPLATE_VERSION, POLICY_PLURAL)
def policy_changed(
    name: str,
    namespace: str,
    spec: Dict[str, Any],
    patch: Dict,
    **kwargs,
):
    """Handle policy creation, updates and operator restarts"""
    if namespace != _settings.operator_namespace:
        logger.warning(
            f"Ignoring policy {namespace}/{name}: policies must live in "
            f"{_settings.operator_namespace}"
        )
        return

    rt = _runtime()
    logger.info(f"Policy {namespace}/{name} changed")

    try:
        compiled = rt.compiler.compile_policy(name, namespace, dict(spec))

        previous = rt.policy_store.get_policy(namespace, name)
        rt.policy_store.store_policy(compiled)

        if previous and previous.source_namespace != compiled.source_namespace:
            rt.resolver.cache.invalidate(previous.source_namespace)

        if len(rt.policy_store.policies_for_source(compiled.source_namespace)) == 1:
            rt.resolver.cache.update(compiled)
        else:
            rt.resolver.cache.invalidate(compiled.source_namespace)
            logger.warning(
                f"Source namespace {compiled.source_namespace} is claimed by more than "
                f"one policy; templates there will be rejected"
            )

        templates_using = _requeue_source_namespace(rt, compiled.source_namespace)
        rt.policy_store.set_templates_using(namespace, name, templates_using)

        status = rt.policy_store.get_policy_status(namespace, name)
        status.update(
            {
                "state": PolicyState.ACTIVE.value,
                "message": f"Governing source namespace {compiled.source_namespace}",
                "compiledAt": compiled.compiled_at,
                "hash": compiled.hash,
            }
        )
        patch["status"] = status
        rt.policy_store.update_policy_status(namespace, name, status)

        log_event(
            logger, "info", "policy_compiled",
            policy=compiled.key, source_namespace=compiled.source_namespace,
        )

    except PolicyCompilationError as e:
        logger.error(f"Failed to compile policy {namespace}/{name}: {str(e)}")

        patch["status"] = {
            "state": PolicyState.ERROR.value,
            "active": False,
            "message": f"Compilation failed: {str(e)}",
            "errorAt": datetime.now(timezone.utc).isoformat(),
        }

    except PolicyStorageError as e:
        logger.error(f"Failed to store policy {namespace}/{name}: {str(e)}")
        raise kopf.TemporaryError(str(e), delay=30)


@kopf.on.delete(TEMPLATE_GROUP, TEMPLATE_VERSION, POLICY_PLURAL)
def policy_deleted(name: str, namespace: str, **kwargs):
    """Handle policy deletion"""
    rt = _runtime()
    logger.info(f"Policy {namespace}/{name} deleted")

    try:
        source_namespace = rt.policy_store.remove_policy(namespace, name)
    except PolicyStorageError as e:
        logger.error(f"Error deleting policy {namespace}/{name}: {str(e)}")
        rt.observability.policy_errors.labels(error_type="deletion").inc()
        raise kopf.TemporaryError(str(e), delay=30)

    if source_namespace:
        rt.resolver.cache.invalidate(source_namespace)
    else:
        rt.resolver.cache.clear()


@kopf.timer(
    TEMPLATE_GROUP,
    TEMPLATE_VERSION,
    POLICY_PLURAL,
    interval=_settings.periodic_reconcile_interval,
    idle=_settings.periodic_reconcile_interval,
)
def refresh_policy_status(name: str, namespace: str, status: Dict[str, Any], patch: Dict, **kwargs):
    """Publish validation counters kept in Redis onto the policy status"""
    rt = _runtime()
    try:
        counters = rt.policy_store.get_policy_status(namespace, name)
    except RedisError as e:
        logger.error(f"Error refreshing status of policy {namespace}/{name}: {str(e)}")
        rt.observability.policy_errors.labels(error_type="status").inc()
        return

    changed = {k: v for k, v in counters.items() if status.get(k) != v}
    if changed:
        patch["status"] = changed


def _requeue_source_namespace(rt: OperatorRuntime, source_namespace: str) -> int:
    """Re-run every template in a namespace whose policy just changed"""
    try:
        bodies = rt.templates.list(source_namespace)
    except KubeTemplaterError as e:
        logger.warning(f"Could not list KubeTemplates in {source_namespace}: {e}")
        return 0

    for body in bodies:
        try:
            template = KubeTemplate.from_resource(body)
        except MalformedTemplateError as e:
            logger.warning(f"Skipping requeue: {e}")
            continue
        if template.phase != TemplatePhase.PAUSED.value:
            enqueue_template(rt, template)
    return len(bodies)


# ============================================================================
# KOPF HANDLERS: TEMPLATES
# ============================================================================


def _parse_template(body: Dict[str, Any]) -> KubeTemplate:
    try:
        return KubeTemplate.from_resource(body)
    except MalformedTemplateError as e:
        raise kopf.PermanentError(str(e))


@kopf.on.create(TEMPLATE_GROUP, TEMPLATE_VERSION, TEMPLATE_PLURAL)
@kopf.on.update(TEMPLATE_GROUP, TEMPLATE_VERSION, TEMPLATE_PLURAL)
@kopf.on.resume(TEMPLATE_GROUP, TEMPLATE_VERSION, TEMPLATE_PLURAL)
def template_changed(body: Dict[str, Any], patch: Dict, **kwargs):
    """Schedule a reconciliation pass when a template needs one"""
    rt = _runtime()
    template = _parse_template(body)
    decision = plan_enqueue(template)

    if not decision.enqueue:
        logger.debug(f"Not enqueueing KubeTemplate {template.identity}: {decision.reason}")
        return

    if decision.status:
        patch["status"] = decision.status
    if enqueue_template(rt, template):
        logger.info(f"Enqueued KubeTemplate {template.identity} ({decision.reason})")


@kopf.timer(
    TEMPLATE_GROUP,
    TEMPLATE_VERSION,
    TEMPLATE_PLURAL,
    interval=_settings.periodic_reconcile_interval,
    idle=_settings.periodic_reconcile_interval,
)
def periodic_template_reconcile(body: Dict[str, Any], **kwargs):
    """Re-apply succeeded templates so drifted objects are corrected"""
    rt = _runtime()
    template = _parse_template(body)

    if template.phase != TemplatePhase.SUCCEEDED.value:
        return
    if rt.queue.contains(template.identity):
        logger.debug(f"Skipping periodic reconciliation of {template.identity}: already queued")
        return

    enqueue_template(rt, template, PERIODIC_PRIORITY)


if _settings.admission_webhook_enabled:

    @kopf.on.validate(TEMPLATE_GROUP, TEMPLATE_VERSION, TEMPLATE_PLURAL, id="validate-kubetemplate")
    def validate_kubetemplate(body: Dict[str, Any], operation: str, warnings: List[str], **kwargs):
        """Refuse templates the governing policy would reject"""
        if operation == "DELETE":
            return
        rt = _runtime()
        try:
            warnings.extend(validate_template(dict(body), rt.validator, _settings))
        except AdmissionRejected as e:
            raise kopf.AdmissionError(str(e))


# ============================================================================
# STARTUP AND SHUTDOWN
# ============================================================================


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **_):
    """Configure kopf settings"""
    settings.posting.enabled = False
    settings.watching.server_timeout = 300
    settings.watching.client_timeout = 310
    settings.watching.connect_timeout = 10
    settings.persistence.finalizer = "kubetemplater.io/finalizer"
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(
        prefix="kubetemplater.io"
    )
    settings.execution.max_workers = 3
    settings.batching.idle_timeout = 1.0
    settings.batching.batch_window = 0.5

    if _settings.admission_webhook_enabled:
        settings.admission.server = kopf.WebhookServer(port=9443)
        settings.admission.managed = "kubetemplater.io"

    logger.info("Kopf configured with API server protection settings")


@kopf.on.startup()
def startup_handler(**kwargs):
    """Startup tasks"""
    global runtime

    setup_logging(_settings)
    logger.info("KubeTemplater operator starting up")

    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded local Kubernetes config")

    redis_client = redis.Redis.from_url(
        _settings.redis_url,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_keepalive=True,
    )
    try:
        redis_client.ping()
        logger.info("Redis connection successful")
    except RedisError as e:
        logger.error(f"Failed to connect to Redis: {str(e)}")
        sys.exit(1)

    api_client = client.ApiClient()
    rt = build_runtime(_settings, redis_client, api_client)

    reconciler = TemplateReconciler(
        rt.validator,
        DynamicObjectStore(DynamicClient(api_client), _settings.field_manager),
        rt.policy_store,
        rt.observability,
    )
    rt.workers = start_workers(
        _settings.num_workers,
        rt.queue,
        reconciler,
        rt.templates,
        TemplateStatusWriter(rt.templates),
    )
    start_http_server(_settings.metrics_port, registry=rt.observability.registry)

    runtime = rt
    logger.info(
        f"KubeTemplater operator ready with {_settings.num_workers} workers, "
        f"metrics on :{_settings.metrics_port}"
    )


@kopf.on.cleanup()
def cleanup_handler(**kwargs):
    """Cleanup tasks"""
    global runtime

    logger.info("KubeTemplater operator shutting down")
    if runtime is None:
        return

    runtime.queue.shutdown()
    if runtime.workers:
        runtime.workers.stop(timeout=WORKER_JOIN_TIMEOUT)
    runtime.redis_client.close()
    runtime = None


@kopf.on.probe(id="health")
def health_probe(**kwargs):
    """Health check probe"""
    if runtime is None:
        return {"status": "starting"}

    try:
        runtime.redis_client.ping()
    except RedisError as e:
        logger.error(f"Health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}

    metrics = runtime.queue.metrics()
    return {
        "status": "healthy",
        "queueDepth": metrics.current_depth,
        "processing": metrics.processing_items,
        "dropped": metrics.dropped_count,
        "workersAlive": runtime.workers.alive() if runtime.workers else 0,
        "cachedPolicies": runtime.resolver.cache.size(),
    }


# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    kopf.run(clusterwide=True, liveness_endpoint=_settings.liveness_endpoint)
