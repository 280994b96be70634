"""Prometheus metrics for the operator.

Metrics live on an explicitly constructed ``ObservabilityContext`` that is
handed to the queue, resolver, validation engine and reconciler, so every
component can be built against its own registry in tests.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram


class ObservabilityContext:
    """Bundle of Prometheus collectors registered on a single registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else CollectorRegistry()

        # Work queue
        self.queue_enqueued = Counter(
            "kubetemplater_queue_enqueued_total",
            "Total number of items added to the work queue",
            registry=self.registry,
        )
        self.queue_dequeued = Counter(
            "kubetemplater_queue_dequeued_total",
            "Total number of items handed to workers",
            registry=self.registry,
        )
        self.queue_retries = Counter(
            "kubetemplater_queue_retries_total",
            "Total number of requeues with backoff",
            registry=self.registry,
        )
        self.queue_dropped = Counter(
            "kubetemplater_queue_dropped_total",
            "Total number of items dropped after exhausting retry cycles",
            registry=self.registry,
        )
        self.queue_depth = Gauge(
            "kubetemplater_queue_depth",
            "Current number of items waiting in the work queue",
            registry=self.registry,
        )
        self.queue_processing = Gauge(
            "kubetemplater_queue_processing",
            "Items currently being processed by workers",
            registry=self.registry,
        )

        # Policy
        self.policy_cache_operations = Counter(
            "kubetemplater_policy_cache_operations_total",
            "Policy cache lookups",
            ["result"],
            registry=self.registry,
        )
        self.policy_compilation_duration = Histogram(
            "kubetemplater_policy_compilation_duration_seconds",
            "Time spent compiling a policy",
            registry=self.registry,
        )
        self.policy_errors = Counter(
            "kubetemplater_policy_errors_total",
            "Total number of policy errors",
            ["error_type"],
            registry=self.registry,
        )
        self.active_policies = Gauge(
            "kubetemplater_active_policies",
            "Number of policies currently stored",
            registry=self.registry,
        )
        self.validations = Counter(
            "kubetemplater_validations_total",
            "Target object validations",
            ["result"],
            registry=self.registry,
        )

        # Reconciliation
        self.reconcile_duration = Histogram(
            "kubetemplater_reconcile_duration_seconds",
            "Time spent reconciling a template",
            registry=self.registry,
        )
        self.reconcile_outcomes = Counter(
            "kubetemplater_reconcile_outcomes_total",
            "Reconciliation pass outcomes",
            ["phase"],
            registry=self.registry,
        )
        self.objects_applied = Counter(
            "kubetemplater_objects_applied_total",
            "Target objects written to the cluster",
            ["action"],
            registry=self.registry,
        )
