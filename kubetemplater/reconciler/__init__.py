"""Template reconciliation: cluster access, apply pass and worker threads."""

from .cluster import (DynamicObjectStore, KubeTemplateClient, ObjectStore,
                      changed_immutable_fields)
from .template_reconciler import (ReconcileResult, TemplateReconciler,
                                  TemplateStatusWriter, TemplateValidation,
                                  TemplateValidator)
from .worker import TemplateProcessor, WorkerPool, start_workers

__all__ = [
    "DynamicObjectStore",
    "KubeTemplateClient",
    "ObjectStore",
    "changed_immutable_fields",
    "ReconcileResult",
    "TemplateReconciler",
    "TemplateStatusWriter",
    "TemplateValidation",
    "TemplateValidator",
    "TemplateProcessor",
    "WorkerPool",
    "start_workers",
]
