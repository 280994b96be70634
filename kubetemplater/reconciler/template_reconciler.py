"""Validation and apply pass for a single KubeTemplate.

A pass validates every target object first and only then applies them, so a
template that is rejected never reaches the cluster partially.
"""

import copy
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from kubetemplater.core.metrics import ObservabilityContext
from kubetemplater.exceptions import (ApplyConflictError, AuthorizationError,
                                      ImmutableFieldError, KubeTemplaterError,
                                      ObjectNotFoundError, PolicyError,
                                      StatusConflictError,
                                      ValidationFailedError)
from kubetemplater.models.policy import CompiledPolicy
from kubetemplater.models.template import (TEMPLATE_GROUP, TEMPLATE_KIND,
                                           TEMPLATE_NAME_LABEL,
                                           TEMPLATE_NAMESPACE_LABEL,
                                           TEMPLATE_VERSION, KubeTemplate,
                                           NamespacedName, TemplateEntry,
                                           TemplatePhase, TemplateStatus)
from kubetemplater.policy.resolver import PolicyResolver
from kubetemplater.policy.store import PolicyStore
from kubetemplater.policy.validation import FieldValidationEngine
from kubetemplater.reconciler.cluster import (KubeTemplateClient, ObjectStore,
                                              changed_immutable_fields, describe)

logger = logging.getLogger(__name__)

PhaseCallback = Callable[[TemplatePhase], None]


@dataclass
class TemplateValidation:
    """Outcome of the Validating phase."""

    policy: Optional[CompiledPolicy] = None
    objects: List[Tuple[TemplateEntry, Dict[str, Any]]] = field(default_factory=list)
    error: Optional[PolicyError] = None
    failed_index: Optional[int] = None

    @property
    def passed(self) -> bool:
        return self.error is None


@dataclass
class ReconcileResult:
    status: TemplateStatus
    error: Optional[BaseException] = None
    retry: bool = False


class TemplateValidator:
    """Resolves, authorizes and field-validates every target of a template."""

    def __init__(self, resolver: PolicyResolver, engine: FieldValidationEngine):
        self.resolver = resolver
        self.engine = engine

    def validate(self, template: KubeTemplate) -> TemplateValidation:
        """Stop at the first failing target; its message is the pass's message."""
        objects = [(entry, self._prepare(entry, template)) for entry in template.templates]

        try:
            policy = self.resolver.resolve(template.namespace)
        except PolicyError as e:
            return TemplateValidation(objects=objects, error=e)

        for idx, (entry, obj) in enumerate(objects):
            error = self.check_object(policy, entry, obj)
            if error is not None:
                return TemplateValidation(
                    policy=policy, objects=objects, error=error, failed_index=idx
                )

        return TemplateValidation(policy=policy, objects=objects)

    def check_object(
        self, policy: CompiledPolicy, entry: TemplateEntry, obj: Dict[str, Any]
    ) -> Optional[PolicyError]:
        metadata = obj.get("metadata") or {}
        namespace = metadata.get("namespace", "")

        authz = self.resolver.authorize(
            policy, entry.group, entry.version, entry.kind, namespace
        )
        if not authz.allowed:
            logger.info(
                f"{entry.kind} {namespace}/{metadata.get('name')} not authorized by "
                f"policy {policy.key}: {authz.reason}"
            )
            return AuthorizationError(authz.reason)

        result = self.engine.validate(obj, authz.rule)
        if not result.passed:
            return ValidationFailedError(result.failure.message, result.failure)
        return None

    @staticmethod
    def _prepare(entry: TemplateEntry, template: KubeTemplate) -> Dict[str, Any]:
        obj = copy.deepcopy(entry.object)
        metadata = obj.setdefault("metadata", {})
        if not metadata.get("namespace"):
            metadata["namespace"] = template.namespace
        return obj


class TemplateReconciler:
    """Runs one reconciliation pass and reports the resulting status.

    The reconciler never talks to the work queue: ``ReconcileResult.retry``
    tells the caller whether the failure is worth another attempt.
    """

    def __init__(
        self,
        validator: TemplateValidator,
        objects: ObjectStore,
        policy_store: Optional[PolicyStore] = None,
        observability: Optional[ObservabilityContext] = None,
    ):
        self.validator = validator
        self.objects = objects
        self.policy_store = policy_store
        self.observability = observability

    def reconcile(
        self, template: KubeTemplate, on_phase: Optional[PhaseCallback] = None
    ) -> ReconcileResult:
        start_time = time.time()
        try:
            result = self._reconcile(template, on_phase)
        except KubeTemplaterError as e:
            result = self._failed(template, e, retry=not e.terminal)
        except Exception as e:
            logger.error(
                f"Unexpected error reconciling KubeTemplate {template.identity}: {e}",
                exc_info=True,
            )
            result = self._failed(template, e, retry=True)

        if self.observability:
            self.observability.reconcile_duration.observe(time.time() - start_time)
            self.observability.reconcile_outcomes.labels(phase=result.status.phase.value).inc()
        return result

    def _reconcile(
        self, template: KubeTemplate, on_phase: Optional[PhaseCallback]
    ) -> ReconcileResult:
        total = len(template.templates)

        _notify(on_phase, TemplatePhase.VALIDATING)
        validation = self.validator.validate(template)
        self._record_validation(validation)

        if not validation.passed:
            error = validation.error
            logger.info(f"KubeTemplate {template.identity} rejected: {error}")
            if not error.terminal:
                return self._failed(template, error, retry=True)
            return ReconcileResult(
                status=self._status(
                    template, TemplatePhase.REJECTED, str(error), errors=[str(error)],
                    total=total,
                ),
                error=error,
            )

        _notify(on_phase, TemplatePhase.APPLYING)
        synced = 0
        for entry, obj in validation.objects:
            try:
                action = self.apply_object(template, entry, obj)
            except KubeTemplaterError as e:
                logger.error(f"Failed to apply {describe(obj)} for {template.identity}: {e}")
                return ReconcileResult(
                    status=self._status(
                        template, TemplatePhase.FAILED, str(e), errors=[str(e)],
                        total=total, synced=synced,
                    ),
                    error=e,
                    retry=not e.terminal,
                )
            synced += 1
            if self.observability:
                self.observability.objects_applied.labels(action=action).inc()

        logger.info(f"KubeTemplate {template.identity} applied {synced}/{total} objects")
        return ReconcileResult(
            status=self._status(
                template, TemplatePhase.SUCCEEDED, "Completed", total=total, synced=synced
            )
        )

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def apply_object(
        self, template: KubeTemplate, entry: TemplateEntry, obj: Dict[str, Any]
    ) -> str:
        """Create, patch or replace one target object. Returns the action taken."""
        desired = self._decorate(template, entry, obj)
        metadata = desired["metadata"]
        kind, namespace, name = desired.get("kind"), metadata.get("namespace"), metadata.get("name")

        try:
            live = self.objects.get(entry.api_version, kind, namespace, name)
        except ObjectNotFoundError:
            self.objects.create(desired)
            logger.info(f"Created {describe(desired)}")
            return "created"

        changed = changed_immutable_fields(entry.group, kind, live, desired)
        if not changed:
            try:
                self.objects.patch(desired)
                logger.debug(f"Patched {describe(desired)}")
                return "patched"
            except ImmutableFieldError as e:
                changed = e.fields or [str(e)]

        if not entry.replace:
            raise ApplyConflictError(
                f"Failed to apply object {kind}/{name}: immutable field changed "
                f"({', '.join(changed)})"
            )

        logger.warning(
            f"Replacing {describe(desired)} to change immutable fields "
            f"{', '.join(changed)}; the live object is deleted and recreated"
        )
        self.objects.delete(entry.api_version, kind, namespace, name)
        self.objects.create(desired)
        return "replaced"

    @staticmethod
    def _decorate(
        template: KubeTemplate, entry: TemplateEntry, obj: Dict[str, Any]
    ) -> Dict[str, Any]:
        desired = copy.deepcopy(obj)
        metadata = desired.setdefault("metadata", {})

        labels = dict(metadata.get("labels") or {})
        labels[TEMPLATE_NAME_LABEL] = template.name
        labels[TEMPLATE_NAMESPACE_LABEL] = template.namespace
        metadata["labels"] = labels

        if entry.referenced:
            owners = [
                ref for ref in metadata.get("ownerReferences") or []
                if ref.get("uid") != template.uid
            ]
            owners.append(
                {
                    "apiVersion": f"{TEMPLATE_GROUP}/{TEMPLATE_VERSION}",
                    "kind": TEMPLATE_KIND,
                    "name": template.name,
                    "uid": template.uid,
                }
            )
            metadata["ownerReferences"] = owners

        return desired

    # ------------------------------------------------------------------

    def _record_validation(self, validation: TemplateValidation):
        if self.policy_store is None or validation.policy is None:
            return
        policy = validation.policy
        try:
            self.policy_store.record_validation(policy.namespace, policy.name, validation.passed)
        except Exception as e:
            logger.warning(f"Failed to record validation for policy {policy.key}: {e}")

    def _failed(
        self, template: KubeTemplate, error: BaseException, retry: bool
    ) -> ReconcileResult:
        message = f"Error: {error}"
        return ReconcileResult(
            status=self._status(
                template, TemplatePhase.FAILED, message, errors=[str(error)],
                total=len(template.templates),
            ),
            error=error,
            retry=retry,
        )

    @staticmethod
    def _status(
        template: KubeTemplate,
        phase: TemplatePhase,
        message: str,
        errors: Optional[List[str]] = None,
        total: int = 0,
        synced: int = 0,
    ) -> TemplateStatus:
        return TemplateStatus(
            phase=phase,
            message=message,
            errors=errors or [],
            resources_total=total,
            resources_synced=synced,
            processed_at=datetime.now(timezone.utc),
            applied_spec_hash=template.spec_hash,
        )


class TemplateStatusWriter:
    """Writes KubeTemplate status, re-reading and retrying on 409 conflicts."""

    def __init__(self, templates: KubeTemplateClient, max_attempts: int = 3):
        self.templates = templates
        self.max_attempts = max_attempts

    def write(self, identity: NamespacedName, status: Dict[str, Any]) -> bool:
        """Merge ``status`` into the current status. False if the template is gone."""
        for attempt in range(1, self.max_attempts + 1):
            body = self.templates.get(identity)
            if body is None:
                logger.info(f"KubeTemplate {identity} no longer exists, skipping status update")
                return False

            body["status"] = {**(body.get("status") or {}), **status}
            try:
                self.templates.replace_status(body)
                return True
            except ObjectNotFoundError:
                return False
            except StatusConflictError:
                if attempt == self.max_attempts:
                    raise
                logger.debug(
                    f"Status update conflict for {identity}, retrying (attempt {attempt})"
                )
        return False


def _notify(on_phase: Optional[PhaseCallback], phase: TemplatePhase):
    if on_phase is None:
        return
    try:
        on_phase(phase)
    except Exception as e:
        logger.warning(f"Failed to report phase {phase.value}: {e}")