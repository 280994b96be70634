"""Resolves the governing policy for a source namespace and authorizes kinds."""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from kubetemplater.core.metrics import ObservabilityContext
from kubetemplater.exceptions import AmbiguousPolicyError, PolicyNotFoundError
from kubetemplater.models.policy import CompiledPolicy, ValidationRule
from kubetemplater.policy.store import PolicyStore

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = 60.0  # seconds


@dataclass
class AuthorizationResult:
    """Outcome of matching a target object against a policy's rules."""

    allowed: bool
    rule: Optional[ValidationRule] = None
    reason: str = ""


class PolicyCache:
    """Thread-safe TTL cache of policies keyed by source namespace.

    A cached ``None`` records that no policy exists, so repeated lookups for
    an ungoverned namespace do not hit the store either.
    """

    def __init__(self, ttl: float = DEFAULT_CACHE_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: Dict[str, Tuple[Optional[CompiledPolicy], float]] = {}

    def get(self, source_namespace: str) -> Tuple[bool, Optional[CompiledPolicy]]:
        with self._lock:
            entry = self._entries.get(source_namespace)
        if entry is None:
            return False, None
        policy, expires_at = entry
        if self._clock() >= expires_at:
            return False, None
        return True, policy

    def set(self, source_namespace: str, policy: Optional[CompiledPolicy]):
        with self._lock:
            self._entries[source_namespace] = (policy, self._clock() + self.ttl)

    def update(self, policy: CompiledPolicy):
        self.set(policy.source_namespace, policy)

    def invalidate(self, source_namespace: str):
        with self._lock:
            self._entries.pop(source_namespace, None)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._entries)


class PolicyResolver:
    """Maps a template's source namespace to its single authoritative policy."""

    def __init__(
        self,
        store: PolicyStore,
        cache: Optional[PolicyCache] = None,
        observability: Optional[ObservabilityContext] = None,
    ):
        self.store = store
        self.cache = cache if cache is not None else PolicyCache()
        self.observability = observability

    def resolve(self, source_namespace: str) -> CompiledPolicy:
        """Return the policy governing ``source_namespace``.

        Raises PolicyNotFoundError when no policy governs it and
        AmbiguousPolicyError when more than one does.
        """
        hit, policy = self.cache.get(source_namespace)
        if hit:
            self._count("hit")
            if policy is None:
                raise PolicyNotFoundError(source_namespace)
            return policy

        self._count("miss")
        policies = self.store.policies_for_source(source_namespace)

        if len(policies) > 1:
            raise AmbiguousPolicyError(source_namespace, [p.key for p in policies])

        if not policies:
            self.cache.set(source_namespace, None)
            raise PolicyNotFoundError(source_namespace)

        policy = policies[0]
        self.cache.set(source_namespace, policy)
        logger.debug(f"Resolved policy {policy.key} for source namespace {source_namespace}")
        return policy

    def authorize(
        self,
        policy: CompiledPolicy,
        group: str,
        version: str,
        kind: str,
        target_namespace: str,
    ) -> AuthorizationResult:
        """Check whether a kind may be materialized in ``target_namespace``.

        Rules are scanned in document order and the first one matching the
        (group, version, kind) triple decides; rules are never merged.
        """
        rule = next(
            (r for r in policy.validation_rules if r.matches(group, version, kind)),
            None,
        )

        if rule is None:
            group_version = f"{group}/{version}" if group else version
            return AuthorizationResult(
                allowed=False,
                reason=(
                    f"resource {group_version}, Kind={kind} is not allowed by policy "
                    f"{policy.name}"
                ),
            )

        if not rule.target_namespaces:
            return AuthorizationResult(
                allowed=False,
                rule=rule,
                reason=(
                    f"no target namespaces defined for resource {kind} in policy "
                    f"{policy.name}"
                ),
            )

        if target_namespace not in rule.target_namespaces:
            allowed = ", ".join(rule.target_namespaces)
            return AuthorizationResult(
                allowed=False,
                rule=rule,
                reason=(
                    f"{target_namespace} is not an allowed target for resource {kind} "
                    f"(allowed: [{allowed}])"
                ),
            )

        return AuthorizationResult(allowed=True, rule=rule)

    def _count(self, result: str):
        if self.observability:
            self.observability.policy_cache_operations.labels(result=result).inc()
