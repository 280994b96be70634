"""Policy storage and indexing in Redis"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from redis import Redis
from redis.exceptions import RedisError

from kubetemplater.core.metrics import ObservabilityContext
from kubetemplater.exceptions import PolicyStorageError
from kubetemplater.models.policy import CompiledPolicy

logger = logging.getLogger(__name__)

# Redis key patterns
POLICY_KEY_PATTERN = "kubetemplater:policy:{namespace}:{name}"
SOURCE_INDEX_KEY_PATTERN = "kubetemplater:policies:source:{source_namespace}"
ALL_POLICIES_KEY = "kubetemplater:policies:all"
POLICY_EVENTS_CHANNEL = "kubetemplater:policy-events"


class PolicyStore:
    """Stores compiled policies indexed by the source namespace they govern"""

    def __init__(self, redis_client: Redis, observability: Optional[ObservabilityContext] = None):
        self.redis = redis_client
        self.observability = observability

    def store_policy(self, policy: CompiledPolicy):
        """Store a compiled policy and (re)index it by source namespace"""
        policy_key = POLICY_KEY_PATTERN.format(namespace=policy.namespace, name=policy.name)

        try:
            # The source namespace may have changed since the last version
            previous = self.redis.hget(policy_key, "source_namespace")

            pipeline = self.redis.pipeline()
            if previous and previous != policy.source_namespace:
                pipeline.srem(
                    SOURCE_INDEX_KEY_PATTERN.format(source_namespace=previous), policy_key
                )
            pipeline.hset(
                policy_key,
                mapping={
                    "data": json.dumps(policy.to_dict()),
                    "source_namespace": policy.source_namespace,
                    "hash": policy.hash,
                    "compiled_at": policy.compiled_at,
                },
            )
            pipeline.sadd(
                SOURCE_INDEX_KEY_PATTERN.format(source_namespace=policy.source_namespace),
                policy_key,
            )
            pipeline.sadd(ALL_POLICIES_KEY, policy_key)
            pipeline.execute()
        except RedisError as e:
            raise PolicyStorageError(f"Failed to store policy {policy.key}: {e}") from e

        self._publish_policy_event("stored", policy.namespace, policy.name)
        self._update_gauge()

        logger.info(f"Stored policy {policy_key} for source namespace {policy.source_namespace}")

    def remove_policy(self, namespace: str, name: str) -> Optional[str]:
        """Remove a policy and its indexes; returns the source namespace it governed"""
        policy_key = POLICY_KEY_PATTERN.format(namespace=namespace, name=name)

        try:
            source_namespace = self.redis.hget(policy_key, "source_namespace")
            if not source_namespace:
                logger.warning(f"Policy {policy_key} not found for removal")
                return None

            pipeline = self.redis.pipeline()
            pipeline.srem(
                SOURCE_INDEX_KEY_PATTERN.format(source_namespace=source_namespace), policy_key
            )
            pipeline.srem(ALL_POLICIES_KEY, policy_key)
            pipeline.delete(policy_key)
            pipeline.execute()
        except RedisError as e:
            raise PolicyStorageError(f"Failed to remove policy {policy_key}: {e}") from e

        self._publish_policy_event("deleted", namespace, name)
        self._update_gauge()

        logger.info(f"Removed policy {policy_key}")
        return source_namespace

    def get_policy(self, namespace: str, name: str) -> Optional[CompiledPolicy]:
        """Retrieve a policy from storage"""
        policy_key = POLICY_KEY_PATTERN.format(namespace=namespace, name=name)
        return self._load(policy_key)

    def policies_for_source(self, source_namespace: str) -> List[CompiledPolicy]:
        """All policies claiming a source namespace, ordered by key"""
        try:
            keys = sorted(
                self.redis.smembers(
                    SOURCE_INDEX_KEY_PATTERN.format(source_namespace=source_namespace)
                )
            )
        except RedisError as e:
            raise PolicyStorageError(f"Failed to look up policies for {source_namespace}: {e}") from e

        policies = []
        for key in keys:
            policy = self._load(key)
            if policy is not None:
                policies.append(policy)
        return policies

    def list_policies(self) -> List[str]:
        return sorted(self.redis.smembers(ALL_POLICIES_KEY))

    # ------------------------------------------------------------------
    # Status counters
    # ------------------------------------------------------------------

    def record_validation(self, namespace: str, name: str, success: bool):
        """Count one validation outcome against a policy"""
        policy_key = POLICY_KEY_PATTERN.format(namespace=namespace, name=name)
        counter = "validation_successes" if success else "validation_failures"

        pipeline = self.redis.pipeline()
        pipeline.hincrby(policy_key, counter, 1)
        pipeline.hset(
            policy_key, "last_validation_time", datetime.now(timezone.utc).isoformat()
        )
        pipeline.execute()

    def set_templates_using(self, namespace: str, name: str, count: int):
        policy_key = POLICY_KEY_PATTERN.format(namespace=namespace, name=name)
        self.redis.hset(policy_key, "templates_using", count)

    def get_policy_status(self, namespace: str, name: str) -> Dict[str, Any]:
        """Observable policy status in the KubeTemplatePolicy status format"""
        policy_key = POLICY_KEY_PATTERN.format(namespace=namespace, name=name)
        fields = self.redis.hgetall(policy_key)

        return {
            "active": bool(fields.get("data")),
            "templatesUsing": int(fields.get("templates_using", 0)),
            "validationSuccesses": int(fields.get("validation_successes", 0)),
            "validationFailures": int(fields.get("validation_failures", 0)),
            "lastValidationTime": fields.get("last_validation_time"),
        }

    def update_policy_status(self, namespace: str, name: str, status: Dict[str, Any]):
        """Keep the last status written to the cluster alongside the policy"""
        policy_key = POLICY_KEY_PATTERN.format(namespace=namespace, name=name)
        self.redis.hset(policy_key, "status", json.dumps(status, default=str))

    # ------------------------------------------------------------------

    def _load(self, policy_key: str) -> Optional[CompiledPolicy]:
        try:
            data = self.redis.hget(policy_key, "data")
            if data:
                return CompiledPolicy.from_dict(json.loads(data))
            return None
        except (RedisError, json.JSONDecodeError, KeyError) as e:
            logger.error(f"Failed to retrieve policy {policy_key}: {e}")
            raise PolicyStorageError(f"Failed to retrieve policy: {str(e)}") from e

    def _publish_policy_event(self, action: str, namespace: str, name: str):
        event = {
            "type": f"policy.{action}",
            "policy": f"{namespace}/{name}",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        self.redis.publish(POLICY_EVENTS_CHANNEL, json.dumps(event))

    def _update_gauge(self):
        if self.observability:
            self.observability.active_policies.set(self.redis.scard(ALL_POLICIES_KEY))
