"""
Beckn Flow Conformance (BFC) - Action Store
Version: 1.0.0

Saves and loads extracted snapshots keyed by
(session_id, flow_id, transaction_id, action).

Semantics shared by every backend:
- save() overwrites: last write wins, no coordination between tasks
- load() returns None when nothing was saved for the key
- backend failures surface as ActionStoreError; the engine isolates them
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import json
import logging
import time

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from bfc_ledger_v1 import ActionStoreError, CircuitBreakerOpen
from bfc_metrics import record_store_operation

logger = logging.getLogger("BFC.Store")

# ============================================
# ACTION RECORD
# ============================================

@dataclass
class ActionRecord:
    """One saved snapshot within a transaction flow."""
    action: str
    snapshot: Dict[str, Any]
    saved_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action,
            'snapshot': self.snapshot,
            'saved_at': self.saved_at.isoformat()
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_json(cls, data: str) -> "ActionRecord":
        raw = json.loads(data)
        # Bare snapshots (written by other producers) carry no envelope
        if not isinstance(raw, dict) or 'snapshot' not in raw or 'action' not in raw:
            return cls(action="", snapshot=raw if isinstance(raw, dict) else {})
        saved_at = raw.get('saved_at')
        try:
            stamp = datetime.fromisoformat(saved_at) if saved_at else datetime.now(timezone.utc)
        except ValueError:
            stamp = datetime.now(timezone.utc)
        return cls(action=raw['action'], snapshot=raw['snapshot'] or {}, saved_at=stamp)

def snapshot_key(session_id: str, flow_id: str, transaction_id: str, action: str, prefix: str = "") -> str:
    parts = [session_id, flow_id, transaction_id, action.lower()]
    if prefix:
        parts.insert(0, prefix)
    return ":".join(str(p) for p in parts)

# ============================================
# STORE CONTRACT
# ============================================

class ActionStore(ABC):
    """Key-value contract consumed by the engine."""

    @abstractmethod
    async def save(self, session_id: str, flow_id: str, transaction_id: str,
                   action: str, snapshot: Dict[str, Any]) -> None:
        """Overwrite the snapshot for the key."""
        pass

    @abstractmethod
    async def load_record(self, session_id: str, flow_id: str, transaction_id: str,
                          action: str) -> Optional[ActionRecord]:
        """Return the saved record, or None."""
        pass

    async def load(self, session_id: str, flow_id: str, transaction_id: str,
                   action: str) -> Optional[Dict[str, Any]]:
        """Return the saved snapshot, or None when the action was never saved."""
        record = await self.load_record(session_id, flow_id, transaction_id, action)
        return None if record is None else record.snapshot

    async def close(self):
        pass

# ============================================
# IN-MEMORY BACKEND
# ============================================

class InMemoryActionStore(ActionStore):
    """
    Process-local store for tests and single-process deployments.

    Besides the latest snapshot per key it keeps the append-only log of
    every save per flow, so re-sent actions remain visible for diagnostics.
    """

    def __init__(self):
        self.records: Dict[str, ActionRecord] = {}
        self.flow_logs: Dict[Tuple[str, str, str], List[ActionRecord]] = {}

    async def save(self, session_id, flow_id, transaction_id, action, snapshot):
        record = ActionRecord(action=action.lower(), snapshot=dict(snapshot or {}))
        key = snapshot_key(session_id, flow_id, transaction_id, action)
        if key in self.records:
            logger.info(f"OVERWRITE {key} (last write wins)")
        self.records[key] = record
        self.flow_logs.setdefault((session_id, flow_id, transaction_id), []).append(record)
        record_store_operation("save", "ok")

    async def load_record(self, session_id, flow_id, transaction_id, action):
        record = self.records.get(snapshot_key(session_id, flow_id, transaction_id, action))
        record_store_operation("load", "ok" if record else "miss")
        return record

    def flow_log(self, session_id: str, flow_id: str, transaction_id: str) -> List[ActionRecord]:
        """Every save for the flow, in arrival order."""
        return list(self.flow_logs.get((session_id, flow_id, transaction_id), []))

    def clear(self):
        self.records.clear()
        self.flow_logs.clear()

# ============================================
# CIRCUIT BREAKER
# ============================================

class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

@dataclass
class CircuitBreaker:
    """Stops hammering an unhealthy store; one trial call after the recovery timeout."""
    failure_threshold: int = 5
    recovery_timeout: float = 30.0

    def __post_init__(self):
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time = 0.0

    def can_attempt(self) -> bool:
        if self.state == CircuitState.CLOSED:
            return True
        if self.state == CircuitState.OPEN:
            if time.monotonic() - self.last_failure_time >= self.recovery_timeout:
                self.state = CircuitState.HALF_OPEN
                logger.info("Circuit breaker half-open (testing recovery)")
                return True
            return False
        return True

    def record_success(self):
        if self.state != CircuitState.CLOSED:
            logger.info("Circuit breaker closed (recovered)")
        self.state = CircuitState.CLOSED
        self.failure_count = 0

    def record_failure(self):
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            if self.state != CircuitState.OPEN:
                logger.warning(f"Circuit breaker opened after {self.failure_count} failures")
            self.state = CircuitState.OPEN

# ============================================
# REDIS BACKEND
# ============================================

class RedisActionStore(ActionStore):
    """Shared store backed by redis.asyncio; values are JSON ActionRecords."""

    def __init__(
        self,
        client,
        key_prefix: str = "bfc",
        ttl_seconds: Optional[int] = 3600,
        circuit_breaker: Optional[CircuitBreaker] = None
    ):
        self.client = client
        self.key_prefix = key_prefix
        self.ttl_seconds = ttl_seconds or None
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

    @classmethod
    def from_settings(cls, settings) -> "RedisActionStore":
        client = aioredis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            db=settings.redis_db,
            password=settings.redis_password,
            ssl=settings.redis_ssl,
            decode_responses=True
        )
        logger.info(
            f"Redis action store: host={settings.redis_host}:{settings.redis_port} "
            f"db={settings.redis_db} ttl={settings.ttl}"
        )
        return cls(
            client,
            key_prefix=settings.key_prefix,
            ttl_seconds=settings.ttl,
            circuit_breaker=CircuitBreaker(
                failure_threshold=settings.circuit_failure_threshold,
                recovery_timeout=settings.circuit_recovery_seconds
            )
        )

    def _key(self, session_id, flow_id, transaction_id, action) -> str:
        return snapshot_key(session_id, flow_id, transaction_id, action, prefix=self.key_prefix)

    def _guard(self, operation: str, key: str):
        if not self.circuit_breaker.can_attempt():
            record_store_operation(operation, "error")
            raise CircuitBreakerOpen(f"Action store circuit open; {operation} {key} refused")

    async def save(self, session_id, flow_id, transaction_id, action, snapshot):
        key = self._key(session_id, flow_id, transaction_id, action)
        self._guard("save", key)
        record = ActionRecord(action=action.lower(), snapshot=dict(snapshot or {}))
        try:
            if self.ttl_seconds:
                await self.client.set(key, record.to_json(), ex=self.ttl_seconds)
            else:
                await self.client.set(key, record.to_json())
        except (RedisError, OSError) as e:
            self.circuit_breaker.record_failure()
            record_store_operation("save", "error")
            raise ActionStoreError(f"save {key} failed: {e}") from e
        self.circuit_breaker.record_success()
        record_store_operation("save", "ok")

    async def load_record(self, session_id, flow_id, transaction_id, action):
        key = self._key(session_id, flow_id, transaction_id, action)
        self._guard("load", key)
        try:
            data = await self.client.get(key)
        except (RedisError, OSError) as e:
            self.circuit_breaker.record_failure()
            record_store_operation("load", "error")
            raise ActionStoreError(f"load {key} failed: {e}") from e
        self.circuit_breaker.record_success()

        if data is None:
            record_store_operation("load", "miss")
            return None
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        try:
            record = ActionRecord.from_json(data)
        except (ValueError, TypeError) as e:
            record_store_operation("load", "error")
            raise ActionStoreError(f"load {key}: stored value is not valid JSON: {e}") from e
        record_store_operation("load", "ok")
        return record

    async def close(self):
        # redis-py 5 renamed close() to aclose()
        closer = getattr(self.client, "aclose", None) or self.client.close
        await closer()

# ============================================
# FACTORY
# ============================================

def build_action_store(settings) -> ActionStore:
    """Instantiate the configured backend."""
    if settings.store_backend == "redis":
        return RedisActionStore.from_settings(settings)
    return InMemoryActionStore()
