"""At-least-once transport carrying decision events to the ingestion worker.

Redis layout (``<ns>`` is the configured namespace):

* ``<ns>:transport:pending``  sorted set, member = message id, score = visible-at epoch
* ``<ns>:transport:bodies``   hash, message id -> JSON body
* ``<ns>:transport:attempts`` hash, message id -> delivery count
* ``<ns>:transport:lease:<id>`` short-lived claim taken with ``SET NX PX``
* ``<ns>:transport:dead``     hash, message id -> dead-letter entry JSON

A received message is pushed into the future by the visibility timeout; if
the consumer neither acknowledges nor hands it back, it becomes visible again
and is redelivered. Without Redis the same semantics are kept in process.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional


logger = logging.getLogger("decision_memory.transport")


@dataclass(slots=True)
class Delivery:
    """One delivery of a message. ``attempt`` counts deliveries, starting at 1."""

    message_id: str
    body: Any
    attempt: int


@dataclass(slots=True)
class DeadLetter:
    message_id: str
    body: Any
    reason: str
    attempts: int
    dead_lettered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "body": self.body,
            "reason": self.reason,
            "attempts": self.attempts,
            "dead_lettered_at": self.dead_lettered_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "DeadLetter":
        raw_ts = payload.get("dead_lettered_at")
        try:
            ts = datetime.fromisoformat(raw_ts) if isinstance(raw_ts, str) else datetime.now(timezone.utc)
        except ValueError:
            ts = datetime.now(timezone.utc)
        return cls(
            message_id=str(payload.get("message_id", "")),
            body=payload.get("body"),
            reason=str(payload.get("reason", "")),
            attempts=int(payload.get("attempts", 0) or 0),
            dead_lettered_at=ts,
        )


def message_id_for(body: Any) -> str:
    """Use the producer's idempotency key when present so re-publishes collapse."""
    if isinstance(body, Mapping):
        event_id = body.get("event_id")
        if isinstance(event_id, str) and event_id.strip():
            return event_id
    return f"msg_{uuid.uuid4().hex}"


def _decode(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        return raw


class DecisionTransport:
    """Durable queue with visibility timeouts and a dead-letter hash."""

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        *,
        namespace: str = "decision_memory",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis_client
        self._clock = clock
        prefix = f"{namespace}:transport"
        self._pending_key = f"{prefix}:pending"
        self._bodies_key = f"{prefix}:bodies"
        self._attempts_key = f"{prefix}:attempts"
        self._dead_key = f"{prefix}:dead"
        self._lease_prefix = f"{prefix}:lease:"
        # In-process fallback state
        self._lock = threading.Lock()
        self._pending: Dict[str, float] = {}
        self._bodies: Dict[str, str] = {}
        self._attempts: Dict[str, int] = {}
        self._dead: Dict[str, str] = {}

    @property
    def uses_redis(self) -> bool:
        return self._redis is not None

    def _lease_key(self, message_id: str) -> str:
        return f"{self._lease_prefix}{message_id}"

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------
    def enqueue(self, body: Any) -> str:
        """Queue ``body`` for delivery and return its message id.

        Publishing a message id that is still pending keeps the first body.
        """
        message_id = message_id_for(body)
        raw = json.dumps(body, default=str, sort_keys=True)
        now = self._clock()
        if self._redis is not None:
            self._redis.hsetnx(self._bodies_key, message_id, raw)
            self._redis.zadd(self._pending_key, {message_id: now}, nx=True)
        else:
            with self._lock:
                self._bodies.setdefault(message_id, raw)
                self._pending.setdefault(message_id, now)
        logger.debug("[transport.enqueue] message_id=%s", message_id)
        return message_id

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------
    def receive(self, max_messages: int, visibility_timeout: float) -> List[Delivery]:
        now = self._clock()
        if self._redis is None:
            return self._receive_local(now, max_messages, visibility_timeout)

        deliveries: List[Delivery] = []
        candidates = self._redis.zrangebyscore(
            self._pending_key, "-inf", now, start=0, num=max_messages
        )
        for message_id in candidates:
            lease_key = self._lease_key(message_id)
            if not self._redis.set(lease_key, "1", nx=True, px=max(1, int(visibility_timeout * 1000))):
                continue
            self._redis.zadd(self._pending_key, {message_id: now + visibility_timeout}, xx=True)
            raw = self._redis.hget(self._bodies_key, message_id)
            if raw is None:
                # Acknowledged by another consumer between the scan and the claim
                self._redis.zrem(self._pending_key, message_id)
                self._redis.delete(lease_key)
                continue
            attempt = int(self._redis.hincrby(self._attempts_key, message_id, 1))
            deliveries.append(Delivery(message_id=message_id, body=_decode(raw), attempt=attempt))
        return deliveries

    def _receive_local(self, now: float, max_messages: int, visibility_timeout: float) -> List[Delivery]:
        deliveries: List[Delivery] = []
        with self._lock:
            due = sorted(
                (score, message_id) for message_id, score in self._pending.items() if score <= now
            )
            for _, message_id in due[:max_messages]:
                self._pending[message_id] = now + visibility_timeout
                attempt = self._attempts.get(message_id, 0) + 1
                self._attempts[message_id] = attempt
                deliveries.append(
                    Delivery(message_id=message_id, body=_decode(self._bodies[message_id]), attempt=attempt)
                )
        return deliveries

    def ack(self, delivery: Delivery) -> None:
        self._forget(delivery.message_id)

    def requeue(self, delivery: Delivery, delay_seconds: float) -> None:
        """Hand a delivery back; it becomes visible again after ``delay_seconds``."""
        visible_at = self._clock() + max(0.0, delay_seconds)
        if self._redis is not None:
            self._redis.zadd(self._pending_key, {delivery.message_id: visible_at}, xx=True)
            self._redis.delete(self._lease_key(delivery.message_id))
        else:
            with self._lock:
                if delivery.message_id in self._pending:
                    self._pending[delivery.message_id] = visible_at

    def dead_letter(self, delivery: Delivery, reason: str) -> DeadLetter:
        entry = DeadLetter(
            message_id=delivery.message_id,
            body=delivery.body,
            reason=reason,
            attempts=delivery.attempt,
        )
        raw = json.dumps(entry.to_dict(), default=str)
        if self._redis is not None:
            self._redis.hset(self._dead_key, delivery.message_id, raw)
        else:
            with self._lock:
                self._dead[delivery.message_id] = raw
        self._forget(delivery.message_id)
        logger.warning(
            "[transport.dead_letter] message_id=%s attempts=%s reason=%s",
            delivery.message_id,
            delivery.attempt,
            reason,
        )
        return entry

    def _forget(self, message_id: str) -> None:
        if self._redis is not None:
            self._redis.zrem(self._pending_key, message_id)
            self._redis.hdel(self._bodies_key, message_id)
            self._redis.hdel(self._attempts_key, message_id)
            self._redis.delete(self._lease_key(message_id))
        else:
            with self._lock:
                self._pending.pop(message_id, None)
                self._bodies.pop(message_id, None)
                self._attempts.pop(message_id, None)

    # ------------------------------------------------------------------
    # Operator side
    # ------------------------------------------------------------------
    def list_dead_letters(self, limit: int = 100) -> List[DeadLetter]:
        if self._redis is not None:
            raw_entries = list(self._redis.hvals(self._dead_key) or [])
        else:
            with self._lock:
                raw_entries = list(self._dead.values())
        entries = [DeadLetter.from_dict(json.loads(raw)) for raw in raw_entries]
        entries.sort(key=lambda entry: entry.dead_lettered_at, reverse=True)
        return entries[:limit]

    def replay_dead_letter(self, message_id: str) -> bool:
        """Move a dead letter back onto the queue with a fresh delivery budget."""
        if self._redis is not None:
            raw = self._redis.hget(self._dead_key, message_id)
        else:
            with self._lock:
                raw = self._dead.get(message_id)
        if raw is None:
            return False
        entry = DeadLetter.from_dict(json.loads(raw))
        body_raw = json.dumps(entry.body, default=str, sort_keys=True)
        now = self._clock()
        if self._redis is not None:
            self._redis.hset(self._bodies_key, message_id, body_raw)
            self._redis.hdel(self._attempts_key, message_id)
            self._redis.zadd(self._pending_key, {message_id: now})
            self._redis.hdel(self._dead_key, message_id)
        else:
            with self._lock:
                self._bodies[message_id] = body_raw
                self._attempts.pop(message_id, None)
                self._pending[message_id] = now
                self._dead.pop(message_id, None)
        logger.info("[transport.replay] message_id=%s reason=%s", message_id, entry.reason)
        return True

    def purge_dead_letter(self, message_id: str) -> bool:
        if self._redis is not None:
            return bool(self._redis.hdel(self._dead_key, message_id))
        with self._lock:
            return self._dead.pop(message_id, None) is not None

    def depth(self) -> int:
        if self._redis is not None:
            return int(self._redis.zcard(self._pending_key) or 0)
        with self._lock:
            return len(self._pending)

    def dead_letter_count(self) -> int:
        if self._redis is not None:
            return int(self._redis.hlen(self._dead_key) or 0)
        with self._lock:
            return len(self._dead)
