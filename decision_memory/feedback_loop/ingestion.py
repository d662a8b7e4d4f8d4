"""Ingestion worker: transport -> validation -> embedding -> idempotent upsert."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import Counter
from enum import Enum
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from decision_memory.feedback_loop.transport import DecisionTransport, Delivery
from decision_memory.models import DecisionEvent, StoredDecision
from decision_memory.policies import IngestionPolicy
from decision_memory.services.embedding_utils import EmbeddingError, generate_embedding
from decision_memory.services.lifecycle import LifecycleController
from decision_memory.services.storage import DecisionStore, StoreUnavailableError


logger = logging.getLogger("decision_memory.ingestion")


class IngestionOutcome(str, Enum):
    STORED = "stored"
    DUPLICATE = "duplicate"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED = "dead_lettered"


def describe_validation_error(exc: ValidationError) -> str:
    fields = sorted({".".join(str(part) for part in err.get("loc", ())) or "<root>" for err in exc.errors()})
    return "invalid_event: " + ", ".join(fields)


class IngestionWorker:
    """Consumes decision events and writes them to the vector store.

    Store mutation is the only side effect. Failures are contained: transient
    ones go back to the transport with backoff, permanent ones go to the
    dead-letter sink.
    """

    def __init__(
        self,
        transport: DecisionTransport,
        store: DecisionStore,
        lifecycle: LifecycleController,
        *,
        embed_fn: Callable[[str], List[float]] = generate_embedding,
        policy: IngestionPolicy = IngestionPolicy(),
    ) -> None:
        self._transport = transport
        self._store = store
        self._lifecycle = lifecycle
        self._embed = embed_fn
        self._policy = policy
        self._semaphore = asyncio.Semaphore(max(1, policy.concurrency))
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.totals: Counter = Counter()

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------
    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run_loop())
        logger.info("[ingest.worker.started]")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("[ingest.worker.stopped]")

    async def _run_loop(self) -> None:
        poll = self._policy.poll_interval.total_seconds()
        while self._running:
            try:
                processed = await self.run_once()
            except Exception:
                logger.exception("[ingest.worker.poll_failed]")
                processed = {}
            if not processed:
                await asyncio.sleep(poll)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------
    async def run_once(self) -> Dict[IngestionOutcome, int]:
        """Receive one batch and process it concurrently; returns outcome counts."""
        deliveries = await asyncio.to_thread(
            self._transport.receive,
            self._policy.batch_size,
            self._policy.visibility_timeout.total_seconds(),
        )
        if not deliveries:
            return {}
        outcomes = await asyncio.gather(*(self._process_guarded(d) for d in deliveries))
        counts = Counter(outcomes)
        self.totals.update(counts)
        return dict(counts)

    async def _process_guarded(self, delivery: Delivery) -> IngestionOutcome:
        async with self._semaphore:
            try:
                return await self.process(delivery)
            except Exception as e:
                logger.exception("[ingest.unexpected] message_id=%s", delivery.message_id)
                return self._retry(delivery, f"unexpected_error: {type(e).__name__}")

    def _retry(self, delivery: Delivery, reason: str) -> IngestionOutcome:
        if delivery.attempt >= self._policy.max_deliveries:
            self._transport.dead_letter(delivery, f"{reason} (deliveries exhausted)")
            return IngestionOutcome.DEAD_LETTERED
        base = self._policy.redelivery_delay.total_seconds()
        delay = base * (2 ** (delivery.attempt - 1))
        self._transport.requeue(delivery, delay)
        logger.info(
            "[ingest.retry] message_id=%s attempt=%s delay=%.1fs reason=%s",
            delivery.message_id,
            delivery.attempt,
            delay,
            reason,
        )
        return IngestionOutcome.RETRY_SCHEDULED

    async def _embed_with_retries(self, text: str) -> List[float]:
        attempts = max(1, self._policy.embedding_attempts)
        backoff = self._policy.embedding_backoff.total_seconds()
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                embedding = await asyncio.to_thread(self._embed, text)
                if not embedding:
                    raise EmbeddingError("empty embedding")
                return embedding
            except Exception as e:
                last_error = e
                logger.warning("[ingest.embed.retry] attempt=%s/%s error=%s", attempt, attempts, e)
                if attempt < attempts:
                    await asyncio.sleep(backoff * (2 ** (attempt - 1)))
        raise EmbeddingError(f"embedding failed after {attempts} attempts: {last_error}")

    async def process(self, delivery: Delivery) -> IngestionOutcome:
        # (a) validate; malformed input is never retried
        if not isinstance(delivery.body, dict):
            self._transport.dead_letter(delivery, "invalid_event: body is not an object")
            return IngestionOutcome.DEAD_LETTERED
        try:
            event = DecisionEvent.model_validate(delivery.body)
        except ValidationError as e:
            self._transport.dead_letter(delivery, describe_validation_error(e))
            return IngestionOutcome.DEAD_LETTERED

        self._lifecycle.record_activity("ingestion")

        # Never write to a store that is not running: ask for a start and redeliver later
        if not self._lifecycle.is_available:
            self._lifecycle.request_start()
            return self._retry(delivery, f"store_unavailable: {self._lifecycle.state.value}")

        try:
            if await asyncio.to_thread(self._store.exists, event.event_id):
                self._transport.ack(delivery)
                logger.info("[ingest.duplicate] event_id=%s", event.event_id)
                return IngestionOutcome.DUPLICATE
        except StoreUnavailableError as e:
            self._lifecycle.report_unreachable()
            return self._retry(delivery, f"store_unavailable: {e}")

        # (b) embed, bounded in-process retries
        try:
            embedding = await self._embed_with_retries(event.context_text)
        except EmbeddingError as e:
            self._transport.dead_letter(delivery, f"embedding_failed: {e}")
            return IngestionOutcome.DEAD_LETTERED

        # (c) upsert keyed by event_id
        stored = StoredDecision.from_event(event, embedding)
        try:
            await asyncio.to_thread(self._store.upsert, stored)
        except StoreUnavailableError as e:
            self._lifecycle.report_unreachable()
            return self._retry(delivery, f"store_unavailable: {e}")

        self._transport.ack(delivery)
        logger.info(
            "[ingest.stored] event_id=%s event_type=%s attempt=%s",
            event.event_id,
            event.event_type.value,
            delivery.attempt,
        )
        return IngestionOutcome.STORED
