"""Policy objects that govern ingestion retries, retrieval, store lifecycle and profile builds."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from decision_memory import config


@dataclass(frozen=True)
class IngestionPolicy:
    """Retry and batching behaviour of the ingestion worker."""

    embedding_attempts: int = 3
    """In-process attempts at embedding one event before it is dead-lettered."""

    embedding_backoff: timedelta = timedelta(milliseconds=250)
    """First embedding retry delay; doubles on each further attempt."""

    max_deliveries: int = 5
    """Transport deliveries allowed before an event is dead-lettered."""

    redelivery_delay: timedelta = timedelta(seconds=15)
    """Delay before a handed-back event becomes visible again. Doubles per delivery."""

    visibility_timeout: timedelta = timedelta(seconds=60)
    """How long a received event stays hidden from other consumers."""

    batch_size: int = 10
    concurrency: int = 4

    poll_interval: timedelta = timedelta(seconds=1)
    """Sleep between polls when the transport is empty."""

    @classmethod
    def from_config(cls) -> "IngestionPolicy":
        return cls(
            embedding_attempts=max(1, config.get_embedding_max_attempts()),
            max_deliveries=max(1, config.get_ingestion_max_deliveries()),
            redelivery_delay=timedelta(seconds=config.get_ingestion_redelivery_seconds()),
            visibility_timeout=timedelta(seconds=config.get_ingestion_visibility_seconds()),
            batch_size=max(1, config.get_ingestion_batch_size()),
            concurrency=max(1, config.get_ingestion_concurrency()),
            poll_interval=timedelta(seconds=config.get_ingestion_poll_seconds()),
        )


@dataclass(frozen=True)
class RetrievalPolicy:
    """Controls how past decisions are surfaced to prompt construction."""

    top_k: int = 5
    default_timeout: timedelta = timedelta(milliseconds=1500)

    candidate_multiplier: int = 3
    """Over-fetch factor so recency tie-breaks see every equally scored neighbour."""

    min_score: float = 0.0

    @classmethod
    def from_config(cls) -> "RetrievalPolicy":
        return cls(
            top_k=max(1, config.get_retrieval_top_k()),
            default_timeout=timedelta(milliseconds=max(1, config.get_retrieval_timeout_ms())),
        )


@dataclass(frozen=True)
class LifecyclePolicy:
    """Idle thresholds and startup bounds for the on-demand vector store."""

    idle_after: timedelta = timedelta(minutes=30)
    """No activity for this long moves ``running`` to ``idle-running``."""

    stop_after: timedelta = timedelta(minutes=90)
    """Further idle time in ``idle-running`` before the store is stopped."""

    start_timeout: timedelta = timedelta(seconds=120)
    status_poll_interval: timedelta = timedelta(seconds=5)

    @classmethod
    def from_config(cls) -> "LifecyclePolicy":
        return cls(
            idle_after=timedelta(minutes=config.get_store_idle_after_minutes()),
            stop_after=timedelta(minutes=config.get_store_stop_after_minutes()),
            start_timeout=timedelta(seconds=config.get_store_start_timeout_seconds()),
            status_poll_interval=timedelta(seconds=config.get_store_status_poll_seconds()),
        )


@dataclass(frozen=True)
class ProfilePolicy:
    """Shape and locking of the periodic preference profile build."""

    style_examples: int = 10
    page_size: int = 500
    lock_ttl: timedelta = timedelta(minutes=15)
    """Run-lock expiry; bounds how long a crashed build can block the next one."""

    @classmethod
    def from_config(cls) -> "ProfilePolicy":
        return cls(
            style_examples=max(0, config.get_profile_style_examples()),
            lock_ttl=timedelta(seconds=max(1, config.get_profile_lock_ttl_seconds())),
        )
