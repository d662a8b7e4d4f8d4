"""Builders for decision events, clocks and fast policies used across tests."""

from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

from decision_memory.models import DecisionEvent, DecisionPayload, EventType
from decision_memory.policies import IngestionPolicy, LifecyclePolicy
from decision_memory.services.embedding_utils import hashed_embedding


TEST_DIMENSIONS = 64
BASE_TIME = datetime(2026, 5, 4, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Wall clock the tests move by hand."""

    def __init__(self, start: float = 1_800_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


def embed(text: str, timeout: Optional[float] = None) -> List[float]:
    return hashed_embedding(text, TEST_DIMENSIONS)


def make_event(
    event_id: str,
    *,
    event_type: EventType = EventType.TRIAGE_VERDICT,
    subject_ref: str = "media-1",
    context_text: Optional[str] = None,
    minutes: int = 0,
    session_ref: str = "session-1",
    **payload: Any,
) -> DecisionEvent:
    payload.setdefault("verdict", "keep")
    return DecisionEvent(
        event_id=event_id,
        event_type=event_type,
        subject_ref=subject_ref,
        payload=DecisionPayload(**payload),
        context_text=context_text or f"{event_type.value} {payload['verdict']} {subject_ref}",
        occurred_at=BASE_TIME + timedelta(minutes=minutes),
        session_ref=session_ref,
    )


FAST_INGESTION = IngestionPolicy(
    embedding_attempts=3,
    embedding_backoff=timedelta(0),
    max_deliveries=3,
    redelivery_delay=timedelta(seconds=10),
    visibility_timeout=timedelta(seconds=30),
    batch_size=10,
    concurrency=4,
    poll_interval=timedelta(milliseconds=10),
)

FAST_LIFECYCLE = LifecyclePolicy(
    idle_after=timedelta(minutes=30),
    stop_after=timedelta(minutes=90),
    start_timeout=timedelta(seconds=2),
    status_poll_interval=timedelta(milliseconds=10),
)
