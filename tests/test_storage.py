import pytest

from decision_memory.dependencies.chroma import COLLECTION_METADATA
from decision_memory.models import EventType, StoredDecision
from decision_memory.services.storage import DecisionStore, StoreUnavailableError
from tests.fixtures.decision_factory import embed, make_event


def _stored(event_id: str, **kwargs) -> StoredDecision:
    event = make_event(event_id, **kwargs)
    return StoredDecision.from_event(event, embed(event.context_text))


def test_collection_created_for_cosine(store: DecisionStore, chroma) -> None:
    store.upsert(_stored("evt-1"))

    collection = chroma.get_collection("test_decisions")
    assert collection.metadata == COLLECTION_METADATA
    assert collection.metadata["hnsw:space"] == "cosine"


def test_upsert_is_keyed_by_event_id(store: DecisionStore) -> None:
    store.upsert(_stored("evt-1", verdict="discard"))
    store.upsert(_stored("evt-1", verdict="keep"))

    assert store.count() == 1
    assert store.exists("evt-1") is True
    assert store.exists("evt-2") is False
    [decision] = list(store.iter_decisions())
    assert decision.payload.verdict == "keep"


def test_query_scores_are_cosine_similarity(store: DecisionStore) -> None:
    stored = _stored("evt-1", context_text="keep sharp portrait")
    store.upsert(stored)

    [hit] = store.query(embed("keep sharp portrait"), n_results=3)

    assert hit.decision.event_id == "evt-1"
    assert hit.score == pytest.approx(1.0)


def test_query_filters_by_event_type(store: DecisionStore) -> None:
    store.upsert(_stored("evt-1", context_text="same text"))
    store.upsert(_stored("evt-2", context_text="same text", event_type=EventType.PUBLISH_ACTION))

    hits = store.query(embed("same text"), n_results=5, event_type=EventType.PUBLISH_ACTION)

    assert [hit.decision.event_id for hit in hits] == ["evt-2"]


def test_iter_decisions_pages_through_everything(store: DecisionStore) -> None:
    for idx in range(5):
        store.upsert(_stored(f"evt-{idx}", subject_ref=f"media-{idx}"))

    ids = [decision.event_id for decision in store.iter_decisions(page_size=2)]

    assert ids == [f"evt-{idx}" for idx in range(5)]


def test_stopped_store_raises_store_unavailable(store: DecisionStore, chroma) -> None:
    chroma.available = False

    with pytest.raises(StoreUnavailableError):
        store.upsert(_stored("evt-1"))
    with pytest.raises(StoreUnavailableError):
        store.ping()
    with pytest.raises(StoreUnavailableError):
        store.count()
