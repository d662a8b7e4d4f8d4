import asyncio
from dataclasses import replace

from decision_memory.dependencies.store_backend import STATUS_AVAILABLE, STATUS_STARTING, STATUS_STOPPED
from decision_memory.feedback_loop.ingestion import IngestionOutcome
from decision_memory.services.embedding_utils import EmbeddingError
from decision_memory.services.lifecycle import StoreState
from decision_memory.services.profile_builder import compute_rule_based_stats
from tests.fixtures.decision_factory import FAST_INGESTION, embed, make_event
from tests.fixtures.redis_mock import MockRedisClient


def test_redelivered_event_is_stored_once(make_memory, store) -> None:
    memory = make_memory()
    event = make_event("evt-1", reason="sharp focus")

    async def scenario():
        await memory.lifecycle.refresh()
        assert memory.publish(event)
        first = await memory.worker.run_once()
        # Producer retries and a raw re-publish of the same event
        assert memory.publish(event)
        assert memory.publish(event.model_dump(mode="json"))
        second = await memory.worker.run_once()
        return first, second

    first, second = asyncio.run(scenario())

    assert first == {IngestionOutcome.STORED: 1}
    assert second == {IngestionOutcome.DUPLICATE: 1}
    assert store.count() == 1
    stats = compute_rule_based_stats(store.iter_decisions())
    assert stats["total_decisions"] == 1
    assert stats["categories"]["triage-verdict"]["kept"] == 1


def test_lost_ack_redelivery_is_a_duplicate(make_memory, store) -> None:
    memory = make_memory()

    async def scenario():
        await memory.lifecycle.refresh()
        memory.publish(make_event("evt-1"))
        delivery = memory.transport.receive(1, 30)[0]
        first = await memory.worker.process(delivery)
        second = await memory.worker.process(delivery)
        return first, second

    assert asyncio.run(scenario()) == (IngestionOutcome.STORED, IngestionOutcome.DUPLICATE)
    assert store.count() == 1


def test_malformed_event_goes_to_dead_letter(make_memory, store) -> None:
    memory = make_memory()
    body = make_event("evt-bad").model_dump(mode="json")
    del body["context_text"]

    async def scenario():
        await memory.lifecycle.refresh()
        assert memory.publish(body) is True
        return await memory.worker.run_once()

    assert asyncio.run(scenario()) == {IngestionOutcome.DEAD_LETTERED: 1}

    dead = memory.transport.list_dead_letters()
    assert [entry.message_id for entry in dead] == ["evt-bad"]
    assert dead[0].reason.startswith("invalid_event")
    assert "context_text" in dead[0].reason
    assert store.count() == 0
    assert memory.transport.depth() == 0


def test_non_object_body_goes_to_dead_letter(make_memory) -> None:
    memory = make_memory()
    memory.transport.enqueue(["not", "an", "event"])

    async def scenario():
        await memory.lifecycle.refresh()
        return await memory.worker.run_once()

    assert asyncio.run(scenario()) == {IngestionOutcome.DEAD_LETTERED: 1}
    assert "not an object" in memory.transport.list_dead_letters()[0].reason


def test_embedding_failures_exhaust_then_dead_letter(make_memory, store) -> None:
    calls = []

    def failing_embed(text):
        calls.append(text)
        raise EmbeddingError("provider timeout")

    memory = make_memory(embed_fn=failing_embed)

    async def scenario():
        await memory.lifecycle.refresh()
        memory.publish(make_event("evt-1"))
        return await memory.worker.run_once()

    assert asyncio.run(scenario()) == {IngestionOutcome.DEAD_LETTERED: 1}
    assert len(calls) == FAST_INGESTION.embedding_attempts
    assert memory.transport.list_dead_letters()[0].reason.startswith("embedding_failed")
    assert store.count() == 0


def test_transient_embedding_failure_is_retried_in_process(make_memory, store) -> None:
    attempts = []

    def flaky_embed(text):
        attempts.append(text)
        if len(attempts) == 1:
            raise TimeoutError("slow provider")
        return embed(text)

    memory = make_memory(embed_fn=flaky_embed)

    async def scenario():
        await memory.lifecycle.refresh()
        memory.publish(make_event("evt-1"))
        return await memory.worker.run_once()

    assert asyncio.run(scenario()) == {IngestionOutcome.STORED: 1}
    assert len(attempts) == 2
    assert store.count() == 1


def test_stopped_store_triggers_start_and_event_is_redelivered(make_memory, backend, clock, store) -> None:
    backend.set_status(STATUS_STOPPED)
    # The store takes a while to come up
    backend.start_to = STATUS_STARTING
    memory = make_memory()

    async def scenario():
        assert memory.publish(make_event("evt-1"))
        first = await memory.worker.run_once()
        state_during_start = memory.lifecycle.state

        for _ in range(200):
            if backend.start_calls:
                break
            await asyncio.sleep(0.01)
        backend.set_status(STATUS_AVAILABLE)
        started = await memory.lifecycle.start()

        clock.advance(FAST_INGESTION.redelivery_delay.total_seconds() + 1)
        second = await memory.worker.run_once()
        return first, state_during_start, started, second

    first, state_during_start, started, second = asyncio.run(scenario())

    assert first == {IngestionOutcome.RETRY_SCHEDULED: 1}
    assert state_during_start is StoreState.STARTING
    assert started is True
    assert second == {IngestionOutcome.STORED: 1}
    assert backend.start_calls == 1
    assert store.count() == 1
    assert memory.transport.dead_letter_count() == 0


def test_retries_exhaust_to_dead_letter_when_store_never_starts(make_memory, backend, clock) -> None:
    backend.set_status(STATUS_STOPPED)
    backend.fail = True
    memory = make_memory()

    async def scenario():
        memory.publish(make_event("evt-1"))
        outcomes = []
        for _ in range(FAST_INGESTION.max_deliveries):
            outcomes.append(await memory.worker.run_once())
            clock.advance(600)
        return outcomes

    outcomes = asyncio.run(scenario())

    assert outcomes == [
        {IngestionOutcome.RETRY_SCHEDULED: 1},
        {IngestionOutcome.RETRY_SCHEDULED: 1},
        {IngestionOutcome.DEAD_LETTERED: 1},
    ]
    dead = memory.transport.list_dead_letters()[0]
    assert "deliveries exhausted" in dead.reason
    assert dead.attempts == FAST_INGESTION.max_deliveries


def test_redelivery_delay_doubles_per_attempt(make_memory, backend, clock) -> None:
    backend.set_status(STATUS_STOPPED)
    backend.fail = True
    policy = replace(FAST_INGESTION, max_deliveries=5)
    memory = make_memory(ingestion_policy=policy)

    async def scenario():
        memory.publish(make_event("evt-1"))
        await memory.worker.run_once()
        clock.advance(11)
        await memory.worker.run_once()
        # Second handback waits 20s, so nothing is due after 11s
        clock.advance(11)
        early = await memory.worker.run_once()
        clock.advance(10)
        due = await memory.worker.run_once()
        return early, due

    early, due = asyncio.run(scenario())
    assert early == {}
    assert due == {IngestionOutcome.RETRY_SCHEDULED: 1}


def test_publish_never_raises_when_everything_is_down(make_memory, backend) -> None:
    redis_client = MockRedisClient()
    redis_client.down = True
    backend.set_status(STATUS_STOPPED)
    backend.fail = True

    def broken_embed(text):
        raise EmbeddingError("down")

    memory = make_memory(redis_client=redis_client, embed_fn=broken_embed)

    assert memory.publish(make_event("evt-1")) is False
    assert memory.publish("not a mapping") is False


def test_publish_succeeds_while_store_and_embeddings_are_down(make_memory, backend) -> None:
    backend.set_status(STATUS_STOPPED)
    backend.fail = True

    def broken_embed(text):
        raise EmbeddingError("down")

    memory = make_memory(embed_fn=broken_embed)

    assert memory.publish(make_event("evt-1")) is True
    assert memory.transport.depth() == 1


def test_background_worker_drains_transport(make_memory, store) -> None:
    memory = make_memory()

    async def scenario():
        await memory.lifecycle.refresh()
        await memory.worker.start()
        for idx in range(3):
            memory.publish(make_event(f"evt-{idx}", subject_ref=f"media-{idx}"))
        for _ in range(300):
            if memory.worker.totals[IngestionOutcome.STORED] == 3:
                break
            await asyncio.sleep(0.01)
        await memory.worker.stop()

    asyncio.run(scenario())

    assert memory.worker.running is False
    assert memory.worker.totals[IngestionOutcome.STORED] == 3
    assert store.count() == 3
