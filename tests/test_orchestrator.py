import pytest

from decision_memory.dependencies.store_backend import StaticStoreBackend, StoreBackendError
from decision_memory.feedback_loop import orchestrator
from decision_memory.feedback_loop.client_api import DecisionMemoryClient
from decision_memory.feedback_loop.orchestrator import build_default_decision_memory
from decision_memory.services.lifecycle import StoreState
from tests.fixtures.decision_factory import make_event
from tests.fixtures.redis_mock import MockRedisClient


def test_default_memory_runs_in_process_without_redis(monkeypatch) -> None:
    monkeypatch.setattr(orchestrator, "get_redis_client", lambda: None)

    memory = build_default_decision_memory()

    assert isinstance(memory, DecisionMemoryClient)
    assert isinstance(memory.lifecycle._backend, StaticStoreBackend)
    assert memory.publish(make_event("evt-1")) is True
    assert memory.transport.depth() == 1


def test_ecs_backend_requires_cluster_and_service(monkeypatch) -> None:
    monkeypatch.setattr(orchestrator, "get_redis_client", lambda: None)
    monkeypatch.setenv("STORE_BACKEND", "ecs")
    monkeypatch.delenv("STORE_ECS_CLUSTER", raising=False)
    monkeypatch.delenv("STORE_ECS_SERVICE", raising=False)

    with pytest.raises(StoreBackendError):
        build_default_decision_memory()


def test_publish_never_raises_when_transport_is_down(make_memory, clock) -> None:
    redis = MockRedisClient(clock=clock)
    memory = make_memory(redis_client=redis)
    redis.down = True

    assert memory.publish(make_event("evt-1")) is False


def test_publish_counts_as_producer_activity(make_memory, clock) -> None:
    memory = make_memory()
    memory.lifecycle._state = StoreState.IDLE_RUNNING

    memory.publish(make_event("evt-1"))

    assert memory.lifecycle.state is StoreState.RUNNING


def test_signal_activity_swallows_lifecycle_errors(make_memory, monkeypatch) -> None:
    memory = make_memory()

    def _boom(source: str = "user") -> None:
        raise RuntimeError("tracker unavailable")

    monkeypatch.setattr(memory.lifecycle, "signal_activity", _boom)

    memory.signal_activity()
