from importlib import reload
import warnings
from typing import Any, Callable, Dict, Optional

warnings.filterwarnings(
    "ignore",
    category=DeprecationWarning,
    message=r".*on_event is deprecated.*",
)

import pytest
from fastapi.testclient import TestClient

from decision_memory import config
from decision_memory.dependencies.store_backend import STATUS_AVAILABLE
from decision_memory.feedback_loop.orchestrator import DecisionMemory
from decision_memory.feedback_loop.transport import DecisionTransport
from decision_memory.policies import IngestionPolicy, LifecyclePolicy, ProfilePolicy, RetrievalPolicy
from decision_memory.services.lifecycle import ActivityTracker, LifecycleController
from decision_memory.services.profile_cache import ProfileCache
from decision_memory.services.storage import DecisionStore
from tests.fixtures.chroma_mock import MockV2ChromaClient
from tests.fixtures.decision_factory import FAST_INGESTION, FAST_LIFECYCLE, FakeClock, embed
from tests.fixtures.redis_mock import MockRedisClient
from tests.fixtures.store_backend_mock import FakeStoreBackend


_ENV_VARS = (
    "OPENAI_API_KEY",
    "XAI_API_KEY",
    "LLM_PROVIDER",
    "REDIS_URL",
    "REDIS_SOCKET_TIMEOUT_SECONDS",
    "LANGFUSE_PUBLIC_KEY",
    "LANGFUSE_SECRET_KEY",
    "STORE_BACKEND",
    "EMBEDDING_DIMENSIONS",
    "PROFILE_CRON",
)


def _clear_config_caches() -> None:
    for value in vars(config).values():
        cache_clear = getattr(value, "cache_clear", None)
        if callable(cache_clear):
            cache_clear()


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    _clear_config_caches()
    yield
    _clear_config_caches()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def redis_stub(clock: FakeClock) -> MockRedisClient:
    return MockRedisClient(clock=clock)


@pytest.fixture
def chroma() -> MockV2ChromaClient:
    return MockV2ChromaClient()


@pytest.fixture
def store(chroma: MockV2ChromaClient) -> DecisionStore:
    return DecisionStore(client_factory=lambda: chroma, collection_name="test_decisions")


@pytest.fixture
def backend(chroma: MockV2ChromaClient) -> FakeStoreBackend:
    return FakeStoreBackend(STATUS_AVAILABLE, chroma=chroma)


@pytest.fixture
def make_lifecycle(backend: FakeStoreBackend, store: DecisionStore, clock: FakeClock):
    def _make(*, redis_client=None, policy: LifecyclePolicy = FAST_LIFECYCLE) -> LifecycleController:
        return LifecycleController(
            backend,
            activity=ActivityTracker(redis_client, namespace="test", clock=clock),
            policy=policy,
            readiness_probe=store.ping,
            clock=clock,
        )

    return _make


@pytest.fixture
def make_memory(store: DecisionStore, make_lifecycle, clock: FakeClock) -> Callable[..., DecisionMemory]:
    def _make(
        *,
        redis_client=None,
        embed_fn: Callable = embed,
        narrator: Callable[[Dict[str, Any]], Optional[str]] = lambda stats: None,
        ingestion_policy: IngestionPolicy = FAST_INGESTION,
        retrieval_policy: RetrievalPolicy = RetrievalPolicy(),
        profile_policy: ProfilePolicy = ProfilePolicy(),
    ) -> DecisionMemory:
        return DecisionMemory(
            transport=DecisionTransport(redis_client, namespace="test", clock=clock),
            store=store,
            lifecycle=make_lifecycle(redis_client=redis_client),
            cache=ProfileCache(redis_client, namespace="test", scope="default"),
            embed_fn=embed_fn,
            narrator=narrator,
            ingestion_policy=ingestion_policy,
            retrieval_policy=retrieval_policy,
            profile_policy=profile_policy,
        )

    return _make


def _prepare_app(monkeypatch: pytest.MonkeyPatch, memory: DecisionMemory, redis_stub: MockRedisClient):
    monkeypatch.setenv("INGESTION_WORKER_ENABLED", "false")
    monkeypatch.setenv("SCHEDULER_ENABLED", "false")
    _clear_config_caches()

    import decision_memory.app as app_module
    reload(app_module)

    monkeypatch.setattr(app_module, "_start_scheduler", lambda: None)
    monkeypatch.setattr(app_module, "_memory", memory)
    monkeypatch.setattr(app_module, "get_redis_client", lambda: redis_stub)
    return app_module


@pytest.fixture
def app_memory(make_memory) -> DecisionMemory:
    return make_memory()


@pytest.fixture
def app_module(monkeypatch: pytest.MonkeyPatch, app_memory: DecisionMemory, redis_stub: MockRedisClient):
    return _prepare_app(monkeypatch, app_memory, redis_stub)


@pytest.fixture
def api_client(app_module) -> TestClient:
    with TestClient(app_module.app) as client:
        yield client
