"""Wires the decision-memory components behind :class:`DecisionMemoryClient`."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from decision_memory import config
from decision_memory.dependencies.redis_client import get_redis_client
from decision_memory.dependencies.store_backend import build_store_backend
from decision_memory.feedback_loop.client_api import DecisionMemoryClient
from decision_memory.feedback_loop.ingestion import IngestionWorker
from decision_memory.feedback_loop.publisher import DecisionPublisher
from decision_memory.feedback_loop.transport import DecisionTransport
from decision_memory.models import DecisionEvent, PreferenceProfile
from decision_memory.policies import (
    IngestionPolicy,
    LifecyclePolicy,
    ProfilePolicy,
    RetrievalPolicy,
)
from decision_memory.services.embedding_utils import generate_embedding
from decision_memory.services.lifecycle import ActivityTracker, LifecycleController
from decision_memory.services.memory_context import DecisionContext, build_decision_context
from decision_memory.services.narrative import generate_profile_narrative
from decision_memory.services.profile_builder import BuildOutcome, ProfileBuilder
from decision_memory.services.profile_cache import ProfileCache
from decision_memory.services.retrieval import RetrievalQuery, RetrievalResult, RetrievalService
from decision_memory.services.storage import DecisionStore


logger = logging.getLogger("decision_memory.orchestrator")


class DecisionMemory(DecisionMemoryClient):
    """Facade over transport, worker, retrieval, profile builder and lifecycle."""

    def __init__(
        self,
        *,
        transport: DecisionTransport,
        store: DecisionStore,
        lifecycle: LifecycleController,
        cache: ProfileCache,
        embed_fn: Callable[[str], List[float]] = generate_embedding,
        narrator: Callable[[Dict[str, Any]], Optional[str]] = generate_profile_narrative,
        ingestion_policy: IngestionPolicy = IngestionPolicy(),
        retrieval_policy: RetrievalPolicy = RetrievalPolicy(),
        profile_policy: ProfilePolicy = ProfilePolicy(),
    ) -> None:
        self.transport = transport
        self.store = store
        self.lifecycle = lifecycle
        self.cache = cache
        self.publisher = DecisionPublisher(
            transport, on_publish=lambda: lifecycle.signal_activity("producer")
        )
        self.worker = IngestionWorker(
            transport, store, lifecycle, embed_fn=embed_fn, policy=ingestion_policy
        )
        self.retrieval = RetrievalService(
            store, lifecycle, embed_fn=embed_fn, policy=retrieval_policy
        )
        self.profile_builder = ProfileBuilder(
            store, cache, lifecycle, narrator=narrator, policy=profile_policy
        )

    # -- client API ----------------------------------------------------
    def publish(self, event: Union[DecisionEvent, Mapping[str, Any]]) -> bool:
        return self.publisher.publish(event)

    async def retrieve(self, query: RetrievalQuery, *, timeout: Optional[float] = None) -> RetrievalResult:
        return await self.retrieval.retrieve(query, timeout=timeout)

    async def recall_context(self, query: RetrievalQuery, *, timeout: Optional[float] = None) -> DecisionContext:
        return await build_decision_context(self.retrieval, self.cache, query, timeout=timeout)

    def read_profile(self) -> Optional[PreferenceProfile]:
        return self.cache.get_profile()

    def signal_activity(self, source: str = "user") -> None:
        try:
            self.lifecycle.signal_activity(source)
        except Exception as e:
            logger.warning("[activity.signal_failed] source=%s error=%s", source, e)

    async def rebuild_profile(self) -> BuildOutcome:
        return await self.profile_builder.run()

    # -- process lifecycle --------------------------------------------
    async def start(self, *, run_worker: bool = True) -> None:
        await self.lifecycle.refresh()
        if run_worker:
            await self.worker.start()

    async def shutdown(self) -> None:
        await self.worker.stop()


def build_default_decision_memory() -> DecisionMemory:
    """Factory used by the app to obtain a fully configured instance."""

    redis_client = get_redis_client()
    namespace = config.get_namespace()
    store = DecisionStore()
    lifecycle = LifecycleController(
        build_store_backend(),
        activity=ActivityTracker(redis_client, namespace=namespace),
        policy=LifecyclePolicy.from_config(),
        readiness_probe=store.ping,
    )
    if redis_client is None:
        logger.warning("[orchestrator.redis.missing] REDIS_URL unset; transport and cache are in-process only")
    return DecisionMemory(
        transport=DecisionTransport(redis_client, namespace=namespace),
        store=store,
        lifecycle=lifecycle,
        cache=ProfileCache(redis_client, namespace=namespace, scope=config.get_memory_scope()),
        ingestion_policy=IngestionPolicy.from_config(),
        retrieval_policy=RetrievalPolicy.from_config(),
        profile_policy=ProfilePolicy.from_config(),
    )
