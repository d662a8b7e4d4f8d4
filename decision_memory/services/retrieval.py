"""Similarity retrieval over stored decisions, bounded by the caller's latency budget."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from decision_memory.policies import RetrievalPolicy
from decision_memory.models import EventType, ScoredDecision
from decision_memory.services.embedding_utils import EmbeddingError, generate_embedding
from decision_memory.services.lifecycle import LifecycleController
from decision_memory.services.storage import DecisionStore, StoreUnavailableError


logger = logging.getLogger("decision_memory.retrieval")


class RetrievalStatus(str, Enum):
    OK = "ok"
    UNAVAILABLE = "unavailable"


@dataclass(slots=True)
class RetrievalQuery:
    text: str
    category: Optional[EventType] = None
    top_k: Optional[int] = None
    min_score: Optional[float] = None


@dataclass(slots=True)
class RetrievalResult:
    status: RetrievalStatus
    decisions: List[ScoredDecision] = field(default_factory=list)
    reason: Optional[str] = None

    @property
    def available(self) -> bool:
        return self.status is RetrievalStatus.OK

    @classmethod
    def unavailable(cls, reason: str) -> "RetrievalResult":
        return cls(status=RetrievalStatus.UNAVAILABLE, reason=reason)


def rank_decisions(candidates: List[ScoredDecision], top_k: int, min_score: float = 0.0) -> List[ScoredDecision]:
    """Best score first, more recent ``occurred_at`` first on ties."""
    kept = [item for item in candidates if item.score >= min_score]
    kept.sort(key=lambda item: item.sort_key)
    return kept[:top_k]


class RetrievalService:
    """Read-only top-K lookup. Never raises; degrades to an ``unavailable`` result."""

    def __init__(
        self,
        store: DecisionStore,
        lifecycle: LifecycleController,
        *,
        embed_fn: Callable[..., List[float]] = generate_embedding,
        policy: RetrievalPolicy = RetrievalPolicy(),
    ) -> None:
        self._store = store
        self._lifecycle = lifecycle
        self._embed = embed_fn
        self._policy = policy

    @property
    def policy(self) -> RetrievalPolicy:
        return self._policy

    def _search(self, query: RetrievalQuery, top_k: int, budget: float) -> List[ScoredDecision]:
        started = time.monotonic()
        embedding = self._embed(query.text, timeout=budget)
        remaining = max(0.05, budget - (time.monotonic() - started))
        candidates = self._store.query(
            embedding,
            n_results=top_k * max(1, self._policy.candidate_multiplier),
            event_type=query.category,
            timeout=remaining,
        )
        min_score = self._policy.min_score if query.min_score is None else query.min_score
        return rank_decisions(candidates, top_k, min_score)

    async def retrieve(self, query: RetrievalQuery, *, timeout: Optional[float] = None) -> RetrievalResult:
        """Return the top-K similar decisions or an ``unavailable`` result within ``timeout`` seconds."""
        budget = timeout if timeout is not None else self._policy.default_timeout.total_seconds()
        top_k = query.top_k or self._policy.top_k
        self._lifecycle.record_activity("retrieval")

        if not self._lifecycle.is_available:
            self._lifecycle.request_start()
            logger.info(
                "[retrieve.unavailable] reason=store_%s category=%s",
                self._lifecycle.state.value,
                query.category.value if query.category else None,
            )
            return RetrievalResult.unavailable(f"store_{self._lifecycle.state.value}")

        try:
            decisions = await asyncio.wait_for(
                asyncio.to_thread(self._search, query, top_k, budget),
                timeout=budget,
            )
        except asyncio.TimeoutError:
            logger.warning("[retrieve.timeout] budget=%.3fs", budget)
            return RetrievalResult.unavailable("timeout")
        except StoreUnavailableError as e:
            logger.warning("[retrieve.store_unreachable] error=%s", e)
            self._lifecycle.report_unreachable()
            return RetrievalResult.unavailable("store_unreachable")
        except EmbeddingError as e:
            logger.warning("[retrieve.embedding_failed] error=%s", e)
            return RetrievalResult.unavailable("embedding_failed")
        except Exception:
            logger.exception("[retrieve.error]")
            return RetrievalResult.unavailable("error")

        logger.info(
            "[retrieve.ok] category=%s top_k=%s returned=%s",
            query.category.value if query.category else None,
            top_k,
            len(decisions),
        )
        return RetrievalResult(status=RetrievalStatus.OK, decisions=decisions)
