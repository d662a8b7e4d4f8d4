"""Public interface the curation pipeline uses to talk to decision memory.

Producers publish decisions and forget about them; prompt construction asks
for context under a latency budget and always gets an answer, possibly empty.

Example usage
-------------

.. code-block:: python

    memory: DecisionMemoryClient = build_default_decision_memory()

    memory.publish(triage_event)          # returns at once, never raises
    memory.signal_activity()              # user opened the triage UI: pre-warm

    context = await memory.recall_context(
        RetrievalQuery(text=photo_description, category=EventType.TRIAGE_VERDICT),
        timeout=1.5,
    )
    prompt = base_prompt + "\\n\\n" + context.text if context.text else base_prompt

None of the calls block on the vector store being up; when it is stopped the
cached preference profile is used instead.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol, Union, runtime_checkable

from decision_memory.models import DecisionEvent, PreferenceProfile
from decision_memory.services.memory_context import DecisionContext
from decision_memory.services.profile_builder import BuildOutcome
from decision_memory.services.retrieval import RetrievalQuery, RetrievalResult


@runtime_checkable
class DecisionMemoryClient(Protocol):
    """Minimal interface presented to pipeline stages."""

    def publish(self, event: Union[DecisionEvent, Mapping[str, Any]]) -> bool:
        """Queue a decision event. Never raises."""

    async def retrieve(self, query: RetrievalQuery, *, timeout: Optional[float] = None) -> RetrievalResult:
        """Top-K similar decisions, or an ``unavailable`` result within ``timeout``."""

    async def recall_context(self, query: RetrievalQuery, *, timeout: Optional[float] = None) -> DecisionContext:
        """Prompt-ready context from live retrieval, the cached profile, or nothing."""

    def read_profile(self) -> Optional[PreferenceProfile]:
        """Current preference profile, or None if no build has completed yet."""

    def signal_activity(self, source: str = "user") -> None:
        """Tell the store the user is active so it can warm up."""

    async def rebuild_profile(self) -> BuildOutcome:
        """Run one profile build now (skipped if one is already in flight)."""
