"""
Decision context for prompt construction.

Resolves the personalization block a media-analysis prompt should carry:
live retrieval hits when the store answers, the cached preference profile when
it does not, and nothing at all when neither exists.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

from decision_memory.models import EventType, PreferenceProfile, ScoredDecision
from decision_memory.services.profile_cache import ProfileCache
from decision_memory.services.prompts import (
    DECISION_CONTEXT_HEADER,
    PROFILE_CONTEXT_HEADER,
    STYLE_EXAMPLES_HEADER,
)
from decision_memory.services.retrieval import RetrievalQuery, RetrievalService


logger = logging.getLogger("decision_memory.memory_context")

# Lower bound on the profile wait once retrieval has used up the budget
PROFILE_READ_GRACE = 0.05


class ContextSource(str, Enum):
    LIVE = "live"
    CACHE = "cache"
    EMPTY = "empty"


@dataclass(slots=True)
class DecisionContext:
    source: ContextSource
    text: str = ""
    decisions: List[ScoredDecision] = field(default_factory=list)
    profile_version: Optional[int] = None
    retrieval_reason: Optional[str] = None


def format_decisions_for_prompt(decisions: Sequence[ScoredDecision]) -> str:
    lines: List[str] = []
    for item in decisions:
        d = item.decision
        payload = d.payload
        parts: List[str] = [f"[{d.event_type.value}]"]
        if payload.outcome:
            parts.append(payload.outcome)
        if payload.is_override and payload.ai_verdict:
            parts.append(f"(overrode ai: {payload.ai_verdict})")
        line = " ".join(parts)
        if payload.reason:
            line = f"{line}, reason: {payload.reason}"
        if payload.caption_text:
            line = f'{line}, caption: "{payload.caption_text}"'
        if payload.media_type:
            line = f"{line}, media: {payload.media_type}"
        lines.append(f"- {line}")
    return "\n".join(lines)


def format_style_examples(examples: Sequence[str]) -> str:
    return "\n".join(f'{idx}. "{text}"' for idx, text in enumerate(examples, start=1))


def format_profile_for_prompt(profile: PreferenceProfile) -> str:
    """Narrative when one was generated; otherwise the headline statistics."""
    if profile.narrative_summary:
        return profile.narrative_summary
    stats = profile.rule_based_stats or {}
    lines = [f"- {stats.get('total_decisions', 0)} past decisions across {stats.get('total_sessions', 0)} sessions"]
    if stats.get("keep_rate") is not None:
        lines.append(f"- keeps {round(stats['keep_rate'] * 100)}% of triaged media")
    if stats.get("override_rate") is not None:
        lines.append(f"- overrides the AI on {round(stats['override_rate'] * 100)}% of decisions")
    for label, key in (("kept for", "keep_reason_counts"), ("discarded for", "discard_reason_counts")):
        counts = stats.get(key) or {}
        top = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[:3]
        if top:
            lines.append(f"- usually {label}: " + ", ".join(reason for reason, _ in top))
    return "\n".join(lines)


def _section(header: str, body: str) -> str:
    return f"{header}\n{body}" if body else ""


async def _await_profile(
    profile_read: asyncio.Future[Optional[PreferenceProfile]],
    remaining: float,
) -> Optional[PreferenceProfile]:
    try:
        return await asyncio.wait_for(profile_read, timeout=max(remaining, PROFILE_READ_GRACE))
    except asyncio.TimeoutError:
        logger.warning("[ctx.profile.timeout] remaining=%.3fs", remaining)
        return None


async def build_decision_context(
    retrieval: RetrievalService,
    cache: ProfileCache,
    query: RetrievalQuery,
    *,
    timeout: Optional[float] = None,
) -> DecisionContext:
    """Resolve prompt context within ``timeout`` seconds; never raises."""
    loop = asyncio.get_running_loop()
    budget = timeout if timeout is not None else retrieval.policy.default_timeout.total_seconds()
    deadline = loop.time() + budget
    # The cached profile is read alongside retrieval so a timed-out lookup can still fall back to it
    profile_read = asyncio.ensure_future(asyncio.to_thread(cache.get_profile))
    result = await retrieval.retrieve(query, timeout=budget)
    profile = await _await_profile(profile_read, deadline - loop.time())
    wants_style = query.category is EventType.CAPTION_CHOICE
    style_block = ""
    if wants_style and profile is not None and profile.style_examples:
        style_block = _section(STYLE_EXAMPLES_HEADER, format_style_examples(profile.style_examples))

    if result.available and result.decisions:
        sections = [_section(DECISION_CONTEXT_HEADER, format_decisions_for_prompt(result.decisions)), style_block]
        context = DecisionContext(
            source=ContextSource.LIVE,
            text="\n\n".join(s for s in sections if s),
            decisions=list(result.decisions),
            profile_version=profile.profile_version if profile and style_block else None,
        )
    elif profile is not None:
        sections = [_section(PROFILE_CONTEXT_HEADER, format_profile_for_prompt(profile)), style_block]
        context = DecisionContext(
            source=ContextSource.CACHE,
            text="\n\n".join(s for s in sections if s),
            profile_version=profile.profile_version,
            retrieval_reason=result.reason,
        )
    else:
        context = DecisionContext(source=ContextSource.EMPTY, retrieval_reason=result.reason)

    logger.info(
        "[ctx.resolved] source=%s category=%s decisions=%s profile_version=%s",
        context.source.value,
        query.category.value if query.category else None,
        len(context.decisions),
        context.profile_version,
    )
    return context
