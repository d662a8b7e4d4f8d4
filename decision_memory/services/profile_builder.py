"""Periodic preference profile build.

A run reads every stored decision, derives deterministic statistics, asks the
text-generation boundary for a short narrative and publishes a new profile
version to the fallback cache. Nothing is written until the final step, so a
failed run leaves the previous profile in place.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from redis.exceptions import RedisError

from decision_memory.policies import ProfilePolicy
from decision_memory.models import (
    DISCARD_VERDICTS,
    KEEP_VERDICTS,
    DecisionEvent,
    EventType,
    PreferenceProfile,
)
from decision_memory.services.lifecycle import LifecycleController
from decision_memory.services.narrative import generate_profile_narrative
from decision_memory.services.profile_cache import ProfileCache
from decision_memory.services.storage import DecisionStore, StoreUnavailableError


logger = logging.getLogger("decision_memory.profile")

# Categories whose verdicts express keep/discard preferences.
_PREFERENCE_CATEGORIES = (EventType.TRIAGE_VERDICT, EventType.SELECTION_OVERRIDE)


class BuildStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED_OVERLAP = "skipped_overlap"
    SKIPPED_STORE_UNAVAILABLE = "skipped_store_unavailable"
    FAILED = "failed"


@dataclass(slots=True)
class BuildOutcome:
    status: BuildStatus
    profile: Optional[PreferenceProfile] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "profile_version": self.profile.profile_version if self.profile else None,
            "error": self.error,
        }


def _classify(outcome: Optional[str]) -> Optional[str]:
    if not outcome:
        return None
    normalized = outcome.strip().lower()
    if normalized in KEEP_VERDICTS:
        return "kept"
    if normalized in DISCARD_VERDICTS:
        return "discarded"
    return None


def _ratio(numerator: int, denominator: int) -> Optional[float]:
    if denominator <= 0:
        return None
    return round(numerator / denominator, 4)


def _ordered(decisions: Iterable[DecisionEvent]) -> List[DecisionEvent]:
    """One entry per event_id, oldest first."""
    unique: Dict[str, DecisionEvent] = {}
    for decision in decisions:
        unique[decision.event_id] = decision
    return sorted(unique.values(), key=lambda d: (d.occurred_at, d.event_id))


def _latest_per_subject(decisions: List[DecisionEvent]) -> List[DecisionEvent]:
    latest: Dict[str, DecisionEvent] = {}
    for decision in decisions:
        latest[decision.subject_ref] = decision
    return [latest[key] for key in sorted(latest)]


def compute_rule_based_stats(decisions: Iterable[DecisionEvent]) -> Dict[str, Any]:
    """Deterministic aggregates over decision history.

    Keep/discard figures use only the latest decision per subject in each
    category, since later events supersede earlier ones for the same media.
    """
    ordered = _ordered(decisions)
    by_category: Dict[EventType, List[DecisionEvent]] = {kind: [] for kind in EventType}
    for decision in ordered:
        by_category[decision.event_type].append(decision)

    categories: Dict[str, Dict[str, Any]] = {}
    keep_reasons: Counter = Counter()
    discard_reasons: Counter = Counter()
    media_breakdown: Dict[str, Dict[str, int]] = {}
    override_patterns: Counter = Counter()
    kept_total = 0
    classified_total = 0

    for kind, items in by_category.items():
        verdicts = Counter((d.payload.outcome or "unknown").lower() for d in items)
        overrides = [d for d in items if d.payload.is_override]
        entry: Dict[str, Any] = {
            "total": len(items),
            "subjects": len({d.subject_ref for d in items}),
            "verdict_counts": dict(sorted(verdicts.items())),
            "override_count": len(overrides),
            "override_rate": _ratio(len(overrides), len(items)),
        }
        for d in overrides:
            ai = d.payload.ai_verdict or "unknown"
            user = d.payload.verdict or "unknown"
            pattern = f"{ai} -> {user}"
            if d.payload.reason:
                pattern = f"{pattern}: {d.payload.reason}"
            override_patterns[pattern] += 1

        if kind in _PREFERENCE_CATEGORIES:
            kept = discarded = 0
            for d in _latest_per_subject(items):
                label = _classify(d.payload.outcome)
                if label is None:
                    continue
                if label == "kept":
                    kept += 1
                else:
                    discarded += 1
                if kind is EventType.TRIAGE_VERDICT:
                    media = d.payload.media_type or "unknown"
                    bucket = media_breakdown.setdefault(media, {"kept": 0, "discarded": 0})
                    bucket[label] += 1
                    if d.payload.reason:
                        (keep_reasons if label == "kept" else discard_reasons)[d.payload.reason] += 1
            entry["kept"] = kept
            entry["discarded"] = discarded
            entry["keep_rate"] = _ratio(kept, kept + discarded)
            if kind is EventType.TRIAGE_VERDICT:
                kept_total += kept
                classified_total += kept + discarded
        elif kind is EventType.CAPTION_CHOICE:
            tags = Counter(tag.lower() for d in items for tag in d.payload.style_tags)
            hashtags = Counter(tag.lower() for d in items for tag in d.payload.hashtags)
            entry["style_tag_counts"] = dict(sorted(tags.items()))
            entry["hashtag_counts"] = dict(sorted(hashtags.items()))
        elif kind is EventType.PUBLISH_ACTION:
            platforms = Counter((d.payload.platform or "instagram").lower() for d in items)
            entry["platform_counts"] = dict(sorted(platforms.items()))

        categories[kind.value] = entry

    total = len(ordered)
    override_total = sum(1 for d in ordered if d.payload.is_override)
    return {
        "total_decisions": total,
        "total_sessions": len({d.session_ref for d in ordered if d.session_ref}),
        "keep_rate": _ratio(kept_total, classified_total),
        "override_rate": _ratio(override_total, total),
        "keep_reason_counts": dict(sorted(keep_reasons.items())),
        "discard_reason_counts": dict(sorted(discard_reasons.items())),
        "override_patterns": dict(sorted(override_patterns.items())),
        "media_type_breakdown": dict(sorted(media_breakdown.items())),
        "categories": categories,
    }


def select_style_examples(decisions: Iterable[DecisionEvent], limit: int) -> List[str]:
    """Most recent distinct caption texts, newest first."""
    if limit <= 0:
        return []
    captions: List[Tuple[datetime, str, str]] = [
        (d.occurred_at, d.event_id, d.payload.caption_text.strip())
        for d in _ordered(decisions)
        if d.event_type is EventType.CAPTION_CHOICE and d.payload.caption_text and d.payload.caption_text.strip()
    ]
    captions.sort(reverse=True)
    examples: List[str] = []
    for _, _, text in captions:
        if text in examples:
            continue
        examples.append(text)
        if len(examples) >= limit:
            break
    return examples


class ProfileBuilder:
    """Single-flight profile build. Overlapping triggers are skipped, never queued."""

    def __init__(
        self,
        store: DecisionStore,
        cache: ProfileCache,
        lifecycle: LifecycleController,
        *,
        narrator: Callable[[Dict[str, Any]], Optional[str]] = generate_profile_narrative,
        policy: ProfilePolicy = ProfilePolicy(),
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._store = store
        self._cache = cache
        self._lifecycle = lifecycle
        self._narrator = narrator
        self._policy = policy
        self._clock = clock
        self._running = False
        self.completed_runs = 0

    @property
    def running(self) -> bool:
        return self._running

    async def run(self) -> BuildOutcome:
        # No await between the check and the set, so this is atomic on the loop.
        if self._running:
            logger.info("[profile.skip] reason=overlap scope=%s", self._cache.scope)
            return BuildOutcome(status=BuildStatus.SKIPPED_OVERLAP)
        self._running = True
        try:
            try:
                token = self._cache.acquire_build_lock(int(self._policy.lock_ttl.total_seconds()))
            except RedisError as e:
                logger.error("[profile.lock.failed] error=%s", e)
                return BuildOutcome(status=BuildStatus.FAILED, error=f"lock: {e}")
            if token is None:
                logger.info("[profile.skip] reason=overlap_remote scope=%s", self._cache.scope)
                return BuildOutcome(status=BuildStatus.SKIPPED_OVERLAP)
            try:
                return await self._build()
            finally:
                try:
                    self._cache.release_build_lock(token)
                except RedisError as e:
                    logger.warning("[profile.lock.release_failed] error=%s", e)
        finally:
            self._running = False

    async def _narrate(self, stats: Dict[str, Any]) -> Optional[str]:
        try:
            return await asyncio.to_thread(self._narrator, stats)
        except Exception as e:
            logger.warning("[profile.narrative.fallback] error=%s", e)
            return None

    async def _build(self) -> BuildOutcome:
        # Scheduled runs usually find the store auto-stopped; wake it, bounded by start_timeout
        if not self._lifecycle.is_available:
            logger.info("[profile.store.start] state=%s scope=%s", self._lifecycle.state.value, self._cache.scope)
            if not await self._lifecycle.start():
                logger.info(
                    "[profile.skip] reason=store_%s scope=%s",
                    self._lifecycle.state.value,
                    self._cache.scope,
                )
                return BuildOutcome(status=BuildStatus.SKIPPED_STORE_UNAVAILABLE)

        page_size = self._policy.page_size
        try:
            decisions = await asyncio.to_thread(lambda: list(self._store.iter_decisions(page_size)))
        except StoreUnavailableError as e:
            logger.warning("[profile.skip] reason=store_unreachable error=%s", e)
            self._lifecycle.report_unreachable()
            return BuildOutcome(status=BuildStatus.SKIPPED_STORE_UNAVAILABLE, error=str(e))

        try:
            stats = compute_rule_based_stats(decisions)
            narrative = await self._narrate(stats)
            style_examples = select_style_examples(decisions, self._policy.style_examples)
            version = self._cache.current_version() + 1
            profile = PreferenceProfile(
                profile_version=version,
                built_at=self._clock(),
                scope=self._cache.scope,
                rule_based_stats=stats,
                narrative_summary=narrative,
                style_examples=style_examples,
                decision_count=stats["total_decisions"],
            )
            self._cache.replace_profile(profile)
        except Exception as e:
            logger.exception("[profile.failed] scope=%s", self._cache.scope)
            return BuildOutcome(status=BuildStatus.FAILED, error=str(e))

        self.completed_runs += 1
        logger.info(
            "[profile.completed] scope=%s version=%s decisions=%s narrative=%s",
            profile.scope,
            profile.profile_version,
            profile.decision_count,
            profile.narrative_summary is not None,
        )
        return BuildOutcome(status=BuildStatus.COMPLETED, profile=profile)
