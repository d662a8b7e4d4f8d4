from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EventType(str, Enum):
    TRIAGE_VERDICT = "triage-verdict"
    SELECTION_OVERRIDE = "selection-override"
    CAPTION_CHOICE = "caption-choice"
    PUBLISH_ACTION = "publish-action"


# Verdicts counted as "kept" when computing keep rates.
KEEP_VERDICTS = frozenset({"keep", "save", "select", "selected", "publish", "published"})
DISCARD_VERDICTS = frozenset({"discard", "reject", "deselect", "skip"})


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class DecisionPayload(BaseModel):
    """Structured decision detail carried by every Decision Event."""

    model_config = ConfigDict(frozen=True)

    verdict: Optional[str] = None
    ai_verdict: Optional[str] = None
    is_override: bool = False
    reason: Optional[str] = None
    media_type: Optional[str] = None
    caption_text: Optional[str] = None
    style_tags: List[str] = Field(default_factory=list)
    hashtags: List[str] = Field(default_factory=list)
    platform: Optional[str] = None
    model: Optional[str] = None
    prompt_version: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    @property
    def outcome(self) -> Optional[str]:
        """The effective decision: what the user chose, else what the AI proposed."""
        return self.verdict or self.ai_verdict


class DecisionEvent(BaseModel):
    """Immutable record of one user or system decision about a media item."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(min_length=1)
    event_type: EventType
    subject_ref: str = Field(min_length=1)
    payload: DecisionPayload = Field(default_factory=DecisionPayload)
    context_text: str = Field(min_length=1)
    occurred_at: datetime
    session_ref: str = ""

    @field_validator("event_id", "subject_ref", "context_text")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

    @field_validator("occurred_at")
    @classmethod
    def _normalize_occurred_at(cls, value: datetime) -> datetime:
        return _utc(value)

    def to_metadata(self) -> Dict[str, Any]:
        """Flatten into scalar metadata suitable for a Chroma record."""
        payload = self.payload
        return {
            "event_type": self.event_type.value,
            "subject_ref": self.subject_ref,
            "session_ref": self.session_ref,
            "occurred_at": self.occurred_at.isoformat(),
            "verdict": payload.outcome or "",
            "is_override": payload.is_override,
            "media_type": payload.media_type or "",
            "payload": payload.model_dump_json(),
        }


class StoredDecision(DecisionEvent):
    """A Decision Event after embedding and persistence."""

    embedding_vector: List[float] = Field(default_factory=list)
    stored_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_event(
        cls, event: DecisionEvent, embedding: List[float], stored_at: Optional[datetime] = None
    ) -> "StoredDecision":
        data = event.model_dump()
        data["embedding_vector"] = list(embedding)
        if stored_at is not None:
            data["stored_at"] = stored_at
        return cls.model_validate(data)

    def to_metadata(self) -> Dict[str, Any]:
        meta = super().to_metadata()
        meta["stored_at"] = _utc(self.stored_at).isoformat()
        return meta

    @classmethod
    def from_record(
        cls,
        record_id: str,
        document: Optional[str],
        metadata: Optional[Mapping[str, Any]],
        embedding: Optional[List[float]] = None,
    ) -> "StoredDecision":
        """Rebuild a stored decision from a Chroma id/document/metadata triple."""
        meta = dict(metadata or {})
        raw_payload = meta.get("payload") or "{}"
        if isinstance(raw_payload, str):
            raw_payload = json.loads(raw_payload)
        data: Dict[str, Any] = {
            "event_id": record_id,
            "event_type": meta.get("event_type"),
            "subject_ref": meta.get("subject_ref"),
            "session_ref": meta.get("session_ref") or "",
            "occurred_at": meta.get("occurred_at"),
            "context_text": document or "",
            "payload": raw_payload,
            "embedding_vector": list(embedding or []),
        }
        if meta.get("stored_at"):
            data["stored_at"] = meta["stored_at"]
        return cls.model_validate(data)


class ScoredDecision(BaseModel):
    decision: StoredDecision
    score: float

    @property
    def sort_key(self) -> tuple:
        # Higher score first; equal scores go to the most recent occurrence.
        return (-self.score, -self.decision.occurred_at.timestamp())


class PreferenceProfile(BaseModel):
    """Compact summary of observed decision patterns for one scope."""

    model_config = ConfigDict(frozen=True)

    profile_version: int = Field(ge=1)
    built_at: datetime
    scope: str = "default"
    rule_based_stats: Dict[str, Any] = Field(default_factory=dict)
    narrative_summary: Optional[str] = None
    style_examples: List[str] = Field(default_factory=list)
    decision_count: int = 0


def compose_context_text(
    event_type: EventType | str,
    subject_ref: str,
    payload: DecisionPayload,
) -> str:
    """Build the canonical text embedded for a decision.

    Producers that do not write their own ``context_text`` use this so that
    equivalent decisions land close together in the embedding space.
    """
    kind = event_type.value if isinstance(event_type, EventType) else str(event_type)
    head: List[str] = [kind]
    if payload.outcome:
        head.append(payload.outcome)
    if payload.is_override and payload.ai_verdict:
        head.append(f"(ai suggested {payload.ai_verdict})")
    text = " ".join(head)
    if payload.reason:
        text = f"{text}: {payload.reason}"
    if payload.caption_text:
        text = f'{text} caption "{payload.caption_text}"'
    if payload.style_tags:
        text = f"{text} style {', '.join(payload.style_tags)}"

    meta: List[str] = []
    if payload.media_type:
        meta.append(payload.media_type)
    meta.append(subject_ref)
    if payload.platform:
        meta.append(f"platform: {payload.platform}")
    for key in sorted(payload.metadata):
        meta.append(f"{key}: {payload.metadata[key]}")
    return f"{text} | {' | '.join(meta)}"
