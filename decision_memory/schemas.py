from __future__ import annotations

from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field

from decision_memory.models import DecisionPayload, EventType, PreferenceProfile, ScoredDecision


class PublishResponse(BaseModel):
	accepted: bool


class RetrieveRequest(BaseModel):
	text: str = Field(min_length=1)
	category: Optional[EventType] = None
	top_k: Optional[int] = Field(default=None, ge=1, le=50)
	min_score: Optional[float] = Field(default=None, ge=-1.0, le=1.0)
	timeout_ms: Optional[int] = Field(default=None, ge=1, le=30000)


class RetrievedDecision(BaseModel):
	event_id: str
	event_type: EventType
	subject_ref: str
	session_ref: str
	occurred_at: datetime
	context_text: str
	payload: DecisionPayload
	score: float

	@classmethod
	def from_scored(cls, item: ScoredDecision) -> "RetrievedDecision":
		d = item.decision
		return cls(
			event_id=d.event_id,
			event_type=d.event_type,
			subject_ref=d.subject_ref,
			session_ref=d.session_ref,
			occurred_at=d.occurred_at,
			context_text=d.context_text,
			payload=d.payload,
			score=round(item.score, 6),
		)


class RetrieveResponse(BaseModel):
	status: Literal["ok", "unavailable"]
	reason: Optional[str] = None
	decisions: List[RetrievedDecision] = Field(default_factory=list)


class ContextResponse(BaseModel):
	source: Literal["live", "cache", "empty"]
	text: str = ""
	profile_version: Optional[int] = None
	retrieval_reason: Optional[str] = None
	decisions: List[RetrievedDecision] = Field(default_factory=list)


class ProfileResponse(BaseModel):
	status: Literal["ok", "no_profile"]
	profile: Optional[PreferenceProfile] = None


class RebuildResponse(BaseModel):
	status: str
	profile_version: Optional[int] = None
	error: Optional[str] = None


class ActivityRequest(BaseModel):
	source: str = "user"


class StoreStatusResponse(BaseModel):
	state: str
	available: bool
	start_in_progress: bool


class DeadLetterItem(BaseModel):
	message_id: str
	reason: str
	attempts: int
	dead_lettered_at: datetime
	body: Any = None


class DeadLetterListResponse(BaseModel):
	items: List[DeadLetterItem] = Field(default_factory=list)
	count: int = 0


class ReplayResponse(BaseModel):
	message_id: str
	replayed: bool
