"""Vector store adapter for embedded decisions.

One Chroma record per decision: id = ``event_id``, document = ``context_text``,
metadata = flattened event fields. Writes are upserts, so replaying an event
rewrites the same record instead of appending a new one.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterator, List, Optional

from decision_memory.config import get_decision_collection_name
from decision_memory.dependencies.chroma import (
	COLLECTION_METADATA,
	ChromaRequestError,
	ChromaUnavailableError,
	get_chroma_client,
)
from decision_memory.models import EventType, ScoredDecision, StoredDecision


logger = logging.getLogger("decision_memory.storage")


class StoreUnavailableError(RuntimeError):
	"""The vector store could not serve the request."""


def _first(result: Dict[str, Any], key: str) -> List[Any]:
	"""Unwrap the per-query nesting of a Chroma query response."""
	values = result.get(key) or [[]]
	return list(values[0] or []) if values else []


class DecisionStore:
	def __init__(
		self,
		client_factory: Callable[[], Any] = get_chroma_client,
		*,
		collection_name: Optional[str] = None,
	) -> None:
		self._client_factory = client_factory
		self._collection_name = collection_name or get_decision_collection_name()
		self._collection: Optional[Any] = None

	def _get_collection(self) -> Any:
		if self._collection is None:
			try:
				client = self._client_factory()
				self._collection = client.get_or_create_collection(
					self._collection_name, metadata=dict(COLLECTION_METADATA)
				)
			except (ChromaUnavailableError, ChromaRequestError) as e:
				raise StoreUnavailableError(str(e)) from e
		return self._collection

	def ping(self) -> bool:
		"""Readiness probe: raises when the store cannot answer."""
		try:
			self._client_factory().heartbeat(timeout=5.0)
		except (ChromaUnavailableError, ChromaRequestError) as e:
			raise StoreUnavailableError(str(e)) from e
		return True

	def exists(self, event_id: str) -> bool:
		collection = self._get_collection()
		try:
			result = collection.get(ids=[event_id], include=[])
		except (ChromaUnavailableError, ChromaRequestError) as e:
			raise StoreUnavailableError(str(e)) from e
		return bool(result.get("ids"))

	def upsert(self, decision: StoredDecision) -> str:
		collection = self._get_collection()
		try:
			collection.upsert(
				ids=[decision.event_id],
				documents=[decision.context_text],
				embeddings=[decision.embedding_vector],
				metadatas=[decision.to_metadata()],
			)
		except (ChromaUnavailableError, ChromaRequestError) as e:
			raise StoreUnavailableError(str(e)) from e
		logger.info(
			"[store.upsert] event_id=%s event_type=%s subject_ref=%s",
			decision.event_id,
			decision.event_type.value,
			decision.subject_ref,
		)
		return decision.event_id

	def query(
		self,
		embedding: List[float],
		n_results: int,
		*,
		event_type: Optional[EventType] = None,
		timeout: Optional[float] = None,
	) -> List[ScoredDecision]:
		"""Nearest decisions by cosine similarity (``1 - distance``), unsorted beyond Chroma's order."""
		collection = self._get_collection()
		where = {"event_type": event_type.value} if event_type is not None else None
		try:
			result = collection.query(
				query_embeddings=[embedding],
				n_results=n_results,
				where=where,
				timeout=timeout,
			)
		except (ChromaUnavailableError, ChromaRequestError) as e:
			raise StoreUnavailableError(str(e)) from e

		ids = _first(result, "ids")
		documents = _first(result, "documents")
		metadatas = _first(result, "metadatas")
		distances = _first(result, "distances")
		scored: List[ScoredDecision] = []
		for idx, record_id in enumerate(ids):
			try:
				decision = StoredDecision.from_record(
					record_id,
					documents[idx] if idx < len(documents) else None,
					metadatas[idx] if idx < len(metadatas) else None,
				)
			except ValueError as e:
				logger.warning("[store.query.skip] id=%s error=%s", record_id, e)
				continue
			distance = float(distances[idx]) if idx < len(distances) and distances[idx] is not None else 1.0
			scored.append(ScoredDecision(decision=decision, score=1.0 - distance))
		return scored

	def iter_decisions(self, page_size: int = 500) -> Iterator[StoredDecision]:
		"""Page through every stored decision."""
		collection = self._get_collection()
		offset = 0
		while True:
			try:
				result = collection.get(
					limit=page_size,
					offset=offset,
					include=["documents", "metadatas"],
				)
			except (ChromaUnavailableError, ChromaRequestError) as e:
				raise StoreUnavailableError(str(e)) from e
			ids = list(result.get("ids") or [])
			documents = list(result.get("documents") or [])
			metadatas = list(result.get("metadatas") or [])
			for idx, record_id in enumerate(ids):
				try:
					yield StoredDecision.from_record(
						record_id,
						documents[idx] if idx < len(documents) else None,
						metadatas[idx] if idx < len(metadatas) else None,
					)
				except ValueError as e:
					logger.warning("[store.iter.skip] id=%s error=%s", record_id, e)
			if len(ids) < page_size:
				return
			offset += page_size

	def count(self) -> int:
		try:
			return self._get_collection().count()
		except (ChromaUnavailableError, ChromaRequestError) as e:
			raise StoreUnavailableError(str(e)) from e
