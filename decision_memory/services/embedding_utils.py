"""
Embedding utilities for decision ingestion and retrieval.

With an OpenAI key configured, text is embedded with the configured model at
a fixed dimension. Without one, a deterministic hashed embedding of the same
dimension is used so that local runs and tests need no network.
"""

from __future__ import annotations

import hashlib
import logging
import math
import re
from typing import List, Optional

from decision_memory.config import (
	get_embedding_dimensions,
	get_embedding_model_name,
	get_openai_api_key,
	is_langfuse_enabled,
)
from decision_memory.services.tracing import record_output, traced


logger = logging.getLogger("decision_memory.embeddings")

_TOKEN_RE = re.compile(r"[a-z0-9]+")


class EmbeddingError(RuntimeError):
	"""The embedding provider failed or returned an unusable vector."""


def _openai_client(api_key: str, timeout: Optional[float] = None):
	if is_langfuse_enabled():
		from langfuse.openai import OpenAI
	else:
		from openai import OpenAI
	if timeout is None:
		return OpenAI(api_key=api_key)
	# A deadline-bound call gets one attempt; SDK retries would outlive the deadline
	return OpenAI(api_key=api_key, timeout=timeout, max_retries=0)


def hashed_embedding(text: str, dimensions: int) -> List[float]:
	"""Deterministic bag-of-words embedding, L2-normalised.

	Each token is hashed into a bucket with a sign, so texts sharing words have
	positive cosine similarity and identical texts have similarity 1.0.
	"""
	vec = [0.0] * dimensions
	tokens = _TOKEN_RE.findall((text or "").lower()) or [""]
	for token in tokens:
		digest = hashlib.sha256(token.encode("utf-8")).digest()
		bucket = int.from_bytes(digest[:4], "big") % dimensions
		sign = 1.0 if digest[4] & 1 else -1.0
		vec[bucket] += sign
	norm = math.sqrt(sum(v * v for v in vec)) or 1.0
	return [v / norm for v in vec]


def generate_embedding(text: str, timeout: Optional[float] = None) -> List[float]:
	"""Embed ``text`` into a fixed-dimension vector.

	``timeout`` caps the provider request in seconds; retrieval passes its
	remaining latency budget so the worker thread cannot outlive it.

	Raises:
		EmbeddingError: when the provider call fails or the vector has the wrong size.
	"""
	dimensions = get_embedding_dimensions()
	model = get_embedding_model_name()
	api_key = (get_openai_api_key() or "").strip()

	if not api_key:
		return hashed_embedding(text, dimensions)

	with traced(
		"embedding_generation",
		kind="generation",
		model=model,
		input=text[:200],
		metadata={"dimensions": dimensions},
	) as generation:
		try:
			client = _openai_client(api_key, timeout)
			resp = client.embeddings.create(model=model, input=text, dimensions=dimensions)
			embedding = list(resp.data[0].embedding)
		except Exception as exc:
			logger.warning("[embed.failed] model=%s error=%s", model, exc)
			raise EmbeddingError(f"embedding call failed: {exc}") from exc
		if len(embedding) != dimensions:
			raise EmbeddingError(
				f"embedding has {len(embedding)} dimensions, expected {dimensions}"
			)
		record_output(generation, {"dimension": len(embedding)})
		return embedding
