"""
Tracing utilities for Langfuse integration.

Observations nest through a ContextVar, so a generation started while a span
is active is attached under that span. All helpers degrade to no-ops when
Langfuse is not configured.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

from decision_memory.dependencies.langfuse_client import get_langfuse_client


logger = logging.getLogger("decision_memory.tracing")

_current_observation: ContextVar[Optional[Any]] = ContextVar("current_observation", default=None)


def get_current_observation() -> Optional[Any]:
	return _current_observation.get()


def _open(kind: str, name: str, **kwargs: Any) -> Optional[Any]:
	parent = _current_observation.get()
	source = parent if parent is not None else get_langfuse_client()
	if source is None:
		return None
	try:
		if kind == "generation":
			return source.start_generation(name=name, **kwargs)
		return source.start_span(name=name, **kwargs)
	except Exception as e:
		logger.error("[tracing] Failed to start %s name=%s: %s", kind, name, e)
		return None


@contextmanager
def traced(
	name: str,
	*,
	kind: str = "span",
	model: Optional[str] = None,
	input: Optional[Any] = None,
	metadata: Optional[Dict[str, Any]] = None,
) -> Iterator[Optional[Any]]:
	"""Wrap a block in a Langfuse span or generation.

	Exceptions raised by the block are recorded on the observation at ERROR
	level and re-raised unchanged.
	"""
	kwargs: Dict[str, Any] = {"input": input, "metadata": metadata or {}}
	if kind == "generation" and model:
		kwargs["model"] = model
	observation = _open(kind, name, **kwargs)
	token = _current_observation.set(observation) if observation is not None else None
	try:
		yield observation
	except Exception as exc:
		if observation is not None:
			trace_error(observation, exc)
		raise
	finally:
		if token is not None:
			_current_observation.reset(token)
		if observation is not None:
			try:
				observation.end()
			except Exception as e:
				logger.warning("[tracing] Failed to end observation name=%s: %s", name, e)


def record_output(observation: Optional[Any], output: Any, usage: Optional[Dict[str, int]] = None) -> None:
	if observation is None:
		return
	try:
		if usage:
			observation.update(output=output, usage_details=usage)
		else:
			observation.update(output=output)
	except Exception as e:
		logger.warning("[tracing] Failed to record output: %s", e)


def trace_error(observation: Optional[Any], exception: Exception) -> None:
	"""Mark an observation as failed."""
	if observation is None:
		return
	try:
		observation.update(
			level="ERROR",
			status_message=f"{type(exception).__name__}: {exception}",
		)
	except Exception as e:
		logger.warning("[tracing] Failed to record error: %s", e)
