"""Producer-side entry point for decision events."""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Optional, Union

from decision_memory.feedback_loop.transport import DecisionTransport
from decision_memory.models import DecisionEvent


logger = logging.getLogger("decision_memory.publisher")


class DecisionPublisher:
    """Fire-and-forget publish. Never raises into the calling pipeline stage.

    Raw mappings are queued as-is, so a malformed event still reaches the
    worker and ends up in the dead-letter sink with a reason.
    """

    def __init__(
        self,
        transport: DecisionTransport,
        *,
        on_publish: Optional[Callable[[], None]] = None,
    ) -> None:
        self._transport = transport
        self._on_publish = on_publish

    def publish(self, event: Union[DecisionEvent, Mapping[str, Any]]) -> bool:
        """Queue one event. Returns True when the transport accepted it."""
        try:
            body = event.model_dump(mode="json") if isinstance(event, DecisionEvent) else dict(event)
            message_id = self._transport.enqueue(body)
        except Exception as e:
            logger.warning("[publish.dropped] error=%s", e)
            return False
        finally:
            self._notify()
        logger.info("[publish.ok] message_id=%s", message_id)
        return True

    def _notify(self) -> None:
        if self._on_publish is None:
            return
        try:
            self._on_publish()
        except Exception as e:
            logger.warning("[publish.activity_signal_failed] error=%s", e)
