"""Decision-memory feedback loop: publish, ingest, recall."""

from .client_api import DecisionMemoryClient
from .ingestion import IngestionOutcome, IngestionWorker
from .orchestrator import DecisionMemory, build_default_decision_memory
from .publisher import DecisionPublisher
from .transport import DeadLetter, DecisionTransport, Delivery

__all__ = [
    "DecisionMemoryClient",
    "DecisionMemory",
    "build_default_decision_memory",
    "DecisionPublisher",
    "DecisionTransport",
    "Delivery",
    "DeadLetter",
    "IngestionWorker",
    "IngestionOutcome",
]
