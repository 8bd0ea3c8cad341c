"""Audit sinks for negotiation rounds and final decisions."""
import logging
from abc import ABC, abstractmethod
from typing import Optional, Sequence

from models.schema import (ConsensusDecision, ConvergenceTrend, Exchange,
                           SimilarityResult)
from persistence.storage import CouncilStorage

logger = logging.getLogger(__name__)


class EventSink(ABC):
    """
    Destination for negotiation audit events.

    The orchestrator calls these from detached background tasks, so an
    implementation may raise freely: failures are logged by the caller and
    never affect the decision.
    """

    @abstractmethod
    async def log_round(
        self,
        request_id: str,
        round_number: int,
        exchanges: Sequence[Exchange],
        similarity: Optional[SimilarityResult] = None,
        trend: Optional[ConvergenceTrend] = None,
    ) -> None:
        pass

    @abstractmethod
    async def log_decision(self, request_id: str, decision: ConsensusDecision) -> None:
        pass


class NullEventSink(EventSink):
    """Discards every event. Used when persistence is disabled."""

    async def log_round(self, request_id, round_number, exchanges, similarity=None, trend=None):
        return None

    async def log_decision(self, request_id, decision):
        return None


class StorageEventSink(EventSink):
    """Writes rounds and decisions to SQLite through CouncilStorage."""

    def __init__(self, storage: CouncilStorage):
        self.storage = storage

    async def log_round(
        self,
        request_id: str,
        round_number: int,
        exchanges: Sequence[Exchange],
        similarity: Optional[SimilarityResult] = None,
        trend: Optional[ConvergenceTrend] = None,
    ) -> None:
        self.storage.save_round(request_id, round_number, exchanges, similarity, trend)

    async def log_decision(self, request_id: str, decision: ConsensusDecision) -> None:
        self.storage.save_decision(request_id, decision)
