"""Pytest fixtures for all test modules."""
from typing import Dict, List, Optional, Sequence

import pytest

from adapters.base import HealthTracker, ProviderGateway
from deliberation.similarity import SimilarityMeasurer
from models.config import IterativeConsensusConfig
from models.schema import (CouncilMember, DeliberationThread, Exchange,
                           ProviderError, ProviderHealth, ProviderResponse,
                           Round, SimilarityResult, UserRequest)
from persistence.storage import CouncilStorage


class MockGateway(ProviderGateway):
    """
    Gateway with scripted per-member responses.

    ``responses`` maps member id to either a fixed string, a list of strings
    consumed one per call (the last one repeats), or None for a member that
    always fails.
    """

    def __init__(self, responses: Optional[Dict[str, object]] = None):
        self.responses = responses or {}
        self.calls: List[tuple] = []
        self.health = HealthTracker("mock")

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def calls_for(self, member_id: str) -> List[str]:
        return [prompt for mid, prompt in self.calls if mid == member_id]

    async def send_request(self, member: CouncilMember, prompt: str) -> ProviderResponse:
        index = len(self.calls_for(member.id))
        self.calls.append((member.id, prompt))

        scripted = self.responses.get(member.id, f"{member.id} default answer")
        if scripted is None:
            self.health.record_failure()
            return ProviderResponse(
                success=False,
                error=ProviderError(
                    code="SERVICE_UNAVAILABLE", message="scripted failure", retryable=True
                ),
            )

        if isinstance(scripted, list):
            content = scripted[min(index, len(scripted) - 1)]
        else:
            content = scripted
        self.health.record_success(0.01)
        return ProviderResponse(success=True, content=content, latency=0.01)

    async def get_health(self) -> ProviderHealth:
        return self.health.snapshot()


class ScriptedMeasurer(SimilarityMeasurer):
    """
    Measurer whose round similarity follows a script.

    Each similarity_matrix call returns the next value (the last one
    repeats), with a uniform matrix so pairwise helpers still work.
    """

    def __init__(self, values: Sequence[float]):
        super().__init__()
        self.values = list(values)
        self.calls = 0

    async def similarity_matrix(self, member_ids, texts, model=None, threshold=0.7):
        value = self.values[min(self.calls, len(self.values) - 1)]
        self.calls += 1
        n = len(member_ids)
        matrix = [[1.0 if i == j else value for j in range(n)] for i in range(n)]
        below = [
            (member_ids[i], member_ids[j], value)
            for i in range(n)
            for j in range(i + 1, n)
            if value < threshold
        ]
        return SimilarityResult(
            matrix=matrix,
            average_similarity=value,
            min_similarity=value,
            max_similarity=value,
            below_threshold_pairs=below,
        )


def make_thread(contents: Dict[str, str]) -> DeliberationThread:
    """Thread holding only Round 0 with one exchange per member."""
    thread = DeliberationThread()
    thread.append_round(
        Round(
            round_number=0,
            exchanges=[
                Exchange(council_member_id=member_id, content=content)
                for member_id, content in contents.items()
            ],
        )
    )
    return thread


@pytest.fixture
def members():
    """Three council members on one mock provider."""
    return [
        CouncilMember(id="alpha", provider="mock", model="model-a", timeout=5),
        CouncilMember(id="beta", provider="mock", model="model-b", timeout=5),
        CouncilMember(id="gamma", provider="mock", model="model-c", timeout=5),
    ]


@pytest.fixture
def request_():
    return UserRequest(id="req-1", query="Which database should a small web app use?")


@pytest.fixture
def round0_thread():
    """Round 0 with three distinct answers."""
    return make_thread(
        {
            "alpha": "Use PostgreSQL for relational data and strong consistency.",
            "beta": "MongoDB is a better fit because the schema will change often.",
            "gamma": "SQLite is enough for a small app with a single server.",
        }
    )


@pytest.fixture
def consensus_config():
    """Negotiation settings with fast per-call timeouts and no examples."""
    return IterativeConsensusConfig(
        max_rounds=5,
        agreement_threshold=0.85,
        early_termination_enabled=False,
        per_round_timeout=5,
        example_count=0,
        randomization_seed=42,
    )


@pytest.fixture
def memory_storage():
    """In-memory CouncilStorage, closed after the test."""
    storage = CouncilStorage(":memory:")
    yield storage
    storage.close()
