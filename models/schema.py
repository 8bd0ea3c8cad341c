"""Pydantic models for council consensus negotiation."""
from datetime import datetime
from typing import Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

Confidence = Literal["high", "medium", "low"]
TrendDirection = Literal["converging", "diverging", "stagnant"]
DeadlockRisk = Literal["low", "medium", "high"]
ExampleCategory = Literal["endorsement", "refinement", "compromise"]
FallbackStrategy = Literal["consensus-extraction", "meta-synthesis", "weighted-fusion"]
NegotiationMode = Literal["parallel", "sequential"]


class RetryPolicy(BaseModel):
    """Retry policy applied by HTTP adapters for a council member."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1, le=10)
    initial_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=10000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    retryable_errors: list[str] = Field(
        default_factory=lambda: ["RATE_LIMIT", "TIMEOUT", "SERVICE_UNAVAILABLE"],
        description="Error codes that should trigger a retry",
    )


class CouncilMember(BaseModel):
    """A configured model backend participating in deliberation."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Unique council member identifier")
    provider: str = Field(..., description="Provider adapter name (e.g. 'openrouter')")
    model: str = Field(..., description="Model identifier passed to the provider")
    timeout: float = Field(default=30.0, gt=0, description="Per-call timeout in seconds")
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    weight: float = Field(
        default=1.0, ge=0.0, description="Weight used by weighted-fusion fallback"
    )


class UserRequest(BaseModel):
    """Incoming user query."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    query: str = Field(..., min_length=1)
    session_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.now)


class TokenUsage(BaseModel):
    """Token counts reported by a provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class Exchange(BaseModel):
    """One council member's contribution to a round."""

    council_member_id: str
    content: str
    references_to: list[str] = Field(default_factory=list)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


class Round(BaseModel):
    """A single negotiation round. Round 0 holds the independent answers."""

    round_number: int = Field(..., ge=0)
    exchanges: list[Exchange] = Field(default_factory=list)


class DeliberationThread(BaseModel):
    """Ordered record of rounds for one request."""

    rounds: list[Round] = Field(default_factory=list)
    total_duration: float = Field(default=0.0, description="Seconds spent deliberating")

    def append_round(self, round_: Round) -> None:
        """Append a round, enforcing consecutive round numbers."""
        expected = len(self.rounds)
        if round_.round_number != expected:
            raise ValueError(
                f"Round number {round_.round_number} out of sequence (expected {expected})"
            )
        self.rounds.append(round_)


class ProviderError(BaseModel):
    """Structured provider failure, returned instead of raised."""

    code: str
    message: str
    retryable: bool = False


class ProviderResponse(BaseModel):
    """Result of a single provider call."""

    success: bool
    content: str = ""
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    latency: float = Field(default=0.0, description="Call latency in seconds")
    error: Optional[ProviderError] = None


class ProviderHealth(BaseModel):
    """Rolling health snapshot for one provider."""

    provider_id: str
    status: Literal["healthy", "degraded", "disabled"] = "healthy"
    success_rate: float = 1.0
    avg_latency: float = 0.0
    last_failure: Optional[datetime] = None


class SimilarityResult(BaseModel):
    """Pairwise similarity statistics for one round."""

    matrix: list[list[float]]
    average_similarity: float
    min_similarity: float
    max_similarity: float
    below_threshold_pairs: list[tuple[str, str, float]] = Field(default_factory=list)


class Agreement(BaseModel):
    """Group of members whose positions are mutually similar."""

    member_ids: list[str]
    position: str
    cohesion: float


class ConvergenceTrend(BaseModel):
    """Derived analysis of a similarity history."""

    direction: TrendDirection
    velocity: float
    predicted_rounds: float = Field(
        ..., description="Rounds until threshold; math.inf when no progress"
    )
    deadlock_risk: DeadlockRisk
    recommendation: str


class NegotiationExample(BaseModel):
    """Historical negotiation used to bias prompt style."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    category: ExampleCategory
    query_context: str
    disagreement: str
    resolution: str
    rounds_to_consensus: int = Field(..., ge=0)
    final_similarity: float = Field(..., ge=0.0, le=1.0)
    created_at: datetime = Field(default_factory=datetime.now)


class IterativeConsensusMetadata(BaseModel):
    """Negotiation outcome details attached to a decision."""

    model_config = ConfigDict(frozen=True)

    consensus_achieved: bool
    total_rounds: int = Field(..., ge=0)
    fallback_used: bool
    fallback_reason: Optional[str] = None
    similarity_progression: list[float] = Field(default_factory=list)
    deadlock_detected: bool = False
    human_escalation_triggered: bool = False
    quality_score: float = Field(default=0.0, ge=0.0, le=1.0)


class ConsensusDecision(BaseModel):
    """Final answer produced for a request."""

    model_config = ConfigDict(frozen=True)

    content: str
    confidence: Confidence
    agreement_level: float = Field(..., ge=0.0, le=1.0)
    synthesis_strategy: str
    contributing_members: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=datetime.now)
    iterative_consensus_metadata: Optional[IterativeConsensusMetadata] = None
