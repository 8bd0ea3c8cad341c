"""Provider gateway interface and health tracking."""
import logging
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime
from typing import Optional

from models.schema import CouncilMember, ProviderHealth, ProviderResponse

logger = logging.getLogger(__name__)

DEGRADED_AFTER_FAILURES = 1
DISABLED_AFTER_FAILURES = 5
LATENCY_WINDOW = 100


class ProviderGateway(ABC):
    """
    Capability interface for sending one prompt to one council member.

    Implementations never raise for provider failures: errors come back as a
    ProviderResponse with ``success=False`` and a structured ProviderError so
    callers can branch on ``error.code`` directly.
    """

    @abstractmethod
    async def send_request(self, member: CouncilMember, prompt: str) -> ProviderResponse:
        """
        Send a prompt to the member's model.

        Args:
            member: Council member (provider, model, timeout, retry policy)
            prompt: Prompt text

        Returns:
            ProviderResponse with content and token usage, or a structured error
        """
        pass

    @abstractmethod
    async def get_health(self) -> ProviderHealth:
        """Return the current health snapshot."""
        pass


class HealthTracker:
    """
    Rolling health state for a single provider.

    One consecutive failure marks the provider degraded; DISABLED_AFTER_FAILURES
    consecutive failures disable it. Any success restores it to healthy.
    """

    def __init__(self, provider_id: str, failure_threshold: int = DISABLED_AFTER_FAILURES):
        self.provider_id = provider_id
        self.failure_threshold = failure_threshold
        self.consecutive_failures = 0
        self.success_count = 0
        self.total_requests = 0
        self.last_failure: Optional[datetime] = None
        self.disabled_reason: Optional[str] = None
        self._latencies: deque = deque(maxlen=LATENCY_WINDOW)

    @property
    def status(self) -> str:
        if self.disabled_reason is not None:
            return "disabled"
        if self.consecutive_failures >= DEGRADED_AFTER_FAILURES:
            return "degraded"
        return "healthy"

    @property
    def is_disabled(self) -> bool:
        return self.disabled_reason is not None

    def record_success(self, latency: float) -> None:
        self.total_requests += 1
        self.success_count += 1
        self.consecutive_failures = 0
        self.disabled_reason = None
        self._latencies.append(latency)

    def record_failure(self) -> bool:
        """Record a failure. Returns True if this failure disabled the provider."""
        self.total_requests += 1
        self.consecutive_failures += 1
        self.last_failure = datetime.now()

        if self.consecutive_failures >= self.failure_threshold and not self.is_disabled:
            self.disabled_reason = f"{self.failure_threshold} consecutive failures"
            logger.warning(f"Provider {self.provider_id} disabled: {self.disabled_reason}")
            return True
        return False

    def mark_disabled(self, reason: str) -> None:
        self.disabled_reason = reason
        self.consecutive_failures = max(self.consecutive_failures, self.failure_threshold)

    def enable(self) -> None:
        """Manually re-enable a disabled provider."""
        self.disabled_reason = None
        self.consecutive_failures = 0

    def snapshot(self) -> ProviderHealth:
        success_rate = (
            self.success_count / self.total_requests if self.total_requests else 1.0
        )
        avg_latency = (
            sum(self._latencies) / len(self._latencies) if self._latencies else 0.0
        )
        return ProviderHealth(
            provider_id=self.provider_id,
            status=self.status,
            success_rate=success_rate,
            avg_latency=avg_latency,
            last_failure=self.last_failure,
        )
