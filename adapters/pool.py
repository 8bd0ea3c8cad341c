"""Routing of member requests to provider adapters with health tracking."""
import logging
import time
from typing import Optional

from adapters.base import HealthTracker, ProviderGateway
from models.schema import (CouncilMember, ProviderError, ProviderHealth,
                           ProviderResponse)

logger = logging.getLogger(__name__)


class ProviderPool(ProviderGateway):
    """
    Gateway that dispatches each request to the adapter named by
    ``member.provider``.

    The pool keeps its own HealthTracker per provider. Once a provider is
    disabled (five consecutive failures, or ``mark_disabled``) requests for
    it are answered locally with a PROVIDER_DISABLED error until it is
    re-enabled. Unknown providers yield PROVIDER_NOT_CONFIGURED.
    """

    def __init__(self, adapters: Optional[dict[str, ProviderGateway]] = None):
        self.adapters: dict[str, ProviderGateway] = dict(adapters or {})
        self._health: dict[str, HealthTracker] = {
            name: HealthTracker(name) for name in self.adapters
        }

    def register(self, name: str, adapter: ProviderGateway) -> None:
        self.adapters[name] = adapter
        self._health.setdefault(name, HealthTracker(name))

    def _failure(self, code: str, message: str, latency: float = 0.0) -> ProviderResponse:
        return ProviderResponse(
            success=False,
            latency=latency,
            error=ProviderError(code=code, message=message, retryable=False),
        )

    async def send_request(self, member: CouncilMember, prompt: str) -> ProviderResponse:
        adapter = self.adapters.get(member.provider)
        if adapter is None:
            message = (
                f"Provider '{member.provider}' not configured. "
                f"Configured providers: {', '.join(self.adapters) or 'none'}"
            )
            logger.error(message)
            return self._failure("PROVIDER_NOT_CONFIGURED", message)

        tracker = self._health[member.provider]
        if tracker.is_disabled:
            return self._failure(
                "PROVIDER_DISABLED",
                f"Provider {member.provider} is disabled: {tracker.disabled_reason}",
            )

        start = time.monotonic()
        try:
            response = await adapter.send_request(member, prompt)
        except Exception as e:
            # Adapters should not raise; treat it as a failed call if one does
            logger.error(
                f"Adapter {member.provider} raised for {member.id}: {e}", exc_info=True
            )
            response = self._failure("UNKNOWN_ERROR", str(e), time.monotonic() - start)

        if response.success:
            tracker.record_success(response.latency)
        else:
            tracker.record_failure()
        return response

    def get_provider_health(self, provider_id: str) -> ProviderHealth:
        tracker = self._health.get(provider_id)
        if tracker is None:
            raise KeyError(f"Unknown provider: '{provider_id}'")
        return tracker.snapshot()

    def get_all_health(self) -> list[ProviderHealth]:
        return [tracker.snapshot() for tracker in self._health.values()]

    async def get_health(self) -> ProviderHealth:
        """
        Aggregate health of all providers.

        Healthy when every provider is healthy, disabled when every provider
        is disabled (or none are registered), degraded otherwise.
        """
        snapshots = self.get_all_health()
        if not snapshots:
            return ProviderHealth(provider_id="pool", status="disabled", success_rate=0.0)

        statuses = {s.status for s in snapshots}
        if statuses == {"healthy"}:
            status = "healthy"
        elif statuses == {"disabled"}:
            status = "disabled"
        else:
            status = "degraded"

        failures = [s.last_failure for s in snapshots if s.last_failure is not None]
        return ProviderHealth(
            provider_id="pool",
            status=status,
            success_rate=sum(s.success_rate for s in snapshots) / len(snapshots),
            avg_latency=sum(s.avg_latency for s in snapshots) / len(snapshots),
            last_failure=max(failures) if failures else None,
        )

    def mark_disabled(self, provider_id: str, reason: str) -> None:
        self._health[provider_id].mark_disabled(reason)
        logger.warning(f"Provider {provider_id} disabled: {reason}")

    def enable_provider(self, provider_id: str) -> None:
        self._health[provider_id].enable()
        logger.info(f"Provider {provider_id} re-enabled")
