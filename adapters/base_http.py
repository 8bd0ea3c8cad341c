"""Base HTTP adapter with request/retry management."""
import asyncio
import json
import logging
import time
from abc import abstractmethod
from typing import Optional, Tuple

import httpx
from tenacity import (retry, retry_if_exception, stop_after_attempt,
                      wait_exponential)

from adapters.base import HealthTracker, ProviderGateway
from models.schema import (CouncilMember, ProviderError, ProviderHealth,
                           ProviderResponse, RetryPolicy, TokenUsage)

logger = logging.getLogger(__name__)


def is_retryable_http_error(exception):
    """
    Determine if an HTTP error should be retried.

    Retries on:
    - 5xx server errors
    - 429 rate limit errors
    - Network errors (connection, timeout)

    Does NOT retry on:
    - 4xx client errors (bad request, auth, etc.)

    Args:
        exception: The exception to check

    Returns:
        bool: True if the error should be retried
    """
    if isinstance(exception, httpx.HTTPStatusError):
        return (
            exception.response.status_code >= 500
            or exception.response.status_code == 429
        )

    return isinstance(
        exception, (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError)
    )


def error_code(exception: BaseException) -> str:
    """
    Map an exception raised during a provider call to a ProviderError code.

    Codes:
        RATE_LIMIT: HTTP 429
        SERVICE_UNAVAILABLE: HTTP 5xx or connection failure
        AUTHENTICATION: HTTP 401/403
        INVALID_REQUEST: other HTTP 4xx
        TIMEOUT: request or overall call timed out
        INVALID_RESPONSE: response body missing expected fields
        UNKNOWN_ERROR: anything else
    """
    if isinstance(exception, httpx.HTTPStatusError):
        status = exception.response.status_code
        if status == 429:
            return "RATE_LIMIT"
        if status >= 500:
            return "SERVICE_UNAVAILABLE"
        if status in (401, 403):
            return "AUTHENTICATION"
        return "INVALID_REQUEST"

    if isinstance(exception, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return "TIMEOUT"
    if isinstance(exception, (httpx.ConnectError, httpx.NetworkError)):
        return "SERVICE_UNAVAILABLE"
    if isinstance(exception, (KeyError, IndexError, TypeError, json.JSONDecodeError)):
        return "INVALID_RESPONSE"
    return "UNKNOWN_ERROR"


class BaseHTTPAdapter(ProviderGateway):
    """
    Abstract base class for HTTP API adapters.

    Handles HTTP requests, timeout management, retry logic with exponential
    backoff driven by the member's RetryPolicy, and error handling. Subclasses
    implement build_request() and parse_response() for API-specific logic.

    Example:
        class MyAdapter(BaseHTTPAdapter):
            def build_request(self, model, prompt):
                return ("/api/generate", {"Content-Type": "application/json"}, {"prompt": prompt})

            def parse_response(self, response_json):
                return response_json["text"], TokenUsage()

        adapter = MyAdapter(base_url="http://localhost:8080", timeout=60)
        response = await adapter.send_request(member, "Hello")
    """

    provider_name = "http"

    def __init__(
        self,
        base_url: str,
        timeout: int = 60,
        api_key: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
        provider_id: Optional[str] = None,
    ):
        """
        Initialize HTTP adapter.

        Args:
            base_url: Base URL for API (e.g., "http://localhost:11434")
            timeout: Upper bound in seconds for one HTTP request (default: 60)
            api_key: Optional API key for authentication
            headers: Optional default headers to include in all requests
            provider_id: Name used in health reports (default: provider_name)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        self.default_headers = headers or {}
        self.health = HealthTracker(provider_id or self.provider_name)

    @abstractmethod
    def build_request(
        self, model: str, prompt: str
    ) -> Tuple[str, dict[str, str], dict]:
        """
        Build API-specific request components.

        Args:
            model: Model identifier
            prompt: The prompt to send

        Returns:
            Tuple of (endpoint, headers, body):
            - endpoint: URL path (e.g., "/api/generate")
            - headers: Request headers dict
            - body: Request body dict (will be JSON-encoded)
        """
        pass

    @abstractmethod
    def parse_response(self, response_json: dict) -> Tuple[str, TokenUsage]:
        """
        Parse API-specific response.

        Args:
            response_json: Parsed JSON response from API

        Returns:
            Tuple of (model output text, token usage)
        """
        pass

    async def send_request(self, member: CouncilMember, prompt: str) -> ProviderResponse:
        """
        Send the prompt to ``member.model``. Never raises for provider failures.

        Retries follow ``member.retry_policy``: only error codes listed in
        ``retryable_errors`` are retried, with exponential backoff.
        """
        start = time.monotonic()
        endpoint, headers, body = self.build_request(member.model, prompt)
        headers = {**self.default_headers, **headers}
        full_url = f"{self.base_url}{endpoint}"

        logger.debug(
            f"HTTP request to {full_url} for {member.id}: "
            f"body_size={len(json.dumps(body))} bytes, prompt_length={len(prompt)} chars"
        )

        try:
            response_json = await self._execute_request_with_retry(
                url=full_url,
                headers=headers,
                body=body,
                policy=member.retry_policy,
                timeout=min(float(self.timeout), member.timeout),
            )
            content, usage = self.parse_response(response_json)
        except Exception as e:
            latency = time.monotonic() - start
            code = error_code(e)
            self.health.record_failure()
            logger.warning(f"Request for {member.id} failed with {code}: {e}")
            return ProviderResponse(
                success=False,
                latency=latency,
                error=ProviderError(
                    code=code,
                    message=str(e) or e.__class__.__name__,
                    retryable=code in member.retry_policy.retryable_errors,
                ),
            )

        latency = time.monotonic() - start
        self.health.record_success(latency)
        return ProviderResponse(
            success=True, content=content, token_usage=usage, latency=latency
        )

    async def get_health(self) -> ProviderHealth:
        return self.health.snapshot()

    async def _execute_request_with_retry(
        self,
        url: str,
        headers: dict[str, str],
        body: dict,
        policy: RetryPolicy,
        timeout: float,
    ) -> dict:
        """
        Execute HTTP POST request with retry logic.

        Args:
            url: Full request URL
            headers: Request headers
            body: Request body (will be JSON-encoded)
            policy: Retry policy of the calling member
            timeout: Per-attempt timeout in seconds

        Returns:
            Parsed JSON response

        Raises:
            httpx.HTTPStatusError: On HTTP error (after retries exhausted)
            httpx.TransportError: On network error (after retries exhausted)
        """

        @retry(
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_exponential(
                multiplier=policy.initial_delay_ms / 1000,
                max=policy.max_delay_ms / 1000,
                exp_base=policy.backoff_multiplier,
            ),
            retry=retry_if_exception(
                lambda e: error_code(e) in policy.retryable_errors
            ),
            reraise=True,
        )
        async def _make_request():
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.post(url, headers=headers, json=body)

                # Log error response body for 4xx errors (helps debugging)
                if 400 <= response.status_code < 500:
                    logger.error(
                        f"HTTP {response.status_code} error response body: {response.text[:500]}"
                    )

                response.raise_for_status()
                return response.json()

        return await _make_request()
