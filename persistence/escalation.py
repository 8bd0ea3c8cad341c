"""Human escalation queue for deadlocked negotiations."""
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, List
from uuid import uuid4

from persistence.storage import CouncilStorage

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT = 5  # escalations per window
RATE_LIMIT_WINDOW = timedelta(hours=1)
MAX_REQUEST_ID_LENGTH = 100
MAX_REASON_LENGTH = 500

_CONTROL_CHARS = re.compile(r"[\x00-\x1F\x7F-\x9F]")
_SCRIPT_TAGS = re.compile(r"<script[\s\S]*?</script>", re.IGNORECASE)


def sanitize_reason(reason: str) -> str:
    """Strip control characters, quotes, semicolons, backslashes and script tags."""
    sanitized = _CONTROL_CHARS.sub("", reason)
    sanitized = re.sub(r"['\";\\]", "", sanitized)
    sanitized = _SCRIPT_TAGS.sub("", sanitized)
    return sanitized[:MAX_REASON_LENGTH].strip()


def sanitize_request_id(request_id: str) -> str:
    """Keep only letters, digits and hyphens."""
    return re.sub(r"[^a-zA-Z0-9-]", "", request_id)


class EscalationService(ABC):
    """Queue for negotiations that need a human reviewer."""

    @abstractmethod
    async def queue_escalation(self, request_id: str, reason: str) -> None:
        pass


class StorageEscalationService(EscalationService):
    """
    SQLite-backed escalation queue with an hourly rate limit.

    At most ``rate_limit`` escalations are queued per rolling hour. Requests
    beyond that are recorded with status ``rate_limited`` so they remain
    visible, and a request that already has a pending escalation is not
    queued twice.
    """

    def __init__(
        self,
        storage: CouncilStorage,
        rate_limit: int = DEFAULT_RATE_LIMIT,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.storage = storage
        self.rate_limit = rate_limit
        self.clock = clock

    async def queue_escalation(self, request_id: str, reason: str) -> None:
        """
        Queue a request for human review.

        Raises:
            ValueError: If request_id or reason is empty or too long
        """
        if not isinstance(request_id, str) or not request_id or len(request_id) > MAX_REQUEST_ID_LENGTH:
            raise ValueError(
                f"Invalid request_id: must be a non-empty string <= {MAX_REQUEST_ID_LENGTH} characters"
            )
        if not isinstance(reason, str) or not reason or len(reason) > MAX_REASON_LENGTH:
            raise ValueError(
                f"Invalid reason: must be a non-empty string <= {MAX_REASON_LENGTH} characters"
            )

        clean_id = sanitize_request_id(request_id)
        clean_reason = sanitize_reason(reason)
        now = self.clock()

        if not await self.should_escalate():
            logger.warning(f"Escalation rate limit exceeded for request {clean_id}")
            self.storage.insert_escalation(
                str(uuid4()), clean_id, f"Rate limited: {clean_reason}", "rate_limited", now
            )
            return

        if self.storage.has_pending_escalation(clean_id):
            logger.info(f"Escalation already pending for request {clean_id}")
            return

        self.storage.insert_escalation(str(uuid4()), clean_id, clean_reason, "pending", now)
        logger.info(f"Escalation queued for request {clean_id}: {clean_reason}")

    async def should_escalate(self) -> bool:
        """Whether the rolling-hour rate limit still allows another escalation."""
        since = self.clock() - RATE_LIMIT_WINDOW
        return self.storage.count_escalations_since(since) < self.rate_limit

    async def get_pending_escalations(self) -> List[dict]:
        """Pending escalations, oldest first, as dicts with id, request_id, reason, created_at."""
        return [
            {
                "id": row["id"],
                "request_id": row["request_id"],
                "reason": row["reason"],
                "created_at": datetime.fromisoformat(row["created_at"]),
            }
            for row in self.storage.list_escalations("pending")
        ]

    async def resolve_escalation(
        self, escalation_id: str, reviewed_by: str, resolution: str
    ) -> None:
        """
        Mark an escalation resolved.

        Raises:
            KeyError: If no escalation has this id
        """
        if not self.storage.resolve_escalation(
            escalation_id, reviewed_by, resolution, self.clock()
        ):
            raise KeyError(f"Escalation not found: {escalation_id}")
        logger.info(f"Escalation {escalation_id} resolved by {reviewed_by}")


class NullEscalationService(EscalationService):
    """Logs escalations without queuing them."""

    def __init__(self):
        self.requests: List[str] = []

    async def queue_escalation(self, request_id: str, reason: str) -> None:
        self.requests.append(request_id)
        logger.warning(f"Escalation requested for {request_id} (no queue configured): {reason}")
