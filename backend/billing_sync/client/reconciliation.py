"""Post-checkout reconciliation wait.

After the processor redirects back with a success marker, the confirming
webhook may not have been applied yet. The waiter re-reads the stored status
with bounded exponential backoff and reports ``pending`` instead of guessing
when the store still disagrees. It never returns a status it did not read.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from urllib.parse import parse_qs, urlparse

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from billing_sync.client.billing_client import BillingClient
from billing_sync.client.credentials import Credentials
from billing_sync.core.exceptions import ProcessorUnavailable

logger = structlog.get_logger(__name__)

ReadStatus = Callable[[], Awaitable[dict]]


class ReconciliationOutcome(StrEnum):
    CONFIRMED = "confirmed"
    PENDING = "pending"  # UI shows "still processing", not an error


@dataclass(frozen=True)
class ReconciliationResult:
    outcome: ReconciliationOutcome
    status: dict
    reads: int


def is_success_redirect(url: str) -> bool:
    """True when a checkout return URL carries the ``success=true`` marker."""
    query = parse_qs(urlparse(url).query)
    return query.get("success", [""])[0].lower() == "true"


def _not_active(status: dict) -> bool:
    return not status.get("is_active")


def _last_outcome(retry_state: RetryCallState) -> dict:
    # Last read status, or re-raise the last read error
    return retry_state.outcome.result()


class ReconciliationWaiter:
    """Bounded re-reads until the stored status is active-like.

    Defaults: 5 reads, sleeping 1s, 2s, 4s, 8s in between.
    """

    def __init__(
        self,
        read_status: ReadStatus,
        *,
        max_reads: int = 5,
        initial_delay: float = 1.0,
        max_delay: float = 8.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_reads < 1:
            raise ValueError("max_reads must be at least 1")
        self.read_status = read_status
        self.max_reads = max_reads
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self._sleep = sleep

    @classmethod
    def for_client(cls, client: BillingClient, credentials: Credentials, **kwargs) -> "ReconciliationWaiter":
        return cls(lambda: client.get_status(credentials), **kwargs)

    async def wait(self) -> ReconciliationResult:
        """Read immediately, then back off until confirmed or out of reads.

        Raises the last error when every read failed.
        """
        reads = 0

        async def _read() -> dict:
            nonlocal reads
            reads += 1
            return await self.read_status()

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_reads),
            wait=wait_exponential(multiplier=self.initial_delay, min=self.initial_delay, max=self.max_delay),
            retry=retry_if_result(_not_active) | retry_if_exception_type(ProcessorUnavailable),
            retry_error_callback=_last_outcome,
            sleep=self._sleep,
            before_sleep=lambda rs: logger.debug(
                "reconciliation_reread_scheduled",
                read=rs.attempt_number,
                sleep_seconds=rs.next_action.sleep,
            ),
        )
        status = await retrying(_read)

        outcome = ReconciliationOutcome.CONFIRMED if status.get("is_active") else ReconciliationOutcome.PENDING
        log = logger.info if outcome == ReconciliationOutcome.CONFIRMED else logger.warning
        log("reconciliation_finished", outcome=outcome.value, reads=reads, status=status.get("status"))
        return ReconciliationResult(outcome=outcome, status=status, reads=reads)
