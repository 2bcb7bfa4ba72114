from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

import httpx

from .api import TictifyClient
from .errors import FailureKind, MalformedResponse, SessionExpired
from .helpers import now_ts
from .logger import logger


@dataclass(frozen=True)
class ScanAttempt:
    code: str
    event_id: str
    timestamp: float = field(default_factory=now_ts)
    source: str = "manual"  # manual | camera


@dataclass(frozen=True)
class RedemptionResult:
    granted: bool
    reason: str
    # None for a real verdict from the gateway; set when no verdict exists
    kind: Optional[FailureKind] = None


# ----------------------------
# Verification gateway contract
# ----------------------------
class VerificationGateway(ABC):
    """Checks a code against the selected event and redeems it.

    The backend must answer a second scan of an already-redeemed code with a
    denial, never a second grant. Callers may add their own duplicate
    suppression but must not rely on it.
    """

    @abstractmethod
    async def verify(self, attempt: ScanAttempt) -> RedemptionResult: ...


class HttpVerificationGateway(VerificationGateway):
    def __init__(self, client: TictifyClient) -> None:
        self.client = client

    async def verify(self, attempt: ScanAttempt) -> RedemptionResult:
        try:
            granted, message = await self.client.scan_ticket(
                attempt.code, attempt.event_id
            )
        except SessionExpired as e:
            return RedemptionResult(False, str(e), FailureKind.FATAL_LOCAL)
        except httpx.HTTPError as e:
            logger.warning("scan %s: gateway unreachable: %r",
                           attempt.code, e)
            return RedemptionResult(
                False,
                "Could not verify the ticket: the server did not answer. "
                "Check the connection and scan again.",
                FailureKind.TRANSIENT,
            )
        except MalformedResponse as e:
            logger.warning("scan %s: no verdict: %s", attempt.code, e)
            return RedemptionResult(
                False,
                "Could not verify the ticket: the server sent an unexpected "
                "answer. Scan again, or contact support if it persists.",
                FailureKind.BROKEN,
            )
        if granted:
            return RedemptionResult(True, message)
        return RedemptionResult(False, message)
