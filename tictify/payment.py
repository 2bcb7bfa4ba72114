from __future__ import annotations
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

import httpx

from .api import PaymentStatus, TictifyClient
from .config import (
    HANDOFF_DELAY_SECONDS, PAYMENT_MAX_ATTEMPTS, POLL_INTERVAL_SECONDS,
)
from .errors import FailureKind
from .logger import logger
from .polling import Poll, Poller, PollStatus


class PaymentState(str, Enum):
    INITIAL = "INITIAL"
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"
    ERROR = "ERROR"


TERMINAL = {PaymentState.SUCCESS, PaymentState.FAILED,
            PaymentState.TIMEOUT, PaymentState.ERROR}


@dataclass(frozen=True)
class Route:
    """Where the UI should go next. ``ticket-ready`` is keyed by the same
    payment reference that was just confirmed."""
    name: str
    reference: str

    @property
    def path(self) -> str:
        return f"/success?ref={self.reference}"


MESSAGES = {
    PaymentState.PENDING: "Waiting for payment confirmation…",
    PaymentState.SUCCESS: "Payment verified successfully.",
    PaymentState.FAILED: "Your payment could not be confirmed. "
                         "Start a new checkout to try again.",
    PaymentState.TIMEOUT: "Verification is taking longer than expected. "
                          "Your payment may still succeed: retry in a "
                          "moment.",
}
MSG_MISSING_REF = "Invalid or missing payment reference."
MSG_UNREACHABLE = ("Unable to verify payment at the moment. Please refresh "
                   "or contact support.")
MSG_MALFORMED = ("The payment service sent an unexpected response. "
                 "Contact support.")

OnChange = Callable[["PaymentConfirmation"], Any]
OnSuccess = Callable[[Route], Any]


class PaymentConfirmation:
    """INITIAL -> PENDING -> SUCCESS | FAILED | TIMEOUT | ERROR

    Polls the payment status endpoint for one reference. A failed HTTP call
    is just a wasted attempt; only a malformed payload, or running out of
    attempts on a transport failure, ends in ERROR. Running out while the
    backend still says PENDING is TIMEOUT, which ``retry()`` can restart.

    On SUCCESS the machine waits ``handoff_delay`` seconds (so the
    confirmation can be seen) and then calls ``on_success`` exactly once
    with the ticket-ready route. It never looks up the ticket itself.
    """

    def __init__(
        self,
        client: TictifyClient,
        reference: Optional[str],
        *,
        interval: float = POLL_INTERVAL_SECONDS,
        max_attempts: int = PAYMENT_MAX_ATTEMPTS,
        handoff_delay: float = HANDOFF_DELAY_SECONDS,
        source: str = "status",
        on_change: Optional[OnChange] = None,
        on_success: Optional[OnSuccess] = None,
    ) -> None:
        if source not in ("status", "verify"):
            raise ValueError("source must be 'status' or 'verify'")
        self.client = client
        self.reference = (reference or "").strip()
        self.interval = interval
        self.max_attempts = max_attempts
        self.handoff_delay = handoff_delay
        self.source = source
        self.on_change = on_change
        self.on_success = on_success

        self.state = PaymentState.INITIAL
        self.message = ""
        self.kind: Optional[FailureKind] = None
        self.route: Optional[Route] = None
        self.last_status: Optional[PaymentStatus] = None
        self._poller: Optional[Poller[PaymentStatus]] = None
        self._cancelled = False
        self._handoff_done = False
        self._stop = asyncio.Event()

    @property
    def attempts(self) -> int:
        return self._poller.attempts if self._poller else 0

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL

    def _set(self, state: PaymentState, message: str,
             kind: Optional[FailureKind] = None) -> None:
        if self._cancelled:
            return
        if state != self.state:
            logger.info("payment %s: %s -> %s",
                        self.reference or "<none>", self.state.value,
                        state.value)
        self.state = state
        self.message = message
        self.kind = kind
        if self.on_change is not None:
            self.on_change(self)

    async def _fetch(self) -> Poll[PaymentStatus]:
        if self.source == "verify":
            status = await self.client.verify_payment(self.reference)
        else:
            status = await self.client.payment_status(self.reference)
        return Poll(done=status != PaymentStatus.PENDING, value=status)

    def _observe(self, attempts: int, result, error) -> None:
        if result is not None:
            self.last_status = result.value

    async def run(self) -> PaymentState:
        if self.terminal:
            return self.state
        if not self.reference:
            self._set(PaymentState.ERROR, MSG_MISSING_REF,
                      FailureKind.FATAL_LOCAL)
            return self.state

        self._set(PaymentState.PENDING, MESSAGES[PaymentState.PENDING],
                  FailureKind.TRANSIENT)
        self._poller = Poller(
            self._fetch,
            interval=self.interval,
            max_attempts=self.max_attempts,
            retry_on=(httpx.HTTPError,),
            on_attempt=self._observe,
            name=f"payment[{self.reference}]",
        )
        if self._cancelled:
            self._poller.cancel()
        outcome = await self._poller.run()
        if self._cancelled or outcome.status == PollStatus.CANCELLED:
            return self.state

        if outcome.status == PollStatus.READY:
            if outcome.value == PaymentStatus.SUCCESS:
                self._set(PaymentState.SUCCESS,
                          MESSAGES[PaymentState.SUCCESS])
                await self._handoff()
            else:
                self._set(PaymentState.FAILED, MESSAGES[PaymentState.FAILED],
                          FailureKind.KNOWN_BAD)
        elif outcome.status == PollStatus.EXHAUSTED:
            if isinstance(outcome.error, httpx.HTTPError):
                self._set(PaymentState.ERROR, MSG_UNREACHABLE,
                          FailureKind.UNKNOWN)
            else:
                self._set(PaymentState.TIMEOUT,
                          MESSAGES[PaymentState.TIMEOUT],
                          FailureKind.UNKNOWN)
        else:
            logger.warning("payment %s: giving up: %r",
                           self.reference, outcome.error)
            self._set(PaymentState.ERROR, MSG_MALFORMED, FailureKind.BROKEN)
        return self.state

    async def _handoff(self) -> None:
        if self._handoff_done:
            return
        if self.handoff_delay > 0:
            try:
                await asyncio.wait_for(self._stop.wait(),
                                       timeout=self.handoff_delay)
            except asyncio.TimeoutError:
                pass
        if self._cancelled or self._handoff_done:
            return
        self._handoff_done = True
        self.route = Route("ticket-ready", self.reference)
        logger.info("payment %s: handing off to %s",
                    self.reference, self.route.path)
        if self.on_success is not None:
            self.on_success(self.route)

    async def retry(self) -> PaymentState:
        """Manual re-poll after TIMEOUT with a fresh attempt budget."""
        if self.state != PaymentState.TIMEOUT:
            raise RuntimeError(
                f"retry is only possible after TIMEOUT, not {self.state.value}"
            )
        self._set(PaymentState.INITIAL, "", None)
        self._poller = None
        return await self.run()

    def cancel(self) -> None:
        """Stop polling and suppress any pending hand-off. Idempotent."""
        self._cancelled = True
        self._stop.set()
        if self._poller is not None:
            self._poller.cancel()
