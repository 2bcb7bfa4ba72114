from __future__ import annotations
from enum import Enum
from typing import Any, Callable, Optional

import httpx

from .api import PaymentStatus, TicketPayload, TictifyClient
from .config import POLL_INTERVAL_SECONDS, TICKET_MAX_ATTEMPTS
from .errors import FailureKind, MalformedResponse
from .logger import logger
from .polling import Poll, Poller, PollStatus


class TicketState(str, Enum):
    PROCESSING = "PROCESSING"
    READY = "READY"
    ERROR = "ERROR"


MSG_PROCESSING = "Your payment is confirmed. Generating your ticket…"
MSG_DELAYED = ("Your payment went through, but your ticket is taking longer "
               "than usual to be issued. Check again in a few minutes; it "
               "will also be sent to your email.")
MSG_PAYMENT_FAILED = ("This payment was not completed, so no ticket will be "
                      "issued. Start a new checkout.")
MSG_BROKEN = ("Something went wrong while loading your ticket. Contact "
              "support with your payment reference.")
MSG_MISSING_REF = "Invalid or missing payment reference."


class TicketWaiter:
    """PROCESSING -> READY | ERROR

    The ticket is written by the payment webhook, some time after the
    payment itself is confirmed. Until then the lookup answers 404, which
    is the normal "not yet" answer and is polled again. Any other error
    status means the backend is broken. Running out of attempts means the
    ticket is late, not that anything failed, and the message says so.

    Once READY the payload is kept and ``wait()`` never polls again.
    """

    def __init__(
        self,
        client: TictifyClient,
        reference: Optional[str],
        *,
        interval: float = POLL_INTERVAL_SECONDS,
        max_attempts: int = TICKET_MAX_ATTEMPTS,
        confirm_payment: bool = True,
        on_change: Optional[Callable[["TicketWaiter"], Any]] = None,
    ) -> None:
        self.client = client
        self.reference = (reference or "").strip()
        self.interval = interval
        self.max_attempts = max_attempts
        self.confirm_payment = confirm_payment
        self.on_change = on_change

        self.state = TicketState.PROCESSING
        self.message = MSG_PROCESSING
        self.kind: Optional[FailureKind] = FailureKind.TRANSIENT
        self.payload: Optional[TicketPayload] = None
        self._poller: Optional[Poller[TicketPayload]] = None
        self._cancelled = False

    @property
    def attempts(self) -> int:
        return self._poller.attempts if self._poller else 0

    def _set(self, state: TicketState, message: str,
             kind: Optional[FailureKind]) -> None:
        if self._cancelled:
            return
        if state != self.state:
            logger.info("ticket %s: %s -> %s", self.reference or "<none>",
                        self.state.value, state.value)
        self.state = state
        self.message = message
        self.kind = kind
        if self.on_change is not None:
            self.on_change(self)

    async def _fetch(self) -> Poll[TicketPayload]:
        payload = await self.client.ticket_by_reference(self.reference)
        if payload is None:
            return Poll.pending()
        return Poll.ready(payload)

    async def wait(self) -> TicketState:
        if self.state != TicketState.PROCESSING:
            return self.state
        if not self.reference:
            self._set(TicketState.ERROR, MSG_MISSING_REF,
                      FailureKind.FATAL_LOCAL)
            return self.state
        if self._poller is not None and self._poller.running:
            raise RuntimeError(f"ticket {self.reference}: already waiting")

        self._poller = Poller(
            self._fetch,
            interval=self.interval,
            max_attempts=self.max_attempts,
            retry_on=(httpx.TransportError,),
            name=f"ticket[{self.reference}]",
        )
        if self._cancelled:
            self._poller.cancel()
        outcome = await self._poller.run()
        if self._cancelled or outcome.status == PollStatus.CANCELLED:
            return self.state

        if outcome.status == PollStatus.READY:
            self.payload = outcome.value
            self._set(TicketState.READY, "Your ticket is ready.", None)
        elif outcome.status == PollStatus.EXHAUSTED:
            await self._give_up_delayed()
        else:
            err = outcome.error
            if isinstance(err, (httpx.HTTPStatusError, MalformedResponse)):
                logger.warning("ticket %s: lookup failed: %s",
                               self.reference, err)
            else:
                logger.exception("ticket %s: unexpected lookup failure",
                                 self.reference, exc_info=err)
            self._set(TicketState.ERROR, MSG_BROKEN, FailureKind.BROKEN)
        return self.state

    async def _give_up_delayed(self) -> None:
        # one fresh authoritative read before telling the buyer anything
        status: Optional[PaymentStatus] = None
        if self.confirm_payment:
            try:
                status = await self.client.verify_payment(self.reference)
            except (httpx.HTTPError, MalformedResponse) as e:
                logger.warning("ticket %s: payment re-check failed: %s",
                               self.reference, e)
        if self._cancelled:
            return
        if status == PaymentStatus.FAILED:
            self._set(TicketState.ERROR, MSG_PAYMENT_FAILED,
                      FailureKind.KNOWN_BAD)
        else:
            self._set(TicketState.ERROR, MSG_DELAYED, FailureKind.UNKNOWN)

    def reset(self) -> None:
        """Allow a manual re-poll after a "delayed" error."""
        if self.state == TicketState.ERROR and self.kind == FailureKind.UNKNOWN:
            self._poller = None
            self._set(TicketState.PROCESSING, MSG_PROCESSING,
                      FailureKind.TRANSIENT)

    def cancel(self) -> None:
        self._cancelled = True
        if self._poller is not None:
            self._poller.cancel()
