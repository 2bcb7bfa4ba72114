from __future__ import annotations
from typing import Any, Callable, Optional

from .api import TictifyClient
from .config import ClientConfig
from .payment import PaymentConfirmation, PaymentState, Route
from .tickets import TicketState, TicketWaiter


class PurchaseFlow:
    """Payment confirmation followed by ticket waiting for one reference.

    Ticket polling only starts once the payment machine has navigated to
    the ticket-ready route, and it uses the reference carried by that
    route. ``cancel()`` tears down whichever stage is running.
    """

    def __init__(
        self,
        client: TictifyClient,
        reference: Optional[str],
        config: ClientConfig = ClientConfig(),
        *,
        on_change: Optional[Callable[[Any], Any]] = None,
    ) -> None:
        self.client = client
        self.config = config
        self.on_change = on_change
        self.route: Optional[Route] = None
        self.payment = PaymentConfirmation(
            client, reference,
            interval=config.poll_interval,
            max_attempts=config.payment_max_attempts,
            handoff_delay=config.handoff_delay,
            on_change=on_change,
            on_success=self._navigate,
        )
        self.ticket: Optional[TicketWaiter] = None

    def _navigate(self, route: Route) -> None:
        self.route = route
        self.ticket = TicketWaiter(
            self.client, route.reference,
            interval=self.config.poll_interval,
            max_attempts=self.config.ticket_max_attempts,
            on_change=self.on_change,
        )

    async def run(self) -> PaymentState | TicketState:
        state = await self.payment.run()
        if state != PaymentState.SUCCESS or self.ticket is None:
            return state
        return await self.ticket.wait()

    def cancel(self) -> None:
        self.payment.cancel()
        if self.ticket is not None:
            self.ticket.cancel()
