import asyncio

import pytest

from tictify.config import ClientConfig
from tictify.flow import PurchaseFlow
from tictify.payment import PaymentState
from tictify.tickets import TicketState
from tests.helpers import TICKET_PAYLOAD, eventually, not_found, pending

pytestmark = pytest.mark.asyncio

STATUS = "/api/payments/status/ref-1"
TICKET = "/api/tickets/by-reference/ref-1"

FAST = ClientConfig(poll_interval=0, handoff_delay=0,
                    payment_max_attempts=20, ticket_max_attempts=15)


async def test_ticket_polling_starts_after_payment_success(backend,
                                                           client_for):
    backend.script("GET", STATUS, pending(), pending(),
                   (200, {"status": "SUCCESS"}))
    backend.script("GET", TICKET, not_found(), not_found(),
                   (200, TICKET_PAYLOAD))

    async with client_for() as client:
        flow = PurchaseFlow(client, "ref-1", FAST)
        state = await flow.run()

    assert state == TicketState.READY
    assert flow.route.reference == "ref-1"
    assert flow.ticket.reference == "ref-1"
    paths = [p for _, p in backend.calls]
    assert paths == [STATUS] * 3 + [TICKET] * 3


async def test_failed_payment_never_looks_for_a_ticket(backend, client_for):
    backend.script("GET", STATUS, (200, {"status": "FAILED"}))

    async with client_for() as client:
        flow = PurchaseFlow(client, "ref-1", FAST)
        state = await flow.run()

    assert state == PaymentState.FAILED
    assert flow.ticket is None
    assert backend.count(TICKET) == 0


async def test_cancel_tears_down_ticket_wait(backend, client_for):
    backend.script("GET", STATUS, (200, {"status": "SUCCESS"}))
    backend.script("GET", TICKET, not_found())
    config = ClientConfig(poll_interval=30, handoff_delay=0)

    async with client_for() as client:
        flow = PurchaseFlow(client, "ref-1", config)
        task = asyncio.create_task(flow.run())
        await eventually(lambda: backend.count(TICKET) == 1)
        flow.cancel()
        state = await asyncio.wait_for(task, 1.0)

    assert state == TicketState.PROCESSING
    assert backend.count(TICKET) == 1
