import asyncio

import httpx
import pytest

from tictify.errors import FailureKind
from tictify.tickets import (
    MSG_BROKEN, MSG_DELAYED, MSG_PAYMENT_FAILED, TicketState, TicketWaiter,
)
from tests.helpers import TICKET_PAYLOAD, eventually, not_found

pytestmark = pytest.mark.asyncio

TICKET = "/api/tickets/by-reference/ref-1"
VERIFY = "/api/payments/verify/ref-1"


def waiter(client, reference="ref-1", **kw):
    kw.setdefault("interval", 0)
    kw.setdefault("max_attempts", 15)
    return TicketWaiter(client, reference, **kw)


async def test_ticket_appears_after_ten_misses(backend, client_for):
    backend.script("GET", TICKET, *([not_found()] * 10),
                   (200, TICKET_PAYLOAD))

    async with client_for() as client:
        w = waiter(client)
        state = await w.wait()

    assert state == TicketState.READY
    assert backend.count(TICKET) == 11
    assert w.payload.ticket.code == "TIX-1"
    assert w.payload.ticket.ticket_type == "VIP"
    assert w.payload.ticket.qr_image.startswith("data:image/png")
    assert w.payload.event.title == "Lagos Jazz Night"
    assert w.kind is None


async def test_ready_is_sticky(backend, client_for):
    backend.script("GET", TICKET, (200, TICKET_PAYLOAD))

    async with client_for() as client:
        w = waiter(client)
        await w.wait()
        await w.wait()
        await w.wait()

    assert w.state == TicketState.READY
    assert backend.count(TICKET) == 1


async def test_never_appears_is_delayed_not_failed(backend, client_for):
    backend.script("GET", TICKET, not_found())
    backend.script("GET", VERIFY, (200, {"status": "SUCCESS"}))

    async with client_for() as client:
        w = waiter(client)
        state = await w.wait()

    assert state == TicketState.ERROR
    assert w.kind == FailureKind.UNKNOWN
    assert w.message == MSG_DELAYED
    assert "went through" in w.message
    assert backend.count(TICKET) == 15
    assert backend.count(VERIFY) == 1


async def test_delayed_then_manual_recheck(backend, client_for):
    backend.script("GET", TICKET, not_found())
    backend.script("GET", VERIFY, (200, {"status": "SUCCESS"}))

    async with client_for() as client:
        w = waiter(client, max_attempts=3)
        assert await w.wait() == TicketState.ERROR

        backend.script("GET", TICKET, (200, TICKET_PAYLOAD))
        w.reset()
        assert await w.wait() == TicketState.READY

    assert backend.count(TICKET) == 4


async def test_failed_payment_on_recheck(backend, client_for):
    backend.script("GET", TICKET, not_found())
    backend.script("GET", VERIFY, (200, {"status": "FAILED"}))

    async with client_for() as client:
        w = waiter(client, max_attempts=2)
        await w.wait()

    assert w.kind == FailureKind.KNOWN_BAD
    assert w.message == MSG_PAYMENT_FAILED


async def test_recheck_unreachable_still_delayed(backend, client_for):
    backend.script("GET", TICKET, not_found())
    backend.script("GET", VERIFY, httpx.ConnectError("down"))

    async with client_for() as client:
        w = waiter(client, max_attempts=2)
        await w.wait()

    assert w.kind == FailureKind.UNKNOWN
    assert w.message == MSG_DELAYED


async def test_recheck_can_be_skipped(backend, client_for):
    backend.script("GET", TICKET, not_found())

    async with client_for() as client:
        w = waiter(client, max_attempts=2, confirm_payment=False)
        await w.wait()

    assert w.kind == FailureKind.UNKNOWN
    assert backend.count(VERIFY) == 0


async def test_server_error_is_broken(backend, client_for):
    backend.script("GET", TICKET, not_found(),
                   (500, {"message": "Internal error"}))

    async with client_for() as client:
        w = waiter(client)
        state = await w.wait()

    assert state == TicketState.ERROR
    assert w.kind == FailureKind.BROKEN
    assert w.message == MSG_BROKEN
    assert backend.count(TICKET) == 2


async def test_transport_blip_is_retried(backend, client_for):
    backend.script("GET", TICKET, httpx.ReadTimeout("slow"),
                   (200, TICKET_PAYLOAD))

    async with client_for() as client:
        w = waiter(client)
        assert await w.wait() == TicketState.READY

    assert w.attempts == 2


async def test_incomplete_payload_is_broken(backend, client_for):
    backend.script("GET", TICKET, (200, {"event": {"id": "evt-1"}}))

    async with client_for() as client:
        w = waiter(client)
        await w.wait()

    assert w.kind == FailureKind.BROKEN


async def test_missing_reference(backend, client_for):
    async with client_for() as client:
        w = waiter(client, "")
        await w.wait()

    assert w.state == TicketState.ERROR
    assert w.kind == FailureKind.FATAL_LOCAL
    assert backend.calls == []


async def test_cancel_stops_polling(backend, client_for):
    backend.script("GET", TICKET, not_found())

    async with client_for() as client:
        w = waiter(client, interval=30)
        task = asyncio.create_task(w.wait())
        await eventually(lambda: w.attempts == 1)
        w.cancel()
        state = await asyncio.wait_for(task, 1.0)

    assert state == TicketState.PROCESSING
    assert backend.count(TICKET) == 1


async def test_reset_is_announced(backend, client_for):
    backend.script("GET", TICKET, not_found())
    backend.script("GET", VERIFY, (200, {"status": "SUCCESS"}))
    seen = []

    async with client_for() as client:
        w = waiter(client, max_attempts=2,
                   on_change=lambda w: seen.append((w.state, w.kind)))
        await w.wait()
        w.reset()

    assert seen[-2:] == [
        (TicketState.ERROR, FailureKind.UNKNOWN),
        (TicketState.PROCESSING, FailureKind.TRANSIENT),
    ]
    assert w.attempts == 0
