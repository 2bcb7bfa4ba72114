import json

import httpx
import pytest

from tictify.errors import FailureKind
from tictify.gateway import HttpVerificationGateway, ScanAttempt
from tictify.session import SessionContext

pytestmark = pytest.mark.asyncio

SCAN = "/api/tickets/scan"


def attempt(code="TIX-1", event_id="evt-1"):
    return ScanAttempt(code=code, event_id=event_id)


async def test_grant_sends_code_event_and_token(backend, client_for):
    backend.script("POST", SCAN,
                   (200, {"message": "Access granted", "ticketType": "VIP"}))

    async with client_for(SessionContext.from_token("tok")) as client:
        result = await HttpVerificationGateway(client).verify(attempt())

    assert result.granted
    assert result.reason == "Access granted"
    assert result.kind is None
    sent = backend.requests[0]
    assert json.loads(sent.content) == {"code": "TIX-1", "eventId": "evt-1"}
    assert sent.headers["authorization"] == "Bearer tok"


@pytest.mark.parametrize("status,msg", [
    (404, "Invalid ticket"),
    (403, "Ticket is not valid for this event"),
    (409, "Ticket already used"),
])
async def test_denials_carry_server_message(backend, client_for, status, msg):
    backend.script("POST", SCAN, (status, {"message": msg}))

    async with client_for(SessionContext.from_token("tok")) as client:
        result = await HttpVerificationGateway(client).verify(attempt())

    assert not result.granted
    assert result.reason == msg
    assert result.kind is None


async def test_unauthorized_invalidates_session(backend, client_for):
    backend.script("POST", SCAN, (401, {"message": "Not authorized"}))
    session = SessionContext.from_token("tok")

    async with client_for(session) as client:
        gateway = HttpVerificationGateway(client)
        first = await gateway.verify(attempt())
        second = await gateway.verify(attempt("TIX-2"))

    assert first.kind == second.kind == FailureKind.FATAL_LOCAL
    assert not session.valid()
    # the second attempt never left the device
    assert backend.count(SCAN, "POST") == 1


async def test_expired_session_sends_nothing(backend, client_for):
    session = SessionContext.from_token("tok", ttl_seconds=-1)

    async with client_for(session) as client:
        result = await HttpVerificationGateway(client).verify(attempt())

    assert result.kind == FailureKind.FATAL_LOCAL
    assert backend.calls == []


async def test_unreachable_backend_is_transient(backend, client_for):
    backend.script("POST", SCAN, httpx.ConnectError("down"))

    async with client_for(SessionContext.from_token("tok")) as client:
        result = await HttpVerificationGateway(client).verify(attempt())

    assert not result.granted
    assert result.kind == FailureKind.TRANSIENT


async def test_server_outage_is_not_a_verdict(backend, client_for):
    backend.script("POST", SCAN, lambda request: httpx.Response(
        503, text="<html>bad gateway</html>"))

    async with client_for(SessionContext.from_token("tok")) as client:
        result = await HttpVerificationGateway(client).verify(attempt())

    assert not result.granted
    assert result.kind == FailureKind.TRANSIENT
    assert "scan again" in result.reason


@pytest.mark.parametrize("answer", [
    lambda request: httpx.Response(400, text="nope"),
    (409, {"detail": "conflict"}),
])
async def test_denial_without_message_is_not_a_verdict(backend, client_for,
                                                       answer):
    backend.script("POST", SCAN, answer)

    async with client_for(SessionContext.from_token("tok")) as client:
        result = await HttpVerificationGateway(client).verify(attempt())

    assert not result.granted
    assert result.kind == FailureKind.BROKEN
