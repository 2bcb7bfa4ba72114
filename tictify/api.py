from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx

from .config import API_URL, HTTP_TIMEOUT_SECONDS
from .errors import MalformedResponse, SessionExpired
from .session import SessionContext
from .timings import timeit


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


@dataclass(frozen=True)
class EventInfo:
    id: str
    title: str = ""
    venue: str = ""
    starts_at: str = ""
    status: str = ""


@dataclass(frozen=True)
class TicketInfo:
    code: str
    ticket_type: str
    qr_image: str
    event_id: str
    # snapshot only; the gateway owns the real value
    scanned: bool = False


@dataclass(frozen=True)
class TicketPayload:
    event: EventInfo
    ticket: TicketInfo
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)


def _ref(reference: str) -> str:
    return quote(reference, safe="")


def _json(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError as e:
        raise MalformedResponse(
            f"{resp.request.method} {resp.request.url.path}: "
            f"response is not JSON ({e})"
        )


def _message(resp: httpx.Response, default: str) -> str:
    try:
        data = resp.json()
    except ValueError:
        return default
    if isinstance(data, dict):
        return str(data.get("message") or data.get("detail") or default)
    return default


def _verdict(resp: httpx.Response) -> str:
    """The denial reason of a scan. Only a JSON body with a message is a
    verdict; anything else means the server did not decide."""
    data = _json(resp)
    if not isinstance(data, dict) or not data.get("message"):
        raise MalformedResponse(
            f"scan answered {resp.status_code} without a message"
        )
    return str(data["message"])


def parse_status(data: Any) -> PaymentStatus:
    if not isinstance(data, dict) or "status" not in data:
        raise MalformedResponse(f"payment status payload without status: "
                                f"{data!r}")
    try:
        return PaymentStatus(str(data["status"]).upper())
    except ValueError:
        raise MalformedResponse(f"unknown payment status {data['status']!r}")


def parse_event(data: Dict[str, Any]) -> EventInfo:
    return EventInfo(
        id=str(data.get("id") or data.get("_id") or ""),
        title=str(data.get("title") or data.get("name") or ""),
        venue=str(data.get("venue") or ""),
        starts_at=str(data.get("startsAt") or data.get("date") or ""),
        status=str(data.get("status") or ""),
    )


def parse_ticket_payload(data: Any) -> TicketPayload:
    if not isinstance(data, dict):
        raise MalformedResponse(f"ticket payload is not an object: {data!r}")
    ev, t = data.get("event"), data.get("ticket")
    if not isinstance(ev, dict) or not isinstance(t, dict):
        raise MalformedResponse("ticket payload needs 'event' and 'ticket'")
    try:
        ticket = TicketInfo(
            code=str(t["code"]),
            ticket_type=str(t["ticketType"]),
            qr_image=str(t.get("qrImage") or ""),
            event_id=str(t.get("eventId") or ev.get("id") or ""),
            scanned=bool(t.get("scanned", False)),
        )
    except KeyError as e:
        raise MalformedResponse(f"ticket payload missing {e}")
    return TicketPayload(event=parse_event(ev), ticket=ticket, raw=data)


class TictifyClient:
    """Thin async wrapper around the storefront API.

    Transport problems surface as httpx.HTTPError subclasses so each caller
    can decide whether they are worth retrying; payloads that cannot be
    understood raise MalformedResponse.
    """

    def __init__(
        self,
        base_url: str = API_URL,
        *,
        session: Optional[SessionContext] = None,
        timeout: float = HTTP_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.session = session
        self.http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"User-Agent": "tictify/0.3"},
        )

    async def __aenter__(self) -> "TictifyClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.http.aclose()

    def _auth_headers(self) -> Dict[str, str]:
        if self.session is None:
            raise SessionExpired("Log in as an organizer first.")
        return self.session.auth_headers()

    def _check_auth(self, resp: httpx.Response) -> None:
        if resp.status_code == 401 and self.session is not None:
            self.session.invalidate()
            raise SessionExpired()

    # ----------------------------
    # Payments
    # ----------------------------
    async def payment_status(self, reference: str) -> PaymentStatus:
        async with timeit("api.payment_status"):
            resp = await self.http.get(f"/payments/status/{_ref(reference)}")
        resp.raise_for_status()
        return parse_status(_json(resp))

    async def verify_payment(self, reference: str) -> PaymentStatus:
        async with timeit("api.verify_payment"):
            resp = await self.http.get(f"/payments/verify/{_ref(reference)}")
        resp.raise_for_status()
        return parse_status(_json(resp))

    async def initiate_payment(
        self, event_id: str, ticket_type: str, name: str, email: str
    ) -> Dict[str, str]:
        async with timeit("api.initiate_payment"):
            resp = await self.http.post("/payments/initiate", json={
                "eventId": event_id,
                "ticketType": ticket_type,
                "name": name,
                "email": email,
            })
        if resp.is_error:
            raise httpx.HTTPStatusError(
                _message(resp, "Payment initialization failed"),
                request=resp.request, response=resp,
            )
        data = _json(resp)
        if not isinstance(data, dict) or not data.get("paymentUrl"):
            raise MalformedResponse("initiate response without paymentUrl")
        return {"reference": str(data.get("reference", "")),
                "paymentUrl": str(data["paymentUrl"])}

    # ----------------------------
    # Tickets
    # ----------------------------
    async def ticket_by_reference(
        self, reference: str
    ) -> Optional[TicketPayload]:
        """None while the webhook has not created the ticket yet (404)."""
        async with timeit("api.ticket_by_reference"):
            resp = await self.http.get(
                f"/tickets/by-reference/{_ref(reference)}"
            )
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return parse_ticket_payload(_json(resp))

    async def scan_ticket(self, code: str, event_id: str) -> Tuple[bool, str]:
        """(granted, message) as reported by the gateway."""
        headers = self._auth_headers()
        async with timeit("api.scan_ticket"):
            resp = await self.http.post(
                "/tickets/scan",
                json={"code": code, "eventId": event_id},
                headers=headers,
            )
        self._check_auth(resp)
        if resp.status_code == 200:
            return True, _message(resp, "Access granted")
        # an outage is not a verdict
        if resp.status_code >= 500:
            resp.raise_for_status()
        return False, _verdict(resp)

    # ----------------------------
    # Events
    # ----------------------------
    async def organizer_events(self, live_only: bool = True) -> List[EventInfo]:
        headers = self._auth_headers()
        resp = await self.http.get("/events/organizer", headers=headers)
        self._check_auth(resp)
        resp.raise_for_status()
        data = _json(resp)
        if not isinstance(data, list):
            raise MalformedResponse("organizer events is not a list")
        events = [parse_event(e) for e in data if isinstance(e, dict)]
        if live_only:
            # only LIVE events can be scanned
            events = [e for e in events if e.status == "LIVE"]
        return events
