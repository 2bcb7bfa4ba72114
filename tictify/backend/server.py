from __future__ import annotations

import asyncio
import os
import uuid
from typing import Optional

import httpx
import redis.asyncio as redis
from fastapi import (
    APIRouter, BackgroundTasks, Depends, FastAPI, HTTPException, Request,
)
from fastapi.responses import ORJSONResponse, RedirectResponse
from sqlalchemy import select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import ct_equal, is_valid_email, now_ts, to_iso
from ..logger import logger
from .mockpay import EVENT_KINDS, SIGNATURE_HEADER, MockPay, PaymentAdapter
from .models import Event, Payment, Ticket
from .qr import qr_data_url
from .redemption import (
    ALREADY_USED, BACKEND as REDEEM_BACKEND, GRANTED, NOT_FOUND, WRONG_EVENT,
    new_store,
)
from .sql import Database

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./tictify.db")
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/webhook"
)
ORGANIZER_TOKEN = os.environ.get("ORGANIZER_TOKEN", "dev-organizer-token")
REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
# webhook -> ticket lag, to exercise the client's "not yet" path
TICKET_MATERIALIZE_DELAY = float(
    os.environ.get("TICKET_MATERIALIZE_DELAY", "0")
)
TICKET_QR_BASE = os.environ.get("TICKET_QR_BASE", "https://tictify.app/t/")
SEED_EVENTS = os.environ.get("SEED_EVENTS", "1") == "1"

DEMO_EVENTS = [
    {
        "id": "evt-lagos-jazz",
        "title": "Lagos Jazz Night",
        "venue": "Muson Centre",
        "status": "LIVE",
        "ticket_types": [
            {"name": "Regular", "price": 500000},
            {"name": "VIP", "price": 1500000},
        ],
    },
    {
        "id": "evt-tech-summit",
        "title": "Tech Summit",
        "venue": "Landmark Centre",
        "status": "DRAFT",
        "ticket_types": [{"name": "Regular", "price": 1000000}],
    },
]

DENIALS = {
    NOT_FOUND: (404, "Invalid ticket"),
    WRONG_EVENT: (403, "Ticket is not valid for this event"),
    ALREADY_USED: (409, "Ticket already used"),
}


def message(status_code: int, msg: str, **extra) -> ORJSONResponse:
    return ORJSONResponse({"message": msg, **extra}, status_code=status_code)


def event_json(ev: Event) -> dict:
    return {
        "id": ev.id,
        "title": ev.title,
        "venue": ev.venue,
        "startsAt": to_iso(ev.starts_at),
        "status": ev.status,
        "ticketTypes": ev.ticket_types or [],
    }


def resolve_ticket_type(ev: Event, wanted: Optional[str]) -> Optional[dict]:
    types = ev.ticket_types or []
    if not types:
        return None
    wanted = (wanted or "").lower()
    for t in types:
        if t.get("name", "").lower() == wanted:
            return t
    return types[0]


async def seed_events(session: AsyncSession, events=DEMO_EVENTS) -> int:
    async with session.begin():
        have = (await session.execute(select(Event.id))).scalars().all()
        added = 0
        for e in events:
            if e["id"] in have:
                continue
            session.add(Event(starts_at=e.get("starts_at"),
                              **{k: v for k, v in e.items()
                                 if k != "starts_at"}))
            added += 1
    return added


def create_app(database_url: str = DATABASE_URL,
               adapter: Optional[PaymentAdapter] = None,
               seed: bool = SEED_EVENTS) -> FastAPI:
    database = Database(database_url)
    adapter = adapter or MockPay()

    app = FastAPI(
        title="Tictify",
        default_response_class=ORJSONResponse,
    )
    app.state.database = database
    app.state.adapter = adapter
    api = APIRouter(prefix="/api")

    async def get_db() -> AsyncSession:
        async with database.sessions() as session:
            yield session

    async def redemptions():
        async with database.sessions() as session:
            yield new_store(db=session, gated=database.gated,
                            r=getattr(app.state, "redis", None))

    def require_organizer(request: Request) -> None:
        auth = request.headers.get("authorization", "")
        scheme, _, token = auth.partition(" ")
        if scheme.lower() != "bearer" or not ct_equal(token, ORGANIZER_TOKEN):
            raise HTTPException(status_code=401, detail="Not authorized")

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _db_init():
        await database.create_all()
        if seed:
            async with database.sessions() as session:
                n = await seed_events(session)
            if n:
                logger.info("seeded %d demo events", n)

    @app.on_event("startup")
    async def _http_client_start():
        app.state.http = httpx.AsyncClient(timeout=5.0)

    @app.on_event("startup")
    async def _redis_start():
        if REDEEM_BACKEND == "redis":
            app.state.redis = redis.from_url(
                REDIS_URL,
                decode_responses=True,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )

    @app.on_event("shutdown")
    async def _http_client_stop():
        http = getattr(app.state, "http", None)
        if http is not None:
            await http.aclose()
            app.state.http = None

    @app.on_event("shutdown")
    async def _redis_stop():
        r = getattr(app.state, "redis", None)
        if r is not None:
            await r.aclose()
            app.state.redis = None

    @app.on_event("shutdown")
    async def _engine_stop():
        await database.dispose()

    # ----------------------------
    # Events (read-only; event CRUD lives elsewhere)
    # ----------------------------
    @api.get("/events/organizer")
    async def organizer_events(
        request: Request, db: AsyncSession = Depends(get_db),
    ):
        require_organizer(request)
        events = (await db.execute(select(Event))).scalars().all()
        return [event_json(e) for e in events]

    # ----------------------------
    # Checkout
    # ----------------------------
    @api.post("/payments/initiate")
    async def initiate_payment(
        payload: dict, db: AsyncSession = Depends(get_db),
    ):
        email = (payload.get("email") or "").strip()
        name = (payload.get("name") or "").strip()
        if not is_valid_email(email):
            return message(400, "A valid email address is required")
        if len(name) < 2:
            return message(400, "Name must be at least 2 characters")

        ev = await db.get(Event, payload.get("eventId") or "")
        if ev is None or ev.status != "LIVE":
            return message(404, "Event not found")
        ticket_type = resolve_ticket_type(ev, payload.get("ticketType"))
        if ticket_type is None:
            return message(400, "No tickets available for this event.")

        reference = f"TFY-{uuid.uuid4().hex[:16]}"
        db.add(Payment(
            reference=reference,
            event_id=ev.id,
            ticket_type=ticket_type["name"],
            buyer_name=name,
            buyer_email=email,
            amount=int(ticket_type.get("price", 0)),
            currency=ev.currency,
            status="PENDING",
            created_at=now_ts(),
        ))
        async with database.gated():
            await db.commit()
        return {
            "reference": reference,
            "paymentUrl": adapter.checkout_url(reference),
            "amount": int(ticket_type.get("price", 0)),
            "currency": ev.currency,
        }

    # ----------------------------
    # Payment status (polled by the client)
    # ----------------------------
    async def _payment_status(db: AsyncSession, reference: str) -> dict:
        pay = await db.get(Payment, reference)
        if pay is None:
            raise HTTPException(404, detail="payment not found")
        return {"reference": pay.reference, "status": pay.status}

    @api.get("/payments/status/{reference}")
    async def payment_status(reference: str,
                             db: AsyncSession = Depends(get_db)):
        return await _payment_status(db, reference)

    @api.get("/payments/verify/{reference}")
    async def verify_payment(reference: str,
                             db: AsyncSession = Depends(get_db)):
        return await _payment_status(db, reference)

    # ----------------------------
    # Webhook: settles the payment, then materializes the ticket
    # ----------------------------
    async def _materialize(reference: str) -> Optional[str]:
        code = f"TIX-{uuid.uuid4().hex[:10].upper()}"
        async with database.sessions() as db:
            pay = await db.get(Payment, reference)
            if pay is None or pay.status != "SUCCESS":
                return None
            db.add(Ticket(
                code=code,
                reference=reference,
                event_id=pay.event_id,
                ticket_type=pay.ticket_type,
                qr_image=qr_data_url(f"{TICKET_QR_BASE}{code}"),
                created_at=now_ts(),
            ))
            try:
                async with database.gated():
                    await db.commit()
            except IntegrityError:
                # a replayed webhook raced the first write
                await db.rollback()
                return None
        logger.info("ticket %s materialized for %s", code, reference)
        return code

    async def materialize_ticket(reference: str) -> Optional[str]:
        if TICKET_MATERIALIZE_DELAY > 0:
            await asyncio.sleep(TICKET_MATERIALIZE_DELAY)
        try:
            return await _materialize(reference)
        except Exception:
            # runs after the response; a replayed webhook retries it
            logger.exception("ticket for %s not materialized", reference)
            return None

    async def has_ticket(db: AsyncSession, reference: str) -> bool:
        found = (await db.execute(
            select(Ticket.code).where(Ticket.reference == reference)
        )).first()
        return found is not None

    @app.post("/payments/webhook")
    async def payments_webhook(
        request: Request,
        background: BackgroundTasks,
        db: AsyncSession = Depends(get_db),
    ):
        payload = await request.body()
        headers = dict(request.headers)

        event = adapter.parse_webhook(payload, headers)
        kind, reference = event.kind, event.reference
        if not reference:
            raise HTTPException(400, detail="missing reference")
        if kind not in EVENT_KINDS:
            raise HTTPException(400, detail="invalid event type")

        new_status = "SUCCESS" if kind == "succeeded" else "FAILED"
        # PENDING is the only state that may change
        async with database.gated():
            async with db.begin():
                result = await db.execute(
                    update(Payment)
                    .where(Payment.reference == reference,
                           Payment.status == "PENDING")
                    .values(status=new_status,
                            paid_at=now_ts() if kind == "succeeded" else None)
                )
        if result.rowcount == 0:
            pay = await db.get(Payment, reference)
            if pay is None:
                raise HTTPException(404, detail="payment not found")
            out = {"ok": True, "idempotent": True, "status": pay.status}
            if pay.status == "SUCCESS" and not await has_ticket(db, reference):
                logger.warning("payment %s paid without a ticket, retrying",
                               reference)
                background.add_task(materialize_ticket, reference)
                out["rematerialize"] = True
            return out

        logger.info("payment %s -> %s", reference, new_status)
        if new_status == "SUCCESS":
            background.add_task(materialize_ticket, reference)
        return {"ok": True, "status": new_status}

    # ----------------------------
    # Tickets
    # ----------------------------
    @api.get("/tickets/by-reference/{reference}")
    async def ticket_by_reference(reference: str,
                                  db: AsyncSession = Depends(get_db)):
        t = (await db.execute(
            select(Ticket).where(Ticket.reference == reference)
        )).scalars().first()
        if t is None:
            # not created yet (webhook still processing) -> keep polling
            return message(404, "Ticket not found")
        ev = await db.get(Event, t.event_id)
        return {
            "event": event_json(ev) if ev else {"id": t.event_id},
            "ticket": {
                "code": t.code,
                "ticketType": t.ticket_type,
                "qrImage": t.qr_image,
                "scanned": bool(t.scanned),
                "eventId": t.event_id,
            },
        }

    @api.post("/tickets/scan")
    async def scan_ticket(
        payload: dict, request: Request,
        store=Depends(redemptions),
    ):
        require_organizer(request)
        code = str(payload.get("code") or "").strip()
        event_id = str(payload.get("eventId") or "").strip()
        if not code or not event_id:
            return message(400, "Both code and eventId are required")

        res = await store.redeem(code, event_id)
        if res.outcome == GRANTED:
            logger.info("ticket %s redeemed for %s", code, event_id)
            return message(200, "Access granted",
                           ticketType=res.ticket["ticket_type"])
        status_code, msg = DENIALS[res.outcome]
        logger.info("ticket %s denied for %s: %s", code, event_id, msg)
        return message(status_code, msg)

    app.include_router(api)

    # ----------------------------
    # MockPay hosted page
    # ----------------------------
    @app.get("/mockpay/{reference}")
    async def mockpay_screen(reference: str,
                             db: AsyncSession = Depends(get_db)):
        pay = await db.get(Payment, reference)
        if pay is None:
            raise HTTPException(404, "payment not found")
        return {
            "reference": reference,
            "eventId": pay.event_id,
            "ticketType": pay.ticket_type,
            "amount": f"{pay.amount / 100:.2f}",
            "currency": pay.currency,
            "webhook_url": MOCK_WEBHOOK_URL,
            "choices": list(EVENT_KINDS),
        }

    @app.post("/mockpay/{reference}/emit")
    async def mockpay_emit(reference: str, request: Request,
                           db: AsyncSession = Depends(get_db)):
        if not isinstance(adapter, MockPay):
            raise HTTPException(404, "no mock payment provider")
        form = await request.form()
        kind = form.get("t")  # succeeded|failed|canceled
        if kind not in EVENT_KINDS:
            raise HTTPException(400, detail="invalid kind")

        pay = await db.get(Payment, reference)
        if pay is None:
            raise HTTPException(404, "payment not found")

        body = adapter.event_body(reference, kind, amount=pay.amount,
                                  currency=pay.currency)

        client_http: httpx.AsyncClient = app.state.http
        try:
            await client_http.post(
                MOCK_WEBHOOK_URL,
                content=body,
                headers={
                    SIGNATURE_HEADER: adapter.sign(body),
                    "content-type": "application/json",
                },
            )
        except httpx.HTTPError as e:
            # the buyer can press the button again
            logger.warning("webhook delivery failed: %r", e)

        if kind == "succeeded":
            return RedirectResponse(
                url=f"/payment-pending?ref={reference}", status_code=303
            )
        return RedirectResponse(
            url=f"/checkout/{pay.event_id}?status={kind}&ref={reference}",
            status_code=303,
        )

    @app.get("/health")
    async def health():
        async with database.sessions() as db:
            await db.execute(text("SELECT 1"))
        return {"ok": True, "redeem_backend": REDEEM_BACKEND}

    return app


app = create_app()
