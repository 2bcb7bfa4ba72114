from __future__ import annotations
from typing import Any, AsyncContextManager, Callable, Dict, NamedTuple, Optional
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ...helpers import now_ts

GRANTED = "granted"
NOT_FOUND = "not_found"
WRONG_EVENT = "wrong_event"
ALREADY_USED = "already_used"


class RedeemResult(NamedTuple):
    outcome: str
    ticket: Optional[Dict[str, Any]] = None


async def lookup_ticket(
    db: AsyncSession, code: str
) -> Optional[Dict[str, Any]]:
    row = (await db.execute(text("""
        SELECT code, reference, event_id, ticket_type, scanned, scanned_at
        FROM tickets WHERE code = :code
    """), {"code": code})).mappings().first()
    return dict(row) if row else None


async def mark_scanned(db: AsyncSession, code: str) -> bool:
    # the scanned = false guard is what makes redemption at-most-once
    result = await db.execute(text("""
        UPDATE tickets SET scanned = :yes, scanned_at = :now
        WHERE code = :code AND scanned = :no
    """), {"code": code, "yes": True, "no": False, "now": now_ts()})
    return result.rowcount == 1


class RedemptionStore:
    def __init__(
        self, *, db: AsyncSession,
        gated: Callable[[], AsyncContextManager[None]],
    ) -> None:
        self.db = db
        self.gated = gated

    async def redeem(self, code: str, event_id: str) -> RedeemResult:
        async with self.gated():
            async with self.db.begin():
                ticket = await lookup_ticket(self.db, code)
                if ticket is None:
                    return RedeemResult(NOT_FOUND)
                if ticket["event_id"] != event_id:
                    return RedeemResult(WRONG_EVENT, ticket)
                if not await mark_scanned(self.db, code):
                    return RedeemResult(ALREADY_USED, ticket)
        return RedeemResult(GRANTED, ticket)
