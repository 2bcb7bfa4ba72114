from __future__ import annotations
from typing import AsyncContextManager, Callable
import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession

from ._sql import (
    GRANTED, NOT_FOUND, WRONG_EVENT, ALREADY_USED, RedeemResult,
    lookup_ticket, mark_scanned,
)


# ---- keys
def k_redeemed(code: str) -> str: return f"redeemed:{code}"


# scanned tickets stay blocked well past any event
REDEEMED_TTL_SECONDS = 90 * 24 * 3600


class RedemptionStore:
    """SET NX in Redis decides the winner; SQL keeps the scanned flag that
    ticket lookups show."""

    def __init__(
        self, *, db: AsyncSession,
        gated: Callable[[], AsyncContextManager[None]],
        r: redis.Redis,
    ) -> None:
        self.db = db
        self.gated = gated
        self.r = r

    async def redemption_gate(self, code: str, event_id: str) -> bool:
        ok = await self.r.set(
            k_redeemed(code), event_id, nx=True, ex=REDEEMED_TTL_SECONDS
        )
        return bool(ok)

    async def redeem(self, code: str, event_id: str) -> RedeemResult:
        async with self.gated():
            async with self.db.begin():
                ticket = await lookup_ticket(self.db, code)
        if ticket is None:
            return RedeemResult(NOT_FOUND)
        if ticket["event_id"] != event_id:
            return RedeemResult(WRONG_EVENT, ticket)
        if ticket["scanned"]:
            return RedeemResult(ALREADY_USED, ticket)

        if not await self.redemption_gate(code, event_id):
            return RedeemResult(ALREADY_USED, ticket)

        try:
            async with self.gated():
                async with self.db.begin():
                    fresh = await mark_scanned(self.db, code)
        except Exception:
            # the ticket was not marked; let a later scan try again
            await self.r.delete(k_redeemed(code))
            raise
        if not fresh:
            # scanned through another path before the gate existed
            return RedeemResult(ALREADY_USED, ticket)
        return RedeemResult(GRANTED, ticket)
