# backend/redemption/__init__.py
import os
from typing import Optional, Callable, AsyncContextManager
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from ._sql import (
    GRANTED, NOT_FOUND, WRONG_EVENT, ALREADY_USED, RedeemResult,
)

Gated = Callable[[], AsyncContextManager[None]]

BACKEND = os.getenv("REDEEM_BACKEND", "sql").lower()  # 'sql' | 'redis'

if BACKEND == "redis":
    from ._redis import RedemptionStore as _RedemptionStore
else:
    from ._sql import RedemptionStore as _RedemptionStore


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, db: AsyncSession, gated: Gated,
              r: Optional[redis.Redis] = None):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError(
                "RedemptionStore(redis) requires r=redis.Redis"
            )
        return _RedemptionStore(db=db, gated=gated, r=r)
    return _RedemptionStore(db=db, gated=gated)


RedemptionStore = _RedemptionStore
__all__ = [
    "RedemptionStore", "new_store", "BACKEND", "RedeemResult",
    "GRANTED", "NOT_FOUND", "WRONG_EVENT", "ALREADY_USED",
]
