from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .errors import SessionExpired
from .helpers import now_ts


@dataclass
class SessionContext:
    """Organizer/admin credentials, handed explicitly to whatever needs them.

    This object is the single authority on whether the session is usable:
    authenticated requests ask it for headers right before firing, and a 401
    from the backend invalidates it for every holder at once.
    """
    token: str
    user: Dict[str, Any] = field(default_factory=dict)
    expires_at: Optional[float] = None
    invalidated: bool = False

    @classmethod
    def from_token(
        cls, token: str, ttl_seconds: Optional[float] = None,
        user: Optional[Dict[str, Any]] = None,
    ) -> "SessionContext":
        expires_at = None if ttl_seconds is None else now_ts() + ttl_seconds
        return cls(token=token, user=user or {}, expires_at=expires_at)

    def valid(self, now: Optional[float] = None) -> bool:
        if self.invalidated or not self.token:
            return False
        if self.expires_at is None:
            return True
        return (now if now is not None else now_ts()) < self.expires_at

    def invalidate(self) -> None:
        self.invalidated = True

    def auth_headers(self) -> Dict[str, str]:
        if not self.valid():
            raise SessionExpired()
        return {"Authorization": f"Bearer {self.token}"}

    @property
    def role(self) -> str:
        return str(self.user.get("role", ""))

    def is_organizer(self) -> bool:
        return self.role == "organizer"

    def is_admin(self) -> bool:
        return self.role == "admin"
