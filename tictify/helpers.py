import time
import re
from datetime import datetime, timezone
import hmac
from typing import Optional
from urllib.parse import unquote, urlsplit


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


# QR payloads are either the code itself or a ticket URL whose last path
# segment is the code, e.g. https://tictify.app/t/TIX-4F2A9C01
def extract_ticket_code(decoded_text: str) -> Optional[str]:
    text = (decoded_text or "").strip()
    if not text:
        return None
    parts = urlsplit(text)
    if parts.scheme in ("http", "https") and parts.netloc:
        segment = parts.path.rstrip("/").rsplit("/", 1)[-1]
        return unquote(segment) or None
    return text
