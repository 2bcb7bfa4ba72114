"""MockPay: a stand-in payment provider that signs its webhooks the way a
real one would, so the webhook path is exercised end to end."""
import base64
import hashlib
import hmac
import json
import os
import time
import uuid
from abc import ABC, abstractmethod
from typing import NamedTuple, Optional

from fastapi import HTTPException

MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
SIGNATURE_HEADER = "x-mockpay-signature"

EVENT_KINDS = ("succeeded", "failed", "canceled")


class WebhookEvent(NamedTuple):
    kind: str
    reference: str
    idempotency_key: Optional[str] = None


class PaymentAdapter(ABC):
    """Where the buyer is sent to pay, and how a provider callback is
    trusted."""

    @abstractmethod
    def checkout_url(self, reference: str) -> str: ...

    @abstractmethod
    def parse_webhook(self, payload: bytes, headers: dict) -> WebhookEvent:
        """Raise HTTPException(400) for anything that cannot be trusted."""


def sign(payload: bytes, secret: Optional[str] = None) -> str:
    secret = MOCK_SECRET if secret is None else secret
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


class MockPay(PaymentAdapter):
    def __init__(self, secret: Optional[str] = None) -> None:
        self.secret = MOCK_SECRET if secret is None else secret

    def checkout_url(self, reference: str) -> str:
        return f"/mockpay/{reference}"

    def sign(self, payload: bytes) -> str:
        return sign(payload, self.secret)

    def event_body(self, reference: str, kind: str, **extra) -> bytes:
        return json.dumps({
            "type": f"payment.{kind}",
            "reference": reference,
            "created_at": int(time.time()),
            "idempotency_key": f"evt_{uuid.uuid4().hex}",
            **extra,
        }).encode()

    def parse_webhook(self, payload: bytes, headers: dict) -> WebhookEvent:
        sig = headers.get(SIGNATURE_HEADER)
        if not sig or not hmac.compare_digest(self.sign(payload), sig):
            raise HTTPException(status_code=400, detail="Invalid signature")
        try:
            event = json.loads(payload)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON")
        if not isinstance(event, dict):
            raise HTTPException(status_code=400, detail="Invalid event")
        return WebhookEvent(
            kind=str(event.get("type", "")).rsplit(".", 1)[-1],
            reference=str(event.get("reference") or ""),
            idempotency_key=event.get("idempotency_key"),
        )
