import os
from dataclasses import dataclass, replace

# ----------------------------
# Config & Constants
# ----------------------------
API_URL = os.environ.get("TICTIFY_API_URL", "http://localhost:8000/api")
API_TOKEN = os.environ.get("TICTIFY_TOKEN", "")

POLL_INTERVAL_SECONDS = float(os.environ.get("TICTIFY_POLL_INTERVAL", "3.0"))
PAYMENT_MAX_ATTEMPTS = int(os.environ.get("TICTIFY_PAYMENT_MAX_ATTEMPTS", "20"))
# grace period for webhook-driven ticket creation: attempts * interval
TICKET_MAX_ATTEMPTS = int(os.environ.get("TICTIFY_TICKET_MAX_ATTEMPTS", "15"))
HANDOFF_DELAY_SECONDS = float(os.environ.get("TICTIFY_HANDOFF_DELAY", "1.5"))
SCAN_COOLDOWN_SECONDS = float(os.environ.get("TICTIFY_SCAN_COOLDOWN", "2.0"))
HTTP_TIMEOUT_SECONDS = float(os.environ.get("TICTIFY_HTTP_TIMEOUT", "10.0"))


@dataclass(frozen=True)
class ClientConfig:
    api_url: str = API_URL
    token: str = API_TOKEN
    poll_interval: float = POLL_INTERVAL_SECONDS
    payment_max_attempts: int = PAYMENT_MAX_ATTEMPTS
    ticket_max_attempts: int = TICKET_MAX_ATTEMPTS
    handoff_delay: float = HANDOFF_DELAY_SECONDS
    scan_cooldown: float = SCAN_COOLDOWN_SECONDS
    http_timeout: float = HTTP_TIMEOUT_SECONDS

    def with_overrides(self, **kw) -> "ClientConfig":
        # argparse hands us None for flags that were not given
        return replace(self, **{k: v for k, v in kw.items() if v is not None})
