import asyncio
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from tictify.camera import CaptureDevice
from tictify.gateway import RedemptionResult, ScanAttempt, VerificationGateway

BASE = "http://test/api"


class Backend:
    """Scripted stand-in for the storefront API.

    Each (method, path) has a queue of answers; the last one repeats. An
    answer is a (status, json) pair, an exception to raise, or a callable
    taking the request.
    """

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], List[Any]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.requests: List[httpx.Request] = []

    def script(self, method: str, path: str, *answers: Any) -> None:
        self.routes[(method, path)] = list(answers)

    def count(self, path: str, method: str = "GET") -> int:
        return sum(1 for c in self.calls if c == (method, path))

    def handler(self, request: httpx.Request) -> httpx.Response:
        key = (request.method, request.url.path)
        self.calls.append(key)
        self.requests.append(request)
        queue = self.routes.get(key)
        if not queue:
            return httpx.Response(500, json={"message": f"unscripted {key}"})
        answer = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(answer, Exception):
            raise answer
        if callable(answer):
            return answer(request)
        status, body = answer
        return httpx.Response(status, json=body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def pending() -> tuple:
    return 200, {"status": "PENDING"}


def not_found() -> tuple:
    return 404, {"message": "Ticket not found"}


TICKET_PAYLOAD = {
    "event": {"id": "evt-1", "title": "Lagos Jazz Night",
              "venue": "Muson Centre", "status": "LIVE"},
    "ticket": {
        "code": "TIX-1",
        "ticketType": "VIP",
        "qrImage": "data:image/png;base64,AAAA",
        "scanned": False,
        "eventId": "evt-1",
    },
}


async def eventually(pred: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not pred():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


class FakeGateway(VerificationGateway):
    """Answers from a list (last one repeats), optionally slowly."""

    def __init__(self, *results: RedemptionResult, delay: float = 0.0,
                 error: Optional[Exception] = None) -> None:
        self.results = list(results) or [RedemptionResult(True, "Access granted")]
        self.delay = delay
        self.error = error
        self.attempts: List[ScanAttempt] = []

    async def verify(self, attempt: ScanAttempt) -> RedemptionResult:
        self.attempts.append(attempt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


class FakeCamera(CaptureDevice):
    def __init__(self, fail: Optional[Exception] = None,
                 stop_fail: Optional[Exception] = None) -> None:
        self.fail = fail
        self.stop_fail = stop_fail
        self.on_decode = None
        self.on_lost = None
        self.started = 0
        self.stopped = 0

    async def start(self, on_decode, on_lost) -> None:
        if self.fail is not None:
            raise self.fail
        self.started += 1
        self.on_decode = on_decode
        self.on_lost = on_lost

    async def stop(self) -> None:
        self.stopped += 1
        if self.stop_fail is not None:
            raise self.stop_fail

    def show(self, text: str) -> None:
        # a QR code in front of the lens
        self.on_decode(text)

    def lose(self, message: str = "Camera unplugged") -> None:
        self.on_lost(message)
