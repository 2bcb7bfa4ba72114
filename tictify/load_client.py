"""
Tictify load client (async)

Simulates buyers against the reference backend:
  1) POST /api/payments/initiate      -> {reference, paymentUrl}
  2) POST /mockpay/{reference}/emit   (t=succeeded|failed|canceled)
  3) PurchaseFlow: poll payment status, then wait for the ticket

Records the outcome and time-to-ticket per buyer and prints a report.

Usage:
  tictify load --base http://localhost:8000 --total 200 --concurrency 50
"""
from __future__ import annotations

import asyncio
import random
import string
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx

from .api import TictifyClient
from .config import ClientConfig
from .errors import FailureKind
from .flow import PurchaseFlow
from .payment import PaymentState
from .tickets import TicketState


def _rand_buyer() -> tuple[str, str]:
    name = ''.join(random.choices(string.ascii_lowercase, k=8))
    return name.title(), f"{name}@example.com"


@dataclass
class Result:
    ok: bool
    outcome: str  # TICKET/FAILED/TIMEOUT/DELAYED/ERROR
    t_initiate: float = 0.0
    t_emit: float = 0.0
    t_ticket: float = 0.0
    payment_polls: int = 0
    ticket_polls: int = 0
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def summary(self) -> Dict[str, float]:
        done = [r for r in self.results if r.outcome == "TICKET"]
        lat = [r.t_ticket for r in done if r.t_ticket > 0]

        def pct(p):
            if not lat:
                return 0.0
            x = sorted(lat)
            k = int(max(0, min(len(x)-1, round(p/100*(len(x)-1)))))
            return x[k]

        def count(o):
            return sum(1 for r in self.results if r.outcome == o)
        return {
            "total": len(self.results),
            "ok": sum(1 for r in self.results if r.ok),
            "ticket": len(done),
            "failed": count("FAILED"),
            "timeout": count("TIMEOUT"),
            "delayed": count("DELAYED"),
            "error": count("ERROR"),
            "p50_s": pct(50),
            "p90_s": pct(90),
            "p99_s": pct(99),
            "avg_s": (sum(lat)/len(lat)) if lat else 0.0,
        }

    def print(self, elapsed_s: float):
        s = self.summary()
        print("\n=== Load Summary ===")
        print(
            f"Total: {int(s['total'])}   OK: {int(s['ok'])}   "
            f"TICKET: {int(s['ticket'])}   FAILED: {int(s['failed'])}   "
            f"TIMEOUT: {int(s['timeout'])}   DELAYED: {int(s['delayed'])}   "
            f"ERROR: {int(s['error'])}"
        )
        print(
            f"Latency (payment emitted -> ticket ready): "
            f"avg {s['avg_s']:.3f}s   p50 {s['p50_s']:.3f}s   "
            f"p90 {s['p90_s']:.3f}s   p99 {s['p99_s']:.3f}s"
        )
        print(
            f"Wall time: {elapsed_s:.3f}s   "
            f"Throughput: {s['total']/elapsed_s:.1f} buyers/s"
        )


def _outcome(flow: PurchaseFlow) -> str:
    if flow.ticket is not None:
        if flow.ticket.state == TicketState.READY:
            return "TICKET"
        if flow.ticket.state == TicketState.ERROR:
            return "DELAYED" if flow.ticket.kind == FailureKind.UNKNOWN else "ERROR"
    state = flow.payment.state
    if state in (PaymentState.FAILED, PaymentState.TIMEOUT):
        return state.value
    return "ERROR"


async def one_buyer(
    http: httpx.AsyncClient,
    api: TictifyClient,
    event_id: str,
    emit_kind: str,
    config: ClientConfig,
) -> Result:
    r = Result(ok=False, outcome="ERROR")
    name, email = _rand_buyer()

    t0 = time.perf_counter()
    try:
        session = await api.initiate_payment(event_id, "", name, email)
        reference = session["reference"]
    except Exception as e:
        r.err = f"initiate: {e}"
        return r
    r.t_initiate = time.perf_counter() - t0

    # simulate clicking the button on the MockPay page
    t1 = time.perf_counter()
    try:
        resp = await http.post(
            f"/mockpay/{reference}/emit",
            data={"t": emit_kind},
            follow_redirects=False,
        )
        if resp.status_code >= 400:
            r.err = f"emit HTTP {resp.status_code}"
            return r
    except httpx.HTTPError as e:
        r.err = f"emit: {e}"
        return r
    r.t_emit = time.perf_counter() - t1

    t2 = time.perf_counter()
    flow = PurchaseFlow(api, reference, config)
    await flow.run()
    r.t_ticket = time.perf_counter() - t2
    r.payment_polls = flow.payment.attempts
    r.ticket_polls = flow.ticket.attempts if flow.ticket else 0
    r.outcome = _outcome(flow)
    r.ok = True
    return r


async def run_load(
    base: str,
    event_id: str,
    total: int,
    concurrency: int,
    fail_rate: float,
    cancel_rate: float,
    config: ClientConfig,
) -> Stats:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        base_url=base, limits=limits, timeout=30.0,
        headers={"User-Agent": "TictifyLoad/1.0"},
    ) as http, TictifyClient(f"{base.rstrip('/')}/api",
                             timeout=config.http_timeout) as api:

        async def worker(n: int):
            async with sem:
                rnd = random.random()
                if rnd < fail_rate:
                    emit_kind = "failed"
                elif rnd < fail_rate + cancel_rate:
                    emit_kind = "canceled"
                else:
                    emit_kind = "succeeded"
                res = await one_buyer(http, api, event_id, emit_kind, config)
                stats.add(res)

        tasks = [asyncio.create_task(worker(i)) for i in range(total)]
        await asyncio.gather(*tasks)

    return stats
