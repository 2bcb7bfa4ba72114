"""
tictify command line

  tictify watch --ref TFY-...          confirm a payment, then wait for the ticket
  tictify buy --event ID --name N --email E
  tictify events                       LIVE events (organizer token required)
  tictify scan --event ID [--camera 0] [CODE ...]
  tictify serve                        reference backend (uvicorn)
  tictify load --total 200 --concurrency 50
"""
from __future__ import annotations

import argparse
import asyncio
import sys
import time
from typing import List, Optional

import httpx

from . import timings
from .api import TictifyClient
from .camera import OpenCVCamera
from .config import ClientConfig
from .errors import EventNotSelected, SessionExpired, TictifyError
from .flow import PurchaseFlow
from .gateway import HttpVerificationGateway, RedemptionResult
from .load_client import run_load
from .logger import logger, setup_logging
from .payment import PaymentConfirmation, PaymentState
from .redemption import RedemptionController
from .session import SessionContext
from .tickets import TicketState, TicketWaiter


def _config(args) -> ClientConfig:
    return ClientConfig().with_overrides(
        api_url=getattr(args, "api", None),
        token=getattr(args, "token", None),
        poll_interval=getattr(args, "poll_interval", None),
        payment_max_attempts=getattr(args, "payment_attempts", None),
        ticket_max_attempts=getattr(args, "ticket_attempts", None),
        handoff_delay=getattr(args, "handoff_delay", None),
        scan_cooldown=getattr(args, "cooldown", None),
    )


def _client(config: ClientConfig,
            session: Optional[SessionContext] = None) -> TictifyClient:
    return TictifyClient(config.api_url, session=session,
                         timeout=config.http_timeout)


def _print_change(machine) -> None:
    if isinstance(machine, PaymentConfirmation):
        print(f"[payment] {machine.state.value}: {machine.message}")
    elif isinstance(machine, TicketWaiter):
        print(f"[ticket]  {machine.state.value}: {machine.message}")


def _print_ticket(flow: PurchaseFlow) -> None:
    if flow.ticket is None or flow.ticket.payload is None:
        return
    p = flow.ticket.payload
    print(f"\n  {p.event.title or p.event.id}")
    if p.event.venue:
        print(f"  {p.event.venue}")
    print(f"  {p.ticket.ticket_type} ticket: {p.ticket.code}")


# ----------------------------
# Buyer side
# ----------------------------
async def _watch(config: ClientConfig, reference: str) -> int:
    async with _client(config) as client:
        flow = PurchaseFlow(client, reference, config,
                            on_change=_print_change)
        try:
            state = await flow.run()
        except asyncio.CancelledError:
            flow.cancel()
            raise
        while state == PaymentState.TIMEOUT and _confirm("Retry? [y/N] "):
            state = await flow.payment.retry()
            if state == PaymentState.SUCCESS and flow.ticket is not None:
                state = await flow.ticket.wait()
    _print_ticket(flow)
    return 0 if state == TicketState.READY else 1


def _confirm(prompt: str) -> bool:
    if not sys.stdin.isatty():
        return False
    return input(prompt).strip().lower() in ("y", "yes")


async def _buy(config: ClientConfig, args) -> int:
    async with _client(config) as client:
        session = await client.initiate_payment(
            args.event, args.ticket_type or "", args.name, args.email
        )
    print(f"reference:   {session['reference']}")
    print(f"payment url: {session['paymentUrl']}")
    print(f"\nthen: tictify watch --ref {session['reference']}")
    return 0


# ----------------------------
# Organizer side
# ----------------------------
def _organizer(config: ClientConfig) -> SessionContext:
    if not config.token:
        raise SessionExpired("Set TICTIFY_TOKEN or pass --token.")
    return SessionContext.from_token(config.token,
                                     user={"role": "organizer"})


async def _events(config: ClientConfig) -> int:
    async with _client(config, _organizer(config)) as client:
        events = await client.organizer_events()
    if not events:
        print("No LIVE events.")
        return 0
    for e in events:
        print(f"{e.id:<24} {e.title:<32} {e.venue}")
    return 0


def _print_result(result: RedemptionResult) -> None:
    mark = "GRANTED" if result.granted else "DENIED "
    print(f"[{mark}] {result.reason}")


async def _settle(ctl: RedemptionController) -> None:
    while not ctl.accepting and not ctl.closed:
        await asyncio.sleep(0.05)


async def _scan(config: ClientConfig, args) -> int:
    session = _organizer(config)
    camera_factory = None
    if args.camera is not None:
        camera_factory = lambda: OpenCVCamera(args.camera)  # noqa: E731

    denied = 0

    def on_result(result: RedemptionResult) -> None:
        nonlocal denied
        _print_result(result)
        if not result.granted:
            denied += 1

    def on_error(msg: str, kind) -> None:
        print(f"[{kind.value}] {msg}", file=sys.stderr)

    async with _client(config, session) as client:
        gateway = HttpVerificationGateway(client)
        async with RedemptionController(
            gateway, args.event,
            camera_factory=camera_factory,
            cooldown=config.scan_cooldown,
            on_result=on_result,
            on_error=on_error,
        ) as ctl:
            for code in args.codes:
                await _settle(ctl)
                await ctl.submit(code)
                if not session.valid():
                    return 2

            if camera_factory is None:
                return 1 if denied else 0

            print("Scanning. Ctrl-C to stop.")
            while True:
                await _settle(ctl)
                if not ctl.scanning and not await ctl.start_scanning():
                    return 1
                await asyncio.sleep(0.1)


# ----------------------------
# Entry point
# ----------------------------
def _add_client_flags(p: argparse.ArgumentParser) -> None:
    p.add_argument("--api", help="API base URL (env TICTIFY_API_URL)")
    p.add_argument("--poll-interval", type=float,
                   help="Seconds between polls")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="tictify",
                                 description="Tictify ticketing client")
    ap.add_argument("--log-level", default=None,
                    help="DEBUG/INFO/WARNING (env TICTIFY_LOG_LEVEL)")
    ap.add_argument("--log-file", default=None)
    sub = ap.add_subparsers(dest="cmd", required=True)

    p = sub.add_parser("watch", help="Confirm a payment and fetch the ticket")
    _add_client_flags(p)
    p.add_argument("--ref", required=True, help="Payment reference")
    p.add_argument("--payment-attempts", type=int)
    p.add_argument("--ticket-attempts", type=int)
    p.add_argument("--handoff-delay", type=float)

    p = sub.add_parser("buy", help="Start a checkout")
    _add_client_flags(p)
    p.add_argument("--event", required=True)
    p.add_argument("--name", required=True)
    p.add_argument("--email", required=True)
    p.add_argument("--ticket-type", default=None)

    p = sub.add_parser("events", help="List LIVE events")
    _add_client_flags(p)
    p.add_argument("--token", help="Organizer token (env TICTIFY_TOKEN)")

    p = sub.add_parser("scan", help="Redeem tickets at the door")
    _add_client_flags(p)
    p.add_argument("--token", help="Organizer token (env TICTIFY_TOKEN)")
    p.add_argument("--event", default="", help="Event being scanned")
    p.add_argument("--camera", type=int, default=None,
                   help="Camera index; omit for manual entry only")
    p.add_argument("--cooldown", type=float,
                   help="Seconds to ignore codes after each verdict")
    p.add_argument("codes", nargs="*", help="Codes to redeem manually")

    p = sub.add_parser("serve", help="Run the reference backend")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8000)
    p.add_argument("--reload", action="store_true")

    p = sub.add_parser("load", help="Simulate concurrent buyers")
    p.add_argument("--base", default="http://localhost:8000",
                   help="Base URL of the backend")
    p.add_argument("--event", default="evt-lagos-jazz")
    p.add_argument("--total", type=int, default=100)
    p.add_argument("--concurrency", type=int, default=20)
    p.add_argument("--fail-rate", type=float, default=0.0,
                   help="Fraction of payments to mark as failed")
    p.add_argument("--cancel-rate", type=float, default=0.0,
                   help="Fraction of payments to mark as canceled")
    p.add_argument("--poll-interval", type=float, default=0.05)
    p.add_argument("--payment-attempts", type=int)
    p.add_argument("--ticket-attempts", type=int)
    p.add_argument("--handoff-delay", type=float, default=0.0)
    return ap


def _load(args) -> int:
    if args.fail_rate + args.cancel_rate > 0.95:
        print(
            "Warning: combined fail+cancel rate is very high; "
            "few tickets will be issued."
        )
    config = _config(args)
    t_start = time.perf_counter()
    stats = asyncio.run(run_load(
        base=args.base,
        event_id=args.event,
        total=args.total,
        concurrency=args.concurrency,
        fail_rate=args.fail_rate,
        cancel_rate=args.cancel_rate,
        config=config,
    ))
    elapsed = time.perf_counter() - t_start
    stats.print(elapsed)
    timings.print_summary()
    return 0


def _serve(args) -> int:
    import uvicorn

    uvicorn.run("tictify.backend.server:app", host=args.host,
                port=args.port, reload=args.reload)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    if args.cmd == "serve":
        return _serve(args)
    if args.cmd == "load":
        return _load(args)

    config = _config(args)
    try:
        if args.cmd == "watch":
            return asyncio.run(_watch(config, args.ref))
        if args.cmd == "buy":
            return asyncio.run(_buy(config, args))
        if args.cmd == "events":
            return asyncio.run(_events(config))
        if args.cmd == "scan":
            return asyncio.run(_scan(config, args))
    except KeyboardInterrupt:
        return 130
    except (EventNotSelected, SessionExpired) as e:
        print(str(e), file=sys.stderr)
        return 2
    except (TictifyError, httpx.HTTPError) as e:
        logger.error("%s", e)
        return 1
    return 2


if __name__ == "__main__":
    sys.exit(main())
