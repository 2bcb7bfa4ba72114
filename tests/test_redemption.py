import asyncio

import pytest

from tictify.camera import active_session
from tictify.errors import EventNotSelected, FailureKind
from tictify.gateway import RedemptionResult
from tictify.redemption import RedemptionController
from tests.helpers import FakeCamera, FakeGateway, eventually

pytestmark = pytest.mark.asyncio

USED = RedemptionResult(False, "Ticket already used")
GRANTED = RedemptionResult(True, "Access granted")


@pytest.mark.parametrize("event_id", ["", None, "  "])
async def test_requires_selected_event(event_id):
    with pytest.raises(EventNotSelected):
        RedemptionController(FakeGateway(), event_id)


async def test_denial_then_cooldown_then_next_code():
    gateway = FakeGateway(USED, GRANTED)
    results = []
    ctl = RedemptionController(gateway, "evt-1", cooldown=0.05,
                               on_result=results.append)

    assert await ctl.submit("TIX-1") == USED
    assert ctl.busy
    assert await ctl.submit("TIX-2") is None
    assert len(gateway.attempts) == 1

    await eventually(lambda: ctl.accepting)
    result = await ctl.submit("TIX-2")

    assert result.granted
    assert [a.code for a in gateway.attempts] == ["TIX-1", "TIX-2"]
    assert results == [USED, GRANTED]
    assert ctl.last_result == GRANTED
    await ctl.close()


async def test_attempt_carries_event_and_source():
    gateway = FakeGateway()
    ctl = RedemptionController(gateway, "evt-1", cooldown=0)

    await ctl.submit("  TIX-7 ")

    attempt = gateway.attempts[0]
    assert (attempt.code, attempt.event_id, attempt.source) == \
        ("TIX-7", "evt-1", "manual")
    assert attempt.timestamp > 0


async def test_blank_manual_code_is_ignored():
    gateway = FakeGateway()
    ctl = RedemptionController(gateway, "evt-1", cooldown=0)

    assert await ctl.submit("   ") is None
    assert gateway.attempts == []
    assert ctl.accepting


async def test_camera_refusal_keeps_manual_entry():
    errors = []
    ctl = RedemptionController(
        FakeGateway(GRANTED), "evt-1", cooldown=0,
        camera_factory=lambda: FakeCamera(fail=PermissionError("denied")),
        on_error=lambda msg, kind: errors.append(kind),
    )

    assert await ctl.start_scanning() is False

    assert not ctl.scanning
    assert ctl.error_kind == FailureKind.RESOURCE
    assert errors == [FailureKind.RESOURCE]
    assert ctl.manual_entry_available
    assert active_session() is None
    assert (await ctl.submit("TIX-1")).granted


async def test_no_camera_configured():
    ctl = RedemptionController(FakeGateway(), "evt-1")

    assert await ctl.start_scanning() is False
    assert ctl.error_kind == FailureKind.RESOURCE
    assert ctl.manual_entry_available


async def test_repeated_decodes_verify_once():
    cam = FakeCamera()
    gateway = FakeGateway(GRANTED, delay=0.02)
    ctl = RedemptionController(gateway, "evt-1", cooldown=0.05,
                               camera_factory=lambda: cam)
    assert await ctl.start_scanning()

    for _ in range(10):
        cam.show("https://tictify.app/t/TIX-9")
    assert ctl.verifications == 1

    await eventually(lambda: ctl.last_result is not None)
    assert len(gateway.attempts) == 1
    assert gateway.attempts[0].code == "TIX-9"
    assert gateway.attempts[0].source == "camera"
    await ctl.close()


async def test_grant_stops_the_camera():
    cam = FakeCamera()
    ctl = RedemptionController(FakeGateway(GRANTED), "evt-1", cooldown=0,
                               camera_factory=lambda: cam)
    await ctl.start_scanning()

    cam.show("TIX-1")
    await eventually(lambda: not ctl.scanning)

    assert cam.stopped == 1
    assert active_session() is None
    await ctl.close()


async def test_denial_keeps_the_camera_running():
    cam = FakeCamera()
    ctl = RedemptionController(FakeGateway(USED), "evt-1", cooldown=0,
                               camera_factory=lambda: cam)
    await ctl.start_scanning()

    cam.show("TIX-1")
    await eventually(lambda: ctl.last_result is not None)

    assert ctl.scanning
    assert cam.stopped == 0
    await ctl.close()
    assert cam.stopped == 1


async def test_camera_is_exclusive_between_scanners():
    first = RedemptionController(FakeGateway(), "evt-1",
                                 camera_factory=FakeCamera)
    second = RedemptionController(FakeGateway(), "evt-1",
                                  camera_factory=FakeCamera)

    assert await first.start_scanning()
    assert await second.start_scanning() is False
    assert second.error_kind == FailureKind.RESOURCE

    await first.close()
    assert await second.start_scanning()
    await second.close()


async def test_gateway_crash_is_a_denial():
    ctl = RedemptionController(FakeGateway(error=RuntimeError("bug")),
                               "evt-1", cooldown=0)

    result = await ctl.submit("TIX-1")

    assert not result.granted
    assert result.kind == FailureKind.BROKEN
    assert ctl.accepting


async def test_close_discards_inflight_verification():
    results = []
    ctl = RedemptionController(FakeGateway(GRANTED, delay=30), "evt-1",
                               on_result=results.append)
    task = asyncio.create_task(ctl.submit("TIX-1"))
    await asyncio.sleep(0.01)

    await ctl.close()
    await ctl.close()

    assert await asyncio.wait_for(task, 1.0) is None
    assert results == []
    assert ctl.last_result is None
    assert not ctl.accepting
    assert not ctl.manual_entry_available


async def test_close_cancels_cooldown():
    ctl = RedemptionController(FakeGateway(USED), "evt-1", cooldown=30)
    await ctl.submit("TIX-1")

    await ctl.close()

    assert ctl._cooldown_handle is None
    assert ctl.closed


async def test_camera_and_manual_send_the_same_code():
    cam = FakeCamera()
    gateway = FakeGateway(USED)
    ctl = RedemptionController(gateway, "evt-1", cooldown=0,
                               camera_factory=lambda: cam)
    await ctl.start_scanning()

    cam.show("TKT.2024.0001")
    await eventually(lambda: ctl.last_result is not None)
    await ctl.submit("TKT.2024.0001")

    assert [a.code for a in gateway.attempts] == ["TKT.2024.0001"] * 2
    await ctl.close()


async def test_lost_camera_frees_it_and_keeps_manual_entry():
    cam = FakeCamera()
    errors = []
    ctl = RedemptionController(FakeGateway(), "evt-1", cooldown=0,
                               camera_factory=lambda: cam,
                               on_error=lambda msg, kind: errors.append(kind))
    assert await ctl.start_scanning()

    cam.lose("Camera 0 stopped delivering frames.")

    assert not ctl.scanning
    assert ctl.error_kind is FailureKind.RESOURCE
    assert errors == [FailureKind.RESOURCE]
    await eventually(lambda: cam.stopped == 1)
    assert active_session() is None
    assert ctl.manual_entry_available
    assert (await ctl.submit("TIX-1")).granted
    # the camera can be opened again
    assert await ctl.start_scanning()
    await ctl.close()
