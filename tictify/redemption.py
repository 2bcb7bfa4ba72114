from __future__ import annotations
import asyncio
from typing import Any, Callable, Optional

from .camera import CameraSession, CaptureDevice
from .config import SCAN_COOLDOWN_SECONDS
from .errors import CameraUnavailable, EventNotSelected, FailureKind
from .gateway import RedemptionResult, ScanAttempt, VerificationGateway
from .helpers import extract_ticket_code
from .logger import logger

OnResult = Callable[[RedemptionResult], Any]
OnError = Callable[[str, FailureKind], Any]


class RedemptionController:
    """Venue-side scanning for one selected event.

    Codes arrive from the camera (often the same code several times a
    second while it stays in frame) or from manual entry. Whatever the
    source, only one verification runs at a time: from the moment an
    attempt is accepted until ``cooldown`` seconds after the gateway
    answered, every other code is ignored.

    The gateway's answer is final. A grant also stops the camera.
    """

    def __init__(
        self,
        gateway: VerificationGateway,
        event_id: Optional[str],
        *,
        camera_factory: Optional[Callable[[], CaptureDevice]] = None,
        cooldown: float = SCAN_COOLDOWN_SECONDS,
        on_result: Optional[OnResult] = None,
        on_error: Optional[OnError] = None,
    ) -> None:
        event_id = (event_id or "").strip()
        if not event_id:
            raise EventNotSelected()
        self.gateway = gateway
        self.event_id = event_id
        self.camera_factory = camera_factory
        self.cooldown = cooldown
        self.on_result = on_result
        self.on_error = on_error

        self.scanning = False
        self.last_result: Optional[RedemptionResult] = None
        self.error: Optional[str] = None
        self.error_kind: Optional[FailureKind] = None
        self.verifications = 0

        self._camera: Optional[CameraSession] = None
        self._locked = False
        self._inflight: Optional[asyncio.Future] = None
        self._cooldown_handle: Optional[asyncio.TimerHandle] = None
        self._camera_tasks: set = set()
        self._closed = False

    # ----------------------------
    # State
    # ----------------------------
    @property
    def busy(self) -> bool:
        return self._locked

    @property
    def accepting(self) -> bool:
        return not self._locked and not self._closed

    @property
    def manual_entry_available(self) -> bool:
        # manual entry never depends on the camera
        return not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    def _fail(self, message: str, kind: FailureKind) -> None:
        self.error = message
        self.error_kind = kind
        logger.warning("scanner[%s]: %s", self.event_id, message)
        if self.on_error is not None:
            self.on_error(message, kind)

    # ----------------------------
    # Camera
    # ----------------------------
    async def start_scanning(self) -> bool:
        """Acquire the camera. Returns False (and reports an error) if it
        cannot be opened; manual entry keeps working either way."""
        if self._closed:
            raise RuntimeError("scanner is closed")
        if self._camera is not None:
            return True
        if self.camera_factory is None:
            self._fail("No camera is configured on this device. Enter the "
                       "code manually.", FailureKind.RESOURCE)
            return False

        self.error = None
        self.error_kind = None
        session = CameraSession(self.camera_factory(), self._on_decoded,
                                self._on_camera_lost)
        self._camera = session
        self.scanning = True
        try:
            await session.start()
        except CameraUnavailable as e:
            if self._camera is session:
                self._camera = None
                self.scanning = False
            self._fail(str(e), FailureKind.RESOURCE)
            return False
        if self._closed or self._camera is not session:
            # stopped or closed while the camera was opening
            await session.release()
            return False
        return True

    async def stop_scanning(self) -> None:
        session, self._camera = self._camera, None
        self.scanning = False
        if session is not None:
            await session.release()

    def _on_camera_lost(self, message: str) -> None:
        if self._closed or self._camera is None:
            return
        session, self._camera = self._camera, None
        self.scanning = False
        self._track(session.release())
        self._fail(message, FailureKind.RESOURCE)

    def _track(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._camera_tasks.add(task)
        task.add_done_callback(self._camera_tasks.discard)

    def _on_decoded(self, text: str) -> None:
        if not self.accepting:
            return
        code = extract_ticket_code(text)
        if not code:
            return
        attempt = self._begin(code, "camera")
        if attempt is not None:
            self._track(self._verify(attempt))

    # ----------------------------
    # Verification
    # ----------------------------
    def _begin(self, code: str, source: str) -> Optional[ScanAttempt]:
        # must not await before taking the lock
        if not self.accepting:
            logger.debug("scanner[%s]: ignoring %s code while busy",
                         self.event_id, source)
            return None
        self._locked = True
        self.verifications += 1
        return ScanAttempt(code=code, event_id=self.event_id, source=source)

    async def submit(self, code: str) -> Optional[RedemptionResult]:
        """Manual entry. Returns None when the attempt was ignored."""
        code = (code or "").strip()
        if not code:
            return None
        attempt = self._begin(code, "manual")
        if attempt is None:
            return None
        return await self._verify(attempt)

    async def _verify(self, attempt: ScanAttempt) -> Optional[RedemptionResult]:
        task = asyncio.ensure_future(self.gateway.verify(attempt))
        self._inflight = task
        try:
            result = await task
        except asyncio.CancelledError:
            if self._closed:
                return None
            raise
        except Exception as e:
            logger.exception("scanner[%s]: verification of %s crashed",
                             self.event_id, attempt.code)
            result = RedemptionResult(
                False, f"Verification failed unexpectedly: {e}",
                FailureKind.BROKEN,
            )
        finally:
            if self._inflight is task:
                self._inflight = None
            if not self._closed:
                self._start_cooldown()

        if self._closed:
            return None
        self.last_result = result
        if result.granted:
            logger.info("scanner[%s]: %s granted (%s)",
                        self.event_id, attempt.code, result.reason)
        else:
            logger.warning("scanner[%s]: %s denied: %s",
                           self.event_id, attempt.code, result.reason)
        if self.on_result is not None:
            self.on_result(result)
        if result.granted and self.scanning:
            await self.stop_scanning()
        return result

    def _start_cooldown(self) -> None:
        if self.cooldown <= 0:
            self._unlock()
            return
        loop = asyncio.get_running_loop()
        self._cooldown_handle = loop.call_later(self.cooldown, self._unlock)

    def _unlock(self) -> None:
        self._cooldown_handle = None
        if not self._closed:
            self._locked = False

    # ----------------------------
    # Teardown
    # ----------------------------
    async def close(self) -> None:
        """Release everything. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._cooldown_handle is not None:
            self._cooldown_handle.cancel()
            self._cooldown_handle = None
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        self._inflight = None
        await self.stop_scanning()

    async def __aenter__(self) -> "RedemptionController":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
