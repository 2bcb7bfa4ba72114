from __future__ import annotations
import asyncio
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from .errors import CameraBusy, CameraUnavailable
from .logger import logger

OnDecode = Callable[[str], Any]
OnLost = Callable[[str], Any]


# ----------------------------
# Capture device interface
# ----------------------------
class CaptureDevice(ABC):
    @abstractmethod
    async def start(self, on_decode: OnDecode, on_lost: OnLost) -> None:
        """Open the device and begin delivering decoded QR text.
        Raise if the camera cannot be opened. Call ``on_lost`` with a
        message if the device later stops working on its own."""

    @abstractmethod
    async def stop(self) -> None: ...


# at most one session owns the hardware; single-threaded event loop, no lock
_ACTIVE: Optional["CameraSession"] = None


def active_session() -> Optional["CameraSession"]:
    return _ACTIVE


class CameraSession:
    """One exclusive capture session.

    ``start()`` claims the process-wide camera slot before touching the
    device and gives it back if the device refuses to open. ``release()``
    can be called any number of times, before or after start, and frees
    the slot even when stopping the device fails.
    """

    def __init__(self, device: CaptureDevice, on_decode: OnDecode,
                 on_lost: Optional[OnLost] = None) -> None:
        self.device = device
        self.on_decode = on_decode
        self.on_lost = on_lost
        self._started = False
        self._released = False

    @property
    def active(self) -> bool:
        return self._started and not self._released

    @property
    def released(self) -> bool:
        return self._released

    def _deliver(self, text: str) -> None:
        if self.active:
            self.on_decode(text)

    def _lost(self, message: str) -> None:
        if self.active and self.on_lost is not None:
            self.on_lost(message)

    def _free_slot(self) -> None:
        global _ACTIVE
        if _ACTIVE is self:
            _ACTIVE = None

    async def start(self) -> None:
        global _ACTIVE
        if self._released:
            raise RuntimeError("camera session already released")
        if self._started:
            return
        if _ACTIVE is not None and _ACTIVE is not self:
            raise CameraBusy("The camera is already in use by another "
                             "scanner. Stop it first.")
        _ACTIVE = self
        try:
            await self.device.start(self._deliver, self._lost)
        except CameraUnavailable:
            self._released = True
            self._free_slot()
            raise
        except Exception as e:
            self._released = True
            self._free_slot()
            raise CameraUnavailable(
                "Camera access denied or unavailable. Allow camera access "
                "and try again, or enter the code manually."
            ) from e
        self._started = True
        if self._released:
            # release() ran while the device was still opening
            self._started = False
            await self._stop_device()
            return
        logger.info("camera session started")

    async def _stop_device(self) -> None:
        try:
            await self.device.stop()
        except Exception as e:
            logger.warning("camera did not stop cleanly: %r", e)

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            if self._started:
                await self._stop_device()
                logger.info("camera session released")
        finally:
            self._free_slot()

    async def __aenter__(self) -> "CameraSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()


# ----------------------------
# OpenCV implementation
# ----------------------------
class OpenCVCamera(CaptureDevice):
    """Webcam capture with OpenCV's built-in QR detector.

    One worker thread owns the capture while it reads: it grabs frames,
    decodes them and hands text to the event loop. ``stop()`` halts that
    thread and waits for it before releasing the device. If the device
    stops delivering frames, ``on_lost`` is told why.
    """

    def __init__(self, index: int = 0, fps: float = 10.0,
                 capture_factory: Optional[Callable[[int], Any]] = None,
                 detector_factory: Optional[Callable[[], Any]] = None) -> None:
        self.index = index
        self.fps = fps
        self.capture_factory = capture_factory
        self.detector_factory = detector_factory
        self._cap = None
        self._halt = threading.Event()
        self._task: Optional[asyncio.Task] = None

    def _factories(self):
        if self.capture_factory is not None and self.detector_factory is not None:
            return self.capture_factory, self.detector_factory
        import cv2
        return (self.capture_factory or cv2.VideoCapture,
                self.detector_factory or cv2.QRCodeDetector)

    async def start(self, on_decode: OnDecode, on_lost: OnLost) -> None:
        capture, detector = self._factories()
        cap = await asyncio.to_thread(capture, self.index)
        if not cap.isOpened():
            await asyncio.to_thread(cap.release)
            raise CameraUnavailable(
                f"Could not open camera {self.index}. Check permissions or "
                f"enter the code manually."
            )
        self._cap = cap
        self._halt = threading.Event()
        self._task = asyncio.create_task(
            self._watch(cap, detector(), on_decode, on_lost)
        )

    def _read_frames(self, cap, detector, deliver) -> Optional[str]:
        delay = 1.0 / self.fps if self.fps > 0 else 0.0
        while not self._halt.is_set():
            ok, frame = cap.read()
            if not ok:
                return (f"Camera {self.index} stopped delivering frames. "
                        f"Enter the code manually.")
            data, points, _ = detector.detectAndDecode(frame)
            if points is not None and data:
                deliver(data)
            self._halt.wait(delay)
        return None

    async def _watch(self, cap, detector, on_decode: OnDecode,
                     on_lost: OnLost) -> None:
        loop = asyncio.get_running_loop()
        halt = self._halt

        def deliver(text: str) -> None:
            loop.call_soon_threadsafe(on_decode, text)

        try:
            problem = await asyncio.to_thread(
                self._read_frames, cap, detector, deliver
            )
        except Exception as e:
            logger.warning("camera %d read failed: %r", self.index, e)
            problem = (f"Camera {self.index} failed while scanning. Enter "
                       f"the code manually.")
        if problem and not halt.is_set():
            logger.warning("camera %d lost: %s", self.index, problem)
            on_lost(problem)

    async def stop(self) -> None:
        self._halt.set()
        task, self._task = self._task, None
        if task is not None:
            # the reader thread owns the capture until it returns
            await task
        if self._cap is not None:
            cap, self._cap = self._cap, None
            await asyncio.to_thread(cap.release)
