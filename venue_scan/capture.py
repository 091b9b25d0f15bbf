"""
Camera capture loop.

One loop per scanning station. It owns the camera device from ``start()`` until
``stop()`` and releases it on every exit path, including cancellation and
device errors. Camera failures are terminal: the loop stops, records the error
and waits to be restarted.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Sequence, Tuple

import cv2

from .errors import (
    CameraError,
    CameraInUse,
    CameraNotFound,
    CameraPermissionDenied,
    CameraPlaybackFailed,
)


logger = logging.getLogger(__name__)

BACK_CAMERA_HINTS = ("back", "rear")


@dataclass(frozen=True)
class CameraDevice:
    id: str
    label: str = ""


@dataclass(frozen=True)
class StreamConstraints:
    width: Optional[int] = None
    height: Optional[int] = None
    fps: Optional[int] = None

    @property
    def strict(self) -> bool:
        return any(v is not None for v in (self.width, self.height, self.fps))

    def relaxed(self) -> "StreamConstraints":
        return StreamConstraints()


class ConstraintsRejected(Exception):
    """The device opened but cannot honor the requested mode."""


class VideoStream(Protocol):
    def read(self) -> Any: ...


class Camera(Protocol):
    def enumerate_devices(self) -> List[CameraDevice]: ...

    def open_stream(self, device_id: str, constraints: StreamConstraints) -> VideoStream: ...

    def close_stream(self, stream: VideoStream) -> None: ...


class FrameDecoder(Protocol):
    def decode(self, frame: Any) -> Optional[str]: ...


def select_device(devices: Sequence[CameraDevice], preferred_id: Optional[str] = None) -> Optional[CameraDevice]:
    """Explicit id first, then a rear-facing label, then whatever is first."""
    if not devices:
        return None
    if preferred_id:
        for device in devices:
            if device.id == preferred_id:
                return device
        logger.info("requested camera %s not present; choosing automatically", preferred_id)
    for device in devices:
        label = device.label.lower()
        if any(hint in label for hint in BACK_CAMERA_HINTS):
            return device
    return devices[0]


class OpenCVStream:
    def __init__(self, capture: "cv2.VideoCapture", max_failed_reads: int = 30) -> None:
        self._capture = capture
        self._max_failed_reads = max_failed_reads
        self._failed_reads = 0

    def read(self) -> Any:
        ok, frame = self._capture.read()
        if ok:
            self._failed_reads = 0
            return frame
        self._failed_reads += 1
        if self._failed_reads >= self._max_failed_reads:
            raise CameraPlaybackFailed(f"{self._failed_reads} consecutive frame reads failed")
        return None

    def release(self) -> None:
        self._capture.release()


class OpenCVCamera:
    """V4L2 cameras through OpenCV. Labels come from sysfs."""

    def __init__(self, sysfs_root: Path = Path("/sys/class/video4linux"), max_failed_reads: int = 30) -> None:
        self.sysfs_root = sysfs_root
        self.max_failed_reads = max_failed_reads

    def enumerate_devices(self) -> List[CameraDevice]:
        devices: List[CameraDevice] = []
        if not self.sysfs_root.is_dir():
            return devices
        for node in sorted(self.sysfs_root.glob("video*")):
            name_file = node / "name"
            try:
                label = name_file.read_text().strip()
            except OSError:
                label = node.name
            devices.append(CameraDevice(id=f"/dev/{node.name}", label=label))
        return devices

    def open_stream(self, device_id: str, constraints: StreamConstraints) -> OpenCVStream:
        source: Any = int(device_id) if device_id.isdigit() else device_id
        if isinstance(source, str):
            path = Path(source)
            if not path.exists():
                raise CameraNotFound(f"{device_id} does not exist")
            if not os.access(path, os.R_OK | os.W_OK):
                raise CameraPermissionDenied(f"no read/write access to {device_id}")

        capture = cv2.VideoCapture(source)
        if not capture.isOpened():
            capture.release()
            raise CameraInUse(f"could not open {device_id}")

        if constraints.strict:
            try:
                self._apply(capture, constraints)
            except ConstraintsRejected:
                capture.release()
                raise

        ok, _ = capture.read()
        if not ok:
            capture.release()
            raise CameraPlaybackFailed(f"no frames from {device_id}")
        return OpenCVStream(capture, self.max_failed_reads)

    def close_stream(self, stream: OpenCVStream) -> None:
        stream.release()

    @staticmethod
    def _apply(capture: "cv2.VideoCapture", constraints: StreamConstraints) -> None:
        wanted = (
            (cv2.CAP_PROP_FRAME_WIDTH, constraints.width),
            (cv2.CAP_PROP_FRAME_HEIGHT, constraints.height),
            (cv2.CAP_PROP_FPS, constraints.fps),
        )
        for prop, value in wanted:
            if value is None:
                continue
            capture.set(prop, value)
            actual = capture.get(prop)
            if int(round(actual)) != value:
                raise ConstraintsRejected(f"property {prop}: wanted {value}, got {actual}")


class QRDecoder:
    def __init__(self) -> None:
        self._detector = cv2.QRCodeDetector()

    def decode(self, frame: Any) -> Optional[str]:
        try:
            text, _points, _ = self._detector.detectAndDecode(frame)
        except cv2.error as exc:
            logger.debug("QR detection failed on frame: %s", exc)
            return None
        return text or None


class CaptureLoop:
    def __init__(
        self,
        camera: Camera,
        decoder: FrameDecoder,
        on_decode: Callable[[str], Awaitable[Any]],
        interval: float = 0.1,
        constraints: Optional[StreamConstraints] = None,
        device_id: Optional[str] = None,
    ) -> None:
        self.camera = camera
        self.decoder = decoder
        self.on_decode = on_decode
        self.interval = interval
        self.constraints = constraints or StreamConstraints(width=1280, height=720, fps=30)
        self.device_id = device_id
        self.device: Optional[CameraDevice] = None
        self.error: Optional[CameraError] = None
        self._stream: Optional[VideoStream] = None
        self._task: Optional[asyncio.Task] = None
        # Held while a frame is read so release never races a read
        self._io_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self.error = None
        try:
            self.device, self._stream = await asyncio.to_thread(self._acquire)
        except CameraError as exc:
            self.error = exc
            logger.warning("camera start failed: %s (%s)", exc.code, exc.detail)
            raise
        except Exception as exc:
            self.error = CameraPlaybackFailed(str(exc))
            logger.exception("camera start failed")
            raise self.error from exc
        logger.info("capture started on %s (%s)", self.device.id, self.device.label or "unlabelled")
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._release()

    async def __aenter__(self) -> "CaptureLoop":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    def _acquire(self) -> Tuple[CameraDevice, VideoStream]:
        device = select_device(self.camera.enumerate_devices(), self.device_id)
        if device is None:
            raise CameraNotFound("no capture devices available")
        try:
            stream = self.camera.open_stream(device.id, self.constraints)
        except ConstraintsRejected as exc:
            logger.info("strict constraints rejected on %s (%s); retrying relaxed", device.id, exc)
            stream = self.camera.open_stream(device.id, self.constraints.relaxed())
        return device, stream

    def _sample(self) -> Optional[str]:
        with self._io_lock:
            stream = self._stream
            if stream is None:
                return None
            frame = stream.read()
        if frame is None:
            return None
        return self.decoder.decode(frame)

    async def _run(self) -> None:
        try:
            while True:
                text = await asyncio.to_thread(self._sample)
                if text:
                    try:
                        await self.on_decode(text)
                    except Exception:
                        logger.exception("scan handler failed")
                await asyncio.sleep(self.interval)
        except CameraError as exc:
            self.error = exc
            logger.warning("capture stopped: %s (%s)", exc.code, exc.detail)
        except Exception as exc:
            self.error = CameraPlaybackFailed(str(exc))
            logger.exception("capture loop crashed")
        finally:
            self._release()

    def _release(self) -> None:
        with self._io_lock:
            stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            self.camera.close_stream(stream)
        except Exception:
            logger.exception("failed to release camera stream")
        else:
            logger.info("camera released")
