"""
Per-station scan sessions.

A session ties together everything one scanning station owns: its duplicate
guard, its verifier, an optional capture loop and the last outcome shown to
the operator. Sessions live in a registry on the application, never in module
globals, and their guard state is reset whenever capture starts or stops.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Literal, Optional, Set, Tuple

from pydantic import BaseModel

from .capture import Camera, CaptureLoop, FrameDecoder, StreamConstraints
from .config import Settings
from .errors import ScanRejected
from .guard import ScanSessionState
from .notifications import NotificationDispatcher
from .payloads import ScanPayload, decode, scan_key
from .store import DataStore
from .utils import utcnow
from .verification import ScanVerifier, VerificationPolicy, VerifiedResult


logger = logging.getLogger(__name__)


class ScanOutcome(BaseModel):
    station_id: str
    status: Literal["ignored", "suppressed", "verified", "rejected"]
    key: Optional[str] = None
    reason: Optional[str] = None
    result: Optional[VerifiedResult] = None
    error: Optional[Dict[str, Any]] = None


class ScanSession:
    def __init__(
        self,
        station_id: str,
        verifier: ScanVerifier,
        guard: Optional[ScanSessionState] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        venue_id: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.station_id = station_id
        self.venue_id = venue_id
        self.verifier = verifier
        self.guard = guard or ScanSessionState()
        self.dispatcher = dispatcher
        self.clock = clock
        self.capture: Optional[CaptureLoop] = None
        self.last_outcome: Optional[ScanOutcome] = None
        self._pending: Set[asyncio.Task] = set()

    # Scan handling

    def process(self, raw: Optional[str]) -> ScanOutcome:
        """Handle one scan to completion on the calling thread."""
        outcome, payload, key = self._admit(raw)
        if outcome is not None:
            return outcome
        return self._verify(payload, key)

    async def submit(self, raw: Optional[str]) -> Optional[asyncio.Task]:
        """Admit on the event loop and verify in a worker thread.

        Admission happens before this coroutine yields, so frames arriving
        while the verification runs are suppressed as busy.
        """
        outcome, payload, key = self._admit(raw)
        if outcome is not None:
            return None
        task = asyncio.create_task(asyncio.to_thread(self._verify, payload, key))
        self._pending.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _admit(self, raw: Optional[str]) -> Tuple[Optional[ScanOutcome], Optional[ScanPayload], Optional[str]]:
        payload = decode(raw)
        if payload is None:
            return ScanOutcome(station_id=self.station_id, status="ignored"), None, None
        key = scan_key(payload)
        admission = self.guard.admit(key, self.clock())
        if not admission.admitted:
            logger.debug("station=%s scan %s suppressed (%s)", self.station_id, key, admission.value)
            return ScanOutcome(station_id=self.station_id, status="suppressed", key=key, reason=admission.value), None, None
        return None, payload, key

    def _verify(self, payload: ScanPayload, key: str) -> ScanOutcome:
        success = False
        try:
            result = self.verifier.verify(payload, venue_id=self.venue_id)
            success = True
        except ScanRejected as exc:
            outcome = ScanOutcome(station_id=self.station_id, status="rejected", key=key, error=exc.as_dict())
        finally:
            self.guard.complete(key, success, self.clock())

        if success:
            outcome = ScanOutcome(station_id=self.station_id, status="verified", key=key, result=result)
            self._notify(result)
        self.last_outcome = outcome
        return outcome

    def _notify(self, result: VerifiedResult) -> None:
        if self.dispatcher is None:
            return
        try:
            self.dispatcher.notify_verified(result)
        except Exception:
            logger.exception("station=%s could not queue notification", self.station_id)

    def _task_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("station=%s verification crashed", self.station_id, exc_info=exc)

    # Capture lifecycle

    @property
    def capturing(self) -> bool:
        return self.capture is not None and self.capture.running

    async def start_capture(
        self,
        camera: Camera,
        decoder: FrameDecoder,
        interval: float = 0.1,
        constraints: Optional[StreamConstraints] = None,
        device_id: Optional[str] = None,
    ) -> None:
        if self.capturing:
            return
        self.guard.reset()
        self.capture = CaptureLoop(
            camera,
            decoder,
            self.submit,
            interval=interval,
            constraints=constraints,
            device_id=device_id,
        )
        await self.capture.start()

    async def stop_capture(self) -> None:
        if self.capture is not None:
            await self.capture.stop()
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        self.guard.reset()

    def status(self) -> Dict[str, Any]:
        capture = self.capture
        return {
            "station_id": self.station_id,
            "venue_id": self.venue_id,
            "capturing": self.capturing,
            "device": capture.device.id if capture and capture.device else None,
            "camera_error": capture.error.as_dict() if capture and capture.error else None,
            "is_processing": self.guard.is_processing,
            "last_scan_at": self.guard.last_scan_at,
            "recent_keys": len(self.guard.recently_processed_keys),
            "last_outcome": self.last_outcome.model_dump(mode="json") if self.last_outcome else None,
        }


class SessionRegistry:
    """Scan sessions by station id."""

    def __init__(self, factory: Callable[[str, Optional[str]], ScanSession]) -> None:
        self._factory = factory
        self._sessions: Dict[str, ScanSession] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: DataStore,
        dispatcher: Optional[NotificationDispatcher] = None,
    ) -> "SessionRegistry":
        verifier = ScanVerifier(store, VerificationPolicy.from_settings(settings))

        def factory(station_id: str, venue_id: Optional[str]) -> ScanSession:
            guard = ScanSessionState(
                cooldown_seconds=settings.scan_cooldown_seconds,
                capacity=settings.recent_keys_capacity,
            )
            return ScanSession(station_id, verifier, guard=guard, dispatcher=dispatcher, venue_id=venue_id)

        return cls(factory)

    def get(self, station_id: str) -> Optional[ScanSession]:
        with self._lock:
            return self._sessions.get(station_id)

    def get_or_create(self, station_id: str, venue_id: Optional[str] = None) -> ScanSession:
        with self._lock:
            session = self._sessions.get(station_id)
            if session is None:
                session = self._factory(station_id, venue_id)
                self._sessions[station_id] = session
                logger.info("created scan session for station=%s venue=%s", station_id, venue_id)
            elif venue_id and session.venue_id != venue_id:
                session.venue_id = venue_id
            return session

    def stations(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    async def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            await session.stop_capture()
