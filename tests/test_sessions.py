from __future__ import annotations

import asyncio
from typing import Any, List, Optional

import pytest

from venue_scan.capture import CameraDevice, StreamConstraints
from venue_scan.errors import CameraNotFound
from venue_scan.guard import ScanSessionState
from venue_scan.notifications import Notification, NotificationDispatcher, NotificationRateLimiter
from venue_scan.payloads import BookingEntry, MemberCredential, encode
from venue_scan.sessions import ScanSession, SessionRegistry
from venue_scan.verification import ScanVerifier


BOOKING_QR = encode(BookingEntry(booking_id="b1", security_code="ABCD1234"))
MEMBER_QR = encode(MemberCredential(member_id="u1", security_code="MEMBER01"))


class RecordingSender:
    def __init__(self) -> None:
        self.sent: List[Notification] = []

    def send(self, notification: Notification) -> None:
        self.sent.append(notification)


class StillCamera:
    """Opens fine and never produces a frame."""

    def __init__(self, devices=None) -> None:
        self.devices = devices if devices is not None else [CameraDevice("0", "Rear Camera")]
        self.closed: List[Any] = []

    def enumerate_devices(self):
        return list(self.devices)

    def open_stream(self, device_id: str, constraints: StreamConstraints):
        return self

    def read(self) -> Optional[Any]:
        return None

    def close_stream(self, stream) -> None:
        self.closed.append(stream)


class NullDecoder:
    def decode(self, frame: Any) -> Optional[str]:
        return None


def _session(store, clock, dispatcher=None, venue_id=None) -> ScanSession:
    return ScanSession(
        "door-1",
        ScanVerifier(store, clock=clock),
        guard=ScanSessionState(cooldown_seconds=30),
        dispatcher=dispatcher,
        venue_id=venue_id,
        clock=clock,
    )


def test_foreign_qr_is_ignored_without_store_access(store, clock) -> None:
    session = _session(store, clock)
    for raw in ("https://example.com", "", "{broken", '{"type": "coupon"}'):
        assert session.process(raw).status == "ignored"
    assert store.calls == []
    assert session.guard.last_scan_at is None


def test_verified_scan_then_duplicate_suppressed(store, clock) -> None:
    session = _session(store, clock)

    first = session.process(BOOKING_QR)
    assert first.status == "verified"
    assert first.key == "booking:b1:ABCD1234"
    assert first.result.venue_name == "Club One"

    clock.advance(2)
    second = session.process(BOOKING_QR)
    assert second.status == "suppressed"
    assert second.reason == "cooldown"
    assert store.data["bookings"]["b1"]["scan_count"] == 1
    assert session.last_outcome is first


def test_rescan_after_cooldown_is_verified_again(store, clock) -> None:
    session = _session(store, clock)
    session.process(BOOKING_QR)
    clock.advance(31)
    assert session.process(BOOKING_QR).status == "verified"
    assert store.data["bookings"]["b1"]["scan_count"] == 2


def test_rejection_is_a_display_state(store, clock) -> None:
    session = _session(store, clock)
    wrong = encode(BookingEntry(booking_id="b1", security_code="ZZZZ9999"))

    outcome = session.process(wrong)
    assert outcome.status == "rejected"
    assert outcome.error["code"] == "InvalidSecurityCode"
    assert outcome.error["message"] == "Invalid security code"
    assert session.guard.recently_processed_keys == []
    assert session.guard.is_processing is False
    assert store.data["bookings"]["b1"]["scan_count"] == 0


def test_member_scan_uses_station_venue(store, clock) -> None:
    outcome = _session(store, clock, venue_id="v1").process(MEMBER_QR)
    assert outcome.status == "verified"
    assert outcome.result.credit_balance == 4000

    clock.advance(60)
    store.data["venue_credits"]["c1"]["venue_id"] = "v9"
    other = _session(store, clock, venue_id="v1").process(MEMBER_QR)
    assert other.status == "rejected"
    assert other.error["code"] == "NoAvailableCredit"


def test_verified_scan_queues_notification(store, clock) -> None:
    sender = RecordingSender()
    dispatcher = NotificationDispatcher(sender, NotificationRateLimiter())
    session = _session(store, clock, dispatcher=dispatcher)
    try:
        assert session.process(BOOKING_QR).status == "verified"
    finally:
        dispatcher.shutdown(wait=True)
    assert [(n.to, n.template) for n in sender.sent] == [("ada@example.com", "booking_checked_in")]


def test_submit_admits_before_yielding(store, clock) -> None:
    session = _session(store, clock)

    async def scenario():
        task = await session.submit(BOOKING_QR)
        assert task is not None
        assert session.guard.is_processing
        # Any code arriving before validation finishes is dropped
        assert await session.submit(MEMBER_QR) is None
        return await task

    outcome = asyncio.run(scenario())
    assert outcome.status == "verified"
    assert session.last_outcome is outcome
    assert session.guard.is_processing is False
    assert store.data["bookings"]["b1"]["scan_count"] == 1


def test_submit_ignores_foreign_codes(store, clock) -> None:
    session = _session(store, clock)
    assert asyncio.run(session.submit("not ours")) is None
    assert store.calls == []


def test_capture_start_and_stop_reset_guard(store, clock) -> None:
    session = _session(store, clock)
    camera = StillCamera()
    session.process(BOOKING_QR)
    assert session.guard.last_scan_at is not None

    async def scenario() -> dict:
        await session.start_capture(camera, NullDecoder(), interval=0.001)
        status = session.status()
        await session.stop_capture()
        return status

    status = asyncio.run(scenario())
    assert status["capturing"] is True
    assert status["device"] == "0"
    assert status["last_scan_at"] is None
    assert camera.closed == [camera]
    assert session.capturing is False
    assert session.guard.recently_processed_keys == []


def test_capture_failure_is_reported_in_status(store, clock) -> None:
    session = _session(store, clock)

    async def scenario() -> None:
        await session.start_capture(StillCamera(devices=[]), NullDecoder())

    with pytest.raises(CameraNotFound):
        asyncio.run(scenario())
    status = session.status()
    assert status["capturing"] is False
    assert status["camera_error"]["code"] == "CameraNotFound"


def test_registry_reuses_sessions(store, clock) -> None:
    created = []

    def factory(station_id, venue_id):
        created.append(station_id)
        return ScanSession(station_id, ScanVerifier(store, clock=clock), venue_id=venue_id, clock=clock)

    registry = SessionRegistry(factory)
    first = registry.get_or_create("door-1")
    assert registry.get_or_create("door-1", venue_id="v1") is first
    assert first.venue_id == "v1"
    assert registry.get("door-2") is None
    assert registry.stations() == ["door-1"]
    assert created == ["door-1"]
