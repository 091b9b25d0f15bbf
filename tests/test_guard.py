from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from venue_scan.guard import Admission, ScanSessionState


T0 = datetime(2025, 1, 21, 20, 0, tzinfo=timezone.utc)


def _at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


def test_admission_marks_processing_before_returning() -> None:
    guard = ScanSessionState(cooldown_seconds=30)
    assert guard.admit("booking:b1:X", T0) is Admission.ADMITTED
    assert guard.is_processing is True
    assert guard.last_scan_at == T0

    # A second code arriving while the first is being validated is dropped
    assert guard.admit("member:u1", _at(45)) is Admission.SUPPRESSED_BUSY


def test_cooldown_window_applies_to_any_code_and_expires() -> None:
    guard = ScanSessionState(cooldown_seconds=30)
    guard.admit("booking:b1:X", T0)
    guard.complete("booking:b1:X", success=False, processed_at=_at(1))

    assert guard.admit("member:u1", _at(29.9)) is Admission.SUPPRESSED_COOLDOWN
    assert guard.is_processing is False
    assert guard.admit("member:u1", _at(30)) is Admission.ADMITTED


def test_same_code_is_admitted_again_after_cooldown() -> None:
    guard = ScanSessionState(cooldown_seconds=30)
    guard.admit("booking:b1:X", T0)
    guard.complete("booking:b1:X", success=True, processed_at=_at(1))

    assert guard.admit("booking:b1:X", _at(10)) is Admission.SUPPRESSED_COOLDOWN
    assert guard.admit("booking:b1:X", _at(31.5)) is Admission.ADMITTED


def test_recently_processed_code_is_suppressed_as_duplicate() -> None:
    guard = ScanSessionState(cooldown_seconds=30)
    guard.admit("booking:b1:X", T0)
    # Slow validation finished 40s after admission
    guard.complete("booking:b1:X", success=True, processed_at=_at(40))

    assert guard.admit("booking:b1:X", _at(45)) is Admission.SUPPRESSED_DUPLICATE
    assert guard.admit("member:u1", _at(45)) is Admission.ADMITTED


def test_failed_scans_are_not_remembered() -> None:
    guard = ScanSessionState()
    guard.admit("booking:b1:WRONG", T0)
    guard.complete("booking:b1:WRONG", success=False, processed_at=T0)
    assert guard.recently_processed_keys == []


def test_recent_keys_keep_only_the_most_recent() -> None:
    guard = ScanSessionState(cooldown_seconds=0, capacity=10)
    for i in range(11):
        key = f"member:m{i}"
        assert guard.admit(key, _at(i)) is Admission.ADMITTED
        guard.complete(key, success=True, processed_at=_at(i))

    keys = guard.recently_processed_keys
    assert len(keys) == 10
    assert keys == [f"member:m{i}" for i in range(1, 11)]


def test_reset_clears_all_state() -> None:
    guard = ScanSessionState()
    guard.admit("member:u1", T0)
    guard.complete("member:u1", success=True, processed_at=T0)
    guard.reset()

    assert guard.recently_processed_keys == []
    assert guard.last_scan_at is None
    assert guard.admit("member:u1", T0) is Admission.ADMITTED


def test_capacity_must_be_positive() -> None:
    with pytest.raises(ValueError):
        ScanSessionState(capacity=0)
