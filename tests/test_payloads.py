from __future__ import annotations

import json
from datetime import date, datetime, timezone

import pytest

from venue_scan.payloads import (
    BookingEntry,
    MemberCredential,
    decode,
    encode,
    encode_uri,
    scan_key,
)


@pytest.mark.parametrize(
    "raw",
    [
        None,
        "",
        "   ",
        "https://example.com/menu",
        "WIFI:S:guest;T:WPA;P:secret;;",
        "{not json",
        "[1, 2, 3]",
        '{"type": "unknown", "id": "x"}',
        '{"type": 7, "bookingId": "b1"}',
        '{"bookingId": "b1", "securityCode": "ABCD1234"}',
    ],
)
def test_decode_ignores_foreign_or_malformed_content(raw) -> None:
    assert decode(raw) is None


def test_decode_ignores_deeply_nested_json() -> None:
    assert decode('{"a":' * 5000 + "1" + "}" * 5000) is None


def test_decode_rejects_missing_required_fields() -> None:
    assert decode('{"type": "venue-entry", "bookingId": "b1"}') is None
    assert decode('{"type": "venue-entry", "bookingId": "   ", "securityCode": "ABCD1234"}') is None
    assert decode('{"type": "eddys_member", "memberId": ""}') is None


def test_decode_booking_entry_json() -> None:
    raw = json.dumps(
        {
            "type": "venue-entry",
            "bookingId": " b1 ",
            "securityCode": "ABCD1234",
            "bookingDate": "2025-01-21T19:00:00+01:00",
            "tableNumber": 5,
            "venueId": "v1",
            "guestCount": 4,
            "timestamp": "2025-01-20T10:00:00Z",
            "somethingNew": "ignored",
        }
    )
    payload = decode(raw)
    assert isinstance(payload, BookingEntry)
    assert payload.booking_id == "b1"
    assert payload.security_code == "ABCD1234"
    assert payload.booking_date == date(2025, 1, 21)
    assert payload.table_number == "5"
    assert payload.guest_count == 4
    assert payload.issued_at == datetime(2025, 1, 20, 10, 0, tzinfo=timezone.utc)


def test_decode_app_link_envelope_uses_fallback() -> None:
    raw = json.dumps(
        {
            "url": "vipclub://scan?type=eddys_member&memberId=u1",
            "fallback": {"type": "eddys_member", "memberId": "u1", "securityCode": "MEMBER01"},
        }
    )
    payload = decode(raw)
    assert isinstance(payload, MemberCredential)
    assert payload.member_id == "u1"
    assert payload.security_code == "MEMBER01"


def test_decode_app_link_envelope_without_fallback() -> None:
    assert decode(json.dumps({"url": "vipclub://scan?type=eddys_member"})) is None


def test_decode_uri_forms() -> None:
    member = decode("oneeddy://scan?type=eddys_member&memberId=u1&securityCode=")
    assert isinstance(member, MemberCredential)
    assert member.security_code == ""

    booking = decode("vipclub://scan?type=venue-entry&bookingId=b1&securityCode=XY12AB34")
    assert isinstance(booking, BookingEntry)
    assert booking.booking_id == "b1"


def test_encode_round_trip() -> None:
    booking = BookingEntry(
        booking_id="b1",
        security_code="ABCD1234",
        booking_date=date(2025, 1, 21),
        table_number="T5",
        venue_id="v1",
        start_time="21:00",
        guest_count=4,
        issued_at=datetime(2025, 1, 20, 10, 0, tzinfo=timezone.utc),
    )
    member = MemberCredential(member_id="u1", security_code="MEMBER01", venue_id="v1", member_tier="Gold")

    for payload in (booking, member):
        assert decode(encode(payload)) == payload
        assert decode(encode_uri(payload)) == payload
        assert decode(encode_uri(payload, scheme="vipclub")) == payload


def test_encode_is_compact_camel_case_json() -> None:
    text = encode(MemberCredential(member_id="u1", security_code="S"))
    assert text == '{"type":"eddys_member","memberId":"u1","securityCode":"S"}'


def test_encode_uri_rejects_unknown_scheme() -> None:
    with pytest.raises(ValueError):
        encode_uri(MemberCredential(member_id="u1"), scheme="https")


def test_scan_key() -> None:
    assert scan_key(BookingEntry(booking_id="b1", security_code="ABCD1234")) == "booking:b1:ABCD1234"
    assert scan_key(MemberCredential(member_id="u1", security_code="X")) == "member:u1"
