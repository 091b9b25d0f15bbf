from __future__ import annotations

import base64
import io
import logging
import secrets
import string
from datetime import datetime
from typing import Optional

import qrcode
from pydantic import BaseModel
from sqlalchemy.orm import Session

from .models import Booking, Profile, SystemLog, VenueTable
from .payloads import BookingEntry, MemberCredential, ScanPayload, encode, encode_uri
from .utils import to_storage


logger = logging.getLogger(__name__)

SECURITY_CODE_ALPHABET = string.ascii_uppercase + string.digits
SECURITY_CODE_LENGTH = 8


class IssuedCode(BaseModel):
    kind: str
    subject_id: str
    security_code: str
    qr_text: str
    uri: str
    png_base64: str


def generate_security_code(length: int = SECURITY_CODE_LENGTH) -> str:
    return "".join(secrets.choice(SECURITY_CODE_ALPHABET) for _ in range(length))


def render_png_base64(text: str) -> str:
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=8,
        border=2,
    )
    qr.add_data(text)
    qr.make(fit=True)

    buffer = io.BytesIO()
    img = qr.make_image(fill_color="black", back_color="white")
    img.save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("utf-8")


def issue_booking_code(db: Session, booking_id: str, now: datetime) -> Optional[IssuedCode]:
    """Entry QR for a booking. An existing security code is reused so codes
    already sent to the guest stay valid."""
    booking = db.get(Booking, booking_id)
    if booking is None:
        return None

    security_code = booking.qr_security_code or generate_security_code()
    table_number = "N/A"
    if booking.table_id:
        table = db.get(VenueTable, booking.table_id)
        if table is not None and table.table_number:
            table_number = table.table_number

    payload = BookingEntry(
        booking_id=booking.id,
        security_code=security_code,
        booking_date=booking.booking_date,
        table_number=table_number,
        venue_id=booking.venue_id,
        start_time=booking.start_time,
        guest_count=booking.number_of_guests,
        issued_at=now,
    )
    if booking.qr_security_code != security_code:
        booking.qr_security_code = security_code
        _commit(db, booking, "booking", booking.id, now)
    return _issued(payload, booking.id, security_code)


def issue_member_code(db: Session, member_id: str, venue_id: Optional[str], now: datetime) -> Optional[IssuedCode]:
    """Member credential QR. Every issue rotates the security code, which
    invalidates previously issued member codes."""
    profile = db.get(Profile, member_id)
    if profile is None:
        return None

    security_code = generate_security_code()
    payload = MemberCredential(
        member_id=profile.id,
        security_code=security_code,
        venue_id=venue_id,
        member_tier=profile.member_tier or "VIP",
        member_since=profile.created_at.isoformat() if profile.created_at else None,
        issued_at=now,
    )
    profile.qr_security_code = security_code
    profile.last_qr_generated = to_storage(now)
    _commit(db, profile, "member", profile.id, now)
    return _issued(payload, profile.id, security_code)


def _commit(db: Session, obj, entity: str, entity_id: str, now: datetime) -> None:
    try:
        db.add(obj)
        db.add(
            SystemLog(
                ts=to_storage(now),
                actor="codes",
                action="issue_qr",
                entity=entity,
                entity_id=entity_id,
                status="ok",
            )
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("stored new security code for %s %s", entity, entity_id)


def _issued(payload: ScanPayload, subject_id: str, security_code: str) -> IssuedCode:
    text = encode(payload)
    return IssuedCode(
        kind=payload.TYPE,
        subject_id=subject_id,
        security_code=security_code,
        qr_text=text,
        uri=encode_uri(payload),
        png_base64=render_png_base64(text),
    )
