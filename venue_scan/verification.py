"""
Verification state machine for scanned payloads.

Each attempt moves IDLE -> VALIDATING -> VERIFIED | REJECTED. The only durable
side effects are audit writes (booking scan counter, member last visit); they
are best-effort and never change an outcome already decided by the checks.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Type

from pydantic import BaseModel, Field

from .config import Settings
from .credits import available_balance
from .errors import (
    AlreadyCheckedIn,
    BookingNotConfirmed,
    BookingNotFound,
    CreditLookupFailed,
    InvalidSecurityCode,
    MemberNotFound,
    NoAvailableCredit,
    ScanRejected,
    SecurityCodeMismatch,
    StoreError,
    WrongDate,
)
from .payloads import BookingEntry, MemberCredential, ScanPayload, scan_key
from .store import DataStore
from .utils import REDACTED, date_only, local_today, to_storage, utcnow


logger = logging.getLogger(__name__)


class VerificationState(str, enum.Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    VERIFIED = "verified"
    REJECTED = "rejected"


_TRANSITIONS = {
    VerificationState.IDLE: {VerificationState.VALIDATING},
    VerificationState.VALIDATING: {VerificationState.VERIFIED, VerificationState.REJECTED},
    VerificationState.VERIFIED: set(),
    VerificationState.REJECTED: set(),
}


class ScanAttempt:
    def __init__(self, payload: ScanPayload) -> None:
        self.payload = payload
        self.state = VerificationState.IDLE
        self.history: List[VerificationState] = [self.state]

    def advance(self, state: VerificationState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal transition {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    @property
    def terminal(self) -> bool:
        return not _TRANSITIONS[self.state]


class VerifiedResult(BaseModel):
    """What the scanning staff get to see. Personal fields stay masked."""

    kind: str
    subject_id: str
    venue_name: str = "Unknown"
    customer_name: str = REDACTED
    customer_email: str = REDACTED
    table: Optional[str] = None
    guest_count: Optional[int] = None
    booking_date: Optional[date] = None
    start_time: Optional[str] = None
    member_tier: Optional[str] = None
    credit_balance: Optional[int] = None
    member_since: Optional[datetime] = None
    scanned_at: datetime
    # Used for the confirmation message only, never returned to the operator
    contact_email: Optional[str] = Field(default=None, exclude=True, repr=False)


@dataclass(frozen=True)
class VerificationPolicy:
    timezone: str = "UTC"
    checkin_marks_status: bool = False
    reject_rescanned_bookings: bool = False
    conditional_scan_writes: bool = False
    require_member_credit: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "VerificationPolicy":
        return cls(
            timezone=settings.timezone,
            checkin_marks_status=settings.checkin_marks_status,
            reject_rescanned_bookings=settings.reject_rescanned_bookings,
            conditional_scan_writes=settings.conditional_scan_writes,
            require_member_credit=settings.require_member_credit,
        )


class ScanVerifier:
    def __init__(
        self,
        store: DataStore,
        policy: Optional[VerificationPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.policy = policy or VerificationPolicy()
        self.clock = clock

    def verify(self, payload: ScanPayload, venue_id: Optional[str] = None) -> VerifiedResult:
        """Run one attempt to a terminal state.

        Returns the redacted result when verified; raises a ``ScanRejected``
        subclass when rejected. ``venue_id`` is the scanning station's venue and
        scopes member credit lookups.
        """
        attempt = ScanAttempt(payload)
        attempt.advance(VerificationState.VALIDATING)
        try:
            if isinstance(payload, BookingEntry):
                result = self._verify_booking(payload)
            elif isinstance(payload, MemberCredential):
                result = self._verify_member(payload, venue_id)
            else:
                raise TypeError(f"unsupported payload: {type(payload).__name__}")
        except ScanRejected as exc:
            attempt.advance(VerificationState.REJECTED)
            logger.info("scan rejected key=%s code=%s message=%s", scan_key(payload), exc.code, exc.message)
            raise
        attempt.advance(VerificationState.VERIFIED)
        logger.info("scan verified key=%s", scan_key(payload))
        return result

    # Booking entry

    def _verify_booking(self, payload: BookingEntry) -> VerifiedResult:
        now = self.clock()
        booking = self._read_required(
            "bookings", payload.booking_id, BookingNotFound, f"No booking found with ID: {payload.booking_id}"
        )

        status = booking.get("status")
        if status != "confirmed":
            raise BookingNotConfirmed(f"Booking is not confirmed (status: {status})", status=status)

        today = local_today(now, self.policy.timezone)
        try:
            booking_day = date_only(booking.get("booking_date"))
        except ValueError:
            booking_day = None
        if booking_day != today:
            if booking_day is None:
                message = f"This booking has no valid date, so it cannot be used today ({today})"
            else:
                message = f"This booking is for {booking_day}, not today ({today})"
            raise WrongDate(
                message,
                booking_date=booking_day.isoformat() if booking_day else None,
                today=today.isoformat(),
            )

        stored_code = booking.get("qr_security_code") or ""
        if stored_code:
            if stored_code != payload.security_code:
                raise InvalidSecurityCode("Invalid security code")
        else:
            logger.info("booking %s carries no security code; code check skipped", payload.booking_id)

        scan_count = booking.get("scan_count") or 0
        if self.policy.reject_rescanned_bookings and scan_count > 0:
            raise AlreadyCheckedIn("This QR code has already been scanned", scan_count=scan_count)

        self._record_booking_scan(payload.booking_id, scan_count, now)
        return self._booking_result(booking, payload, now)

    def _record_booking_scan(self, booking_id: str, scan_count: int, now: datetime) -> None:
        patch: Dict[str, Any] = {"scan_count": scan_count + 1, "last_scanned_at": to_storage(now)}
        if self.policy.checkin_marks_status:
            patch["status"] = "checked_in"
        expected = {"scan_count": scan_count} if self.policy.conditional_scan_writes else None
        try:
            applied = self.store.update("bookings", booking_id, patch, expected=expected)
        except StoreError as exc:
            logger.warning("failed to record scan for booking %s: %s", booking_id, exc)
            return
        if applied:
            return
        if expected is not None:
            raise AlreadyCheckedIn("Booking was scanned at another station", scan_count=scan_count)
        logger.warning("scan update for booking %s matched no rows", booking_id)

    def _booking_result(self, booking: Dict[str, Any], payload: BookingEntry, now: datetime) -> VerifiedResult:
        venue = self._read_optional("venues", booking.get("venue_id"))
        table = self._read_optional("venue_tables", booking.get("table_id"))
        customer = self._read_optional("profiles", booking.get("user_id"))
        table_label = None
        if table:
            table_label = table.get("table_number") or table.get("table_type")
        return VerifiedResult(
            kind=BookingEntry.TYPE,
            subject_id=booking["id"],
            venue_name=(venue or {}).get("name") or "Unknown",
            table=table_label or payload.table_number or "N/A",
            guest_count=booking.get("number_of_guests"),
            booking_date=date_only(booking.get("booking_date")),
            start_time=booking.get("start_time"),
            scanned_at=now,
            contact_email=(customer or {}).get("email"),
        )

    # Member credential

    def _verify_member(self, payload: MemberCredential, station_venue_id: Optional[str]) -> VerifiedResult:
        now = self.clock()
        profile = self._read_required("profiles", payload.member_id, MemberNotFound, "Member not found")

        stored_code = profile.get("qr_security_code") or ""
        if stored_code and stored_code != payload.security_code:
            raise SecurityCodeMismatch("Invalid QR code - security code mismatch")

        venue_id = station_venue_id or payload.venue_id
        balance: Optional[int] = None
        if self.policy.require_member_credit:
            balance = self._member_balance(payload.member_id, venue_id, now)
            if balance <= 0:
                raise NoAvailableCredit("No available credits for this venue", venue_id=venue_id)

        try:
            self.store.update("profiles", payload.member_id, {"last_visit": to_storage(now)})
        except StoreError as exc:
            logger.warning("failed to record visit for member %s: %s", payload.member_id, exc)

        venue = self._read_optional("venues", venue_id)
        return VerifiedResult(
            kind=MemberCredential.TYPE,
            subject_id=profile["id"],
            venue_name=(venue or {}).get("name") or "Unknown",
            member_tier=payload.member_tier or profile.get("member_tier") or "VIP",
            credit_balance=balance,
            member_since=profile.get("created_at"),
            scanned_at=now,
            contact_email=profile.get("email"),
        )

    def _member_balance(self, member_id: str, venue_id: Optional[str], now: datetime) -> int:
        filters: Dict[str, Any] = {"user_id": member_id, "status": "active"}
        if venue_id:
            filters["venue_id"] = venue_id
        try:
            credits = self.store.query("venue_credits", filters)
        except StoreError as exc:
            raise CreditLookupFailed("Credit lookup failed; please retry", venue_id=venue_id) from exc
        return available_balance(credits, now)

    # Store access

    def _read_required(
        self, collection: str, id: str, error: Type[ScanRejected], missing_message: str
    ) -> Dict[str, Any]:
        try:
            record = self.store.get(collection, id)
        except StoreError as exc:
            logger.warning("lookup %s/%s failed: %s", collection, id, exc)
            raise error(f"Lookup failed: {exc}", lookup_failed=True) from exc
        if record is None:
            raise error(missing_message)
        return record

    def _read_optional(self, collection: str, id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not id:
            return None
        try:
            return self.store.get(collection, id)
        except StoreError as exc:
            logger.warning("display lookup %s/%s failed: %s", collection, id, exc)
            return None
