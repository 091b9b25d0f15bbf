"""
Durable records read and written by the scanning flow: venues and their tables,
member profiles, bookings, venue credits, and the append-only system log.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


BOOKING_STATUSES = ("pending", "confirmed", "checked_in", "cancelled", "completed")
CREDIT_STATUSES = ("active", "used", "expired", "cancelled")


class Venue(Base):
    __tablename__ = "venues"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    contact_phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)


class VenueTable(Base):
    __tablename__ = "venue_tables"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    venue_id: Mapped[str] = mapped_column(String(36), ForeignKey("venues.id", ondelete="CASCADE"), index=True)
    table_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    table_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    capacity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class Profile(Base):
    """
    Customer / member identity. The QR security code stored here gates member
    credential scans.
    """
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    full_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    qr_security_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    member_tier: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    last_qr_generated: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_visit: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class Booking(Base):
    """
    A table reservation. Scans only ever touch status, scan_count and
    last_scanned_at.
    """
    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("profiles.id"), nullable=True, index=True)
    venue_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("venues.id"), nullable=True, index=True)
    table_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("venue_tables.id"), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    booking_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    start_time: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    end_time: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    number_of_guests: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    qr_security_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    scan_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_scanned_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'checked_in', 'cancelled', 'completed')",
            name="ck_booking_status",
        ),
        Index("ix_bookings_status", "status"),
    )


class VenueCredit(Base):
    """
    Pre-purchased, venue-scoped balance. Amounts are in minor units (kobo/cents).
    """
    __tablename__ = "venue_credits"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), index=True)
    venue_id: Mapped[str] = mapped_column(String(36), ForeignKey("venues.id", ondelete="CASCADE"), index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    used_amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="active", nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("used_amount >= 0", name="ck_credit_used_non_negative"),
        Index("ix_venue_credits_lookup", "user_id", "venue_id", "status"),
    )

    @property
    def remaining_balance(self) -> int:
        return (self.amount or 0) - (self.used_amount or 0)


class SystemLog(Base):
    """
    Append-only record of scans and redemptions.
    """
    __tablename__ = "system_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ts: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    actor: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    entity: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    entity_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
