from __future__ import annotations

from datetime import timedelta

from .config import get_settings
from .database import Base, SessionLocal, engine
from .models import Booking, Profile, Venue, VenueCredit, VenueTable
from .utils import local_today, to_storage, utcnow


DEMO_VENUE_ID = "venue_demo"
DEMO_MEMBER_ID = "member_demo"
DEMO_BOOKING_ID = "booking_demo"


def upsert_defaults() -> None:
    """Demo venue, member, a confirmed booking for today and some credit."""
    Base.metadata.create_all(bind=engine)
    settings = get_settings()
    now = utcnow()
    db = SessionLocal()
    try:
        if not db.get(Venue, DEMO_VENUE_ID):
            db.add(Venue(id=DEMO_VENUE_ID, name="Demo Lounge", address="1 Harbour Road"))

        defaults_tables = [
            ("table_demo_1", "T1", "VIP booth", 6),
            ("table_demo_2", "T2", "Standard", 4),
        ]
        for id_, number, kind, capacity in defaults_tables:
            if not db.get(VenueTable, id_):
                db.add(VenueTable(id=id_, venue_id=DEMO_VENUE_ID, table_number=number, table_type=kind, capacity=capacity))

        if not db.get(Profile, DEMO_MEMBER_ID):
            db.add(
                Profile(
                    id=DEMO_MEMBER_ID,
                    full_name="Demo Member",
                    email="member@example.com",
                    member_tier="VIP",
                    qr_security_code="DEMO0001",
                )
            )

        booking = db.get(Booking, DEMO_BOOKING_ID)
        if not booking:
            db.add(
                Booking(
                    id=DEMO_BOOKING_ID,
                    user_id=DEMO_MEMBER_ID,
                    venue_id=DEMO_VENUE_ID,
                    table_id="table_demo_1",
                    status="confirmed",
                    booking_date=local_today(now, settings.timezone),
                    start_time="21:00",
                    end_time="23:30",
                    number_of_guests=4,
                    qr_security_code="BOOK0001",
                )
            )
        else:
            # Keep the demo booking scannable on later runs
            booking.booking_date = local_today(now, settings.timezone)
            db.add(booking)

        if not db.get(VenueCredit, "credit_demo"):
            db.add(
                VenueCredit(
                    id="credit_demo",
                    user_id=DEMO_MEMBER_ID,
                    venue_id=DEMO_VENUE_ID,
                    amount=50000,
                    used_amount=0,
                    status="active",
                    expires_at=to_storage(now + timedelta(days=90)),
                )
            )

        db.commit()
    finally:
        db.close()


def main() -> None:
    upsert_defaults()
    print("Seed complete.")


if __name__ == "__main__":
    main()
