from __future__ import annotations

import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

# Ensure project root is on sys.path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Keep the test database out of the project directory; must happen before venue_scan is imported
_TMP_DIR = Path(tempfile.mkdtemp(prefix="venue_scan_tests_"))
os.environ.setdefault("APP_DATABASE_URL", f"sqlite:///{_TMP_DIR / 'test.db'}")

import pytest

from venue_scan.errors import StoreError


NOW = datetime(2025, 1, 21, 20, 0, tzinfo=timezone.utc)


class FakeStore:
    """In-memory DataStore that records every call and can be told to fail."""

    def __init__(self, data: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None) -> None:
        self.data: Dict[str, Dict[str, Dict[str, Any]]] = {
            "venues": {},
            "venue_tables": {},
            "profiles": {},
            "bookings": {},
            "venue_credits": {},
        }
        for collection, records in (data or {}).items():
            self.data[collection] = {key: dict(value) for key, value in records.items()}
        self.calls: List[Tuple[str, str, Any]] = []
        self.fail_reads: Set[str] = set()
        self.fail_queries: Set[str] = set()
        self.fail_updates: Set[str] = set()

    def get(self, collection: str, id: str) -> Optional[Dict[str, Any]]:
        self.calls.append(("get", collection, id))
        if collection in self.fail_reads:
            raise StoreError(f"get {collection}/{id} failed")
        record = self.data[collection].get(id)
        return dict(record) if record is not None else None

    def query(self, collection: str, filters: Mapping[str, Any]) -> List[Dict[str, Any]]:
        self.calls.append(("query", collection, dict(filters)))
        if collection in self.fail_queries:
            raise StoreError(f"query {collection} failed")
        return [
            dict(record)
            for record in self.data[collection].values()
            if all(record.get(field) == value for field, value in filters.items())
        ]

    def update(
        self,
        collection: str,
        id: str,
        patch: Mapping[str, Any],
        expected: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        self.calls.append(("update", collection, id))
        if collection in self.fail_updates:
            raise StoreError(f"update {collection}/{id} failed")
        record = self.data[collection].get(id)
        if record is None:
            return False
        if expected and any(record.get(field) != value for field, value in expected.items()):
            return False
        record.update(patch)
        return True

    def updates(self) -> List[Tuple[str, str, Any]]:
        return [call for call in self.calls if call[0] == "update"]


class Clock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def sample_data() -> Dict[str, Dict[str, Dict[str, Any]]]:
    return {
        "venues": {"v1": {"id": "v1", "name": "Club One"}},
        "venue_tables": {"t1": {"id": "t1", "venue_id": "v1", "table_number": "T5", "table_type": "VIP booth"}},
        "profiles": {
            "u1": {
                "id": "u1",
                "full_name": "Ada Obi",
                "email": "ada@example.com",
                "qr_security_code": "MEMBER01",
                "member_tier": "Gold",
                "created_at": datetime(2024, 5, 1, 12, 0),
            }
        },
        "bookings": {
            "b1": {
                "id": "b1",
                "user_id": "u1",
                "venue_id": "v1",
                "table_id": "t1",
                "status": "confirmed",
                "booking_date": NOW.date(),
                "start_time": "21:00",
                "number_of_guests": 4,
                "qr_security_code": "ABCD1234",
                "scan_count": 0,
                "last_scanned_at": None,
            }
        },
        "venue_credits": {
            "c1": {
                "id": "c1",
                "user_id": "u1",
                "venue_id": "v1",
                "amount": 5000,
                "used_amount": 1000,
                "status": "active",
                "expires_at": datetime(2025, 6, 1),
            }
        },
    }


@pytest.fixture()
def store() -> FakeStore:
    return FakeStore(sample_data())


@pytest.fixture()
def clock() -> Clock:
    return Clock()
