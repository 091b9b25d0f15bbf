from __future__ import annotations

import enum
import threading
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import List, Optional


class Admission(str, enum.Enum):
    ADMITTED = "admitted"
    SUPPRESSED_BUSY = "busy"
    SUPPRESSED_COOLDOWN = "cooldown"
    SUPPRESSED_DUPLICATE = "duplicate"

    @property
    def admitted(self) -> bool:
        return self is Admission.ADMITTED


class ScanSessionState:
    """Duplicate-scan guard owned by exactly one scanning session.

    A scan is suppressed while another one is in flight, within the cooldown
    window of the last admitted scan, or when its key was successfully processed
    within the cooldown window. Admission marks the state as processing before
    returning, so the caller must not yield between ``admit`` and starting its
    validation run, and must always call ``complete`` afterwards.
    """

    def __init__(self, cooldown_seconds: float = 30.0, capacity: int = 10) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self.capacity = capacity
        self._recent: "OrderedDict[str, datetime]" = OrderedDict()
        self.last_scan_at: Optional[datetime] = None
        self.is_processing = False
        self._lock = threading.Lock()

    @property
    def recently_processed_keys(self) -> List[str]:
        with self._lock:
            return list(self._recent)

    def admit(self, key: str, now: datetime) -> Admission:
        with self._lock:
            if self.is_processing:
                return Admission.SUPPRESSED_BUSY
            if self.last_scan_at is not None and now - self.last_scan_at < self.cooldown:
                return Admission.SUPPRESSED_COOLDOWN
            processed_at = self._recent.get(key)
            if processed_at is not None and now - processed_at < self.cooldown:
                return Admission.SUPPRESSED_DUPLICATE
            self.is_processing = True
            self.last_scan_at = now
            return Admission.ADMITTED

    def complete(self, key: str, success: bool, processed_at: datetime) -> None:
        with self._lock:
            self.is_processing = False
            if not success:
                return
            self._recent.pop(key, None)
            self._recent[key] = processed_at
            while len(self._recent) > self.capacity:
                self._recent.popitem(last=False)

    def reset(self) -> None:
        with self._lock:
            self._recent.clear()
            self.last_scan_at = None
            self.is_processing = False
