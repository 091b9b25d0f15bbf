"""
Best-effort confirmation messages after a verified scan.

Dispatch never blocks the scan and never fails it: sends run on a background
worker and every error there is logged and dropped.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import httpx
from pydantic import BaseModel

from .config import Settings
from .payloads import BOOKING_ENTRY
from .verification import VerifiedResult


logger = logging.getLogger(__name__)

HOUR = 3600.0
DAY = 86400.0


class Notification(BaseModel):
    to: str
    template: str
    data: Dict[str, Any] = {}


class NotificationSender(Protocol):
    def send(self, notification: Notification) -> None: ...


class LogNotificationSender:
    """Mock provider: writes the message to the log instead of sending it."""

    def __init__(self) -> None:
        self.logger = logging.getLogger("notifications")

    def send(self, notification: Notification) -> None:
        self.logger.info("mock send template=%s to=%s data=%s", notification.template, notification.to, notification.data)


class WebhookNotificationSender:
    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.Client] = None) -> None:
        self.url = url
        self.timeout = timeout
        self._client = client

    def send(self, notification: Notification) -> None:
        body = notification.model_dump(mode="json")
        if self._client is not None:
            resp = self._client.post(self.url, json=body, timeout=self.timeout)
        else:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.post(self.url, json=body)
        resp.raise_for_status()


@dataclass
class RateLimiterRecord:
    email: str
    count: int
    first_sent: float
    last_sent: float


class NotificationRateLimiter:
    """Per (subject, email) cooldown plus global hourly and daily caps.

    Process-local; everything resets when the process restarts.
    """

    def __init__(
        self,
        cooldown_seconds: float = 60.0,
        max_per_subject: int = 1,
        max_per_hour: int = 5,
        max_per_day: int = 20,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cooldown_seconds = cooldown_seconds
        self.max_per_subject = max_per_subject
        self.max_per_hour = max_per_hour
        self.max_per_day = max_per_day
        self.clock = clock
        self._records: Dict[Tuple[str, str], RateLimiterRecord] = {}
        now = clock()
        self._hourly_count = 0
        self._hourly_reset = now + HOUR
        self._daily_count = 0
        self._daily_reset = now + DAY
        self._next_prune = now + HOUR
        self._lock = threading.Lock()

    def try_acquire(self, subject_id: str, email: str) -> Optional[str]:
        """Record a send if allowed; otherwise return the reason it is not."""
        with self._lock:
            now = self.clock()
            if now >= self._next_prune:
                self._prune(now)
            reason = self._blocked_reason(subject_id, email, now)
            if reason is None:
                self._record(subject_id, email, now)
            return reason

    def _blocked_reason(self, subject_id: str, email: str, now: float) -> Optional[str]:
        if now > self._hourly_reset:
            self._hourly_count = 0
            self._hourly_reset = now + HOUR
        if now > self._daily_reset:
            self._daily_count = 0
            self._daily_reset = now + DAY
        if self._daily_count >= self.max_per_day:
            return "Global daily limit reached"
        if self._hourly_count >= self.max_per_hour:
            return "Global hourly limit reached"
        record = self._records.get((subject_id, email))
        if record is not None:
            if record.count >= self.max_per_subject:
                return "Already sent for this subject"
            if now - record.last_sent < self.cooldown_seconds:
                return "Cooldown period not reached"
        return None

    def _record(self, subject_id: str, email: str, now: float) -> None:
        self._hourly_count += 1
        self._daily_count += 1
        record = self._records.get((subject_id, email))
        if record is None:
            self._records[(subject_id, email)] = RateLimiterRecord(email=email, count=1, first_sent=now, last_sent=now)
        else:
            record.count += 1
            record.last_sent = now

    def cleanup(self) -> int:
        """Forget pairs first sent more than a day ago."""
        with self._lock:
            return self._prune(self.clock())

    def _prune(self, now: float) -> int:
        # Runs at most hourly from try_acquire
        self._next_prune = now + HOUR
        stale = [key for key, rec in self._records.items() if now - rec.first_sent > DAY]
        for key in stale:
            del self._records[key]
        if stale:
            logger.debug("rate limiter forgot %d stale pairs", len(stale))
        return len(stale)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "hourly_count": self._hourly_count,
                "daily_count": self._daily_count,
                "tracked_pairs": len(self._records),
                "max_per_subject": self.max_per_subject,
                "max_per_hour": self.max_per_hour,
                "max_per_day": self.max_per_day,
                "cooldown_seconds": self.cooldown_seconds,
            }


class NotificationDispatcher:
    def __init__(
        self,
        sender: NotificationSender,
        limiter: Optional[NotificationRateLimiter] = None,
        enabled: bool = True,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.sender = sender
        self.limiter = limiter or NotificationRateLimiter()
        self.enabled = enabled
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="notify")

    def dispatch(self, notification: Notification, subject_id: str) -> Optional[Future]:
        """Queue a send and return immediately. Returns None when nothing was queued."""
        if not self.enabled:
            return None
        reason = self.limiter.try_acquire(subject_id, notification.to)
        if reason is not None:
            logger.info("notification for %s suppressed: %s", subject_id, reason)
            return None
        try:
            return self._executor.submit(self._deliver, notification, subject_id)
        except RuntimeError:
            logger.warning("notification worker is shut down; dropping message for %s", subject_id)
            return None

    def notify_verified(self, result: VerifiedResult) -> Optional[Future]:
        notification = notification_for(result)
        if notification is None:
            return None
        subject_id = result.subject_id if result.kind == BOOKING_ENTRY else f"member:{result.subject_id}"
        return self.dispatch(notification, subject_id)

    def _deliver(self, notification: Notification, subject_id: str) -> None:
        try:
            self.sender.send(notification)
        except Exception:
            logger.exception("notification %s for %s failed", notification.template, subject_id)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def notification_for(result: VerifiedResult) -> Optional[Notification]:
    if not result.contact_email:
        return None
    data: Dict[str, Any] = {
        "venue_name": result.venue_name,
        "scanned_at": result.scanned_at.isoformat(),
    }
    if result.kind == BOOKING_ENTRY:
        data.update(booking_id=result.subject_id, table=result.table, guest_count=result.guest_count)
        template = "booking_checked_in"
    else:
        data.update(member_tier=result.member_tier, credit_balance=result.credit_balance)
        template = "member_checked_in"
    return Notification(to=result.contact_email, template=template, data=data)


def build_dispatcher(settings: Settings) -> NotificationDispatcher:
    sender: NotificationSender
    if settings.notification_provider == "webhook" and settings.notification_webhook_url:
        sender = WebhookNotificationSender(settings.notification_webhook_url, timeout=settings.notification_timeout_seconds)
    else:
        sender = LogNotificationSender()
    limiter = NotificationRateLimiter(
        cooldown_seconds=settings.notification_cooldown_seconds,
        max_per_subject=settings.notification_max_per_subject,
        max_per_hour=settings.notification_max_per_hour,
        max_per_day=settings.notification_max_per_day,
    )
    return NotificationDispatcher(sender, limiter, enabled=settings.notifications_enabled)
