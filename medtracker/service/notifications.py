from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Optional, Protocol

from medtracker.logging import get_logger
from medtracker.storage.models import Frequency, Schedule, User
from medtracker.storage.repositories import (
    MedicineRepository,
    ScheduleRepository,
    UserRepository,
)

logger = get_logger(__name__)

REMINDER_TITLE = "Medicine Reminder"
EXPIRY_TITLE = "Medicine Expiry Alert"


class PushSink(Protocol):
    def send(
        self, user_id: str, title: str, body: str, *, device_token: Optional[str] = None
    ) -> None: ...


class LoggingPushSink:
    """Default sink: records the notification instead of delivering it."""

    def send(
        self, user_id: str, title: str, body: str, *, device_token: Optional[str] = None
    ) -> None:
        logger.info("push_notification", user_id=user_id, title=title, body=body)


def schedule_due_on(schedule: Schedule, day: date) -> bool:
    """Whether ``schedule``'s frequency fires on ``day``.

    Weekly and biweekly schedules fire on the weekday they were created;
    monthly ones on the creation day of month, clamped to short months.
    CUSTOM has no recurrence rule of its own and fires daily.
    """
    anchor = schedule.created_at.date()
    if day < anchor:
        return False
    if schedule.frequency in (Frequency.DAILY, Frequency.CUSTOM):
        return True
    if schedule.frequency == Frequency.WEEKLY:
        return day.weekday() == anchor.weekday()
    if schedule.frequency == Frequency.BIWEEKLY:
        elapsed = (day - anchor).days
        return elapsed % 14 == 0
    if schedule.frequency == Frequency.MONTHLY:
        last_day = calendar.monthrange(day.year, day.month)[1]
        return day.day == min(anchor.day, last_day)
    return False


class NotificationService:
    def __init__(
        self,
        schedules: ScheduleRepository,
        medicines: MedicineRepository,
        users: UserRepository,
        sink: Optional[PushSink] = None,
        *,
        expiry_warning_days: int = 30,
    ) -> None:
        self.schedules = schedules
        self.medicines = medicines
        self.users = users
        self.sink = sink or LoggingPushSink()
        self.expiry_warning_days = expiry_warning_days

    def _push(self, user: User, title: str, body: str) -> bool:
        try:
            self.sink.send(user.id, title, body, device_token=user.fcm_token)
        except Exception as exc:
            logger.error("push_send_failed", user_id=user.id, error=str(exc))
            return False
        return True

    def _recipient(self, user_id: str, cache: Dict[str, Optional[User]]) -> Optional[User]:
        if user_id not in cache:
            cache[user_id] = self.users.get_user(user_id)
        user = cache[user_id]
        if user is None:
            logger.warning("notification_user_missing", user_id=user_id)
            return None
        if not user.fcm_token:
            logger.debug("notification_no_device_token", user_id=user_id)
            return None
        return user

    def send_dosage_reminders(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        candidates = self.schedules.list_active_schedules_at(now.hour, now.minute)
        users: Dict[str, Optional[User]] = {}
        sent = 0
        for schedule in candidates:
            if not schedule_due_on(schedule, now.date()):
                continue
            medicine = self.medicines.get_medicine(schedule.medicine_id)
            if not medicine or not medicine.is_active:
                continue
            user = self._recipient(schedule.user_id, users)
            if not user:
                continue
            if self._push(user, REMINDER_TITLE, f"Time to take your medicine: {medicine.name}"):
                sent += 1
        logger.info("dosage_reminders_sent", candidates=len(candidates), sent=sent)
        return sent

    def send_expiry_notifications(self, today: Optional[date] = None) -> int:
        today = today or datetime.now(timezone.utc).date()
        horizon = today + timedelta(days=self.expiry_warning_days)
        expiring = self.medicines.list_expiring_medicines(horizon)
        users: Dict[str, Optional[User]] = {}
        sent = 0
        for medicine in expiring:
            user = self._recipient(medicine.user_id, users)
            if not user:
                continue
            body = (
                f"Your medicine '{medicine.name}' is expiring on "
                f"{medicine.expiry_date.isoformat()}"
            )
            if self._push(user, EXPIRY_TITLE, body):
                sent += 1
        logger.info("expiry_notifications_sent", candidates=len(expiring), sent=sent)
        return sent
