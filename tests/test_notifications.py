from datetime import date, datetime, time, timedelta, timezone
from types import SimpleNamespace

import pytest

from medtracker.service.notifications import (
    EXPIRY_TITLE,
    REMINDER_TITLE,
    NotificationService,
    schedule_due_on,
)
from medtracker.storage.models import Frequency, Schedule


def _schedule(frequency: Frequency, created: date) -> Schedule:
    return Schedule(
        id="s1",
        medicine_id="m1",
        profile_id="p1",
        user_id="u1",
        time_of_day=time(8, 0),
        frequency=frequency,
        created_at=datetime.combine(created, time(7, 0), tzinfo=timezone.utc),
    )


class RecordingSink:
    def __init__(self, fail: bool = False):
        self.messages = []
        self.fail = fail

    def send(self, user_id, title, body, *, device_token=None):
        if self.fail:
            raise ConnectionError("push backend down")
        self.messages.append(
            SimpleNamespace(user_id=user_id, title=title, body=body, device_token=device_token)
        )


class TestScheduleDueOn:
    anchor = date(2025, 1, 31)  # a Friday

    def test_never_before_creation(self):
        assert not schedule_due_on(_schedule(Frequency.DAILY, self.anchor), self.anchor - timedelta(days=1))

    @pytest.mark.parametrize("frequency", [Frequency.DAILY, Frequency.CUSTOM])
    def test_daily_and_custom_fire_every_day(self, frequency):
        schedule = _schedule(frequency, self.anchor)
        assert all(
            schedule_due_on(schedule, self.anchor + timedelta(days=n)) for n in range(10)
        )

    def test_weekly_fires_on_creation_weekday(self):
        schedule = _schedule(Frequency.WEEKLY, self.anchor)
        assert schedule_due_on(schedule, self.anchor + timedelta(days=7))
        assert not schedule_due_on(schedule, self.anchor + timedelta(days=3))

    def test_biweekly_skips_odd_weeks(self):
        schedule = _schedule(Frequency.BIWEEKLY, self.anchor)
        assert schedule_due_on(schedule, self.anchor)
        assert not schedule_due_on(schedule, self.anchor + timedelta(days=7))
        assert schedule_due_on(schedule, self.anchor + timedelta(days=14))

    def test_monthly_clamps_to_month_end(self):
        schedule = _schedule(Frequency.MONTHLY, self.anchor)
        assert schedule_due_on(schedule, date(2025, 2, 28))
        assert not schedule_due_on(schedule, date(2025, 2, 27))
        assert schedule_due_on(schedule, date(2025, 3, 31))
        assert not schedule_due_on(schedule, date(2025, 3, 30))


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def notifications(memory_store, sink):
    return NotificationService(memory_store, memory_store, memory_store, sink, expiry_warning_days=30)


@pytest.fixture
def profile(profile_service, alice):
    return profile_service.create(alice, "Mom")


class TestDosageReminders:
    def test_sends_reminder_for_matching_minute(
        self, notifications, sink, memory_store, medicine_service, schedule_service, alice, profile, draft
    ):
        memory_store.update_fcm_token(alice.user_id, "device-1")
        medicine = medicine_service.create(alice, profile.id, draft(name="Ibuprofen"))
        schedule_service.create(alice, medicine.id, time(8, 0))
        tomorrow = datetime.now(timezone.utc).date() + timedelta(days=1)

        sent = notifications.send_dosage_reminders(
            datetime.combine(tomorrow, time(8, 0), tzinfo=timezone.utc)
        )

        assert sent == 1
        message = sink.messages[0]
        assert message.user_id == alice.user_id
        assert message.title == REMINDER_TITLE
        assert message.body == "Time to take your medicine: Ibuprofen"
        assert message.device_token == "device-1"

    def test_skips_other_minutes_and_users_without_token(
        self, notifications, sink, memory_store, medicine_service, schedule_service, alice, profile, draft
    ):
        medicine = medicine_service.create(alice, profile.id, draft())
        schedule_service.create(alice, medicine.id, time(8, 0))
        tomorrow = datetime.now(timezone.utc).date() + timedelta(days=1)

        assert notifications.send_dosage_reminders(
            datetime.combine(tomorrow, time(8, 0), tzinfo=timezone.utc)
        ) == 0
        memory_store.update_fcm_token(alice.user_id, "device-1")
        assert notifications.send_dosage_reminders(
            datetime.combine(tomorrow, time(8, 1), tzinfo=timezone.utc)
        ) == 0
        assert sink.messages == []

    def test_push_failures_are_swallowed(
        self, memory_store, medicine_service, schedule_service, alice, profile, draft
    ):
        memory_store.update_fcm_token(alice.user_id, "device-1")
        medicine = medicine_service.create(alice, profile.id, draft())
        schedule_service.create(alice, medicine.id, time(8, 0))
        service = NotificationService(
            memory_store, memory_store, memory_store, RecordingSink(fail=True)
        )
        tomorrow = datetime.now(timezone.utc).date() + timedelta(days=1)

        assert service.send_dosage_reminders(
            datetime.combine(tomorrow, time(8, 0), tzinfo=timezone.utc)
        ) == 0


class TestExpiryNotifications:
    def test_warns_about_medicines_expiring_within_window(
        self, notifications, sink, memory_store, medicine_service, alice, profile, draft
    ):
        memory_store.update_fcm_token(alice.user_id, "device-1")
        today = datetime.now(timezone.utc).date()
        soon = today + timedelta(days=10)
        medicine_service.create(alice, profile.id, draft(name="Soon", expiry_date=soon))
        medicine_service.create(
            alice, profile.id, draft(name="Later", expiry_date=today + timedelta(days=90))
        )

        assert notifications.send_expiry_notifications(today) == 1
        message = sink.messages[0]
        assert message.title == EXPIRY_TITLE
        assert message.body == f"Your medicine 'Soon' is expiring on {soon.isoformat()}"

    def test_inactive_medicines_are_ignored(
        self, notifications, sink, memory_store, medicine_service, alice, profile, draft
    ):
        memory_store.update_fcm_token(alice.user_id, "device-1")
        today = datetime.now(timezone.utc).date()
        medicine = medicine_service.create(
            alice, profile.id, draft(expiry_date=today + timedelta(days=5))
        )
        medicine_service.delete(alice, profile.id, medicine.id)

        assert notifications.send_expiry_notifications(today) == 0
