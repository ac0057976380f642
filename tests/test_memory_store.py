from datetime import date, datetime, time, timedelta, timezone

import pytest

from medtracker.storage.errors import ConstraintViolation
from medtracker.storage.memory import MemoryStore
from medtracker.storage.models import (
    Frequency,
    GlobalMedicine,
    Ingredient,
    Medicine,
    MedicineStatus,
    Schedule,
    new_id,
)

NOW = datetime(2025, 1, 1, 8, 0, tzinfo=timezone.utc)


def _medicine(user_id: str, profile_id: str, **overrides) -> Medicine:
    values = dict(
        id=new_id(),
        user_id=user_id,
        profile_id=profile_id,
        name="Ibuprofen",
        quantity=3,
        expiry_date=date(2030, 1, 1),
        composition=[Ingredient("ibuprofen", 200.0, "mg")],
    )
    values.update(overrides)
    return Medicine(**values)


def test_state_survives_reload(tmp_path):
    root = str(tmp_path / "store")
    store = MemoryStore(fs_root=root)
    user = store.create_user("a@x.com", "hash", NOW)
    store.update_fcm_token(user.id, "device-1")
    profile = store.create_profile(user.id, "Mom")
    medicine = store.create_medicine(_medicine(user.id, profile.id))
    store.create_schedule(
        Schedule(
            id=new_id(),
            medicine_id=medicine.id,
            profile_id=profile.id,
            user_id=user.id,
            time_of_day=time(8, 0),
            frequency=Frequency.WEEKLY,
        )
    )
    store.add_revoked_token("fingerprint", user.id, NOW + timedelta(hours=1))
    store.create_global_medicine(
        GlobalMedicine(id=new_id(), name="Aspirin", fda_approval_date=date(1950, 1, 1))
    )

    reloaded = MemoryStore(fs_root=root)

    restored_user = reloaded.get_user_by_email("a@x.com")
    assert restored_user.password_last_changed == NOW
    assert restored_user.fcm_token == "device-1"
    restored = reloaded.get_medicine(medicine.id)
    assert restored.composition == medicine.composition
    assert restored.status == MedicineStatus.ACTIVE
    schedules = reloaded.list_schedules(user.id)
    assert schedules[0].frequency == Frequency.WEEKLY
    assert schedules[0].time_of_day == time(8, 0)
    assert reloaded.is_token_revoked("fingerprint")
    assert reloaded.list_global_medicines()[0].fda_approval_date == date(1950, 1, 1)


def test_returned_objects_are_copies(memory_store):
    user = memory_store.create_user("a@x.com", "hash", NOW)
    profile = memory_store.create_profile(user.id, "Mom")
    profile.name = "Changed"
    assert memory_store.get_profile(profile.id).name == "Mom"


def test_duplicate_email_is_a_constraint_violation(memory_store):
    memory_store.create_user("a@x.com", "hash", NOW)
    with pytest.raises(ConstraintViolation):
        memory_store.create_user("a@x.com", "hash", NOW)


def test_decrement_stops_at_zero_and_skips_inactive(memory_store):
    medicine = memory_store.create_medicine(_medicine("u1", "p1", quantity=1))
    assert memory_store.decrement_medicine_quantity(medicine.id).quantity == 0
    assert memory_store.decrement_medicine_quantity(medicine.id) is None

    other = memory_store.create_medicine(_medicine("u1", "p1", status=MedicineStatus.INACTIVE))
    assert memory_store.decrement_medicine_quantity(other.id) is None


def test_list_active_schedules_at_matches_hour_and_minute(memory_store):
    for slot in (time(8, 0), time(8, 1), time(9, 0)):
        memory_store.create_schedule(
            Schedule(
                id=new_id(),
                medicine_id="m1",
                profile_id="p1",
                user_id="u1",
                time_of_day=slot,
            )
        )
    matches = memory_store.list_active_schedules_at(8, 0)
    assert [s.time_of_day for s in matches] == [time(8, 0)]
