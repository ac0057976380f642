from contextlib import contextmanager
from datetime import date, datetime, time, timezone

import pytest
from psycopg import errors

from medtracker.storage.errors import ConstraintViolation, StoreUnavailable
from medtracker.storage.models import Frequency, MedicineStatus, Schedule
from medtracker.storage.postgres import PostgresStore, _escape_like

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows, rowcount=0):
        self._rows = rows
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    """Answers each execute() with the next scripted response."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        response = self.responses.pop(0) if self.responses else FakeCursor([])
        if isinstance(response, Exception):
            raise response
        return response

    @contextmanager
    def transaction(self):
        yield


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _store(*responses) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unused"
    store.pool = FakePool(FakeConnection(responses))
    return store


def _medicine_row(**overrides):
    row = {
        "id": "m1",
        "user_id": "u1",
        "profile_id": "p1",
        "name": "Ibuprofen",
        "quantity": 4,
        "expiry_date": date(2030, 1, 1),
        "image_url": None,
        "dosage": "200mg",
        "category": None,
        "notes": None,
        "composition": [{"name": "ibuprofen", "strength_value": 200, "strength_unit": "mg"}],
        "form": "tablet",
        "status": "ACTIVE",
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def test_verify_required_schema_reports_missing_tables():
    store = _store(*[FakeCursor([{"oid": None}])] * 6)
    with pytest.raises(StoreUnavailable) as excinfo:
        store._verify_required_schema()
    assert "medicine_schedule" in str(excinfo.value)


def test_medicine_row_mapping_handles_json_text_composition():
    medicine = PostgresStore._medicine_from_row(
        _medicine_row(composition='[{"name": "x", "strength_value": 1, "strength_unit": "g"}]')
    )
    assert medicine.composition[0].name == "x"
    assert medicine.status == MedicineStatus.ACTIVE


def test_decrement_returns_none_when_no_row_matched():
    store = _store(FakeCursor([]))
    assert store.decrement_medicine_quantity("m1") is None
    sql, params = store.pool.conn.statements[0]
    assert "quantity > 0" in sql
    assert params == ("m1",)


def test_decrement_maps_returned_row():
    store = _store(FakeCursor([_medicine_row(quantity=3)]))
    assert store.decrement_medicine_quantity("m1").quantity == 3


def test_deactivating_medicine_deactivates_its_schedules():
    store = _store(FakeCursor([_medicine_row(status="INACTIVE")]), FakeCursor([], rowcount=2))
    medicine = store.set_medicine_status("m1", MedicineStatus.INACTIVE)

    assert medicine.status == MedicineStatus.INACTIVE
    sql, params = store.pool.conn.statements[1]
    assert sql.startswith("UPDATE medicine_schedule SET is_active = FALSE")
    assert params == ("m1",)


def test_missing_medicine_status_change_touches_no_schedules():
    store = _store(FakeCursor([]))
    assert store.set_medicine_status("m1", MedicineStatus.INACTIVE) is None
    assert len(store.pool.conn.statements) == 1


def test_duplicate_active_schedule_becomes_constraint_violation():
    store = _store(errors.UniqueViolation("duplicate key"))
    schedule = Schedule(
        id="s1",
        medicine_id="m1",
        profile_id="p1",
        user_id="u1",
        time_of_day=time(8, 0),
        frequency=Frequency.DAILY,
    )
    with pytest.raises(ConstraintViolation):
        store.create_schedule(schedule)


def test_purge_reports_rowcount():
    store = _store(FakeCursor([], rowcount=3))
    assert store.purge_revoked_tokens(NOW) == 3


def test_like_wildcards_are_escaped():
    assert _escape_like("50%_off\\") == "50\\%\\_off\\\\"
