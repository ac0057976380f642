from __future__ import annotations

import json
from datetime import date, datetime, time
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from medtracker.logging import get_logger
from medtracker.storage.errors import ConstraintViolation, StoreUnavailable
from medtracker.storage.models import (
    CATALOG_FIELDS,
    MEDICINE_FIELDS,
    Frequency,
    GlobalMedicine,
    Ingredient,
    Medicine,
    MedicineStatus,
    Profile,
    RevokedToken,
    Schedule,
    User,
    new_id,
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        password_last_changed TIMESTAMPTZ NOT NULL,
        fcm_token TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS profile (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id),
        name TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (user_id, name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS medicine (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id),
        profile_id TEXT NOT NULL,
        name TEXT NOT NULL,
        quantity INTEGER NOT NULL CHECK (quantity >= 0),
        expiry_date DATE NOT NULL,
        image_url TEXT,
        dosage TEXT,
        category TEXT,
        notes TEXT,
        composition JSONB NOT NULL DEFAULT '[]'::jsonb,
        form TEXT,
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS medicine_schedule (
        id TEXT PRIMARY KEY,
        medicine_id TEXT NOT NULL REFERENCES medicine(id),
        profile_id TEXT NOT NULL,
        user_id TEXT NOT NULL REFERENCES app_user(id),
        time_of_day TIME NOT NULL,
        frequency TEXT NOT NULL DEFAULT 'DAILY',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS medicine_schedule_active_slot
        ON medicine_schedule (medicine_id, time_of_day, frequency)
        WHERE is_active
    """,
    """
    CREATE TABLE IF NOT EXISTS revoked_token (
        token_hash TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS global_medicine (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        brand_name TEXT,
        generic_name TEXT,
        dosage_form TEXT,
        strength TEXT,
        manufacturer TEXT,
        description TEXT,
        indications TEXT,
        contraindications TEXT,
        side_effects TEXT,
        warnings TEXT,
        interactions TEXT,
        storage_instructions TEXT,
        category TEXT,
        atc_code TEXT,
        fda_approval_date DATE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

REQUIRED_TABLES = (
    "app_user",
    "profile",
    "medicine",
    "medicine_schedule",
    "revoked_token",
    "global_medicine",
)


def _escape_like(fragment: str) -> str:
    return fragment.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class PostgresStore:
    """Postgres-backed store; every multi-statement operation is one transaction."""

    def __init__(self, dsn: str, *, ensure_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if ensure_schema:
            self._ensure_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        """Fail fast when the database is unreachable or tables are missing."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise StoreUnavailable(
                "Missing required Postgres tables: {}".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    # row mapping
    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            password_last_changed=row["password_last_changed"],
            fcm_token=row.get("fcm_token"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _profile_from_row(row: dict) -> Profile:
        return Profile(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            name=row["name"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _medicine_from_row(row: dict) -> Medicine:
        raw_composition = row.get("composition") or []
        if isinstance(raw_composition, str):
            raw_composition = json.loads(raw_composition)
        return Medicine(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            profile_id=str(row["profile_id"]),
            name=row["name"],
            quantity=int(row["quantity"]),
            expiry_date=row["expiry_date"],
            image_url=row.get("image_url"),
            dosage=row.get("dosage"),
            category=row.get("category"),
            notes=row.get("notes"),
            composition=[Ingredient(**item) for item in raw_composition],
            form=row.get("form"),
            status=MedicineStatus(row.get("status") or MedicineStatus.ACTIVE.value),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _schedule_from_row(row: dict) -> Schedule:
        return Schedule(
            id=str(row["id"]),
            medicine_id=str(row["medicine_id"]),
            profile_id=str(row["profile_id"]),
            user_id=str(row["user_id"]),
            time_of_day=row["time_of_day"],
            frequency=Frequency(row.get("frequency") or Frequency.DAILY.value),
            is_active=bool(row.get("is_active", True)),
            created_at=row["created_at"],
        )

    @staticmethod
    def _global_medicine_from_row(row: dict) -> GlobalMedicine:
        return GlobalMedicine(
            id=str(row["id"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            **{name: row.get(name) for name in CATALOG_FIELDS},
        )

    @staticmethod
    def _composition_json(items: List[Ingredient]) -> str:
        return json.dumps(
            [
                {
                    "name": item.name,
                    "strength_value": item.strength_value,
                    "strength_unit": item.strength_unit,
                }
                for item in items
            ]
        )

    # users
    def create_user(
        self, email: str, password_hash: str, password_last_changed: datetime
    ) -> User:
        user_id = new_id()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, password_last_changed)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, password_hash, password_last_changed),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_password(
        self, user_id: str, password_hash: str, changed_at: datetime
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET password_hash = %s, password_last_changed = %s
                WHERE id = %s
                RETURNING *
                """,
                (password_hash, changed_at, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_fcm_token(self, user_id: str, fcm_token: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET fcm_token = %s WHERE id = %s RETURNING *",
                (fcm_token, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    # profiles
    def create_profile(self, user_id: str, name: str) -> Profile:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO profile (id, user_id, name) VALUES (%s, %s, %s) RETURNING *",
                    (new_id(), user_id, name),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("profile name already exists", {"field": "name"})
        return self._profile_from_row(row)

    def get_profile(self, profile_id: str) -> Optional[Profile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM profile WHERE id = %s", (profile_id,)
            ).fetchone()
        return self._profile_from_row(row) if row else None

    def list_profiles(self, user_id: str) -> List[Profile]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM profile WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._profile_from_row(row) for row in rows]

    def find_profile_by_name(self, user_id: str, name: str) -> Optional[Profile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM profile WHERE user_id = %s AND name = %s",
                (user_id, name),
            ).fetchone()
        return self._profile_from_row(row) if row else None

    def rename_profile(self, profile_id: str, name: str) -> Optional[Profile]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "UPDATE profile SET name = %s WHERE id = %s RETURNING *",
                    (name, profile_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("profile name already exists", {"field": "name"})
        return self._profile_from_row(row) if row else None

    def cascade_delete_profile(self, profile_id: str) -> bool:
        with self._connect() as conn:
            with conn.transaction():
                conn.execute(
                    "DELETE FROM medicine_schedule WHERE profile_id = %s", (profile_id,)
                )
                conn.execute(
                    """
                    UPDATE medicine SET status = 'INACTIVE', updated_at = now()
                    WHERE profile_id = %s
                    """,
                    (profile_id,),
                )
                result = conn.execute(
                    "DELETE FROM profile WHERE id = %s", (profile_id,)
                )
                return result.rowcount > 0

    # medicines
    def create_medicine(self, medicine: Medicine) -> Medicine:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO medicine (
                    id, user_id, profile_id, name, quantity, expiry_date, image_url,
                    dosage, category, notes, composition, form, status, created_at, updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    medicine.id,
                    medicine.user_id,
                    medicine.profile_id,
                    medicine.name,
                    medicine.quantity,
                    medicine.expiry_date,
                    medicine.image_url,
                    medicine.dosage,
                    medicine.category,
                    medicine.notes,
                    self._composition_json(medicine.composition),
                    medicine.form,
                    medicine.status.value,
                    medicine.created_at,
                    medicine.updated_at,
                ),
            ).fetchone()
        return self._medicine_from_row(row)

    def get_medicine(self, medicine_id: str) -> Optional[Medicine]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM medicine WHERE id = %s", (medicine_id,)
            ).fetchone()
        return self._medicine_from_row(row) if row else None

    def list_medicines(
        self,
        user_id: str,
        *,
        profile_id: Optional[str] = None,
        status: Optional[MedicineStatus] = MedicineStatus.ACTIVE,
    ) -> List[Medicine]:
        clauses = ["user_id = %s"]
        params: List[Any] = [user_id]
        if profile_id is not None:
            clauses.append("profile_id = %s")
            params.append(profile_id)
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        query = "SELECT * FROM medicine WHERE {} ORDER BY created_at".format(
            " AND ".join(clauses)
        )
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._medicine_from_row(row) for row in rows]

    def update_medicine(
        self, medicine_id: str, fields: Dict[str, Any]
    ) -> Optional[Medicine]:
        assignments = []
        params: List[Any] = []
        for key, value in fields.items():
            if key not in MEDICINE_FIELDS:
                continue
            if key == "composition":
                assignments.append("composition = %s::jsonb")
                params.append(self._composition_json(value))
            else:
                assignments.append(f"{key} = %s")
                params.append(value)
        assignments.append("updated_at = now()")
        params.append(medicine_id)
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE medicine SET {} WHERE id = %s RETURNING *".format(
                    ", ".join(assignments)
                ),
                params,
            ).fetchone()
        return self._medicine_from_row(row) if row else None

    def set_medicine_status(
        self, medicine_id: str, status: MedicineStatus
    ) -> Optional[Medicine]:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    """
                    UPDATE medicine SET status = %s, updated_at = now()
                    WHERE id = %s RETURNING *
                    """,
                    (status.value, medicine_id),
                ).fetchone()
                if row and status != MedicineStatus.ACTIVE:
                    conn.execute(
                        "UPDATE medicine_schedule SET is_active = FALSE WHERE medicine_id = %s",
                        (medicine_id,),
                    )
        return self._medicine_from_row(row) if row else None

    def decrement_medicine_quantity(self, medicine_id: str) -> Optional[Medicine]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE medicine
                SET quantity = quantity - 1, updated_at = now()
                WHERE id = %s AND quantity > 0 AND status = 'ACTIVE'
                RETURNING *
                """,
                (medicine_id,),
            ).fetchone()
        return self._medicine_from_row(row) if row else None

    def list_expiring_medicines(self, until: date) -> List[Medicine]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM medicine
                WHERE status = 'ACTIVE' AND expiry_date <= %s
                ORDER BY expiry_date
                """,
                (until,),
            ).fetchall()
        return [self._medicine_from_row(row) for row in rows]

    # schedules
    def create_schedule(self, schedule: Schedule) -> Schedule:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO medicine_schedule (
                        id, medicine_id, profile_id, user_id, time_of_day, frequency,
                        is_active, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        schedule.id,
                        schedule.medicine_id,
                        schedule.profile_id,
                        schedule.user_id,
                        schedule.time_of_day,
                        schedule.frequency.value,
                        schedule.is_active,
                        schedule.created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "active schedule already exists", {"field": "time_of_day"}
            )
        return self._schedule_from_row(row)

    def get_schedule(self, schedule_id: str) -> Optional[Schedule]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM medicine_schedule WHERE id = %s", (schedule_id,)
            ).fetchone()
        return self._schedule_from_row(row) if row else None

    def list_schedules(
        self,
        user_id: str,
        *,
        profile_id: Optional[str] = None,
        medicine_id: Optional[str] = None,
        active_only: bool = True,
    ) -> List[Schedule]:
        clauses = ["user_id = %s"]
        params: List[Any] = [user_id]
        if profile_id is not None:
            clauses.append("profile_id = %s")
            params.append(profile_id)
        if medicine_id is not None:
            clauses.append("medicine_id = %s")
            params.append(medicine_id)
        if active_only:
            clauses.append("is_active")
        query = (
            "SELECT * FROM medicine_schedule WHERE {} ORDER BY time_of_day, created_at"
        ).format(" AND ".join(clauses))
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._schedule_from_row(row) for row in rows]

    def find_active_schedule(
        self,
        medicine_id: str,
        time_of_day: time,
        frequency: Frequency,
        *,
        exclude_id: Optional[str] = None,
    ) -> Optional[Schedule]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM medicine_schedule
                WHERE medicine_id = %s AND time_of_day = %s AND frequency = %s
                  AND is_active AND (%s::text IS NULL OR id <> %s)
                LIMIT 1
                """,
                (medicine_id, time_of_day, frequency.value, exclude_id, exclude_id),
            ).fetchone()
        return self._schedule_from_row(row) if row else None

    def update_schedule(
        self,
        schedule_id: str,
        *,
        time_of_day: time,
        frequency: Frequency,
        is_active: bool,
    ) -> Optional[Schedule]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE medicine_schedule
                    SET time_of_day = %s, frequency = %s, is_active = %s
                    WHERE id = %s
                    RETURNING *
                    """,
                    (time_of_day, frequency.value, is_active, schedule_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "active schedule already exists", {"field": "time_of_day"}
            )
        return self._schedule_from_row(row) if row else None

    def delete_schedule(self, schedule_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM medicine_schedule WHERE id = %s", (schedule_id,)
            )
            return result.rowcount > 0

    def list_active_schedules_at(self, hour: int, minute: int) -> List[Schedule]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM medicine_schedule
                WHERE is_active
                  AND EXTRACT(HOUR FROM time_of_day) = %s
                  AND EXTRACT(MINUTE FROM time_of_day) = %s
                """,
                (hour, minute),
            ).fetchall()
        return [self._schedule_from_row(row) for row in rows]

    # revoked tokens
    def add_revoked_token(
        self, token_hash: str, user_id: str, expires_at: datetime
    ) -> RevokedToken:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO revoked_token (token_hash, user_id, expires_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (token_hash) DO NOTHING
                """,
                (token_hash, user_id, expires_at),
            )
            row = conn.execute(
                "SELECT * FROM revoked_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return RevokedToken(
            token=row["token_hash"],
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            revoked_at=row["revoked_at"],
        )

    def is_token_revoked(self, token_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS hit FROM revoked_token WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        return row is not None

    def purge_revoked_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM revoked_token WHERE expires_at < %s", (now,)
            )
            return result.rowcount

    # global medicine catalog
    def create_global_medicine(self, entry: GlobalMedicine) -> GlobalMedicine:
        columns = ["id", *CATALOG_FIELDS, "created_at", "updated_at"]
        values = [entry.id, *(getattr(entry, name) for name in CATALOG_FIELDS)]
        values += [entry.created_at, entry.updated_at]
        with self._connect() as conn:
            row = conn.execute(
                "INSERT INTO global_medicine ({}) VALUES ({}) RETURNING *".format(
                    ", ".join(columns), ", ".join(["%s"] * len(columns))
                ),
                values,
            ).fetchone()
        return self._global_medicine_from_row(row)

    def get_global_medicine(self, entry_id: str) -> Optional[GlobalMedicine]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM global_medicine WHERE id = %s", (entry_id,)
            ).fetchone()
        return self._global_medicine_from_row(row) if row else None

    def list_global_medicines(self) -> List[GlobalMedicine]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM global_medicine ORDER BY lower(name)"
            ).fetchall()
        return [self._global_medicine_from_row(row) for row in rows]

    def search_global_medicines(self, name_fragment: str) -> List[GlobalMedicine]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM global_medicine WHERE name ILIKE %s ORDER BY lower(name)",
                (f"%{_escape_like(name_fragment)}%",),
            ).fetchall()
        return [self._global_medicine_from_row(row) for row in rows]

    def list_global_medicines_by_category(self, category: str) -> List[GlobalMedicine]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM global_medicine WHERE category = %s ORDER BY lower(name)",
                (category,),
            ).fetchall()
        return [self._global_medicine_from_row(row) for row in rows]

    def update_global_medicine(
        self, entry_id: str, fields: Dict[str, Any]
    ) -> Optional[GlobalMedicine]:
        updates = {k: v for k, v in fields.items() if k in CATALOG_FIELDS}
        assignments = [f"{key} = %s" for key in updates] + ["updated_at = now()"]
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE global_medicine SET {} WHERE id = %s RETURNING *".format(
                    ", ".join(assignments)
                ),
                [*updates.values(), entry_id],
            ).fetchone()
        return self._global_medicine_from_row(row) if row else None

    def delete_global_medicine(self, entry_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM global_medicine WHERE id = %s", (entry_id,)
            )
            return result.rowcount > 0
