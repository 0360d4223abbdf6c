from __future__ import annotations

import sqlite3
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from raceplanner.models import (
    SyncLogEntry,
    SyncSource,
    SyncStatus,
    UserRole,
    parse_iso_datetime,
    serialize_datetime,
    utc_now,
)


def _utc_now() -> str:
    return serialize_datetime(utc_now()) or ""


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sync_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    status TEXT NOT NULL,
    source TEXT NOT NULL,
    start_time TEXT NOT NULL,
    end_time TEXT,
    count INTEGER NOT NULL DEFAULT 0,
    error TEXT
);

CREATE TABLE IF NOT EXISTS car_classes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    external_id INTEGER NOT NULL UNIQUE,
    name TEXT NOT NULL,
    short_name TEXT NOT NULL DEFAULT '',
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    external_id TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    start_time TEXT NOT NULL,
    end_time TEXT NOT NULL,
    track TEXT NOT NULL DEFAULT '',
    track_config TEXT,
    description TEXT NOT NULL DEFAULT '',
    license_group INTEGER,
    temp_value REAL,
    temp_units INTEGER,
    rel_humidity REAL,
    skies INTEGER,
    precip_chance REAL,
    duration_mins INTEGER,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS event_car_classes (
    event_id INTEGER NOT NULL REFERENCES events(id) ON DELETE CASCADE,
    car_class_id INTEGER NOT NULL REFERENCES car_classes(id) ON DELETE CASCADE,
    PRIMARY KEY (event_id, car_class_id)
);

CREATE TABLE IF NOT EXISTS races (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    external_id TEXT NOT NULL UNIQUE,
    event_id INTEGER NOT NULL REFERENCES events(id) ON DELETE CASCADE,
    start_time TEXT NOT NULL,
    end_time TEXT NOT NULL,
    discord_thread_id TEXT,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    role TEXT NOT NULL DEFAULT 'USER',
    iracing_customer_id TEXT,
    iracing_name TEXT,
    discord_id TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS racer_stats (
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    category_id INTEGER NOT NULL,
    category TEXT NOT NULL DEFAULT '',
    irating INTEGER NOT NULL DEFAULT 0,
    license_level INTEGER NOT NULL DEFAULT 0,
    license_group INTEGER NOT NULL DEFAULT 0,
    safety_rating REAL NOT NULL DEFAULT 0,
    cpi REAL NOT NULL DEFAULT 0,
    tt_rating INTEGER NOT NULL DEFAULT 0,
    mpr_num_races INTEGER NOT NULL DEFAULT 0,
    color TEXT NOT NULL DEFAULT '',
    group_name TEXT NOT NULL DEFAULT '',
    updated_at TEXT NOT NULL,
    PRIMARY KEY (user_id, category_id)
);

CREATE TABLE IF NOT EXISTS registrations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    race_id INTEGER NOT NULL REFERENCES races(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    car_class_id INTEGER NOT NULL REFERENCES car_classes(id),
    created_at TEXT NOT NULL,
    UNIQUE (race_id, user_id)
);
"""


def _row_to_log(row: sqlite3.Row) -> SyncLogEntry:
    return SyncLogEntry(
        id=int(row["id"]),
        status=SyncStatus(row["status"]),
        source=SyncSource(row["source"]),
        start_time=parse_iso_datetime(row["start_time"]),
        end_time=parse_iso_datetime(row["end_time"]),
        count=int(row["count"] or 0),
        error=row["error"],
    )


class UnitOfWork:
    """One transaction: every write either commits together or not at all."""

    def __init__(self, conn: sqlite3.Connection, lock: threading.RLock) -> None:
        self._conn = conn
        self._lock = lock
        self.committed = False

    def __enter__(self) -> "UnitOfWork":
        self._lock.acquire()
        try:
            self._conn.execute("BEGIN IMMEDIATE")
        except Exception:
            self._conn.close()
            self._lock.release()
            raise
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        try:
            if exc_type is None:
                self._conn.execute("COMMIT")
                self.committed = True
            else:
                self._conn.execute("ROLLBACK")
        finally:
            self._conn.close()
            self._lock.release()

    def _upsert(self, table: str, key: str, key_value: Any, fields: dict[str, Any]) -> int:
        columns = [key, *fields.keys(), "updated_at"]
        values = [key_value, *fields.values(), _utc_now()]
        assignments = ", ".join(f"{column} = excluded.{column}" for column in columns[1:])
        self._conn.execute(
            f"""
            INSERT INTO {table}({", ".join(columns)})
            VALUES ({", ".join("?" for _ in columns)})
            ON CONFLICT({key}) DO UPDATE SET {assignments}
            """,  # nosec B608 - table and column names come from code, never from input
            values,
        )
        row = self._conn.execute(f"SELECT id FROM {table} WHERE {key} = ?", (key_value,)).fetchone()  # nosec B608
        return int(row["id"])

    def upsert_car_class(self, external_id: int, fields: dict[str, Any]) -> int:
        return self._upsert("car_classes", "external_id", int(external_id), fields)

    def upsert_event(self, external_id: str, fields: dict[str, Any]) -> int:
        return self._upsert("events", "external_id", str(external_id), fields)

    def upsert_race(self, external_id: str, fields: dict[str, Any]) -> int:
        return self._upsert("races", "external_id", str(external_id), fields)

    def set_event_car_classes(self, event_id: int, car_class_ids: Iterable[int]) -> None:
        self._conn.execute("DELETE FROM event_car_classes WHERE event_id = ?", (int(event_id),))
        self._conn.executemany(
            "INSERT OR IGNORE INTO event_car_classes(event_id, car_class_id) VALUES (?, ?)",
            [(int(event_id), int(class_id)) for class_id in car_class_ids],
        )

    def set_user_iracing_name(self, user_id: str, iracing_name: str) -> None:
        self._conn.execute(
            "UPDATE users SET iracing_name = ? WHERE id = ?",
            (iracing_name, str(user_id)),
        )

    def upsert_racer_stats(self, user_id: str, category_id: int, fields: dict[str, Any]) -> None:
        columns = ["user_id", "category_id", *fields.keys(), "updated_at"]
        values = [str(user_id), int(category_id), *fields.values(), _utc_now()]
        assignments = ", ".join(f"{column} = excluded.{column}" for column in columns[2:])
        self._conn.execute(
            f"""
            INSERT INTO racer_stats({", ".join(columns)})
            VALUES ({", ".join("?" for _ in columns)})
            ON CONFLICT(user_id, category_id) DO UPDATE SET {assignments}
            """,  # nosec B608
            values,
        )


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self, *, autocommit: bool = False) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        if autocommit:
            conn.isolation_level = None
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_schema(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.executescript(SCHEMA_SQL)

    def transaction(self) -> UnitOfWork:
        return UnitOfWork(self._connect(autocommit=True), self._lock)

    # -- sync log ---------------------------------------------------------

    def create_sync_log(self, *, source: SyncSource, start_time: datetime | None = None) -> SyncLogEntry:
        started = start_time or utc_now()
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "INSERT INTO sync_logs(status, source, start_time) VALUES (?, ?, ?)",
                    (SyncStatus.IN_PROGRESS.value, source.value, serialize_datetime(started)),
                )
                conn.commit()
                log_id = int(cursor.lastrowid)
        return SyncLogEntry(id=log_id, status=SyncStatus.IN_PROGRESS, source=source, start_time=started)

    def finish_sync_log(
        self,
        *,
        log_id: int,
        status: SyncStatus,
        count: int = 0,
        error: str | None = None,
        end_time: datetime | None = None,
    ) -> None:
        if status == SyncStatus.IN_PROGRESS:
            raise ValueError("a sync log can only be finished with a terminal status")
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE sync_logs
                    SET status = ?, end_time = ?, count = ?, error = ?
                    WHERE id = ? AND status = ?
                    """,
                    (
                        status.value,
                        serialize_datetime(end_time or utc_now()),
                        int(count),
                        error,
                        int(log_id),
                        SyncStatus.IN_PROGRESS.value,
                    ),
                )
                conn.commit()
                if cursor.rowcount != 1:
                    raise RuntimeError(f"sync log {log_id} is missing or already finalized")

    def get_sync_log(self, log_id: int) -> SyncLogEntry | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM sync_logs WHERE id = ?", (int(log_id),)).fetchone()
        return _row_to_log(row) if row else None

    def recent_sync_logs(self, limit: int = 20) -> list[SyncLogEntry]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM sync_logs ORDER BY id DESC LIMIT ?",
                    (max(1, limit),),
                ).fetchall()
        return [_row_to_log(row) for row in rows]

    # -- users ------------------------------------------------------------

    def create_user(
        self,
        *,
        name: str,
        role: UserRole = UserRole.USER,
        iracing_customer_id: str | int | None = None,
        discord_id: str | None = None,
        user_id: str | None = None,
    ) -> str:
        new_id = user_id or uuid.uuid4().hex
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO users(id, name, role, iracing_customer_id, discord_id, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        new_id,
                        name,
                        role.value,
                        None if iracing_customer_id is None else str(iracing_customer_id),
                        discord_id,
                        _utc_now(),
                    ),
                )
                conn.commit()
        return new_id

    def get_user(self, user_id: str) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM users WHERE id = ?", (str(user_id),)).fetchone()
        return dict(row) if row else None

    def users_with_customer_id(self) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, iracing_customer_id
                    FROM users
                    WHERE iracing_customer_id IS NOT NULL AND iracing_customer_id != ''
                    ORDER BY created_at, id
                    """
                ).fetchall()
        return [dict(row) for row in rows]

    def racer_stats(self, user_id: str) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM racer_stats WHERE user_id = ? ORDER BY category_id",
                    (str(user_id),),
                ).fetchall()
        return [dict(row) for row in rows]

    def roster(self) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                users = conn.execute(
                    "SELECT id, name, role, iracing_customer_id, iracing_name FROM users ORDER BY name"
                ).fetchall()
                stats = conn.execute("SELECT * FROM racer_stats ORDER BY user_id, category_id").fetchall()
        by_user: dict[str, list[dict[str, Any]]] = {}
        for row in stats:
            by_user.setdefault(row["user_id"], []).append(dict(row))
        return [{**dict(user), "stats": by_user.get(user["id"], [])} for user in users]

    # -- events -----------------------------------------------------------

    def add_registration(self, *, race_id: int, user_id: str, car_class_id: int) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO registrations(race_id, user_id, car_class_id, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (int(race_id), str(user_id), int(car_class_id), _utc_now()),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def car_class_ids_by_external(self) -> dict[int, int]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute("SELECT id, external_id FROM car_classes").fetchall()
        return {int(row["external_id"]): int(row["id"]) for row in rows}

    def get_event(self, event_id: int) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT id FROM events WHERE id = ?", (int(event_id),)).fetchone()
                if row is None:
                    return None
                return self._event_details(conn, int(row["id"]))

    def get_event_by_external_id(self, external_id: str) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT id FROM events WHERE external_id = ?", (external_id,)).fetchone()
                if row is None:
                    return None
                return self._event_details(conn, int(row["id"]))

    def list_events(
        self,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if start is not None:
            clauses.append("start_time >= ?")
            params.append(serialize_datetime(start))
        if end is not None:
            clauses.append("start_time < ?")
            params.append(serialize_datetime(end))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT id FROM events {where} ORDER BY start_time, id",  # nosec B608
                    params,
                ).fetchall()
                return [self._event_details(conn, int(row["id"])) for row in rows]

    def get_race(self, race_id: int) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM races WHERE id = ?", (int(race_id),)).fetchone()
                if row is None:
                    return None
                race = dict(row)
                race["event"] = self._event_details(conn, int(row["event_id"]))
        return race

    def set_race_discord_thread(self, race_id: int, thread_id: str | None) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE races SET discord_thread_id = ? WHERE id = ?",
                    (thread_id or None, int(race_id)),
                )
                conn.commit()
                return cursor.rowcount == 1

    def _event_details(self, conn: sqlite3.Connection, event_id: int) -> dict[str, Any]:
        event = dict(conn.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone())
        event["car_classes"] = [
            dict(row)
            for row in conn.execute(
                """
                SELECT c.id, c.external_id, c.name, c.short_name
                FROM car_classes c
                JOIN event_car_classes ec ON ec.car_class_id = c.id
                WHERE ec.event_id = ?
                ORDER BY c.name
                """,
                (event_id,),
            ).fetchall()
        ]
        races = []
        for race_row in conn.execute(
            "SELECT * FROM races WHERE event_id = ? ORDER BY start_time, id",
            (event_id,),
        ).fetchall():
            race = dict(race_row)
            race["registrations"] = [
                dict(row)
                for row in conn.execute(
                    """
                    SELECT r.id, r.user_id, u.name AS user_name, u.discord_id,
                           c.name AS car_class_name, c.short_name AS car_class_short_name
                    FROM registrations r
                    JOIN users u ON u.id = r.user_id
                    JOIN car_classes c ON c.id = r.car_class_id
                    WHERE r.race_id = ?
                    ORDER BY r.id
                    """,
                    (int(race["id"]),),
                ).fetchall()
            ]
            races.append(race)
        event["races"] = races
        return event
