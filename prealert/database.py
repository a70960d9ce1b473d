from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import AsyncContextManager, Iterable, Sequence
from urllib.parse import urlparse

import aiosqlite

from prealert.config import Settings

try:  # Optional: only required when DATABASE_URL points at Postgres
    import asyncpg  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    asyncpg = None

logger = logging.getLogger(__name__)


class DatabaseAdapter:
    engine: str

    async def execute(self, query: str, params: Sequence | None = None) -> int:  # pragma: no cover - interface
        raise NotImplementedError

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def fetch_one(self, query: str, params: Sequence | None = None):  # pragma: no cover - interface
        raise NotImplementedError

    async def fetch_all(self, query: str, params: Sequence | None = None):  # pragma: no cover - interface
        raise NotImplementedError

    async def commit(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def rollback(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def executescript(self, script: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def transaction(self) -> AsyncContextManager:  # pragma: no cover - interface
        """Run the statements issued on the yielded handle as one unit.

        Commits when the block exits normally and rolls back when it raises.
        """
        raise NotImplementedError


@dataclass
class SQLiteAdapter(DatabaseAdapter):
    conn: aiosqlite.Connection
    engine: str = "sqlite"
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    async def execute(self, query: str, params: Sequence | None = None) -> int:
        cursor = await self.conn.execute(query, params or ())
        return cursor.rowcount

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:
        await self.conn.executemany(query, seq_params)

    async def fetch_one(self, query: str, params: Sequence | None = None):
        cursor = await self.conn.execute(query, params or ())
        return await cursor.fetchone()

    async def fetch_all(self, query: str, params: Sequence | None = None):
        cursor = await self.conn.execute(query, params or ())
        return await cursor.fetchall()

    async def commit(self) -> None:
        await self.conn.commit()

    async def rollback(self) -> None:
        await self.conn.rollback()

    async def close(self) -> None:
        await self.conn.close()

    async def executescript(self, script: str) -> None:
        await self.conn.executescript(script)

    @asynccontextmanager
    async def transaction(self):
        # Writers take turns on the shared connection
        async with self.write_lock:
            try:
                yield self
            except BaseException:
                await self.conn.rollback()
                raise
            await self.conn.commit()


def _rowcount(status) -> int:
    # asyncpg returns a command tag such as "UPDATE 1"
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return -1


class PostgresConnection:
    """Statements on one acquired asyncpg connection."""

    def __init__(self, conn) -> None:
        self.conn = conn

    async def execute(self, query: str, params: Sequence | None = None) -> int:
        status = await self.conn.execute(PostgresAdapter._translate_query(query), *(params or ()))
        return _rowcount(status)

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:
        await self.conn.executemany(PostgresAdapter._translate_query(query), seq_params)

    async def fetch_one(self, query: str, params: Sequence | None = None):
        return await self.conn.fetchrow(PostgresAdapter._translate_query(query), *(params or ()))

    async def fetch_all(self, query: str, params: Sequence | None = None):
        return await self.conn.fetch(PostgresAdapter._translate_query(query), *(params or ()))


@dataclass
class PostgresAdapter(DatabaseAdapter):
    pool: "asyncpg.Pool"  # type: ignore[name-defined]
    engine: str = "postgres"

    @staticmethod
    def _translate_query(query: str) -> str:
        # Convert SQLite-style ? placeholders to asyncpg-style $1, $2, ...
        if "$1" in query:
            return query
        idx = 1
        out = []
        for ch in query:
            if ch == "?":
                out.append(f"${idx}")
                idx += 1
            else:
                out.append(ch)
        return "".join(out)

    async def execute(self, query: str, params: Sequence | None = None) -> int:
        async with self.pool.acquire() as conn:
            return await PostgresConnection(conn).execute(query, params)

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:
        async with self.pool.acquire() as conn:
            await PostgresConnection(conn).executemany(query, seq_params)

    async def fetch_one(self, query: str, params: Sequence | None = None):
        async with self.pool.acquire() as conn:
            return await PostgresConnection(conn).fetch_one(query, params)

    async def fetch_all(self, query: str, params: Sequence | None = None):
        async with self.pool.acquire() as conn:
            return await PostgresConnection(conn).fetch_all(query, params)

    async def commit(self) -> None:
        # Outside transaction() each statement autocommits.
        return

    async def rollback(self) -> None:
        return

    async def close(self) -> None:
        await self.pool.close()

    async def executescript(self, script: str) -> None:
        # Not supported for Postgres; callers should split statements.
        raise NotImplementedError

    @asynccontextmanager
    async def transaction(self):
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield PostgresConnection(conn)


async def connect_db(settings: Settings) -> DatabaseAdapter:
    """Open a new adapter for ``settings``. Each caller owns its adapter."""
    if settings.database_url and not settings.database_url.startswith("sqlite"):
        if asyncpg is None:
            raise RuntimeError(
                "DATABASE_URL is set but asyncpg is not installed. "
                "Install asyncpg or unset DATABASE_URL."
            )
        pool = await asyncpg.create_pool(
            dsn=settings.database_url,
            min_size=1,
            max_size=settings.database_max_connections,
        )
        logger.info("Connected to Postgres database")
        return PostgresAdapter(pool)

    sqlite_path = settings.database_path
    if settings.database_url:
        sqlite_path = _sqlite_path_from_url(settings.database_url) or settings.database_path
    conn = await aiosqlite.connect(sqlite_path)
    conn.row_factory = aiosqlite.Row
    logger.info("Connected to SQLite database at %s", sqlite_path)
    return SQLiteAdapter(conn)


def _sqlite_path_from_url(url: str) -> str:
    parsed = urlparse(url)
    path = parsed.path or ""
    if not path or path == "/":
        return ""
    # sqlite:////absolute/path.db -> keep absolute path
    if url.startswith("sqlite:////"):
        return "/" + path.lstrip("/")
    # sqlite:///relative.db -> strip leading slash
    if path.startswith("/"):
        return path[1:]
    return path


SQLITE_SCHEMA = """
    CREATE TABLE IF NOT EXISTS hospitals (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        address TEXT NOT NULL DEFAULT '',
        contact TEXT,
        latitude REAL,
        longitude REAL,
        equipment TEXT NOT NULL DEFAULT '[]',
        specialties TEXT NOT NULL DEFAULT '[]',
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        updated_at TEXT
    );

    CREATE TABLE IF NOT EXISTS ambulances (
        id TEXT PRIMARY KEY,
        ambulance_number TEXT NOT NULL,
        contact TEXT,
        current_latitude REAL,
        current_longitude REAL,
        equipment TEXT NOT NULL DEFAULT '[]',
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        updated_at TEXT
    );

    CREATE TABLE IF NOT EXISTS app_users (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        auth_uid TEXT UNIQUE,
        role TEXT NOT NULL,
        linked_entity TEXT,
        created_at TEXT NOT NULL DEFAULT (datetime('now'))
    );

    CREATE TABLE IF NOT EXISTS auth_accounts (
        email TEXT PRIMARY KEY,
        auth_uid TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT (datetime('now'))
    );

    CREATE TABLE IF NOT EXISTS alerts (
        id TEXT PRIMARY KEY,
        ambulance_id TEXT NOT NULL,
        hospital_id TEXT NOT NULL,
        patient TEXT NOT NULL,
        triage_level TEXT NOT NULL,
        distance REAL,
        eta INTEGER,
        status TEXT NOT NULL DEFAULT 'pending',
        created_at TEXT NOT NULL,
        completed_at TEXT,
        required_equipment TEXT NOT NULL DEFAULT '[]',
        decline_reason TEXT,
        previous_hospital_ids TEXT NOT NULL DEFAULT '[]',
        updated_at TEXT,
        FOREIGN KEY (hospital_id) REFERENCES hospitals(id)
    );

    CREATE TABLE IF NOT EXISTS alert_audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        alert_id TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        action TEXT NOT NULL,
        actor TEXT NOT NULL,
        details TEXT NOT NULL DEFAULT '',
        hospital_id TEXT,
        FOREIGN KEY (alert_id) REFERENCES alerts(id)
    );

    CREATE TABLE IF NOT EXISTS live_vitals (
        device_id TEXT PRIMARY KEY,
        spo2_pct INTEGER,
        hr_bpm INTEGER,
        updated_at TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_alerts_hospital ON alerts(hospital_id);
    CREATE INDEX IF NOT EXISTS idx_alerts_ambulance ON alerts(ambulance_id);
    CREATE INDEX IF NOT EXISTS idx_audit_alert ON alert_audit_log(alert_id);
"""

POSTGRES_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS hospitals (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        address TEXT NOT NULL DEFAULT '',
        contact TEXT,
        latitude DOUBLE PRECISION,
        longitude DOUBLE PRECISION,
        equipment TEXT NOT NULL DEFAULT '[]',
        specialties TEXT NOT NULL DEFAULT '[]',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS ambulances (
        id TEXT PRIMARY KEY,
        ambulance_number TEXT NOT NULL,
        contact TEXT,
        current_latitude DOUBLE PRECISION,
        current_longitude DOUBLE PRECISION,
        equipment TEXT NOT NULL DEFAULT '[]',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS app_users (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        auth_uid TEXT UNIQUE,
        role TEXT NOT NULL,
        linked_entity TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_accounts (
        email TEXT PRIMARY KEY,
        auth_uid TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS alerts (
        id TEXT PRIMARY KEY,
        ambulance_id TEXT NOT NULL,
        hospital_id TEXT NOT NULL REFERENCES hospitals(id),
        patient TEXT NOT NULL,
        triage_level TEXT NOT NULL,
        distance DOUBLE PRECISION,
        eta INTEGER,
        status TEXT NOT NULL DEFAULT 'pending',
        created_at TEXT NOT NULL,
        completed_at TEXT,
        required_equipment TEXT NOT NULL DEFAULT '[]',
        decline_reason TEXT,
        previous_hospital_ids TEXT NOT NULL DEFAULT '[]',
        updated_at TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS alert_audit_log (
        id BIGSERIAL PRIMARY KEY,
        alert_id TEXT NOT NULL REFERENCES alerts(id),
        timestamp TEXT NOT NULL,
        action TEXT NOT NULL,
        actor TEXT NOT NULL,
        details TEXT NOT NULL DEFAULT '',
        hospital_id TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS live_vitals (
        device_id TEXT PRIMARY KEY,
        spo2_pct INTEGER,
        hr_bpm INTEGER,
        updated_at TEXT
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_alerts_hospital ON alerts(hospital_id);",
    "CREATE INDEX IF NOT EXISTS idx_alerts_ambulance ON alerts(ambulance_id);",
    "CREATE INDEX IF NOT EXISTS idx_audit_alert ON alert_audit_log(alert_id);",
]


async def init_db(db: DatabaseAdapter, settings: Settings) -> None:
    if db.engine == "sqlite":
        await db.executescript(SQLITE_SCHEMA)
    else:
        for stmt in POSTGRES_SCHEMA:
            await db.execute(stmt)

    await db.commit()

    if settings.seed_demo_data:
        await _seed_demo_data(db)


DEMO_HOSPITALS = [
    (
        "hosp-citycare",
        "CityCare Hospital",
        "123 Main St, New York, NY",
        "+1-212-555-0100",
        40.7489,
        -73.9680,
        ["CT Scanner", "MRI", "Trauma Unit", "ICU"],
        ["Cardiology", "Neurology"],
    ),
    (
        "hosp-general",
        "General Medical Center",
        "456 Oak Ave, New York, NY",
        "+1-212-555-0200",
        40.7520,
        -73.9700,
        ["Emergency Room", "Surgery", "ICU", "Lab"],
        ["General Surgery"],
    ),
    (
        "hosp-ecu",
        "Emergency Care Unit",
        "789 Pine Rd, New York, NY",
        "+1-212-555-0300",
        40.7450,
        -73.9650,
        ["Trauma Center", "Burn Unit", "ICU"],
        ["Trauma", "Burns"],
    ),
]


async def _seed_demo_data(db: DatabaseAdapter) -> None:
    """Seed demo hospitals and one ambulance for local previews."""
    now = datetime.now(UTC).isoformat()

    existing_rows = await db.fetch_all("SELECT id FROM hospitals")
    existing = {row["id"] for row in existing_rows}
    hospitals = [
        (hid, name, address, contact, lat, lng, json.dumps(equipment), json.dumps(specialties), now)
        for hid, name, address, contact, lat, lng, equipment, specialties in DEMO_HOSPITALS
        if hid not in existing
    ]
    if hospitals:
        await db.executemany(
            """INSERT INTO hospitals (
                id, name, address, contact, latitude, longitude,
                equipment, specialties, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            hospitals,
        )

    ambulance = await db.fetch_one("SELECT id FROM ambulances WHERE id = ?", ("amb-001",))
    if not ambulance:
        await db.execute(
            """INSERT INTO ambulances (
                id, ambulance_number, contact, current_latitude, current_longitude,
                equipment, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                "amb-001",
                "AMB-001",
                "+1-555-0199",
                40.7580,
                -73.9855,
                json.dumps(["Defibrillator", "Oxygen", "Medications"]),
                now,
            ),
        )
    await db.commit()
