"""SQLite-backed persistence helpers."""

from __future__ import annotations

import datetime as dt
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .errors import StateStoreError
from .models import (
    ApartmentRecord,
    ApartmentStatus,
    ProfileSnapshot,
    RunRecord,
    ScanResult,
    ScrapedApartment,
    Subscriber,
)

logger = logging.getLogger(__name__)

SQLITE_PREFIX = "sqlite://"


def resolve_sqlite_path(database_url: str) -> Path:
    """Translate a DATABASE_URL into a filesystem path."""
    if not database_url:
        raise ValueError("DATABASE_URL must not be empty")

    if database_url.startswith(SQLITE_PREFIX):
        raw_path = database_url[len(SQLITE_PREFIX) :]
        # Allow sqlite:///path/to/file and sqlite://path/to/file styles.
        if raw_path.startswith("/"):
            raw_path = raw_path[1:]
        path = Path(raw_path)
    else:
        path = Path(database_url)

    if not path.is_absolute():
        path = Path.cwd() / path

    return path.expanduser().resolve()


def utcnow() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


def _to_text(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _to_decimal(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


@dataclass
class Database:
    """Thin wrapper around sqlite3 for tracked apartments, subscribers and scan history."""

    path: Path

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success and surface failures as StateStoreError."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.path)
        except (OSError, sqlite3.Error) as exc:
            raise StateStoreError(f"cannot open database {self.path}: {exc}") from exc
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StateStoreError(str(exc)) from exc
        finally:
            conn.close()

    def initialize(self) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS apartments (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    external_id TEXT NOT NULL,
                    profile_id TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'unknown',
                    price TEXT,
                    price_per_meter TEXT,
                    area TEXT,
                    floor INTEGER,
                    rooms INTEGER,
                    address TEXT,
                    building TEXT,
                    link TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE(external_id, profile_id)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_apartments_profile ON apartments(profile_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_apartments_status ON apartments(status)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS profile_snapshots (
                    profile_id TEXT PRIMARY KEY,
                    total_count INTEGER NOT NULL DEFAULT 0,
                    booked_count INTEGER NOT NULL DEFAULT 0,
                    available_count INTEGER NOT NULL DEFAULT 0,
                    unclassified_count INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS subscribers (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    chat_id TEXT NOT NULL UNIQUE,
                    username TEXT,
                    first_name TEXT,
                    subscribed_at TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_subscribers_active ON subscribers(is_active)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    profile_id TEXT NOT NULL,
                    profile_name TEXT NOT NULL,
                    total_count INTEGER NOT NULL DEFAULT 0,
                    booked_count INTEGER NOT NULL DEFAULT 0,
                    available_count INTEGER NOT NULL DEFAULT 0,
                    unclassified_count INTEGER NOT NULL DEFAULT 0,
                    duration_ms INTEGER,
                    error TEXT,
                    executed_at TEXT NOT NULL
                )
                """
            )
        logger.info("Database initialized at %s", self.path)

    # -- apartments -------------------------------------------------------

    def fetch_apartments(self, profile_id: str) -> Dict[str, ApartmentRecord]:
        """Return tracked apartments for a profile keyed by external_id."""
        with self.connect() as conn:
            cursor = conn.execute(
                """
                SELECT external_id, profile_id, status, price, price_per_meter, area,
                       floor, rooms, address, building, link, created_at, updated_at
                FROM apartments
                WHERE profile_id = ?
                """,
                (profile_id,),
            )
            records = {}
            for row in cursor.fetchall():
                record = ApartmentRecord(
                    external_id=row[0],
                    profile_id=row[1],
                    status=ApartmentStatus(row[2]),
                    price=_to_decimal(row[3]),
                    price_per_meter=_to_decimal(row[4]),
                    area=_to_decimal(row[5]),
                    floor=row[6],
                    rooms=row[7],
                    address=row[8],
                    building=row[9],
                    link=row[10],
                    created_at=row[11],
                    updated_at=row[12],
                )
                records[record.external_id] = record
            return records

    def upsert_apartment(self, profile_id: str, apartment: ScrapedApartment) -> None:
        """Insert or update one apartment; ``updated_at`` never moves backwards."""
        now = utcnow()
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO apartments (
                    external_id, profile_id, status, price, price_per_meter, area,
                    floor, rooms, address, building, link, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(external_id, profile_id) DO UPDATE SET
                    status = excluded.status,
                    price = excluded.price,
                    price_per_meter = excluded.price_per_meter,
                    area = excluded.area,
                    floor = excluded.floor,
                    rooms = excluded.rooms,
                    address = excluded.address,
                    building = excluded.building,
                    link = excluded.link,
                    updated_at = MAX(apartments.updated_at, excluded.updated_at)
                """,
                (
                    apartment.external_id,
                    profile_id,
                    apartment.status.value,
                    _to_text(apartment.price),
                    _to_text(apartment.price_per_meter),
                    _to_text(apartment.area),
                    apartment.floor,
                    apartment.rooms,
                    apartment.address,
                    apartment.building,
                    apartment.link,
                    now,
                    now,
                ),
            )

    def count_available(self, profile_id: Optional[str] = None) -> int:
        query = "SELECT COUNT(*) FROM apartments WHERE status = 'available'"
        params: tuple = ()
        if profile_id:
            query += " AND profile_id = ?"
            params = (profile_id,)
        with self.connect() as conn:
            return int(conn.execute(query, params).fetchone()[0])

    # -- profile snapshots ------------------------------------------------

    def get_profile_snapshot(self, profile_id: str) -> Optional[ProfileSnapshot]:
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT profile_id, total_count, booked_count, available_count,
                       unclassified_count, updated_at
                FROM profile_snapshots WHERE profile_id = ?
                """,
                (profile_id,),
            ).fetchone()
        if not row:
            return None
        return ProfileSnapshot(
            profile_id=row[0],
            total_count=row[1],
            booked_count=row[2],
            available_count=row[3],
            unclassified_count=row[4],
            updated_at=row[5],
        )

    def upsert_profile_snapshot(self, snapshot: ProfileSnapshot) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO profile_snapshots (
                    profile_id, total_count, booked_count, available_count,
                    unclassified_count, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(profile_id) DO UPDATE SET
                    total_count = excluded.total_count,
                    booked_count = excluded.booked_count,
                    available_count = excluded.available_count,
                    unclassified_count = excluded.unclassified_count,
                    updated_at = excluded.updated_at
                """,
                (
                    snapshot.profile_id,
                    snapshot.total_count,
                    snapshot.booked_count,
                    snapshot.available_count,
                    snapshot.unclassified_count,
                    snapshot.updated_at,
                ),
            )

    # -- subscribers ------------------------------------------------------

    def add_subscriber(
        self,
        chat_id: str,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
    ) -> bool:
        """Subscribe or reactivate a chat. Returns False if it was already active."""
        with self.connect() as conn:
            row = conn.execute(
                "SELECT is_active FROM subscribers WHERE chat_id = ?",
                (chat_id,),
            ).fetchone()
            if row is not None:
                if row[0]:
                    return False
                conn.execute(
                    """
                    UPDATE subscribers
                    SET is_active = 1, username = ?, first_name = ?
                    WHERE chat_id = ?
                    """,
                    (username, first_name, chat_id),
                )
                logger.info("Subscriber %s reactivated", chat_id)
                return True
            conn.execute(
                """
                INSERT INTO subscribers (chat_id, username, first_name, subscribed_at, is_active)
                VALUES (?, ?, ?, ?, 1)
                """,
                (chat_id, username, first_name, utcnow()),
            )
        logger.info("New subscriber %s added", chat_id)
        return True

    def remove_subscriber(self, chat_id: str) -> bool:
        """Soft-delete a subscriber. Returns False if it was not active."""
        with self.connect() as conn:
            cursor = conn.execute(
                "UPDATE subscribers SET is_active = 0 WHERE chat_id = ? AND is_active = 1",
                (chat_id,),
            )
            removed = cursor.rowcount > 0
        if removed:
            logger.info("Subscriber %s deactivated", chat_id)
        return removed

    def is_subscriber(self, chat_id: str) -> bool:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM subscribers WHERE chat_id = ? AND is_active = 1",
                (chat_id,),
            ).fetchone()
        return row is not None

    def get_active_subscribers(self) -> List[str]:
        with self.connect() as conn:
            cursor = conn.execute(
                "SELECT chat_id FROM subscribers WHERE is_active = 1 ORDER BY id"
            )
            return [row[0] for row in cursor.fetchall()]

    def subscriber_count(self) -> int:
        with self.connect() as conn:
            return int(
                conn.execute(
                    "SELECT COUNT(*) FROM subscribers WHERE is_active = 1"
                ).fetchone()[0]
            )

    def get_subscriber(self, chat_id: str) -> Optional[Subscriber]:
        """Return the subscriber row for a chat, active or not."""
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT chat_id, username, first_name, subscribed_at, is_active
                FROM subscribers WHERE chat_id = ?
                """,
                (chat_id,),
            ).fetchone()
        if row is None:
            return None
        return Subscriber(
            chat_id=row[0],
            username=row[1],
            first_name=row[2],
            subscribed_at=row[3],
            is_active=bool(row[4]),
        )

    # -- run history ------------------------------------------------------

    def add_run(self, scan: ScanResult, executed_at: Optional[str] = None) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO runs (
                    profile_id, profile_name, total_count, booked_count, available_count,
                    unclassified_count, duration_ms, error, executed_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    scan.profile_id,
                    scan.profile_name,
                    scan.total_count,
                    scan.booked_count,
                    scan.available_count,
                    scan.unclassified_count,
                    scan.duration_ms,
                    scan.error,
                    executed_at or scan.scanned_at.isoformat(),
                ),
            )

    def recent_runs(self, limit: int = 10) -> List[RunRecord]:
        with self.connect() as conn:
            cursor = conn.execute(
                """
                SELECT profile_id, profile_name, total_count, booked_count, available_count,
                       unclassified_count, duration_ms, error, executed_at
                FROM runs ORDER BY id DESC LIMIT ?
                """,
                (limit,),
            )
            return [RunRecord(*row) for row in cursor.fetchall()]
