"""SQLite database layer for users, statuses and active-time sessions."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Iterable, Iterator, Optional

from .models import ActiveTimeEntry, ActiveTimeSession, StatusSnapshot, User

logger = logging.getLogger(__name__)

DATE_FMT = "%Y-%m-%d"


def open_database(path: Path, *, check_same_thread: bool = True) -> sqlite3.Connection:
    """Open (and initialize) the SQLite database."""
    conn = sqlite3.connect(
        path,
        isolation_level=None,
        check_same_thread=check_same_thread,
    )
    conn.row_factory = sqlite3.Row
    enable_foreign_keys(conn)
    initialize_schema(conn)
    return conn


@contextmanager
def database_connection(
    path: Path, *, check_same_thread: bool = True
) -> Iterator[sqlite3.Connection]:
    conn = open_database(path, check_same_thread=check_same_thread)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block inside BEGIN/COMMIT, rolling back on any error."""
    conn.execute("BEGIN")
    try:
        yield conn
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def enable_foreign_keys(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA foreign_keys = ON;")


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            email TEXT,
            role TEXT NOT NULL DEFAULT 'member'
        );

        CREATE TABLE IF NOT EXISTS user_status (
            user_id TEXT PRIMARY KEY,
            status TEXT NOT NULL,
            memo TEXT,
            timestamp TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS status_history (
            id INTEGER PRIMARY KEY,
            user_id TEXT NOT NULL,
            status TEXT NOT NULL,
            memo TEXT,
            timestamp TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_status_history_user
            ON status_history(user_id, timestamp);

        CREATE TABLE IF NOT EXISTS active_time_sessions (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            date TEXT NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT,
            duration_seconds INTEGER NOT NULL DEFAULT 0,
            memo TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_sessions_user_date
            ON active_time_sessions(user_id, date);

        CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_one_open
            ON active_time_sessions(user_id, date)
            WHERE end_time IS NULL;
        """
    )


def insert_user(conn: sqlite3.Connection, user: User) -> None:
    conn.execute(
        """
        INSERT INTO users (id, name, email, role) VALUES (?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name = excluded.name,
            email = excluded.email,
            role = excluded.role
        """,
        (user.id, user.name, user.email, user.role),
    )


def fetch_users(conn: sqlite3.Connection) -> list[User]:
    rows = conn.execute("SELECT id, name, email, role FROM users ORDER BY name, id;")
    return [
        User(id=row["id"], name=row["name"], email=row["email"], role=row["role"])
        for row in rows
    ]


def fetch_status(conn: sqlite3.Connection, user_id: str) -> Optional[StatusSnapshot]:
    row = conn.execute(
        "SELECT status, memo, timestamp FROM user_status WHERE user_id = ?",
        (user_id,),
    ).fetchone()
    if row is None:
        return None
    return StatusSnapshot(
        status=row["status"],
        memo=row["memo"],
        timestamp=datetime.fromisoformat(row["timestamp"]),
    )


def upsert_status(
    conn: sqlite3.Connection, user_id: str, snapshot: StatusSnapshot
) -> None:
    """Replace the latest status and append it to the history."""
    timestamp = snapshot.timestamp.isoformat()
    with transaction(conn):
        conn.execute(
            """
            INSERT INTO user_status (user_id, status, memo, timestamp)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                status = excluded.status,
                memo = excluded.memo,
                timestamp = excluded.timestamp
            """,
            (user_id, snapshot.status, snapshot.memo, timestamp),
        )
        conn.execute(
            """
            INSERT INTO status_history (user_id, status, memo, timestamp)
            VALUES (?, ?, ?, ?)
            """,
            (user_id, snapshot.status, snapshot.memo, timestamp),
        )


def fetch_status_history(
    conn: sqlite3.Connection, user_id: str, day: Optional[date] = None
) -> list[StatusSnapshot]:
    query = "SELECT status, memo, timestamp FROM status_history WHERE user_id = ?"
    params: list[object] = [user_id]
    if day is not None:
        query += " AND timestamp LIKE ?"
        params.append(f"{day.strftime(DATE_FMT)}%")
    query += " ORDER BY timestamp, id"
    return [
        StatusSnapshot(
            status=row["status"],
            memo=row["memo"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
        )
        for row in conn.execute(query, params)
    ]


def fetch_entry(
    conn: sqlite3.Connection, user_id: str, day: date
) -> Optional[ActiveTimeEntry]:
    """Load every session for a user-day; ``None`` when there are none."""
    rows = conn.execute(
        """
        SELECT id, start_time, end_time, duration_seconds, memo
        FROM active_time_sessions
        WHERE user_id = ? AND date = ?
        ORDER BY start_time, rowid;
        """,
        (user_id, day.strftime(DATE_FMT)),
    ).fetchall()
    if not rows:
        return None
    entry = ActiveTimeEntry(user_id=user_id, date=day)
    for row in rows:
        session = _row_to_session(row)
        if session is not None:
            entry.sessions.append(session)
    entry.recalculate_total()
    return entry


def upsert_sessions(conn: sqlite3.Connection, entries: Iterable[ActiveTimeEntry]) -> None:
    conn.executemany(
        """
        INSERT INTO active_time_sessions (
            id,
            user_id,
            date,
            start_time,
            end_time,
            duration_seconds,
            memo
        ) VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            start_time = excluded.start_time,
            end_time = excluded.end_time,
            duration_seconds = excluded.duration_seconds,
            memo = excluded.memo
        """,
        [
            (
                session.id,
                entry.user_id,
                entry.date.strftime(DATE_FMT),
                session.start_time.isoformat(),
                session.end_time.isoformat() if session.end_time else None,
                session.duration_seconds,
                session.memo,
            )
            for entry in entries
            for session in entry.sessions
        ],
    )


def delete_session(
    conn: sqlite3.Connection, user_id: str, day: date, session_id: str
) -> None:
    cur = conn.execute(
        "DELETE FROM active_time_sessions WHERE id = ? AND user_id = ? AND date = ?",
        (session_id, user_id, day.strftime(DATE_FMT)),
    )
    if cur.rowcount == 0:
        raise ValueError(f"No session found for id={session_id}")


def _row_to_session(row: sqlite3.Row) -> Optional[ActiveTimeSession]:
    try:
        return ActiveTimeSession(
            id=row["id"],
            start_time=datetime.fromisoformat(row["start_time"]),
            end_time=datetime.fromisoformat(row["end_time"]) if row["end_time"] else None,
            duration_seconds=max(0, int(row["duration_seconds"] or 0)),
            memo=row["memo"],
        )
    except (TypeError, ValueError):
        logger.warning("Skipping malformed session row id=%s", row["id"])
        return None
