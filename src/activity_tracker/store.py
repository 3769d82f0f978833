"""Storage interfaces for sessions and statuses, plus their SQLite backends."""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Callable, Iterable, Optional, Protocol

from . import db
from .config import BackendSettings
from .models import (
    NOT_AVAILABLE,
    STATUSES,
    ActiveTimeEntry,
    StatusSnapshot,
    User,
)
from .normalization import normalize_memo

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """A backend could not complete a read or write."""


class SessionNotFoundError(LookupError):
    """No session with the requested id exists for the user-day."""


class SessionStore(Protocol):
    def load(self, user_id: str, day: date) -> Optional[ActiveTimeEntry]: ...

    def save(self, entry: ActiveTimeEntry) -> None: ...

    def save_many(self, entries: Iterable[ActiveTimeEntry]) -> None: ...

    def delete_session(self, user_id: str, day: date, session_id: str) -> None: ...

    def list_known_users(self) -> list[User]: ...

    def add_user(self, user: User) -> None: ...

    def close(self) -> None: ...


class StatusStore(Protocol):
    def get_snapshot(self, user_id: str) -> Optional[StatusSnapshot]: ...

    def get_status(self, user_id: str) -> str: ...

    def get_status_memo(self, user_id: str) -> Optional[str]: ...

    def get_status_timestamp(self, user_id: str) -> Optional[datetime]: ...

    def update_status(
        self, user_id: str, status: str, memo: Optional[str] = None
    ) -> StatusSnapshot: ...

    def get_status_history(
        self, user_id: str, day: Optional[date] = None
    ) -> list[StatusSnapshot]: ...

    def close(self) -> None: ...


def validate_status(status: str) -> str:
    if status not in STATUSES:
        raise ValueError(f"Invalid status {status!r}; expected one of {', '.join(STATUSES)}")
    return status


class SnapshotStatusMixin:
    """Derives the single-field getters from ``get_snapshot``."""

    def get_snapshot(self, user_id: str) -> Optional[StatusSnapshot]:
        raise NotImplementedError

    def get_status(self, user_id: str) -> str:
        snapshot = self.get_snapshot(user_id)
        return snapshot.status if snapshot else NOT_AVAILABLE

    def get_status_memo(self, user_id: str) -> Optional[str]:
        snapshot = self.get_snapshot(user_id)
        return (snapshot.memo or None) if snapshot else None

    def get_status_timestamp(self, user_id: str) -> Optional[datetime]:
        snapshot = self.get_snapshot(user_id)
        return snapshot.timestamp if snapshot else None


class _SqliteBackend:
    """Shares one connection between threads behind a lock."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._conn = db.open_database(self.db_path, check_same_thread=False)
        self._lock = threading.Lock()

    def _run(self, operation: str, func: Callable[[sqlite3.Connection], object]):
        with self._lock:
            try:
                return func(self._conn)
            except sqlite3.Error as exc:
                raise StoreError(f"SQLite {operation} failed: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class SqliteSessionStore(_SqliteBackend):
    """Sessions and the user directory kept in a local SQLite file."""

    def load(self, user_id: str, day: date) -> Optional[ActiveTimeEntry]:
        return self._run("load", lambda conn: db.fetch_entry(conn, user_id, day))

    def save(self, entry: ActiveTimeEntry) -> None:
        self.save_many([entry])

    def save_many(self, entries: Iterable[ActiveTimeEntry]) -> None:
        batch = list(entries)
        if not batch:
            return

        def _write(conn: sqlite3.Connection) -> None:
            with db.transaction(conn):
                db.upsert_sessions(conn, batch)

        self._run("save", _write)
        logger.debug("Saved %d active-time entries.", len(batch))

    def delete_session(self, user_id: str, day: date, session_id: str) -> None:
        try:
            self._run(
                "delete",
                lambda conn: db.delete_session(conn, user_id, day, session_id),
            )
        except ValueError as exc:
            raise SessionNotFoundError(str(exc)) from exc

    def list_known_users(self) -> list[User]:
        return self._run("user listing", db.fetch_users)

    def add_user(self, user: User) -> None:
        self._run("user insert", lambda conn: db.insert_user(conn, user))


class SqliteStatusStore(SnapshotStatusMixin, _SqliteBackend):
    """Latest status per user plus an append-only history."""

    def __init__(
        self, db_path: Path, *, clock: Callable[[], datetime] = datetime.now
    ) -> None:
        super().__init__(db_path)
        self._clock = clock

    def get_snapshot(self, user_id: str) -> Optional[StatusSnapshot]:
        return self._run("status read", lambda conn: db.fetch_status(conn, user_id))

    def update_status(
        self, user_id: str, status: str, memo: Optional[str] = None
    ) -> StatusSnapshot:
        snapshot = StatusSnapshot(
            status=validate_status(status),
            timestamp=self._clock(),
            memo=normalize_memo(memo),
        )
        self._run("status write", lambda conn: db.upsert_status(conn, user_id, snapshot))
        logger.info("Status for %s set to %s (%s)", user_id, status, snapshot.memo or "-")
        return snapshot

    def get_status_history(
        self, user_id: str, day: Optional[date] = None
    ) -> list[StatusSnapshot]:
        return self._run(
            "history read",
            lambda conn: db.fetch_status_history(conn, user_id, day),
        )


def open_stores(settings: BackendSettings) -> tuple[SessionStore, StatusStore]:
    """Build the session and status stores for the configured backend."""
    if settings.backend == "rest":
        from .rest import RestClient, RestSessionStore, RestStatusStore

        client = RestClient(
            settings.rest_url or "",
            settings.rest_api_key or "",
            timeout=settings.request_timeout,
        )
        return RestSessionStore(client), RestStatusStore(client)

    db_path = settings.resolved_db_path()
    return SqliteSessionStore(db_path), SqliteStatusStore(db_path)
