"""Session and status stores backed by a hosted PostgREST table API."""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Callable, Iterable, Optional

import httpx

from .db import DATE_FMT
from .models import ActiveTimeEntry, ActiveTimeSession, StatusSnapshot, User
from .normalization import normalize_memo
from .store import (
    SessionNotFoundError,
    SnapshotStatusMixin,
    StoreError,
    validate_status,
)

logger = logging.getLogger(__name__)

SESSIONS_TABLE = "active_time_sessions"
STATUS_TABLE = "user_status"
USERS_TABLE = "users"


class RestClient:
    """Thin wrapper around ``httpx.Client`` speaking PostgREST conventions."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url.rstrip("/") + "/rest/v1",
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def request(
        self,
        method: str,
        table: str,
        *,
        params: Optional[dict[str, str]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> Any:
        headers = {"Prefer": prefer} if prefer else None
        try:
            response = self._client.request(
                method, f"/{table}", params=params, json=json, headers=headers
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise StoreError(
                f"{method} {table} failed with HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise StoreError(f"{method} {table} failed: {exc}") from exc
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            logger.warning("Ignoring non-JSON response from %s %s", method, table)
            return None

    def close(self) -> None:
        self._client.close()


def _rows(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        return [row for row in payload if isinstance(row, dict)]
    return []


class RestSessionStore:
    """Sessions and users kept in the hosted ``active_time_sessions`` table."""

    def __init__(self, client: RestClient) -> None:
        self._client = client

    def load(self, user_id: str, day: date) -> Optional[ActiveTimeEntry]:
        rows = _rows(
            self._client.request(
                "GET",
                SESSIONS_TABLE,
                params={
                    "select": "*",
                    "user_id": f"eq.{user_id}",
                    "date": f"eq.{day.strftime(DATE_FMT)}",
                    "order": "start_time.asc",
                },
            )
        )
        if not rows:
            return None
        entry = ActiveTimeEntry(user_id=user_id, date=day)
        for row in rows:
            session = _row_to_session(row)
            if session is not None:
                entry.sessions.append(session)
        entry.recalculate_total()
        return entry

    def save(self, entry: ActiveTimeEntry) -> None:
        self.save_many([entry])

    def save_many(self, entries: Iterable[ActiveTimeEntry]) -> None:
        payload = [
            {
                "id": session.id,
                "user_id": entry.user_id,
                "date": entry.date.strftime(DATE_FMT),
                "start_time": session.start_time.isoformat(),
                "end_time": session.end_time.isoformat() if session.end_time else None,
                "duration_seconds": session.duration_seconds,
                "memo": session.memo,
            }
            for entry in entries
            for session in entry.sessions
        ]
        if not payload:
            return
        # One request is one statement on the server side, so the batch is atomic.
        self._client.request(
            "POST",
            SESSIONS_TABLE,
            params={"on_conflict": "id"},
            json=payload,
            prefer="resolution=merge-duplicates,return=minimal",
        )

    def delete_session(self, user_id: str, day: date, session_id: str) -> None:
        deleted = _rows(
            self._client.request(
                "DELETE",
                SESSIONS_TABLE,
                params={
                    "id": f"eq.{session_id}",
                    "user_id": f"eq.{user_id}",
                    "date": f"eq.{day.strftime(DATE_FMT)}",
                },
                prefer="return=representation",
            )
        )
        if not deleted:
            raise SessionNotFoundError(f"No session found for id={session_id}")

    def list_known_users(self) -> list[User]:
        rows = _rows(
            self._client.request(
                "GET",
                USERS_TABLE,
                params={"select": "id,name,email,role", "order": "name.asc"},
            )
        )
        return [
            User(
                id=str(row["id"]),
                name=row.get("name") or str(row["id"]),
                email=row.get("email"),
                role=row.get("role") or "member",
            )
            for row in rows
            if row.get("id") is not None
        ]

    def add_user(self, user: User) -> None:
        self._client.request(
            "POST",
            USERS_TABLE,
            params={"on_conflict": "id"},
            json={"id": user.id, "name": user.name, "email": user.email, "role": user.role},
            prefer="resolution=merge-duplicates,return=minimal",
        )

    def close(self) -> None:
        self._client.close()


class RestStatusStore(SnapshotStatusMixin):
    """Statuses in the hosted ``user_status`` table; every row is history."""

    def __init__(
        self, client: RestClient, *, clock: Callable[[], datetime] = datetime.now
    ) -> None:
        self._client = client
        self._clock = clock

    def get_snapshot(self, user_id: str) -> Optional[StatusSnapshot]:
        rows = _rows(
            self._client.request(
                "GET",
                STATUS_TABLE,
                params={
                    "select": "status,memo,timestamp",
                    "user_id": f"eq.{user_id}",
                    "order": "timestamp.desc",
                    "limit": "1",
                },
            )
        )
        return _row_to_snapshot(rows[0]) if rows else None

    def update_status(
        self, user_id: str, status: str, memo: Optional[str] = None
    ) -> StatusSnapshot:
        snapshot = StatusSnapshot(
            status=validate_status(status),
            timestamp=self._clock(),
            memo=normalize_memo(memo),
        )
        self._client.request(
            "POST",
            STATUS_TABLE,
            json={
                "user_id": user_id,
                "status": snapshot.status,
                "memo": snapshot.memo,
                "timestamp": snapshot.timestamp.isoformat(),
            },
            prefer="return=minimal",
        )
        logger.info("Status for %s set to %s (%s)", user_id, status, snapshot.memo or "-")
        return snapshot

    def get_status_history(
        self, user_id: str, day: Optional[date] = None
    ) -> list[StatusSnapshot]:
        params = {
            "select": "status,memo,timestamp",
            "user_id": f"eq.{user_id}",
            "order": "timestamp.asc",
        }
        if day is not None:
            params["timestamp"] = f"like.{day.strftime(DATE_FMT)}*"
        rows = _rows(self._client.request("GET", STATUS_TABLE, params=params))
        snapshots = [_row_to_snapshot(row) for row in rows]
        return [snapshot for snapshot in snapshots if snapshot is not None]

    def close(self) -> None:
        self._client.close()


def _parse_timestamp(value: Any) -> datetime:
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def _row_to_session(row: dict[str, Any]) -> Optional[ActiveTimeSession]:
    try:
        return ActiveTimeSession(
            id=str(row["id"]),
            start_time=_parse_timestamp(row["start_time"]),
            end_time=_parse_timestamp(row["end_time"]) if row.get("end_time") else None,
            duration_seconds=max(0, int(row.get("duration_seconds") or 0)),
            memo=row.get("memo"),
        )
    except (KeyError, TypeError, ValueError):
        logger.warning("Skipping malformed session row: %r", row)
        return None


def _row_to_snapshot(row: dict[str, Any]) -> Optional[StatusSnapshot]:
    try:
        return StatusSnapshot(
            status=row["status"],
            timestamp=_parse_timestamp(row["timestamp"]),
            memo=row.get("memo"),
        )
    except (KeyError, TypeError, ValueError):
        logger.warning("Skipping malformed status row: %r", row)
        return None
