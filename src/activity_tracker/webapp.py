"""FastAPI application exposing statuses and derived active time."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Dict, Iterator, Literal, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict

from .config import BackendSettings, TrackerSettings
from .deriver import ActiveTimeDeriver
from .models import ActiveTimeSession, DailyActiveTime, StatusSnapshot, User
from .normalization import compose_memo, split_memo
from .queries import ActiveTimeQueries
from .reporting import format_duration
from .scheduler import TrackerRunner
from .store import (
    SessionNotFoundError,
    SessionStore,
    StatusStore,
    StoreError,
    open_stores,
)

logger = logging.getLogger(__name__)


class StatusUpdate(BaseModel):
    status: Literal["active", "available-for-work", "not-available"]
    memo: Optional[str] = None
    project: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class SessionMemoUpdate(BaseModel):
    memo: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


def create_app(
    *,
    settings: Optional[TrackerSettings] = None,
    backend: Optional[BackendSettings] = None,
    session_store: Optional[SessionStore] = None,
    status_store: Optional[StatusStore] = None,
) -> FastAPI:
    """Instantiate the FastAPI application."""
    resolved_settings = settings or TrackerSettings()
    resolved_backend = backend or BackendSettings.from_env()
    if session_store is None or status_store is None:
        session_store, status_store = open_stores(resolved_backend)

    deriver = ActiveTimeDeriver(status_store, session_store, resolved_settings)
    queries = ActiveTimeQueries(deriver)
    runner = TrackerRunner(deriver)

    app = FastAPI(title="Activity Tracker", version="0.3.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.deriver = deriver
    app.state.queries = queries
    app.state.tracker_runner = runner

    @app.on_event("startup")
    async def _startup() -> None:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
        runner.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        runner.stop()
        session_store.close()
        status_store.close()

    @app.get("/api/status")
    def status(request: Request) -> Dict[str, Any]:
        return {
            "tracker_running": request.app.state.tracker_runner.is_running(),
            "backend": resolved_backend.backend,
            "poll_seconds": resolved_settings.poll_interval.total_seconds(),
            "refresh_seconds": resolved_settings.refresh_interval.total_seconds(),
        }

    @app.get("/api/users")
    def users(request: Request) -> Dict[str, Any]:
        queries: ActiveTimeQueries = request.app.state.queries
        with _store_errors():
            payload = [
                _user_payload(user, queries.status_store.get_snapshot(user.id))
                for user in queries.list_users()
            ]
        return {"users": payload}

    @app.put("/api/users/{user_id}/status")
    def update_status(user_id: str, payload: StatusUpdate, request: Request) -> Dict[str, Any]:
        queries: ActiveTimeQueries = request.app.state.queries
        with _store_errors():
            _require_user(queries, user_id)
            snapshot = queries.status_store.update_status(
                user_id, payload.status, compose_memo(payload.project, payload.memo)
            )
        return _snapshot_payload(snapshot)

    @app.get("/api/users/{user_id}/status-history")
    def status_history(
        user_id: str,
        request: Request,
        date: Optional[str] = Query(
            default=None,
            description="Only include changes made on this YYYY-MM-DD date.",
        ),
    ) -> Dict[str, Any]:
        queries: ActiveTimeQueries = request.app.state.queries
        target_day = _parse_date(date) if date else None
        with _store_errors():
            history = queries.status_store.get_status_history(user_id, target_day)
        return {
            "user_id": user_id,
            "history": [_snapshot_payload(snapshot) for snapshot in history],
        }

    @app.get("/api/active-users")
    def active_users(request: Request) -> Dict[str, Any]:
        queries: ActiveTimeQueries = request.app.state.queries
        with _store_errors():
            active = queries.get_current_active_users()
            payload = [
                _user_payload(user, queries.status_store.get_snapshot(user.id))
                for user in active
            ]
        return {"users": payload}

    @app.get("/api/active-time")
    def active_time(
        request: Request,
        date: Optional[str] = Query(
            default=None,
            description="Target date in YYYY-MM-DD format.",
        ),
    ) -> Dict[str, Any]:
        queries: ActiveTimeQueries = request.app.state.queries
        target_day = _parse_date(date)
        with _store_errors():
            rows = queries.get_all_users_active_time_for_date(target_day)
        total = sum(row.active_seconds for row in rows)
        return {
            "date": target_day.isoformat(),
            "total_seconds": total,
            "total_formatted": format_duration(total),
            "users": [_daily_payload(row) for row in rows],
        }

    @app.get("/api/users/{user_id}/active-time")
    def user_active_time(
        user_id: str,
        request: Request,
        date: Optional[str] = Query(
            default=None,
            description="Target date in YYYY-MM-DD format.",
        ),
    ) -> Dict[str, Any]:
        queries: ActiveTimeQueries = request.app.state.queries
        target_day = _parse_date(date)
        with _store_errors():
            seconds = queries.get_user_active_time_for_date(user_id, target_day)
            is_active = queries.is_user_currently_active(user_id)
        return {
            "user_id": user_id,
            "date": target_day.isoformat(),
            "active_seconds": seconds,
            "formatted": format_duration(seconds),
            "is_active": is_active,
        }

    @app.patch("/api/users/{user_id}/sessions/{session_id}")
    def update_session(
        user_id: str,
        session_id: str,
        payload: SessionMemoUpdate,
        request: Request,
        date: Optional[str] = Query(default=None, description="Day the session opened on."),
    ) -> Dict[str, Any]:
        deriver: ActiveTimeDeriver = request.app.state.deriver
        target_day = _parse_date(date)
        with _store_errors():
            try:
                session = deriver.update_session_memo(
                    user_id, target_day, session_id, payload.memo
                )
            except SessionNotFoundError as exc:
                raise HTTPException(status_code=404, detail="Session not found") from exc
        return _session_payload(session)

    @app.delete("/api/users/{user_id}/sessions/{session_id}")
    def delete_session(
        user_id: str,
        session_id: str,
        request: Request,
        date: Optional[str] = Query(default=None, description="Day the session opened on."),
    ) -> Dict[str, Any]:
        deriver: ActiveTimeDeriver = request.app.state.deriver
        target_day = _parse_date(date)
        with _store_errors():
            try:
                deriver.delete_session(user_id, target_day, session_id)
            except SessionNotFoundError as exc:
                raise HTTPException(status_code=404, detail="Session not found") from exc
            entry = deriver.get_entry(user_id, target_day)
        return {
            "deleted": session_id,
            "total_seconds": entry.total_seconds if entry else 0,
        }

    return app


@contextmanager
def _store_errors() -> Iterator[None]:
    """Translate backend failures into 503 responses."""
    try:
        yield
    except StoreError as exc:
        logger.error("Storage backend failure: %s", exc)
        raise HTTPException(status_code=503, detail="Storage backend unavailable") from exc


def _parse_date(value: Optional[str]) -> date:
    if not value:
        return datetime.now().date()
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid date format") from exc


def _require_user(queries: ActiveTimeQueries, user_id: str) -> None:
    if not any(user.id == user_id for user in queries.list_users()):
        raise HTTPException(status_code=404, detail="User not found")


def _user_payload(user: User, snapshot: Optional[StatusSnapshot]) -> Dict[str, Any]:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role,
        "status": _snapshot_payload(snapshot) if snapshot else None,
        "is_active": bool(snapshot and snapshot.status == "active"),
    }


def _snapshot_payload(snapshot: StatusSnapshot) -> Dict[str, Any]:
    project, description = split_memo(snapshot.memo)
    return {
        "status": snapshot.status,
        "memo": snapshot.memo,
        "project": project,
        "description": description,
        "timestamp": snapshot.timestamp.isoformat(),
    }


def _session_payload(session: ActiveTimeSession) -> Dict[str, Any]:
    project, description = split_memo(session.memo)
    return {
        "id": session.id,
        "start_time": session.start_time.isoformat(),
        "end_time": session.end_time.isoformat() if session.end_time else None,
        "duration_seconds": session.duration_seconds,
        "duration_formatted": format_duration(session.duration_seconds),
        "memo": session.memo,
        "project": project,
        "description": description,
        "is_open": session.is_open,
    }


def _daily_payload(row: DailyActiveTime) -> Dict[str, Any]:
    return {
        "user_id": row.user_id,
        "user_name": row.user_name,
        "date": row.date.isoformat(),
        "active_seconds": row.active_seconds,
        "active_formatted": format_duration(row.active_seconds),
        "sessions": [_session_payload(session) for session in row.sessions],
    }
