"""Configuration models and helpers for the activity tracker."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Optional

from platformdirs import user_data_path


APP_NAME = "ActivityTracker"
BACKENDS = ("sqlite", "rest")


def get_data_dir() -> Path:
    """Return the per-user directory holding the database and logs."""
    return user_data_path(APP_NAME, appauthor=False, roaming=True, ensure_exists=True)


def get_db_path() -> Path:
    return get_data_dir() / "activity.sqlite3"


def get_log_path() -> Path:
    return get_data_dir() / "tracker.log"


@dataclass(slots=True)
class TrackerSettings:
    """Runtime configuration for the active-time deriver."""

    poll_interval: timedelta = timedelta(seconds=1)
    refresh_interval: timedelta = timedelta(milliseconds=500)
    default_memo: str = "Working"

    @classmethod
    def from_intervals(
        cls,
        poll_seconds: float,
        refresh_seconds: float | None = None,
        default_memo: str | None = None,
    ) -> "TrackerSettings":
        refresh = refresh_seconds if refresh_seconds is not None else min(poll_seconds, 0.5)
        return cls(
            poll_interval=timedelta(seconds=poll_seconds),
            refresh_interval=timedelta(seconds=refresh),
            default_memo=default_memo or "Working",
        )


@dataclass(slots=True)
class BackendSettings:
    """Which storage backend holds users, statuses and sessions."""

    backend: str = "sqlite"
    db_path: Optional[Path] = None
    rest_url: Optional[str] = None
    rest_api_key: Optional[str] = None
    request_timeout: float = 10.0

    def __post_init__(self) -> None:
        self.backend = self.backend.strip().lower()
        if self.backend not in BACKENDS:
            raise ValueError(
                f"Unknown backend {self.backend!r}; expected one of {', '.join(BACKENDS)}"
            )
        if self.backend == "rest" and not (self.rest_url and self.rest_api_key):
            raise ValueError("The rest backend needs both a URL and an API key.")

    def resolved_db_path(self) -> Path:
        return Path(self.db_path) if self.db_path else get_db_path()

    @classmethod
    def from_env(cls, db_path: Optional[Path] = None) -> "BackendSettings":
        env_db = os.getenv("ACTIVITY_TRACKER_DB")
        return cls(
            backend=os.getenv("ACTIVITY_TRACKER_BACKEND", "sqlite"),
            db_path=db_path or (Path(env_db) if env_db else None),
            rest_url=os.getenv("ACTIVITY_TRACKER_REST_URL"),
            rest_api_key=os.getenv("ACTIVITY_TRACKER_REST_KEY"),
            request_timeout=float(os.getenv("ACTIVITY_TRACKER_TIMEOUT", "10")),
        )
