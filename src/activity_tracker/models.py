"""Domain models for statuses and derived active-time sessions."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Literal, Optional


ACTIVE = "active"
AVAILABLE = "available-for-work"
NOT_AVAILABLE = "not-available"

UserStatus = Literal["active", "available-for-work", "not-available"]
STATUSES: tuple[str, ...] = (ACTIVE, AVAILABLE, NOT_AVAILABLE)

ROLES: tuple[str, ...] = ("admin", "member", "viewer")

_ONE_SECOND = timedelta(seconds=1)


def elapsed_seconds(start: datetime, end: datetime) -> int:
    """Whole seconds between two instants, floored and never negative."""
    return max(0, (end - start) // _ONE_SECOND)


def new_session_id() -> str:
    return uuid.uuid4().hex


@dataclass(slots=True)
class User:
    id: str
    name: str
    role: str = "member"
    email: Optional[str] = None


@dataclass(slots=True)
class StatusSnapshot:
    """Latest status reported for a user."""

    status: str
    timestamp: datetime
    memo: Optional[str] = None


@dataclass(slots=True)
class ActiveTimeSession:
    """A contiguous stretch of ``active`` status under a single memo."""

    start_time: datetime
    end_time: Optional[datetime] = None
    duration_seconds: int = 0
    memo: Optional[str] = None
    id: str = field(default_factory=new_session_id)

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    def elapsed_seconds(self, now: datetime) -> int:
        return elapsed_seconds(self.start_time, now)

    def close(self, now: datetime) -> None:
        self.end_time = now
        self.duration_seconds = elapsed_seconds(self.start_time, now)


@dataclass(slots=True)
class ActiveTimeEntry:
    """All sessions recorded for one user on one calendar day.

    ``total_seconds`` only ever counts closed sessions; call
    :meth:`recalculate_total` after touching ``sessions`` directly.
    """

    user_id: str
    date: date
    sessions: list[ActiveTimeSession] = field(default_factory=list)
    total_seconds: int = 0

    @property
    def key(self) -> tuple[str, date]:
        return (self.user_id, self.date)

    def open_session(self) -> Optional[ActiveTimeSession]:
        for session in reversed(self.sessions):
            if session.is_open:
                return session
        return None

    def find_session(self, session_id: str) -> Optional[ActiveTimeSession]:
        for session in self.sessions:
            if session.id == session_id:
                return session
        return None

    def recalculate_total(self) -> int:
        self.total_seconds = sum(
            session.duration_seconds for session in self.sessions if not session.is_open
        )
        return self.total_seconds

    def copy(self) -> "ActiveTimeEntry":
        return ActiveTimeEntry(
            user_id=self.user_id,
            date=self.date,
            sessions=[replace(session) for session in self.sessions],
            total_seconds=self.total_seconds,
        )


@dataclass(slots=True)
class DailyActiveTime:
    """Per-user summary row for a single day."""

    user_id: str
    user_name: str
    active_seconds: int
    date: date
    sessions: list[ActiveTimeSession] = field(default_factory=list)
