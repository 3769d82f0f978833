"""Read-side views over derived active time."""

from __future__ import annotations

from datetime import date, datetime
from typing import Callable

from .deriver import ActiveTimeDeriver
from .models import ACTIVE, DailyActiveTime, User
from .reporting import format_duration
from .store import StatusStore


class ActiveTimeQueries:
    """Totals, live elapsed time and currently active users.

    Nothing here raises for missing data: an unknown user-day is worth zero
    seconds and has no sessions.
    """

    format_duration = staticmethod(format_duration)

    def __init__(
        self,
        deriver: ActiveTimeDeriver,
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.deriver = deriver
        self._clock = clock

    @property
    def status_store(self) -> StatusStore:
        return self.deriver.status_store

    def list_users(self) -> list[User]:
        return self.deriver.session_store.list_known_users()

    def get_user_active_time_for_date(self, user_id: str, day: date) -> int:
        entry = self.deriver.get_entry(user_id, day)
        if entry is None:
            return 0

        total = 0
        live_session_counted = False
        for session in entry.sessions:
            if not session.is_open:
                total += session.duration_seconds
            elif not live_session_counted and self.is_user_currently_active(user_id):
                total += session.elapsed_seconds(self._clock())
                live_session_counted = True
        return max(0, total)

    def get_all_users_active_time_for_date(self, day: date) -> list[DailyActiveTime]:
        rows: list[DailyActiveTime] = []
        for user in self.list_users():
            entry = self.deriver.get_entry(user.id, day)
            rows.append(
                DailyActiveTime(
                    user_id=user.id,
                    user_name=user.name,
                    active_seconds=self.get_user_active_time_for_date(user.id, day),
                    date=day,
                    sessions=list(entry.sessions) if entry else [],
                )
            )
        return rows

    def is_user_currently_active(self, user_id: str) -> bool:
        return self.status_store.get_status(user_id) == ACTIVE

    def get_current_active_users(self) -> list[User]:
        return [user for user in self.list_users() if self.is_user_currently_active(user.id)]
