"""Derives active-time sessions from the status each user reports."""

from __future__ import annotations

import logging
import threading
from datetime import date, datetime
from typing import Callable, Iterable, Optional

from .config import TrackerSettings
from .models import ACTIVE, ActiveTimeEntry, ActiveTimeSession
from .normalization import normalize_memo
from .store import SessionNotFoundError, SessionStore, StatusStore, StoreError

logger = logging.getLogger(__name__)

EntryKey = tuple[str, date]
Observer = Callable[[], None]


class ActiveTimeDeriver:
    """Watches statuses and opens/closes one session per active stretch.

    Every poll compares each user's status with the previous observation.
    Entering ``active`` opens a session, leaving it closes the open one, and a
    new memo on an ongoing ``active`` status closes the session and reopens it
    under the new memo. Memos are compared with the last observed status memo,
    so an admin edit to an open session's memo is kept until the user reports
    a different one. All entries touched in a cycle are written together;
    when the write fails nothing is committed in memory, including the
    observed statuses, so the next cycle sees the same edges again.
    """

    def __init__(
        self,
        status_store: StatusStore,
        session_store: SessionStore,
        settings: Optional[TrackerSettings] = None,
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.status_store = status_store
        self.session_store = session_store
        self.settings = settings or TrackerSettings()
        self._clock = clock
        self._lock = threading.RLock()
        self._cycle_guard = threading.Lock()
        self._entries: dict[EntryKey, ActiveTimeEntry] = {}
        self._open_days: dict[str, date] = {}
        self._last_observed: dict[str, str] = {}
        self._last_memo: dict[str, Optional[str]] = {}
        self._observers: list[Observer] = []

    def subscribe(self, observer: Observer) -> None:
        self._observers.append(observer)

    def last_observed_status(self, user_id: str) -> Optional[str]:
        with self._lock:
            return self._last_observed.get(user_id)

    def check_status_changes(self) -> bool:
        """Run one poll cycle; returns True when sessions were changed."""
        if not self._cycle_guard.acquire(blocking=False):
            logger.debug("Previous status check still running; skipping this tick.")
            return False
        try:
            with self._lock:
                changed = self._check_locked()
        finally:
            self._cycle_guard.release()
        if changed:
            self._notify()
        return changed

    def refresh_live_durations(self) -> None:
        """Write the running elapsed time into every open session."""
        now = self._clock()
        with self._lock:
            for user_id, day in self._open_days.items():
                entry = self._entries.get((user_id, day))
                session = entry.open_session() if entry else None
                if session is not None:
                    session.duration_seconds = session.elapsed_seconds(now)

    def get_entry(self, user_id: str, day: date) -> Optional[ActiveTimeEntry]:
        """Return a copy of the cached entry for a user-day, or load it from the store."""
        with self._lock:
            cached = self._entries.get((user_id, day))
            if cached is not None:
                return cached.copy()
        try:
            return self.session_store.load(user_id, day)
        except StoreError:
            logger.exception("Failed to load active time for %s on %s", user_id, day)
            return None

    def update_session_memo(
        self, user_id: str, day: date, session_id: str, memo: Optional[str]
    ) -> ActiveTimeSession:
        with self._lock:
            entry = self._working_entry(user_id, day, {})
            session = entry.find_session(session_id)
            if session is None:
                raise SessionNotFoundError(f"No session found for id={session_id}")
            session.memo = normalize_memo(memo)
            entry.recalculate_total()
            self.session_store.save(entry)
            self._commit({entry.key: entry})
        self._notify()
        return session

    def delete_session(self, user_id: str, day: date, session_id: str) -> None:
        with self._lock:
            entry = self._working_entry(user_id, day, {})
            session = entry.find_session(session_id)
            if session is None:
                raise SessionNotFoundError(f"No session found for id={session_id}")
            self.session_store.delete_session(user_id, day, session_id)
            entry.sessions.remove(session)
            entry.recalculate_total()
            self._commit({entry.key: entry})
        logger.info("Deleted session %s for %s on %s", session_id, user_id, day)
        self._notify()

    def _check_locked(self) -> bool:
        now = self._clock()
        today = now.date()
        pending: dict[EntryKey, ActiveTimeEntry] = {}
        observed: dict[str, str] = {}
        memos: dict[str, Optional[str]] = {}

        try:
            for user in self.session_store.list_known_users():
                current = self.status_store.get_status(user.id)
                memo = self.status_store.get_status_memo(user.id)
                previous = self._last_observed.get(user.id)
                memos[user.id] = memo

                if previous != current:
                    if previous == ACTIVE and current != ACTIVE:
                        self._close_session(user.id, today, now, pending)
                    if current == ACTIVE and previous != ACTIVE:
                        self._open_session(user.id, today, now, memo, pending)
                    observed[user.id] = current
                elif current == ACTIVE and memo and memo != self._last_memo.get(user.id):
                    self._split_on_memo_change(user.id, today, now, memo, pending)

            if pending:
                self.session_store.save_many(pending.values())
        except StoreError:
            logger.exception("Status check failed; will retry on the next cycle.")
            self._forget(pending)
            return False

        self._commit(pending)
        self._last_observed.update(observed)
        self._last_memo.update(memos)
        return bool(pending)

    def _open_session(
        self,
        user_id: str,
        today: date,
        now: datetime,
        memo: Optional[str],
        pending: dict[EntryKey, ActiveTimeEntry],
    ) -> None:
        if self._find_open(user_id, today, pending) is not None:
            logger.debug("Session already open for %s; not opening another.", user_id)
            return
        label = memo or self.settings.default_memo
        entry = self._working_entry(user_id, today, pending)
        entry.sessions.append(ActiveTimeSession(start_time=now, memo=label))
        logger.info("Opened active session for %s (%s)", user_id, label)

    def _close_session(
        self,
        user_id: str,
        today: date,
        now: datetime,
        pending: dict[EntryKey, ActiveTimeEntry],
    ) -> None:
        found = self._find_open(user_id, today, pending)
        if found is None:
            logger.debug("No open session to close for %s.", user_id)
            return
        entry = self._working_entry(user_id, found.date, pending)
        session = entry.open_session()
        if session is None:
            return
        session.close(now)
        entry.recalculate_total()
        logger.info(
            "Closed active session for %s after %ds", user_id, session.duration_seconds
        )

    def _split_on_memo_change(
        self,
        user_id: str,
        today: date,
        now: datetime,
        memo: str,
        pending: dict[EntryKey, ActiveTimeEntry],
    ) -> None:
        found = self._find_open(user_id, today, pending)
        if found is None:
            return
        session = found.open_session()
        if session is None or session.memo == memo:
            return
        self._close_session(user_id, today, now, pending)
        self._open_session(user_id, today, now, memo, pending)

    def _find_open(
        self, user_id: str, today: date, pending: dict[EntryKey, ActiveTimeEntry]
    ) -> Optional[ActiveTimeEntry]:
        """Locate the entry holding the user's open session, without copying it."""
        day = self._open_days.get(user_id, today)
        entry = pending.get((user_id, day)) or self._cached_entry(user_id, day)
        if entry is not None and entry.open_session() is not None:
            return entry
        return None

    def _cached_entry(self, user_id: str, day: date) -> Optional[ActiveTimeEntry]:
        key = (user_id, day)
        if key not in self._entries:
            loaded = self.session_store.load(user_id, day)
            if loaded is None:
                return None
            self._entries[key] = loaded
            if loaded.open_session() is not None:
                self._open_days.setdefault(user_id, day)
        return self._entries[key]

    def _working_entry(
        self, user_id: str, day: date, pending: dict[EntryKey, ActiveTimeEntry]
    ) -> ActiveTimeEntry:
        """Return a mutable copy of the entry that is only committed after a save."""
        key = (user_id, day)
        if key not in pending:
            cached = self._cached_entry(user_id, day)
            pending[key] = (
                cached.copy() if cached else ActiveTimeEntry(user_id=user_id, date=day)
            )
        return pending[key]

    def _forget(self, keys: Iterable[EntryKey]) -> None:
        """Drop cached entries so the next cycle reloads them from the store."""
        for user_id, day in keys:
            self._entries.pop((user_id, day), None)
            if self._open_days.get(user_id) == day:
                del self._open_days[user_id]

    def _commit(self, entries: dict[EntryKey, ActiveTimeEntry]) -> None:
        for key, entry in entries.items():
            self._entries[key] = entry
            if entry.open_session() is not None:
                self._open_days[entry.user_id] = entry.date
            elif self._open_days.get(entry.user_id) == entry.date:
                del self._open_days[entry.user_id]

    def _notify(self) -> None:
        for observer in list(self._observers):
            try:
                observer()
            except Exception:
                logger.exception("Active time observer failed.")
