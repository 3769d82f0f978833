"""
Tests for deriving active-time sessions from status changes.
"""
from datetime import date, datetime

import pytest

from activity_tracker.deriver import ActiveTimeDeriver
from activity_tracker.models import ActiveTimeEntry, ActiveTimeSession
from activity_tracker.store import SessionNotFoundError, SqliteSessionStore, StoreError

from conftest import FakeClock


def today(clock: FakeClock) -> date:
    return clock().date()


def assert_invariants(entry: ActiveTimeEntry) -> None:
    assert sum(1 for session in entry.sessions if session.is_open) <= 1
    assert entry.total_seconds == sum(
        session.duration_seconds for session in entry.sessions if session.end_time
    )
    for session in entry.sessions:
        if session.end_time:
            expected = max(0, int((session.end_time - session.start_time).total_seconds() // 1))
            assert session.duration_seconds == expected


class TestTransitions:
    """Opening and closing sessions on status edges."""

    def test_first_observation_of_active_opens_session(self, deriver, status_store, clock):
        status_store.update_status("u1", "active", "Writing docs")

        assert deriver.check_status_changes() is True

        entry = deriver.get_entry("u1", today(clock))
        assert entry is not None
        assert len(entry.sessions) == 1
        session = entry.sessions[0]
        assert session.is_open
        assert session.start_time == clock()
        assert session.memo == "Writing docs"
        assert session.duration_seconds == 0
        assert entry.total_seconds == 0

    def test_missing_memo_defaults_to_working(self, deriver, status_store, clock):
        status_store.update_status("u1", "active")
        deriver.check_status_changes()

        assert deriver.get_entry("u1", today(clock)).sessions[0].memo == "Working"

    def test_unknown_user_starts_as_not_available(self, deriver, clock):
        assert deriver.check_status_changes() is False
        assert deriver.last_observed_status("u1") == "not-available"
        assert deriver.get_entry("u1", today(clock)) is None

    def test_end_to_end_single_session(self, deriver, status_store, session_store, clock):
        status_store.update_status("u1", "not-available")
        deriver.check_status_changes()
        status_store.update_status("u1", "active", "X")
        deriver.check_status_changes()
        clock.advance(60)
        status_store.update_status("u1", "available-for-work")

        assert deriver.check_status_changes() is True

        entry = deriver.get_entry("u1", today(clock))
        assert len(entry.sessions) == 1
        session = entry.sessions[0]
        assert session.end_time == clock()
        assert session.duration_seconds == 60
        assert session.memo == "X"
        assert entry.total_seconds == 60
        assert_invariants(entry)

        persisted = session_store.load("u1", today(clock))
        assert persisted.total_seconds == 60
        assert persisted.sessions[0].id == session.id

    def test_polling_without_changes_is_a_no_op(self, deriver, status_store, clock):
        status_store.update_status("u1", "active", "X")
        deriver.check_status_changes()
        clock.advance(5)

        assert deriver.check_status_changes() is False
        assert deriver.check_status_changes() is False

        entry = deriver.get_entry("u1", today(clock))
        assert len(entry.sessions) == 1
        assert entry.total_seconds == 0

    def test_memo_change_splits_session(self, deriver, status_store, clock):
        status_store.update_status("u1", "active", "A")
        deriver.check_status_changes()
        clock.advance(30)
        status_store.update_status("u1", "active", "B")

        assert deriver.check_status_changes() is True

        entry = deriver.get_entry("u1", today(clock))
        first, second = entry.sessions
        assert first.memo == "A"
        assert first.end_time == clock()
        assert first.duration_seconds == 30
        assert second.memo == "B"
        assert second.is_open
        assert second.start_time == clock()
        assert entry.total_seconds == 30
        assert_invariants(entry)

    def test_same_memo_does_not_split(self, deriver, status_store, clock):
        status_store.update_status("u1", "active", "A")
        deriver.check_status_changes()
        clock.advance(30)
        status_store.update_status("u1", "active", "A")

        assert deriver.check_status_changes() is False
        assert len(deriver.get_entry("u1", today(clock)).sessions) == 1

    def test_clearing_memo_keeps_session(self, deriver, status_store, clock):
        status_store.update_status("u1", "active", "A")
        deriver.check_status_changes()
        status_store.update_status("u1", "active")

        assert deriver.check_status_changes() is False
        assert deriver.get_entry("u1", today(clock)).sessions[0].memo == "A"

    def test_rapid_flips_create_many_sessions(self, deriver, status_store, clock):
        for _ in range(3):
            status_store.update_status("u1", "active", "Task")
            deriver.check_status_changes()
            clock.advance(2)
            status_store.update_status("u1", "not-available")
            deriver.check_status_changes()
            clock.advance(1)

        entry = deriver.get_entry("u1", today(clock))
        assert [s.duration_seconds for s in entry.sessions] == [2, 2, 2]
        assert entry.total_seconds == 6
        assert_invariants(entry)

    def test_duration_is_floored(self, deriver, status_store, clock):
        status_store.update_status("u1", "active")
        deriver.check_status_changes()
        clock.advance(1.9)
        status_store.update_status("u1", "available-for-work")
        deriver.check_status_changes()

        assert deriver.get_entry("u1", today(clock)).sessions[0].duration_seconds == 1

    def test_clock_going_backwards_clamps_to_zero(self, deriver, status_store, clock):
        status_store.update_status("u1", "active")
        deriver.check_status_changes()
        clock.advance(-120)
        status_store.update_status("u1", "not-available")
        deriver.check_status_changes()

        session = deriver.get_entry("u1", clock().date()).sessions[0]
        assert session.duration_seconds == 0

    def test_users_are_tracked_independently(self, deriver, status_store, clock):
        status_store.update_status("u1", "active", "One")
        status_store.update_status("u2", "active", "Two")
        deriver.check_status_changes()
        clock.advance(10)
        status_store.update_status("u2", "not-available")
        deriver.check_status_changes()

        assert deriver.get_entry("u1", today(clock)).sessions[0].is_open
        assert deriver.get_entry("u2", today(clock)).total_seconds == 10

    def test_session_across_midnight_closes_in_opening_day(self, status_store, session_store):
        clock = FakeClock(datetime(2024, 5, 6, 23, 59, 30))
        status_store._clock = clock
        deriver = ActiveTimeDeriver(status_store, session_store, clock=clock)
        opened_on = clock().date()
        status_store.update_status("u1", "active", "Late shift")
        deriver.check_status_changes()
        clock.advance(60)
        status_store.update_status("u1", "not-available")
        deriver.check_status_changes()

        entry = deriver.get_entry("u1", opened_on)
        assert entry.sessions[0].duration_seconds == 60
        assert entry.total_seconds == 60
        assert deriver.get_entry("u1", clock().date()) is None

    def test_restart_continues_persisted_open_session(
        self, deriver, status_store, session_store, clock
    ):
        status_store.update_status("u1", "active", "X")
        deriver.check_status_changes()
        clock.advance(45)

        restarted = ActiveTimeDeriver(status_store, session_store, clock=clock)
        assert restarted.check_status_changes() is False

        entry = restarted.get_entry("u1", today(clock))
        assert len(entry.sessions) == 1
        assert entry.sessions[0].is_open


class TestLiveRefresh:
    """Display-only duration updates for open sessions."""

    def test_refresh_ticks_open_session_only(self, deriver, status_store, clock):
        status_store.update_status("u1", "active")
        deriver.check_status_changes()
        clock.advance(7)

        deriver.refresh_live_durations()

        entry = deriver.get_entry("u1", today(clock))
        assert entry.sessions[0].duration_seconds == 7
        assert entry.total_seconds == 0

    def test_close_after_refresh_uses_real_elapsed_time(self, deriver, status_store, clock):
        status_store.update_status("u1", "active")
        deriver.check_status_changes()
        clock.advance(3)
        deriver.refresh_live_durations()
        clock.advance(9)
        status_store.update_status("u1", "not-available")
        deriver.check_status_changes()

        entry = deriver.get_entry("u1", today(clock))
        assert entry.sessions[0].duration_seconds == 12
        assert entry.total_seconds == 12

    def test_returned_entry_is_a_snapshot(self, deriver, status_store, clock):
        status_store.update_status("u1", "active")
        deriver.check_status_changes()
        snapshot = deriver.get_entry("u1", today(clock))
        clock.advance(4)

        deriver.refresh_live_durations()
        snapshot.sessions.clear()

        assert snapshot.sessions == []
        assert deriver.get_entry("u1", today(clock)).sessions[0].duration_seconds == 4


class FlakySessionStore:
    """Delegates to a real store but can be told to fail writes."""

    def __init__(self, inner) -> None:
        self.inner = inner
        self.fail_saves = False

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def save_many(self, entries) -> None:
        if self.fail_saves:
            raise StoreError("disk full")
        self.inner.save_many(entries)


class TestPersistenceFailures:
    """A failed write commits nothing and is retried next cycle."""

    def test_failed_save_does_not_advance_edge_state(self, status_store, session_store, clock):
        flaky = FlakySessionStore(session_store)
        deriver = ActiveTimeDeriver(status_store, flaky, clock=clock)
        status_store.update_status("u1", "active", "X")
        flaky.fail_saves = True

        assert deriver.check_status_changes() is False
        assert deriver.last_observed_status("u1") is None
        assert deriver.get_entry("u1", today(clock)) is None

        flaky.fail_saves = False
        clock.advance(2)
        assert deriver.check_status_changes() is True

        entry = deriver.get_entry("u1", today(clock))
        assert len(entry.sessions) == 1
        assert entry.sessions[0].start_time == clock()
        assert deriver.last_observed_status("u1") == "active"

    def test_failed_close_keeps_cached_session_open(self, status_store, session_store, clock):
        flaky = FlakySessionStore(session_store)
        deriver = ActiveTimeDeriver(status_store, flaky, clock=clock)
        status_store.update_status("u1", "active")
        deriver.check_status_changes()
        clock.advance(20)
        status_store.update_status("u1", "not-available")
        flaky.fail_saves = True

        deriver.check_status_changes()

        entry = deriver.get_entry("u1", today(clock))
        assert entry.sessions[0].is_open
        assert entry.total_seconds == 0

        flaky.fail_saves = False
        clock.advance(5)
        deriver.check_status_changes()
        assert deriver.get_entry("u1", today(clock)).total_seconds == 25


class TestObserversAndGuards:
    def test_observers_only_fire_on_change(self, deriver, status_store):
        calls = []
        deriver.subscribe(lambda: calls.append("changed"))

        deriver.check_status_changes()
        assert calls == []

        status_store.update_status("u1", "active")
        deriver.check_status_changes()
        deriver.check_status_changes()
        assert calls == ["changed"]

    def test_failing_observer_does_not_break_cycle(self, deriver, status_store):
        def boom():
            raise RuntimeError("observer bug")

        deriver.subscribe(boom)
        status_store.update_status("u1", "active")

        assert deriver.check_status_changes() is True

    def test_overlapping_cycle_is_skipped(self, status_store, session_store, clock):
        nested_results = []

        class ReentrantStatusStore:
            def __getattr__(self, name):
                return getattr(status_store, name)

            def get_status(self, user_id):
                if not nested_results:
                    nested_results.append(deriver.check_status_changes())
                return status_store.get_status(user_id)

        deriver = ActiveTimeDeriver(ReentrantStatusStore(), session_store, clock=clock)
        status_store.update_status("u1", "active")

        assert deriver.check_status_changes() is True
        assert nested_results == [False]
        assert len(deriver.get_entry("u1", today(clock)).sessions) == 1


class TestAdminEdits:
    """Memo edits and deletes keep the totals consistent."""

    @pytest.fixture
    def closed_sessions(self, deriver, status_store, clock):
        for memo, seconds in (("A", 30), ("B", 90)):
            status_store.update_status("u1", "active", memo)
            deriver.check_status_changes()
            clock.advance(seconds)
            status_store.update_status("u1", "not-available")
            deriver.check_status_changes()
        return deriver.get_entry("u1", today(clock)).sessions

    def test_update_memo(self, deriver, session_store, clock, closed_sessions):
        target = closed_sessions[0]

        updated = deriver.update_session_memo("u1", today(clock), target.id, "  Reviewed  PR ")

        assert updated.memo == "Reviewed PR"
        entry = deriver.get_entry("u1", today(clock))
        assert entry.total_seconds == 120
        assert session_store.load("u1", today(clock)).sessions[0].memo == "Reviewed PR"

    def test_delete_recomputes_total(self, deriver, session_store, clock, closed_sessions):
        deriver.delete_session("u1", today(clock), closed_sessions[1].id)

        entry = deriver.get_entry("u1", today(clock))
        assert [s.memo for s in entry.sessions] == ["A"]
        assert entry.total_seconds == 30
        assert session_store.load("u1", today(clock)).total_seconds == 30

    def test_unknown_session_raises(self, deriver, clock, closed_sessions):
        with pytest.raises(SessionNotFoundError):
            deriver.update_session_memo("u1", today(clock), "missing", "x")
        with pytest.raises(SessionNotFoundError):
            deriver.delete_session("u1", today(clock), "missing")

    def test_deleting_open_session_allows_new_one(self, deriver, status_store, clock):
        status_store.update_status("u1", "active", "A")
        deriver.check_status_changes()
        open_id = deriver.get_entry("u1", today(clock)).sessions[0].id

        deriver.delete_session("u1", today(clock), open_id)
        status_store.update_status("u1", "not-available")
        deriver.check_status_changes()
        status_store.update_status("u1", "active", "B")
        deriver.check_status_changes()

        entry = deriver.get_entry("u1", today(clock))
        assert [s.memo for s in entry.sessions] == ["B"]
        assert isinstance(entry.sessions[0], ActiveTimeSession)

    def test_memo_edit_on_open_session_survives_next_poll(
        self, deriver, status_store, session_store, clock
    ):
        status_store.update_status("u1", "active", "X")
        deriver.check_status_changes()
        open_id = deriver.get_entry("u1", today(clock)).sessions[0].id

        deriver.update_session_memo("u1", today(clock), open_id, "Fixed typo")
        clock.advance(1)

        assert deriver.check_status_changes() is False
        entry = deriver.get_entry("u1", today(clock))
        assert [(s.id, s.memo, s.is_open) for s in entry.sessions] == [
            (open_id, "Fixed typo", True)
        ]
        assert session_store.load("u1", today(clock)).sessions[0].memo == "Fixed typo"

    def test_new_status_memo_after_edit_still_splits(self, deriver, status_store, clock):
        status_store.update_status("u1", "active", "X")
        deriver.check_status_changes()
        open_id = deriver.get_entry("u1", today(clock)).sessions[0].id
        deriver.update_session_memo("u1", today(clock), open_id, "Fixed typo")
        clock.advance(10)
        status_store.update_status("u1", "active", "Y")

        assert deriver.check_status_changes() is True

        entry = deriver.get_entry("u1", today(clock))
        assert [(s.memo, s.is_open) for s in entry.sessions] == [
            ("Fixed typo", False),
            ("Y", True),
        ]
        assert entry.total_seconds == 10
        assert_invariants(entry)


class TestSharedDatabase:
    """Two derivers writing to the same SQLite file."""

    @pytest.fixture
    def other_deriver(self, db_path, status_store, clock):
        store = SqliteSessionStore(db_path)
        yield ActiveTimeDeriver(status_store, store, clock=clock)
        store.close()

    def test_rejected_open_reloads_and_recovers(
        self, deriver, other_deriver, status_store, session_store, clock
    ):
        status_store.update_status("u1", "active", "X")
        deriver.check_status_changes()
        other_deriver.check_status_changes()
        clock.advance(5)
        status_store.update_status("u1", "not-available")
        deriver.check_status_changes()
        other_deriver.check_status_changes()
        clock.advance(5)
        status_store.update_status("u1", "active", "Y")
        deriver.check_status_changes()
        status_store.update_status("u2", "active", "Z")

        # The other writer already holds u1's open session for today.
        assert other_deriver.check_status_changes() is False
        assert other_deriver.last_observed_status("u2") == "not-available"

        clock.advance(1)
        assert other_deriver.check_status_changes() is True
        assert other_deriver.last_observed_status("u1") == "active"
        assert other_deriver.last_observed_status("u2") == "active"

        u1 = session_store.load("u1", today(clock))
        assert [(s.memo, s.is_open) for s in u1.sessions] == [("X", False), ("Y", True)]
        assert_invariants(u1)
        u2 = session_store.load("u2", today(clock))
        assert [(s.memo, s.is_open) for s in u2.sessions] == [("Z", True)]
        assert other_deriver.get_entry("u1", today(clock)).open_session().memo == "Y"
