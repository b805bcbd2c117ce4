import pytest

from ielts_core.errors import SessionConflict
from ielts_core.models import Module, SessionStatus


class TestAcquire:
    def test_acquire_creates_active_session(self, registry, clock):
        session = registry.acquire("user-1", Module.LISTENING, "t1", "attempt-1", 1800)

        assert session.is_active
        assert session.status is SessionStatus.NOT_STARTED
        assert (session.expires_at - session.started_at).total_seconds() == 1800
        assert session.started_at == clock()

    def test_second_acquire_conflicts_across_modules(self, registry):
        registry.acquire("user-1", Module.LISTENING, "t1", "attempt-1", 1800)

        with pytest.raises(SessionConflict) as excinfo:
            registry.acquire("user-1", Module.READING, "t2", "attempt-2", 3600)

        error = excinfo.value
        assert error.module == "LISTENING"
        assert error.attempt_id == "attempt-1"
        assert error.status_code == 409
        assert "active listening test session" in error.message

    def test_other_users_are_independent(self, registry):
        registry.acquire("user-1", Module.LISTENING, "t1", "attempt-1", 1800)
        registry.acquire("user-2", Module.LISTENING, "t1", "attempt-2", 1800)

    def test_stale_session_does_not_block(self, registry, store, clock):
        registry.acquire("user-1", Module.LISTENING, "t1", "attempt-1", 1800)
        clock.advance(seconds=1800)

        registry.acquire("user-1", Module.READING, "t2", "attempt-2", 3600)

        sessions, total = store.list_global_sessions("user-1", 0, 10)
        assert total == 2
        stale = next(s for s in sessions if s.module_attempt_id == "attempt-1")
        assert stale.status is SessionStatus.EXPIRED
        assert not stale.is_active

    def test_completed_session_releases_the_lock(self, registry):
        registry.acquire("user-1", Module.LISTENING, "t1", "attempt-1", 1800)
        registry.complete("user-1", "attempt-1")

        registry.acquire("user-1", Module.WRITING, "t3", "attempt-2", 3600)


class TestTransitions:
    def test_transitions_never_resurrect(self, registry, store):
        registry.acquire("user-1", Module.LISTENING, "t1", "attempt-1", 1800)
        assert registry.complete("user-1", "attempt-1") == 1

        assert registry.mark_in_progress("user-1", "attempt-1") == 0
        assert registry.abandon("user-1", "attempt-1") == 0
        sessions, _ = store.list_global_sessions("user-1", 0, 10)
        assert sessions[0].status is SessionStatus.COMPLETED

    def test_mark_in_progress(self, registry):
        registry.acquire("user-1", Module.LISTENING, "t1", "attempt-1", 1800)
        registry.mark_in_progress("user-1", "attempt-1")

        view = registry.active_session_for("user-1")
        assert view.session.status is SessionStatus.IN_PROGRESS


class TestActiveSession:
    def test_time_remaining_is_computed_at_read(self, registry, clock):
        registry.acquire("user-1", Module.LISTENING, "t1", "attempt-1", 1800)
        clock.advance(seconds=600)

        view = registry.active_session_for("user-1")

        assert view.time_remaining == 1200
        assert not view.is_expired
        assert view.state == "Active"
        assert view.to_dict()["module_attempt_id"] == "attempt-1"

    def test_last_second_is_still_active(self, registry, clock):
        registry.acquire("user-1", Module.LISTENING, "t1", "attempt-1", 1800)
        clock.advance(seconds=1799, milliseconds=500)

        view = registry.active_session_for("user-1")

        assert view is not None
        assert view.time_remaining == 0
        assert not view.is_expired
        assert view.state == "Active"

    def test_no_session(self, registry):
        assert registry.active_session_for("user-1") is None

    def test_expired_session_is_hidden_without_sweep(self, registry, clock):
        registry.acquire("user-1", Module.LISTENING, "t1", "attempt-1", 1800)
        clock.advance(seconds=1801)

        assert registry.active_session_for("user-1") is None
        view = registry.active_session_for("user-1", include_expired=True)
        assert view.is_expired
        assert view.time_remaining == 0
        assert view.state == "Expired"


class TestMaintenance:
    def test_sweep_expired(self, registry, clock):
        registry.acquire("user-1", Module.LISTENING, "t1", "attempt-1", 1800)
        registry.acquire("user-2", Module.READING, "t2", "attempt-2", 3600)
        clock.advance(seconds=2000)

        assert registry.sweep_expired() == 1
        assert registry.active_session_for("user-1", include_expired=True) is None
        assert registry.active_session_for("user-2") is not None

    def test_history_pagination(self, registry, clock):
        for i in range(5):
            registry.acquire("user-1", Module.LISTENING, "t1", f"attempt-{i}", 1800)
            registry.complete("user-1", f"attempt-{i}")
            clock.advance(minutes=1)

        history = registry.history("user-1", page=2, limit=2)

        assert [s.module_attempt_id for s in history["sessions"]] == ["attempt-2", "attempt-1"]
        assert history["pagination"] == {
            "total": 5,
            "page": 2,
            "limit": 2,
            "total_pages": 3,
            "has_next_page": True,
            "has_previous_page": True,
        }

    def test_force_end_all(self, registry):
        registry.acquire("user-1", Module.LISTENING, "t1", "attempt-1", 1800)

        assert registry.force_end_all("user-1", "Support request") == 1
        assert registry.active_session_for("user-1") is None
        registry.acquire("user-1", Module.READING, "t2", "attempt-2", 3600)
