"""Tests for the session manager."""

from __future__ import annotations

import pytest

from conftest import FakeClock
from provider_broker.shared.resilience.sessions import SessionConfig, SessionManager


def make_manager(clock: FakeClock, **overrides: float) -> SessionManager:
    return SessionManager(SessionConfig(**overrides), clock=clock.now)


class TestSessionLifecycle:
    def test_create_and_get(self, clock: FakeClock) -> None:
        sessions = make_manager(clock, session_timeout_minutes=30)
        sid = sessions.create_session("ocr", {"user": "u1"})
        assert sid.startswith("session-ocr-")

        session = sessions.get_session(sid)
        assert session is not None
        assert session.service_type == "ocr"
        assert session.metadata == {"user": "u1"}
        assert (session.expires_at - session.created_at).total_seconds() == 1800

    def test_ids_are_unique(self, clock: FakeClock) -> None:
        sessions = make_manager(clock)
        ids = {sessions.create_session("ai") for _ in range(50)}
        assert len(ids) == 50

    def test_unknown_or_malformed_ids(self, clock: FakeClock) -> None:
        sessions = make_manager(clock)
        assert sessions.get_session("nope") is None
        assert sessions.get_session("session-ocr-deadbeef") is None
        assert not sessions.destroy_session("session-")

    def test_expired_session_is_gone_on_read(self, clock: FakeClock) -> None:
        sessions = make_manager(clock, session_timeout_minutes=1)
        sid = sessions.create_session("ocr")
        clock.advance(59)
        assert sessions.get_session(sid) is not None
        clock.advance(1)  # now == expires_at
        assert sessions.get_session(sid) is None
        assert sessions.get_active_session_count("ocr") == 0

    def test_access_does_not_extend_expiry(self, clock: FakeClock) -> None:
        sessions = make_manager(clock, session_timeout_minutes=1)
        sid = sessions.create_session("ocr")
        for _ in range(5):
            clock.advance(10)
            assert sessions.get_session(sid) is not None
        clock.advance(10)
        assert sessions.get_session(sid) is None

    def test_get_updates_last_accessed(self, clock: FakeClock) -> None:
        sessions = make_manager(clock)
        sid = sessions.create_session("ocr")
        clock.advance(42)
        session = sessions.get_session(sid)
        assert session is not None
        assert session.last_accessed_at == clock.now()

    def test_snapshot_is_detached(self, clock: FakeClock) -> None:
        sessions = make_manager(clock)
        sid = sessions.create_session("ocr", {"a": 1})
        snapshot = sessions.get_session(sid)
        assert snapshot is not None
        snapshot.metadata["a"] = 99
        assert sessions.get_session(sid).metadata == {"a": 1}  # type: ignore[union-attr]

    def test_update_metadata_merges(self, clock: FakeClock) -> None:
        sessions = make_manager(clock)
        sid = sessions.create_session("ocr", {"a": 1})
        assert sessions.update_session_metadata(sid, {"b": 2})
        assert sessions.get_session(sid).metadata == {"a": 1, "b": 2}  # type: ignore[union-attr]
        assert not sessions.update_session_metadata("session-ocr-missing", {"b": 2})

    def test_extend_from_now(self, clock: FakeClock) -> None:
        sessions = make_manager(clock, session_timeout_minutes=1)
        sid = sessions.create_session("ocr")
        clock.advance(50)
        assert sessions.extend_session(sid, minutes=2)
        clock.advance(100)
        assert sessions.get_session(sid) is not None
        clock.advance(20)
        assert sessions.get_session(sid) is None
        assert not sessions.extend_session(sid)

    def test_extend_defaults_to_configured_timeout(self, clock: FakeClock) -> None:
        sessions = make_manager(clock, session_timeout_minutes=5)
        sid = sessions.create_session("ocr")
        clock.advance(60)
        sessions.extend_session(sid)
        session = sessions.get_session(sid)
        assert session is not None
        assert (session.expires_at - clock.now()).total_seconds() == 300

    def test_destroy(self, clock: FakeClock) -> None:
        sessions = make_manager(clock)
        sid = sessions.create_session("ocr")
        assert sessions.destroy_session(sid)
        assert not sessions.destroy_session(sid)
        assert sessions.get_session(sid) is None

    def test_destroy_service_sessions(self, clock: FakeClock) -> None:
        sessions = make_manager(clock)
        for _ in range(3):
            sessions.create_session("ocr")
        keep = sessions.create_session("ai")
        assert sessions.destroy_service_sessions("ocr") == 3
        assert sessions.destroy_service_sessions("unknown") == 0
        assert sessions.get_session(keep) is not None


class TestCapacityAndSweep:
    def test_cap_evicts_oldest_by_creation(self, clock: FakeClock) -> None:
        sessions = make_manager(clock, max_sessions_per_service=2)
        first = sessions.create_session("ocr")
        clock.advance(1)
        second = sessions.create_session("ocr")
        clock.advance(1)
        sessions.get_session(first)  # recent access does not protect it
        third = sessions.create_session("ocr")

        assert sessions.get_session(first) is None
        assert sessions.get_session(second) is not None
        assert sessions.get_session(third) is not None
        assert sessions.get_active_session_count("ocr") == 2

    def test_cap_is_per_service_type(self, clock: FakeClock) -> None:
        sessions = make_manager(clock, max_sessions_per_service=1)
        ocr = sessions.create_session("ocr")
        ai = sessions.create_session("ai")
        assert sessions.get_session(ocr) is not None
        assert sessions.get_session(ai) is not None

    def test_expired_sessions_do_not_count_towards_cap(self, clock: FakeClock) -> None:
        sessions = make_manager(clock, max_sessions_per_service=1, session_timeout_minutes=1)
        sessions.create_session("ocr")
        clock.advance(120)
        sid = sessions.create_session("ocr")
        assert sessions.get_active_session_count("ocr") == 1
        assert sessions.get_session(sid) is not None

    def test_sweep_and_stats(self, clock: FakeClock) -> None:
        sessions = make_manager(clock, session_timeout_minutes=1)
        sessions.create_session("ocr")
        sessions.create_session("ocr")
        clock.advance(30)
        live = sessions.create_session("ai")
        clock.advance(40)

        assert sessions.sweep() == 2
        assert sessions.get_stats() == {"ocr": 0, "ai": 1}
        assert [s.id for s in sessions.get_all_active_sessions()] == [live]

    def test_config_validation(self) -> None:
        with pytest.raises(ValueError):
            SessionConfig(max_sessions_per_service=0)
        with pytest.raises(ValueError):
            SessionConfig(session_timeout_minutes=-1)

    @pytest.mark.asyncio
    async def test_start_and_close(self, clock: FakeClock) -> None:
        sessions = make_manager(clock, sweep_interval_seconds=0.01)
        sessions.create_session("ocr")
        sessions.start()
        await sessions.close()
        await sessions.close()


def test_zero_minute_session_is_expired_on_next_read(clock: FakeClock) -> None:
    sessions = make_manager(clock, session_timeout_minutes=0)
    sid = sessions.create_session("ocr")
    assert sessions.get_session(sid) is None
