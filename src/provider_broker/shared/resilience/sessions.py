"""Session manager: opaque, time-bounded handles scoped to a service type.

Expiry is absolute (``created_at + timeout``) and enforced on every read;
the periodic sweep only reclaims memory.  Each service type is its own shard
with its own lock, and a shard over capacity evicts its oldest session by
creation time (not by last access).
"""

from __future__ import annotations

import dataclasses
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import structlog

from provider_broker.domain.entities import Session
from provider_broker.shared.resilience.scheduling import PeriodicTask

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]

_ID_PREFIX = "session-"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class SessionConfig:
    session_timeout_minutes: float = 30.0
    max_sessions_per_service: int = 100
    sweep_interval_seconds: float = 300.0

    def __post_init__(self) -> None:
        if self.session_timeout_minutes < 0:
            raise ValueError("session_timeout_minutes must be >= 0")
        if self.max_sessions_per_service < 1:
            raise ValueError("max_sessions_per_service must be >= 1")


@dataclass(slots=True)
class _Shard:
    sessions: dict[str, Session] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)


def _snapshot(session: Session) -> Session:
    return dataclasses.replace(session, metadata=dict(session.metadata))


class SessionManager:
    """Issues, tracks, expires and extends sessions per service type."""

    def __init__(self, config: SessionConfig | None = None, *, clock: Clock = _utcnow) -> None:
        self._config = config or SessionConfig()
        self._clock = clock
        self._shards: dict[str, _Shard] = {}
        self._registry_lock = threading.Lock()
        self._sweeper = PeriodicTask(
            "session_sweep", self.sweep, interval_s=self._config.sweep_interval_seconds
        )
        self._sweeper.start()

    @property
    def config(self) -> SessionConfig:
        return self._config

    def start(self) -> None:
        self._sweeper.start()

    async def close(self) -> None:
        await self._sweeper.stop()

    # ── Lifecycle ────────────────────────────────────────────
    def create_session(self, service_type: str, metadata: dict[str, Any] | None = None) -> str:
        now = self._clock()
        session = Session(
            id=f"{_ID_PREFIX}{service_type}-{uuid.uuid4().hex}",
            service_type=service_type,
            created_at=now,
            last_accessed_at=now,
            expires_at=now + timedelta(minutes=self._config.session_timeout_minutes),
            metadata=dict(metadata or {}),
        )
        shard = self._shard(service_type)
        with shard.lock:
            self._purge_expired(shard, now)
            while len(shard.sessions) >= self._config.max_sessions_per_service:
                oldest = min(shard.sessions.values(), key=lambda s: s.created_at)
                del shard.sessions[oldest.id]
                logger.info(
                    "session_evicted",
                    session_id=oldest.id,
                    service_type=service_type,
                    cap=self._config.max_sessions_per_service,
                )
            shard.sessions[session.id] = session
        logger.debug("session_created", session_id=session.id, service_type=service_type)
        return session.id

    def get_session(self, session_id: str) -> Session | None:
        """Return a snapshot of the session, or ``None`` if unknown or expired."""
        shard = self._shard_for_id(session_id)
        if shard is None:
            return None
        now = self._clock()
        with shard.lock:
            session = self._live(shard, session_id, now)
            if session is None:
                return None
            session.last_accessed_at = now
            return _snapshot(session)

    def update_session_metadata(self, session_id: str, metadata: dict[str, Any]) -> bool:
        shard = self._shard_for_id(session_id)
        if shard is None:
            return False
        now = self._clock()
        with shard.lock:
            session = self._live(shard, session_id, now)
            if session is None:
                return False
            session.metadata = {**session.metadata, **metadata}
            session.last_accessed_at = now
            return True

    def extend_session(self, session_id: str, minutes: float | None = None) -> bool:
        """Move expiry to ``now + minutes`` (defaults to the configured timeout)."""
        shard = self._shard_for_id(session_id)
        if shard is None:
            return False
        now = self._clock()
        extension = self._config.session_timeout_minutes if minutes is None else minutes
        with shard.lock:
            session = self._live(shard, session_id, now)
            if session is None:
                return False
            session.expires_at = now + timedelta(minutes=extension)
            session.last_accessed_at = now
            return True

    def destroy_session(self, session_id: str) -> bool:
        shard = self._shard_for_id(session_id)
        if shard is None:
            return False
        with shard.lock:
            return shard.sessions.pop(session_id, None) is not None

    def destroy_service_sessions(self, service_type: str) -> int:
        with self._registry_lock:
            shard = self._shards.get(service_type)
        if shard is None:
            return 0
        with shard.lock:
            destroyed = len(shard.sessions)
            shard.sessions.clear()
        logger.info("service_sessions_destroyed", service_type=service_type, destroyed=destroyed)
        return destroyed

    # ── Observation ──────────────────────────────────────────
    def get_active_session_count(self, service_type: str) -> int:
        with self._registry_lock:
            shard = self._shards.get(service_type)
        if shard is None:
            return 0
        now = self._clock()
        with shard.lock:
            self._purge_expired(shard, now)
            return len(shard.sessions)

    def get_all_active_sessions(self) -> list[Session]:
        now = self._clock()
        active: list[Session] = []
        for shard in self._all_shards():
            with shard.lock:
                active.extend(_snapshot(s) for s in shard.sessions.values() if not s.is_expired(now))
        return active

    def get_stats(self) -> dict[str, int]:
        """Active sessions per service type."""
        with self._registry_lock:
            types = list(self._shards)
        return {t: self.get_active_session_count(t) for t in types}

    def sweep(self) -> int:
        """Drop expired sessions across every shard; returns how many."""
        now = self._clock()
        removed = 0
        for shard in self._all_shards():
            with shard.lock:
                removed += self._purge_expired(shard, now)
        if removed:
            logger.info("session_sweep", removed=removed)
        return removed

    # ── Internals ────────────────────────────────────────────
    def _shard(self, service_type: str) -> _Shard:
        with self._registry_lock:
            shard = self._shards.get(service_type)
            if shard is None:
                shard = self._shards[service_type] = _Shard()
            return shard

    def _shard_for_id(self, session_id: str) -> _Shard | None:
        if not session_id.startswith(_ID_PREFIX) or "-" not in session_id[len(_ID_PREFIX):]:
            return None
        service_type = session_id[len(_ID_PREFIX):].rsplit("-", 1)[0]
        with self._registry_lock:
            return self._shards.get(service_type)

    def _all_shards(self) -> list[_Shard]:
        with self._registry_lock:
            return list(self._shards.values())

    @staticmethod
    def _live(shard: _Shard, session_id: str, now: datetime) -> Session | None:
        """Caller holds ``shard.lock``; expired sessions are destroyed on sight."""
        session = shard.sessions.get(session_id)
        if session is None:
            return None
        if session.is_expired(now):
            del shard.sessions[session_id]
            logger.debug("session_expired", session_id=session_id)
            return None
        return session

    @staticmethod
    def _purge_expired(shard: _Shard, now: datetime) -> int:
        expired = [sid for sid, s in shard.sessions.items() if s.is_expired(now)]
        for sid in expired:
            del shard.sessions[sid]
        return len(expired)
