"""Per-provider running statistics.

One ``ProviderStats`` per provider, each guarded by its own lock so that
recording for one provider never waits on another.  Every method hands out
copies; the live objects never leave the tracker.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from provider_broker.domain.entities import ProviderStats

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class _Entry:
    stats: ProviderStats
    lock: threading.Lock = field(default_factory=threading.Lock)


class ProviderStatsTracker:
    """Thread-safe registry of ``ProviderStats``."""

    def __init__(self, *, clock: Clock = _utcnow) -> None:
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._registry_lock = threading.Lock()

    # ── Recording ────────────────────────────────────────────
    def record_success(self, provider_id: str, response_time_ms: float) -> ProviderStats:
        entry = self._entry(provider_id)
        with entry.lock:
            entry.stats.record_success(response_time_ms, now=self._clock())
            return entry.stats.copy()

    def record_failure(self, provider_id: str, error: str) -> ProviderStats:
        entry = self._entry(provider_id)
        with entry.lock:
            entry.stats.record_failure(error, now=self._clock())
            return entry.stats.copy()

    def set_quota(self, provider_id: str, monthly_quota: int | None) -> None:
        entry = self._entry(provider_id)
        with entry.lock:
            entry.stats.monthly_quota = monthly_quota

    def load(self, snapshots: Iterable[ProviderStats]) -> None:
        """Seed from previously persisted snapshots (startup only)."""
        with self._registry_lock:
            for snap in snapshots:
                self._entries[snap.provider_id] = _Entry(snap.copy())

    # ── Observation ──────────────────────────────────────────
    def get(self, provider_id: str) -> ProviderStats:
        entry = self._entry(provider_id)
        with entry.lock:
            return entry.stats.copy()

    def get_all(self) -> list[ProviderStats]:
        with self._registry_lock:
            entries = list(self._entries.values())
        result: list[ProviderStats] = []
        for entry in entries:
            with entry.lock:
                result.append(entry.stats.copy())
        return result

    def reset(self, provider_id: str) -> ProviderStats:
        """Admin reset: the only way statistics go back to zero."""
        with self._registry_lock:
            old = self._entries.get(provider_id)
            quota = old.stats.monthly_quota if old else None
            fresh = ProviderStats(provider_id=provider_id, monthly_quota=quota)
            self._entries[provider_id] = _Entry(fresh)
            return fresh.copy()

    def analytics(self, provider_ids: Iterable[str] | None = None) -> dict[str, Any]:
        """Summary across providers: per-provider stats and mean response time."""
        stats = self.get_all()
        if provider_ids is not None:
            wanted = set(provider_ids)
            stats = [s for s in stats if s.provider_id in wanted]
        timed = [s.avg_response_time_ms for s in stats if s.avg_response_time_ms is not None]
        total = sum(s.total_requests for s in stats)
        successes = sum(s.total_successes for s in stats)
        return {
            "providers": [s.to_dict() for s in stats],
            "average_response_time_ms": round(sum(timed) / len(timed), 2) if timed else None,
            "total_requests": total,
            "overall_success_rate": round(successes / total, 4) if total else None,
        }

    # ── Internals ────────────────────────────────────────────
    def _entry(self, provider_id: str) -> _Entry:
        with self._registry_lock:
            entry = self._entries.get(provider_id)
            if entry is None:
                entry = self._entries[provider_id] = _Entry(ProviderStats(provider_id=provider_id))
            return entry
