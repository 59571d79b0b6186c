"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import inspect
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest

from provider_broker.domain.entities import OperationResult, ServiceConfig
from provider_broker.domain.enums import ActionType, Capability
from provider_broker.ports.outbound import ServiceClient


# ═══════════════════════════════════════════════════════════════
#  Clocks
# ═══════════════════════════════════════════════════════════════
class FakeClock:
    """Manually advanced clock; ``clock()`` gives monotonic seconds, ``clock.now()`` UTC."""

    EPOCH = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __init__(self, start: float = 1000.0) -> None:
        self.t = start

    def __call__(self) -> float:
        return self.t

    def now(self) -> datetime:
        return self.EPOCH + timedelta(seconds=self.t)

    def advance(self, seconds: float) -> None:
        self.t += seconds


# ═══════════════════════════════════════════════════════════════
#  Fake service clients
# ═══════════════════════════════════════════════════════════════
Outcome = OperationResult | BaseException | Callable[..., Any]


def ok(data: Any = None) -> OperationResult:
    return OperationResult.succeeded(data if data is not None else {"ok": True})


def fail(error: str = "boom", *, retryable: bool | None = False, code: str = "VENDOR_ERROR") -> OperationResult:
    return OperationResult.failed(error, error_code=code, retryable=retryable)


async def hang(*_: Any) -> OperationResult:
    await asyncio.sleep(3600)
    raise AssertionError("unreachable")


class FakeClient(ServiceClient):
    def __init__(self, factory: FakeClientFactory, config: ServiceConfig) -> None:
        self._factory = factory
        self._pid = config.provider_id
        self._connected = False
        self.closed = 0

    async def connect(self, config: ServiceConfig) -> None:
        error = self._factory.connect_errors.get(self._pid)
        if error is not None:
            raise error
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False
        self.closed += 1

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def test(self) -> OperationResult:
        outcome = self._factory.test_results.get(self._pid, ok({"tested": True}))
        return await self._resolve(outcome, ActionType.QUERY, {})

    async def execute(self, action: ActionType, input: dict[str, Any]) -> OperationResult:
        self._factory.calls.append((self._pid, action, dict(input)))
        script = self._factory.scripts.get(self._pid)
        if not script:
            return ok({"provider": self._pid})
        outcome = script.popleft() if len(script) > 1 else script[0]
        return await self._resolve(outcome, action, input)

    @staticmethod
    async def _resolve(outcome: Outcome, action: ActionType, input: dict[str, Any]) -> OperationResult:
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            outcome = outcome(action, input)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        return outcome  # type: ignore[return-value]


class FakeClientFactory:
    """Builds ``FakeClient``s and records what happened to them.

    ``script(pid, *outcomes)`` queues outcomes for ``pid``; the last one
    repeats forever.  Providers without a script always succeed.
    """

    def __init__(self) -> None:
        self.scripts: dict[str, deque[Outcome]] = {}
        self.connect_errors: dict[str, BaseException] = {}
        self.test_results: dict[str, Outcome] = {}
        self.calls: list[tuple[str, ActionType, dict[str, Any]]] = []
        self.created: list[FakeClient] = []

    def __call__(self, config: ServiceConfig) -> FakeClient:
        client = FakeClient(self, config)
        self.created.append(client)
        return client

    def script(self, provider_id: str, *outcomes: Outcome) -> None:
        self.scripts[provider_id] = deque(outcomes)

    def calls_for(self, provider_id: str) -> int:
        return sum(1 for pid, _, _ in self.calls if pid == provider_id)

    @property
    def providers_called(self) -> list[str]:
        order: list[str] = []
        for pid, _, _ in self.calls:
            if pid not in order:
                order.append(pid)
        return order


# ═══════════════════════════════════════════════════════════════
#  Fixtures
# ═══════════════════════════════════════════════════════════════
def make_config(provider_id: str, priority: int, **overrides: Any) -> ServiceConfig:
    values: dict[str, Any] = {
        "provider_id": provider_id,
        "provider_type": "fake",
        "capability": Capability.SEARCH,
        "priority": priority,
        "credentials": {"api_key": f"key-{provider_id}"},
        "retry_policy": "aggressive",
        "timeout_s": 5.0,
    }
    values.update(overrides)
    return ServiceConfig(**values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def client_factory() -> FakeClientFactory:
    return FakeClientFactory()


@pytest.fixture
def search_configs() -> list[ServiceConfig]:
    return [
        make_config("alpha", 1, is_default=True),
        make_config("beta", 2),
        make_config("gamma", 3),
    ]


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def no_sleep(sleeps: list[float]) -> Callable[[float], Any]:
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return _sleep
