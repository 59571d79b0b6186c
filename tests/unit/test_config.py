"""Unit tests for settings and orchestrator assembly."""

from __future__ import annotations

import orjson
import pytest
from pydantic import ValidationError

from provider_broker.adapters.outbound.persistence.memory import (
    InMemoryServiceConfigStore,
    InMemoryStatsSink,
)
from provider_broker.config import ConfigBackend, Environment, get_settings
from provider_broker.dependencies import build_orchestrator, build_stores
from provider_broker.domain.enums import Capability, RateLimitAlgorithm
from provider_broker.domain.exceptions import ConfigurationError


class TestSettings:
    def test_defaults(self):
        settings = get_settings()
        assert settings.config_backend is ConfigBackend.MEMORY
        assert settings.pool_max_connections == 10
        assert settings.session_timeout_minutes == 30.0
        assert settings.rate_limit_algorithm is RateLimitAlgorithm.TOKEN_BUCKET

    def test_log_level_is_uppercased(self):
        assert get_settings(log_level="debug").log_level == "DEBUG"

    def test_json_logs_follow_environment(self):
        assert get_settings(app_env=Environment.PRODUCTION).use_json_logs
        assert not get_settings(app_env=Environment.DEVELOPMENT).use_json_logs
        assert get_settings(app_env=Environment.DEVELOPMENT, json_logs=True).use_json_logs

    def test_environment_variables(self, monkeypatch):
        monkeypatch.setenv("POOL_MAX_CONNECTIONS", "4")
        monkeypatch.setenv("RATE_LIMIT_ALGORITHM", "sliding_window")
        settings = get_settings()
        assert settings.pool_max_connections == 4
        assert settings.rate_limit_algorithm is RateLimitAlgorithm.SLIDING_WINDOW

    def test_invalid_database_url(self):
        with pytest.raises(ValidationError):
            get_settings(database_url="mysql://localhost/db")

    def test_pool_bounds(self):
        with pytest.raises(ValidationError):
            get_settings(pool_min_connections=5, pool_max_connections=2)


class TestAssembly:
    def test_memory_backend_without_file(self):
        store, sink = build_stores(get_settings())
        assert isinstance(store, InMemoryServiceConfigStore)
        assert isinstance(sink, InMemoryStatsSink)

    @pytest.mark.asyncio
    async def test_memory_backend_from_file(self, tmp_path):
        path = tmp_path / "providers.json"
        path.write_bytes(
            orjson.dumps(
                [
                    {
                        "provider_id": "brave-primary",
                        "provider_type": "brave_search",
                        "capability": "search",
                        "priority": 1,
                        "credentials": {"api_key": "k"},
                    }
                ]
            )
        )
        orchestrator = build_orchestrator(get_settings(providers_file=str(path)))
        try:
            configs = await orchestrator.list_providers(Capability.SEARCH)
            assert [c.provider_id for c in configs] == ["brave-primary"]
        finally:
            await orchestrator.shutdown()

    def test_unknown_default_retry_policy(self):
        with pytest.raises(ConfigurationError):
            build_orchestrator(get_settings(default_retry_policy="reckless"))

    def test_custom_retry_keywords(self):
        with pytest.raises(ConfigurationError):
            build_orchestrator(get_settings(retry_policy_keywords={"search": "nope"}))
        build_orchestrator(get_settings(retry_policy_keywords={"search": "gentle"}))
