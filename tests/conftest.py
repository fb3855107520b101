"""
Shared test fixtures for pytest.

Provides common fixtures for all test modules:
- fake_settings: Test environment configuration with small quotas
- clock: Controllable UTC clock shared by every time-dependent component
- store: Fresh in-memory state store
- catalog / credentials: Default provider catalog with test credentials
- ledger: In-memory decision ledger
- router: Router wired to all of the above
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
import structlog

from airouter.config import Environment, Settings, get_settings
from airouter.routing.catalog import ProviderCatalog, StaticCredentialProvider, default_catalog
from airouter.routing.ledger import InMemoryDecisionLedger
from airouter.routing.router import Router
from airouter.state import InMemoryStateStore

TEST_CREDENTIALS = {
    "OPENAI_API_KEY": "sk-test-openai-0123456789",
    "ANTHROPIC_API_KEY": "sk-ant-test-0123456789",
    "OPENROUTER_API_KEY": "sk-or-test-0123456789",
    "HUGGINGFACE_API_KEY": "hf_test_0123456789",
}

# Start of a UTC minute, so window arithmetic in tests is easy to follow
START = datetime(2026, 3, 10, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    """Callable UTC clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now


# ------------------------------------------------------------------ #
# Session-scoped: clear settings cache between test sessions
# ------------------------------------------------------------------ #

@pytest.fixture(autouse=True, scope="session")
def _clear_settings_cache():
    """Clear the lru_cache on get_settings so test overrides take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Routing binds request context into contextvars; isolate tests."""
    structlog.contextvars.clear_contextvars()
    yield
    structlog.contextvars.clear_contextvars()


# ------------------------------------------------------------------ #
# Settings & core fixtures
# ------------------------------------------------------------------ #

@pytest.fixture
def fake_settings() -> Settings:
    """Test environment settings with small, easy-to-exhaust quotas."""
    return Settings(
        environment=Environment.TEST,
        redis_url="",
        database_url="sqlite+aiosqlite:///:memory:",
        openai_api_key=None,
        anthropic_api_key=None,
        openrouter_api_key=None,
        huggingface_api_key=None,
        catalog_path=None,
        level1_daily_quota=10_000,
        level2_daily_quota=50_000,
        provider_daily_quotas={},
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def catalog(fake_settings: Settings) -> ProviderCatalog:
    return default_catalog(fake_settings)


@pytest.fixture
def credentials() -> StaticCredentialProvider:
    return StaticCredentialProvider(TEST_CREDENTIALS)


@pytest.fixture
def ledger(clock: FakeClock) -> InMemoryDecisionLedger:
    return InMemoryDecisionLedger(clock=clock)


@pytest.fixture
def router(
    fake_settings: Settings,
    store: InMemoryStateStore,
    ledger: InMemoryDecisionLedger,
    catalog: ProviderCatalog,
    credentials: StaticCredentialProvider,
    clock: FakeClock,
) -> Router:
    """Router over in-memory state with the default catalog."""
    return Router(
        fake_settings,
        store,
        ledger,
        catalog=catalog,
        credentials=credentials,
        clock=clock,
    )
