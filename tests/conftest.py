"""
Pytest configuration and shared fixtures.

Provides reusable test fixtures for all test modules.
"""

import pytest

from triarb.config.settings import Settings
from triarb.core.context import ExecutionContext
from triarb.core.types import TrianglePairs
from triarb.exchange.rate_limiter import RateLimiter
from triarb.exchange.scheduler import LaneConfig, RateLimitedScheduler
from triarb.market.prices import PriceCache
from triarb.telemetry.journal import TradeJournal
from triarb.telemetry.metrics import MetricsCollector
from tests.mocks.exchange import MockExchange
from tests.mocks.market import FLAT_QUOTES, quotes_to_prices


# =============================================================================
# Market Fixtures
# =============================================================================


@pytest.fixture
def pairs() -> TrianglePairs:
    """BTC/ETH/BCH triangle."""
    return TrianglePairs(first="BTC_ETH", second="ETH_BCH", third="BTC_BCH")


@pytest.fixture
def price_cache(pairs: TrianglePairs) -> PriceCache:
    """Price cache holding the no-trade scenario."""
    cache = PriceCache(pairs)
    cache.apply(quotes_to_prices(FLAT_QUOTES))
    return cache


@pytest.fixture
def context() -> ExecutionContext:
    """Idle execution context."""
    return ExecutionContext()


# =============================================================================
# Exchange Fixtures
# =============================================================================


@pytest.fixture
def mock_exchange() -> MockExchange:
    """Mock exchange quoting the no-trade scenario."""
    return MockExchange(
        balances={"BTC": 1.0, "ETH": 10.0, "BCH": 50.0},
        quotes=FLAT_QUOTES,
    )


@pytest.fixture
def scheduler() -> RateLimitedScheduler:
    """Scheduler with one lane per account and a generous rate limit."""
    return RateLimitedScheduler(
        RateLimiter(default_limit=1000, default_interval=1.0),
        lanes={
            "trade_0": LaneConfig(concurrency=1),
            "trade_1": LaneConfig(concurrency=1),
            "trade_2": LaneConfig(concurrency=1),
            "utility": LaneConfig(concurrency=1),
            "ticker": LaneConfig(),
        },
    )


# =============================================================================
# Telemetry Fixtures
# =============================================================================


@pytest.fixture
def journal() -> TradeJournal:
    """In-memory journal."""
    return TradeJournal()


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


# =============================================================================
# Settings Fixtures
# =============================================================================


@pytest.fixture
def settings() -> Settings:
    """Dry-run settings with short timings, ignoring any .env file."""
    return Settings(
        _env_file=None,
        dry_run=True,
        fill_timeout_s=0.05,
        fill_poll_interval_s=0.01,
        retry_backoff_s=0.0,
        max_retry_rounds=3,
        ticker_min_interval_ms=5,
        rate_limit_calls=100,
    )
