"""
Trading constants and configuration defaults.

Values are grouped by the component that consumes them. Anything an
operator may want to tune is re-exposed through Settings.
"""

from typing import Final


# =============================================================================
# Poloniex API Endpoints
# =============================================================================

POLONIEX_PUBLIC_URL: Final[str] = "https://poloniex.com/public"
POLONIEX_TRADING_URL: Final[str] = "https://poloniex.com/tradingApi"

# Public commands
COMMAND_TICKER: Final[str] = "returnTicker"

# Trading commands
COMMAND_BALANCES: Final[str] = "returnBalances"
COMMAND_BUY: Final[str] = "buy"
COMMAND_SELL: Final[str] = "sell"
COMMAND_CANCEL: Final[str] = "cancelOrder"
COMMAND_OPEN_ORDERS: Final[str] = "returnOpenOrders"


# =============================================================================
# Triangle Definition
# =============================================================================

# Pair naming follows the exchange: "BTC_ETH" is priced in BTC, trades ETH.
DEFAULT_PAIR_AB: Final[str] = "BTC_ETH"
DEFAULT_PAIR_BC: Final[str] = "ETH_BCH"
DEFAULT_PAIR_AC: Final[str] = "BTC_BCH"

# Sub-account names, one lane each
TRADE_ACCOUNTS: Final[tuple[str, str, str]] = ("trade_0", "trade_1", "trade_2")
UTILITY_ACCOUNT: Final[str] = "utility"


# =============================================================================
# Scheduler
# =============================================================================

TICKER_LANE: Final[str] = "ticker"
DEFAULT_RATE_CLASS: Final[str] = "default"

# Exchange allows 6 calls per second across all keys
DEFAULT_RATE_LIMIT_CALLS: Final[int] = 6
DEFAULT_RATE_LIMIT_INTERVAL: Final[float] = 1.0  # seconds

# Minimum spacing between ticker fetches
DEFAULT_TICKER_MIN_INTERVAL_MS: Final[int] = 400

# Task priorities (higher runs first within a lane)
PRIORITY_DEFAULT: Final[int] = 5
PRIORITY_FORCED_TICKER: Final[int] = 10
PRIORITY_ORDER: Final[int] = 11


# =============================================================================
# Detection & Sizing
# =============================================================================

# Yield above which a triangle is executed (0.8% edge)
DEFAULT_PROFIT_THRESHOLD: Final[float] = 1.008

# Share of the available balance committed to a leg
DEFAULT_BALANCE_FRACTION: Final[float] = 0.999


# =============================================================================
# Execution
# =============================================================================

# Absolute tolerance when comparing filled and intended amounts
FILL_TOLERANCE: Final[float] = 1e-8

DEFAULT_FILL_TIMEOUT_S: Final[float] = 10.0
DEFAULT_FILL_POLL_INTERVAL_S: Final[float] = 0.5
DEFAULT_RETRY_BACKOFF_S: Final[float] = 10.0
DEFAULT_MAX_RETRY_ROUNDS: Final[int] = 30


# =============================================================================
# HTTP
# =============================================================================

HTTP_TIMEOUT_S: Final[float] = 10.0
ALERT_TIMEOUT_S: Final[float] = 5.0


# =============================================================================
# Logging & Telemetry
# =============================================================================

LOG_FORMAT: Final[str] = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATE_FORMAT: Final[str] = "%Y-%m-%d %H:%M:%S"

INFO_LOG_FILE: Final[str] = "info.log"
LEDGER_FILE: Final[str] = "ledger.jsonl"

# Status line interval (seconds)
METRICS_REPORT_INTERVAL: Final[float] = 60.0

MAX_LOG_QUEUE_SIZE: Final[int] = 10_000
