"""Configuration module for the trader."""

from triarb.config.constants import (
    DEFAULT_PROFIT_THRESHOLD,
    FILL_TOLERANCE,
    TICKER_LANE,
    TRADE_ACCOUNTS,
    UTILITY_ACCOUNT,
)
from triarb.config.settings import (
    ACCOUNT_NAMES,
    ConfigurationError,
    Settings,
    get_settings,
)


__all__ = [
    "ACCOUNT_NAMES",
    "ConfigurationError",
    "DEFAULT_PROFIT_THRESHOLD",
    "FILL_TOLERANCE",
    "Settings",
    "TICKER_LANE",
    "TRADE_ACCOUNTS",
    "UTILITY_ACCOUNT",
    "get_settings",
]
