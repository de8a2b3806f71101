"""
Command-line entry point.

    python -m triarb
    triarb

Exit codes: 0 on a signal or the trade limit, 2 when an order could
not be placed, 1 on configuration or other fatal errors.
"""

import asyncio
import sys
import traceback
from typing import TYPE_CHECKING


if TYPE_CHECKING:
    from triarb.config.settings import Settings

try:
    import uvloop
except ImportError:
    uvloop = None
else:
    uvloop.install()


EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PLACEMENT_FAILED = 2

_CREDENTIALS_HELP = """
Live trading reads credentials for TRADE_0, TRADE_1, TRADE_2 and
UTILITY from the environment or .env:
  <ACCOUNT>_API_KEY=...
  <ACCOUNT>_API_SECRET=...
"""


def _describe(settings: "Settings") -> list[str]:
    rows = [
        ("mode", "dry run" if settings.dry_run else "LIVE"),
        ("triangle", f"{settings.pair_ab} / {settings.pair_bc} / {settings.pair_ac}"),
        ("threshold", f"{settings.profit_threshold}"),
        ("balance share", f"{settings.balance_fraction:.1%}"),
        ("rate limit", f"{settings.rate_limit_calls} per {settings.rate_limit_interval}s"),
        ("fill timeout", f"{settings.fill_timeout_s}s"),
        ("trade limit", f"{settings.max_trades or 'none'}"),
        ("event loop", "uvloop" if uvloop is not None else "asyncio"),
    ]
    return [f"  {label:<14} {value}" for label, value in rows]


def main() -> int:
    """Load settings, run the engine until it stops, map the reason to an exit code."""
    from pydantic import ValidationError

    from triarb import __version__
    from triarb.config.settings import ConfigurationError, get_settings
    from triarb.core.engine import TradingEngine
    from triarb.core.types import ShutdownReason

    print(f"triarb {__version__}: triangular arbitrage on Poloniex\n")

    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"Invalid configuration:\n{e}")
        print(_CREDENTIALS_HELP)
        return EXIT_FATAL

    print("\n".join(_describe(settings)))
    if not settings.dry_run:
        print("\n  Orders will be sent to the exchange with real funds.")
    print()

    async def run() -> int:
        engine = TradingEngine(settings)
        try:
            await engine.setup()
            reason = await engine.run()
        except ConfigurationError as e:
            print(f"\nInvalid configuration: {e}")
            return EXIT_FATAL
        except Exception as e:
            print(f"\nFatal error: {e}")
            traceback.print_exc()
            return EXIT_FATAL
        finally:
            await engine.shutdown()

        return EXIT_PLACEMENT_FAILED if reason is ShutdownReason.PLACEMENT_FAILED else EXIT_OK

    try:
        return asyncio.run(run())
    except KeyboardInterrupt:
        print("\nInterrupted")
        return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
