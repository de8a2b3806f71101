"""
Balance tracking for the three triangle assets.

Balances drive leg sizing, so a refresh must never leave a mix of old
and new values visible to the executor.
"""

import logging
from collections.abc import Iterable

from triarb.config.constants import DEFAULT_RATE_CLASS, PRIORITY_DEFAULT, UTILITY_ACCOUNT
from triarb.core.types import Balance, ExchangeClient
from triarb.exchange.scheduler import RateLimitedScheduler


logger = logging.getLogger(__name__)


class BalanceTracker:
    """
    Last known available balance per tracked asset.

    `refresh` builds a complete new mapping and swaps it in with one
    assignment; readers see either the old or the new snapshot.
    """

    def __init__(
        self,
        scheduler: RateLimitedScheduler,
        client: ExchangeClient,
        assets: Iterable[str],
        lane: str = UTILITY_ACCOUNT,
    ) -> None:
        """
        Initialize tracker.

        Args:
            scheduler: Scheduler the balance call goes through.
            client: Client for the account holding the balances.
            assets: Assets to track.
            lane: Scheduler lane for the call.
        """
        self._scheduler = scheduler
        self._client = client
        self._assets = tuple(assets)
        self._lane = lane
        self._balances: dict[str, float] = dict.fromkeys(self._assets, 0.0)
        self._refresh_count = 0

    async def refresh(self, priority: int = PRIORITY_DEFAULT) -> dict[str, float]:
        """
        Fetch balances and replace the snapshot.

        Assets the exchange does not report are set to 0.0. On error the
        previous snapshot stays in place and the error propagates.

        Returns:
            The new snapshot.
        """
        raw = await self._scheduler.submit(
            self._lane,
            self._client.fetch_balances,
            priority=priority,
            rate_class=DEFAULT_RATE_CLASS,
        )

        balances = {asset: float(raw.get(asset, 0.0)) for asset in self._assets}
        self._balances = balances
        self._refresh_count += 1

        logger.info(
            "Balances: " + ", ".join(f"{a}={v:.8f}" for a, v in balances.items())
        )
        return dict(balances)

    def get(self, asset: str) -> float:
        """Available amount of an asset (0.0 if untracked)."""
        return self._balances.get(asset, 0.0)

    def balance(self, asset: str) -> Balance:
        return Balance(asset, self.get(asset))

    def snapshot(self) -> dict[str, float]:
        """Copy of the current balances."""
        return dict(self._balances)

    @property
    def assets(self) -> tuple[str, ...]:
        return self._assets

    @property
    def refresh_count(self) -> int:
        return self._refresh_count
