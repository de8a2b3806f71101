"""
Latest quotes for the three tracked pairs.

Written only by the ticker poller, read synchronously by the detector
and executor.
"""

from collections.abc import Mapping
from typing import Any

from triarb.core.types import PriceQuote, TrianglePairs


class PriceCache:
    """
    Holds one PriceQuote per tracked pair.

    A pair with no quote yet is absent; readers treat that as "no
    price" rather than zero.
    """

    __slots__ = ("_pairs", "_quotes", "_update_count")

    def __init__(self, pairs: TrianglePairs) -> None:
        """
        Initialize an empty cache.

        Args:
            pairs: The triangle's pairs in fixed order.
        """
        self._pairs = pairs
        self._quotes: dict[str, PriceQuote] = {}
        self._update_count = 0

    def apply(self, quotes: Mapping[str, PriceQuote]) -> bool:
        """
        Store new quotes for tracked pairs.

        Untracked pairs are ignored; a pair missing from `quotes` keeps
        its previous value.

        Returns:
            True if any tracked pair's (bid, ask) changed.
        """
        changed = False
        for pair in self._pairs.as_tuple():
            quote = quotes.get(pair)
            if quote is None:
                continue
            if self._quotes.get(pair) != quote:
                self._quotes[pair] = quote
                changed = True

        if changed:
            self._update_count += 1
        return changed

    def get(self, pair: str) -> PriceQuote | None:
        """Get the quote for a pair."""
        return self._quotes.get(pair)

    def get_triangle(self) -> tuple[PriceQuote, PriceQuote, PriceQuote] | None:
        """
        Get quotes in triangle order (A_B, B_C, A_C).

        Returns:
            The three quotes, or None while any is missing.
        """
        quotes = self._quotes
        first = quotes.get(self._pairs.first)
        if first is None:
            return None
        second = quotes.get(self._pairs.second)
        if second is None:
            return None
        third = quotes.get(self._pairs.third)
        if third is None:
            return None
        return first, second, third

    def ask(self, pair: str) -> float:
        """
        Lowest ask for a pair.

        Raises:
            KeyError: If the pair has no quote.
        """
        return self._quotes[pair].lowest_ask

    def bid(self, pair: str) -> float:
        """
        Highest bid for a pair.

        Raises:
            KeyError: If the pair has no quote.
        """
        return self._quotes[pair].highest_bid

    @property
    def pairs(self) -> TrianglePairs:
        return self._pairs

    @property
    def is_complete(self) -> bool:
        """True once every tracked pair has a quote."""
        return self.get_triangle() is not None

    @property
    def update_count(self) -> int:
        """Number of updates that changed something."""
        return self._update_count

    def to_dict(self) -> dict[str, dict[str, Any]]:
        """Serializable view for the journal."""
        return {
            pair: {"highest_bid": q.highest_bid, "lowest_ask": q.lowest_ask}
            for pair, q in self._quotes.items()
        }
