"""
Operator alerts.

Raised when the trader can no longer resolve a situation on its own,
e.g. orders it could neither fill nor cancel. Every alert is logged
at CRITICAL and journaled; a webhook is called when configured.
"""

import logging
from typing import Any

import aiohttp
import orjson

from triarb.config.constants import ALERT_TIMEOUT_S
from triarb.core.event_bus import Event
from triarb.telemetry.journal import TradeJournal


logger = logging.getLogger(__name__)


class OperatorAlerter:
    """
    Sends alerts to the log, the journal and an optional webhook.

    Webhook failures are logged and never propagate: an alert that
    cannot be delivered must not take the trader down with it.
    """

    def __init__(
        self,
        journal: TradeJournal,
        webhook_url: str | None = None,
        timeout: float = ALERT_TIMEOUT_S,
    ) -> None:
        """
        Initialize alerter.

        Args:
            journal: Journal receiving an entry per alert.
            webhook_url: URL receiving a JSON POST per alert.
            timeout: Webhook request timeout in seconds.
        """
        self._journal = journal
        self._webhook_url = webhook_url
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None
        self._sent = 0

    async def alert(self, kind: str, message: str, **details: Any) -> None:
        """
        Raise an alert.

        Args:
            kind: Alert kind, also the journal event name.
            message: Human-readable summary.
            **details: Extra context for the journal and webhook.
        """
        self._sent += 1
        logger.critical(f"OPERATOR ALERT [{kind}]: {message}")
        self._journal.record(kind, message=message, **details)

        if self._webhook_url:
            await self._post({"kind": kind, "message": message, **details})

    async def on_orders_unresolved(self, event: Event[dict[str, Any]]) -> None:
        """Event bus handler for ORDERS_UNRESOLVED."""
        payload = dict(event.payload)
        order_ids = payload.get("order_ids", [])
        reason = payload.pop("reason", "unresolved")
        await self.alert(
            "orders_unresolved",
            f"Manual action needed for orders {', '.join(order_ids) or '(none)'}: {reason}",
            **payload,
        )

    async def _post(self, body: dict[str, Any]) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)

        try:
            async with self._session.post(
                self._webhook_url,  # type: ignore[arg-type]
                data=orjson.dumps(body, default=str),
                headers={"Content-Type": "application/json"},
            ) as response:
                if response.status >= 400:
                    logger.warning(f"Alert webhook returned HTTP {response.status}")
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.warning(f"Alert webhook failed: {e}")

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    @property
    def alerts_sent(self) -> int:
        return self._sent
