"""
Trade journal.

Append-only JSON-lines ledger of everything that touched money:
triangle starts, placements, retries, outcomes and alerts. One line
per entry, keyed by a microsecond timestamp.
"""

import logging
from collections import deque
from logging.handlers import QueueHandler, QueueListener
from pathlib import Path
from queue import Queue
from typing import Any

import orjson

from triarb.config.constants import LEDGER_FILE, MAX_LOG_QUEUE_SIZE
from triarb.utils.time import get_timestamp_us


logger = logging.getLogger(__name__)


def _default(obj: Any) -> Any:
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    return str(obj)


class TradeJournal:
    """
    Non-blocking JSON-lines writer.

    Entries are queued on the caller's thread and written by a
    listener thread. Without a directory the journal only keeps the
    most recent entries in memory.
    """

    def __init__(self, log_dir: Path | None = None, keep_recent: int = 1000) -> None:
        """
        Initialize journal.

        Args:
            log_dir: Directory for ledger.jsonl, memory only if None.
            keep_recent: Number of entries kept in memory.
        """
        self._path = log_dir / LEDGER_FILE if log_dir else None
        self._recent: deque[dict[str, Any]] = deque(maxlen=keep_recent)
        self._queue: Queue[logging.LogRecord] = Queue(maxsize=MAX_LOG_QUEUE_SIZE)
        self._handler = QueueHandler(self._queue)
        self._listener: QueueListener | None = None

    def start(self) -> None:
        """Open the ledger file and start the writer thread."""
        if self._path is None or self._listener is not None:
            return

        self._path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(self._path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter("%(message)s"))
        self._listener = QueueListener(self._queue, file_handler)
        self._listener.start()
        logger.info(f"Trade journal at {self._path}")

    def stop(self) -> None:
        """Flush pending entries and close the file."""
        if self._listener is None:
            return
        self._listener.stop()
        for handler in self._listener.handlers:
            handler.close()
        self._listener = None

    def record(self, event: str, **fields: Any) -> dict[str, Any]:
        """
        Append an entry.

        Args:
            event: Entry kind, e.g. "triangle_started".
            **fields: JSON-serializable payload (dataclasses and enums allowed).

        Returns:
            The entry as written.
        """
        entry = {"ts_us": get_timestamp_us(), "event": event, **fields}
        self._recent.append(entry)

        if self._listener is not None:
            line = orjson.dumps(entry, default=_default).decode()
            self._handler.handle(
                logging.makeLogRecord({"msg": line, "levelno": logging.INFO, "levelname": "INFO"})
            )
        return entry

    def recent(self, event: str | None = None) -> list[dict[str, Any]]:
        """Recent entries, optionally filtered by kind."""
        if event is None:
            return list(self._recent)
        return [e for e in self._recent if e["event"] == event]

    @property
    def path(self) -> Path | None:
        return self._path

    def __enter__(self) -> "TradeJournal":
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()
