"""
Queue-based logging.

The event loop only enqueues records; a QueueListener thread formats
and writes them, so a slow terminal or disk never delays an order.
"""

import logging
import sys
from datetime import datetime
from logging.handlers import QueueHandler, QueueListener
from pathlib import Path
from queue import Queue

from triarb.config.constants import (
    INFO_LOG_FILE,
    LOG_DATE_FORMAT,
    LOG_FORMAT,
    MAX_LOG_QUEUE_SIZE,
)


_QUIET_LOGGERS = ("aiohttp", "asyncio")


class MicrosecondFormatter(logging.Formatter):
    """Appends microseconds to the record time."""

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        created = datetime.fromtimestamp(record.created)
        return f"{created.strftime(datefmt or LOG_DATE_FORMAT)}.{created.microsecond:06d}"


def _build_sinks(console_level: int, log_file: Path | None) -> list[logging.Handler]:
    """Console at the requested level, plus an INFO-and-up file if given."""
    formatter = MicrosecondFormatter(LOG_FORMAT, LOG_DATE_FORMAT)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(console_level)
    sinks: list[logging.Handler] = [console]

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        info_file = logging.FileHandler(log_file, encoding="utf-8")
        info_file.setLevel(logging.INFO)
        sinks.append(info_file)

    for sink in sinks:
        sink.setFormatter(formatter)
    return sinks


class AsyncLogger:
    """
    Routes one logger through a queue to a listener thread.

    Usable as a context manager; `stop()` drains the queue, closes the
    sinks and removes the queue handler from the logger.
    """

    def __init__(
        self,
        name: str,
        level: int = logging.INFO,
        log_file: Path | None = None,
    ) -> None:
        self._level = level
        self._log_file = log_file
        self._logger = logging.getLogger(name)
        self._queue: Queue[logging.LogRecord] = Queue(maxsize=MAX_LOG_QUEUE_SIZE)
        self._queue_handler: QueueHandler | None = None
        self._listener: QueueListener | None = None

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    @property
    def running(self) -> bool:
        return self._listener is not None

    def start(self) -> None:
        if self.running:
            return

        sinks = _build_sinks(self._level, self._log_file)
        self._listener = QueueListener(self._queue, *sinks, respect_handler_level=True)
        self._listener.start()

        self._queue_handler = QueueHandler(self._queue)
        self._logger.addHandler(self._queue_handler)
        # the file sink wants INFO even when the console is quieter
        self._logger.setLevel(min(self._level, logging.INFO))

    def stop(self) -> None:
        if self._queue_handler is not None:
            self._logger.removeHandler(self._queue_handler)
            self._queue_handler = None

        if self._listener is not None:
            self._listener.stop()
            for sink in self._listener.handlers:
                sink.close()
            self._listener = None

    def __enter__(self) -> "AsyncLogger":
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()


def setup_logging(level: str = "INFO", log_dir: Path | None = None) -> AsyncLogger:
    """
    Route the root logger through an AsyncLogger.

    Args:
        level: Console level name; unknown names fall back to INFO.
        log_dir: Where info.log goes. Console only when None.

    Returns:
        The started AsyncLogger. Stop it at shutdown to flush.
    """
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)

    async_logger = AsyncLogger(
        name="",
        level=getattr(logging, level.upper(), logging.INFO),
        log_file=log_dir / INFO_LOG_FILE if log_dir is not None else None,
    )
    async_logger.start()

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return async_logger
