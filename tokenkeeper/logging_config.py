"""
Logging setup for tokenkeeper.

Colored console output through colorlog, masking of bearer tokens in log
records, and per-category error aggregation feeding burst alerts and the
end-of-run summary.
"""

import logging
import os
import re
import sys
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import colorlog

from .constants import ERROR_ALERT_BURST_COUNT, ERROR_ALERT_WINDOW_SECONDS
from .utils import format_duration

# Three base64url segments separated by dots; long enough to rule out versions.
_JWT_PATTERN = re.compile(r"eyJ[\w-]{8,}\.[\w-]{8,}\.[\w-]*")


class TokenRedactionFilter(logging.Filter):
    """Filter that masks bearer tokens accidentally interpolated into messages."""

    def filter(self, record):
        message = record.getMessage()
        if "eyJ" not in message:
            return True
        record.msg = _JWT_PATTERN.sub(lambda m: f"{m.group(0)[:10]}…<redacted>", message)
        record.args = None
        return True


@dataclass
class CategoryStats:
    """Running totals for one error category (see ``errors.handling.error_category``)."""

    total: int = 0
    recent: deque[float] = field(default_factory=deque)
    last_message: str = ""
    last_context: dict[str, Any] = field(default_factory=dict)


class ErrorAggregator:
    """Counts structured errors per category and detects bursts.

    A burst is ``threshold`` errors of one category inside ``window_seconds``.
    ``record_error`` reports the moment a category reaches the threshold so
    the alert fires once per burst rather than on every further error.
    """

    def __init__(
        self,
        threshold: int = ERROR_ALERT_BURST_COUNT,
        window_seconds: float = ERROR_ALERT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = threshold
        self.window_seconds = window_seconds
        self.clock = clock
        self._stats: dict[str, CategoryStats] = {}
        # Token cache IO logs from executor threads.
        self._lock = threading.Lock()

    def record_error(
        self, category: str, message: str, context: dict[str, Any] | None = None
    ) -> bool:
        """Record one error; returns True when this error completes a burst."""
        now = self.clock()
        with self._lock:
            stats = self._stats.setdefault(category, CategoryStats())
            stats.total += 1
            stats.last_message = message
            stats.last_context = dict(context or {})
            stats.recent.append(now)
            self._prune(stats, now)
            return len(stats.recent) == self.threshold

    def get_error_summary(self) -> dict[str, dict[str, Any]]:
        now = self.clock()
        with self._lock:
            summary = {}
            for category, stats in self._stats.items():
                self._prune(stats, now)
                summary[category] = {
                    "total_count": stats.total,
                    "recent_count": len(stats.recent),
                    "last_message": stats.last_message,
                    "last_context": dict(stats.last_context),
                }
            return summary

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()

    def log_summary_report(self) -> None:
        """Log one line of totals per category, or that the run was clean."""
        summary = self.get_error_summary()
        if not summary:
            logging.info("📊 No errors recorded this run")
            return
        totals = " ".join(f"{c}={s['total_count']}" for c, s in sorted(summary.items()))
        logging.warning(f"📊 Error summary {totals}")
        for category, stats in sorted(summary.items()):
            logging.warning(
                f"  {category}: recent={stats['recent_count']} last={stats['last_message']}"
            )

    def _prune(self, stats: CategoryStats, now: float) -> None:
        while stats.recent and now - stats.recent[0] > self.window_seconds:
            stats.recent.popleft()


error_aggregator = ErrorAggregator()


def log_structured_error(
    category: str,
    message: str,
    exception: BaseException | None = None,
    context: dict[str, Any] | None = None,
    level: int = logging.ERROR,
) -> None:
    """Log ``message`` tagged with its category and feed the aggregator.

    Args:
        category: Error category, e.g. ``network``, ``auth`` or ``token``.
        message: Descriptive error message.
        exception: The exception that occurred, if any.
        context: Extra ``key=value`` pairs appended to the line.
        level: Logging level.
    """
    parts = [f"[{category.upper()}] {message}"]
    if exception is not None:
        parts.append(f"Exception: {type(exception).__name__}: {str(exception)}")
    if context:
        parts.append("Context: " + " | ".join(f"{k}={v}" for k, v in context.items()))
    logging.log(level, " | ".join(parts))

    if error_aggregator.record_error(category, message, context):
        logging.critical(
            f"🚨 Error burst category={category} count={error_aggregator.threshold} within={format_duration(error_aggregator.window_seconds)}"
        )


class LoggerConfigurator:
    """Installs a colorlog handler with token redaction on the root logger.

    The level is DEBUG when the ``DEBUG`` environment variable is truthy,
    INFO otherwise; ``config["level"]`` overrides both.
    """

    LOG_COLORS = {
        "DEBUG": "cyan",
        "INFO": "green",
        "WARNING": "yellow",
        "ERROR": "red",
        "CRITICAL": "magenta",
    }

    def __init__(self, config=None):
        self.config = config or {}
        self.handler: logging.Handler | None = None

    def resolve_level(self) -> int:
        debug_env = os.environ.get("DEBUG", "").lower()
        default = logging.DEBUG if debug_env in ("true", "1", "yes") else logging.INFO
        return self.config.get("level", default)

    def build_formatter(self) -> colorlog.ColoredFormatter:
        return colorlog.ColoredFormatter(
            "%(asctime)s %(log_color)s%(levelname)-8s%(reset)s %(message_log_color)s%(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
            log_colors=self.LOG_COLORS,
            secondary_log_colors={"message": {"ERROR": "red", "CRITICAL": "magenta"}},
            reset=True,
        )

    def configure(self) -> logging.Handler:
        """Attach (or replace) this configurator's stderr handler."""
        level = self.resolve_level()
        root = logging.getLogger()
        if self.handler is not None:
            root.removeHandler(self.handler)

        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(self.build_formatter())
        handler.addFilter(TokenRedactionFilter())
        root.addHandler(handler)
        root.setLevel(level)
        # aiohttp client chatter is noise at DEBUG for a token daemon
        logging.getLogger("aiohttp").setLevel(max(level, logging.INFO))

        self.handler = handler
        return handler
