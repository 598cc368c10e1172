from __future__ import annotations

import itertools
import logging
import queue
import threading
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

from avcontrol import SNAPSHOT_TIME_FORMAT

MAX_ENTRIES_PER_REQUEST = 500


@dataclass(frozen=True)
class LogEntry:
    id: int
    ts: str
    level: str
    levelno: int
    logger: str
    message: str

    @classmethod
    def from_record(cls, entry_id: int, record: logging.LogRecord) -> "LogEntry":
        return cls(
            id=entry_id,
            ts=datetime.fromtimestamp(record.created).strftime(SNAPSHOT_TIME_FORMAT),
            level=record.levelname,
            levelno=record.levelno,
            logger=record.name,
            message=record.getMessage(),
        )

    def matches(self, min_level: int = logging.NOTSET, logger: Optional[str] = None) -> bool:
        """Level threshold plus dotted-prefix match on the logger name."""
        if self.levelno < min_level:
            return False
        if logger and self.logger != logger and not self.logger.startswith(logger + "."):
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class _Subscription:
    queue: "queue.Queue[LogEntry]"
    min_level: int
    logger: Optional[str]


class LogBus:
    """Recent controller activity for the panel's log view.

    Keeps the last ``maxlen`` records and pushes new ones to live
    subscribers whose filters they pass. Slow subscribers drop entries
    rather than block the logging call.
    """

    def __init__(self, maxlen: int = 500) -> None:
        self._lock = threading.Lock()
        self._entries: Deque[LogEntry] = deque(maxlen=maxlen)
        self._ids = itertools.count(1)
        self._subscriptions: List[_Subscription] = []

    def publish(self, record: logging.LogRecord) -> LogEntry:
        with self._lock:
            entry = LogEntry.from_record(next(self._ids), record)
            self._entries.append(entry)
            targets = [s.queue for s in self._subscriptions if entry.matches(s.min_level, s.logger)]
        for q in targets:
            try:
                q.put_nowait(entry)
            except queue.Full:
                pass
        return entry

    def recent(
        self,
        limit: int = 200,
        since_id: Optional[int] = None,
        min_level: int = logging.NOTSET,
        logger: Optional[str] = None,
    ) -> List[LogEntry]:
        limit = max(1, min(limit, MAX_ENTRIES_PER_REQUEST))
        with self._lock:
            entries = [
                e
                for e in self._entries
                if (since_id is None or e.id > since_id) and e.matches(min_level, logger)
            ]
        return entries[-limit:]

    def subscribe(
        self, min_level: int = logging.NOTSET, logger: Optional[str] = None
    ) -> "queue.Queue[LogEntry]":
        subscription = _Subscription(queue.Queue(maxsize=200), min_level, logger)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription.queue

    def unsubscribe(self, q: "queue.Queue[LogEntry]") -> None:
        with self._lock:
            self._subscriptions = [s for s in self._subscriptions if s.queue is not q]


class LogHandler(logging.Handler):
    def __init__(self, log_bus: LogBus) -> None:
        super().__init__()
        self.log_bus = log_bus

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.log_bus.publish(record)
        except Exception:
            self.handleError(record)


def attach_log_handler(log_bus: LogBus) -> LogHandler:
    """Attach a LogHandler to the root logger and return it."""
    handler = LogHandler(log_bus)
    logging.getLogger().addHandler(handler)
    return handler


def detach_log_handler(handler: logging.Handler) -> None:
    logging.getLogger().removeHandler(handler)
