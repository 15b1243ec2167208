"""
Queue Journal
=============

Append-only log of queue events. Queue positions are advisory, so the queue
itself lives in memory; on restart it is rebuilt by replaying this log.
"""

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterator, List, Tuple, Union

import structlog

from .base import QueueEntry

logger = structlog.get_logger(__name__)


class JournalEvent:
    """Event names written to the journal."""

    ENQUEUED = "enqueued"
    RESOLVED = "resolved"


class QueueJournal(ABC):
    """Abstract base class for queue journals."""

    @abstractmethod
    def append(self, event: str, entry: QueueEntry) -> None:
        """Record an event for an entry."""
        pass

    @abstractmethod
    def replay(self) -> Iterator[Tuple[str, Dict[str, Any]]]:
        """Yield (event, entry dict) pairs in write order."""
        pass


class InMemoryQueueJournal(QueueJournal):
    """Journal kept in process memory, for tests and single-process setups."""

    def __init__(self):
        self._events: List[Tuple[str, Dict[str, Any]]] = []

    def append(self, event: str, entry: QueueEntry) -> None:
        self._events.append((event, entry.to_dict()))

    def replay(self) -> Iterator[Tuple[str, Dict[str, Any]]]:
        yield from list(self._events)

    def __len__(self) -> int:
        return len(self._events)


class FileQueueJournal(QueueJournal):
    """Journal stored as JSON lines on local disk."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def append(self, event: str, entry: QueueEntry) -> None:
        line = json.dumps({"event": event, "entry": entry.to_dict()}, sort_keys=True)
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")

    def replay(self) -> Iterator[Tuple[str, Dict[str, Any]]]:
        if not self.path.exists():
            return
        with self.path.open("r", encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    # A torn final write after a crash; everything before it is intact.
                    logger.warning("queue_journal_bad_line", path=str(self.path), line=lineno)
                    continue
                yield record["event"], record["entry"]
