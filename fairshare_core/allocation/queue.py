"""
Fair Queue
==========

Per-resource waiting line ordered by priority score, with earlier submission
winning ties. Admission is strict head-of-line: if the highest-priority entry
cannot be admitted, the queue stays blocked on it rather than skipping ahead.

Wait estimates combine queue position, current occupancy and an
exponentially-weighted moving average of session durations. They are
advisory and only cached for a short TTL.
"""

import heapq
import math
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from fairshare_core.core.clock import Clock, utcnow

from .base import EntryStatus, QueueEntry, QueueFullError, RejectionReason
from .journal import JournalEvent, QueueJournal

logger = structlog.get_logger(__name__)


class SessionDurationEstimator:
    """EWMA of completed session durations for one resource."""

    def __init__(self, alpha: float = 0.2, initial_seconds: float = 600.0):
        self.alpha = alpha
        self._value = initial_seconds
        self._samples = 0

    def record(self, seconds: float) -> float:
        seconds = max(0.0, seconds)
        if self._samples == 0:
            self._value = seconds
        else:
            self._value = self.alpha * seconds + (1 - self.alpha) * self._value
        self._samples += 1
        return self._value

    @property
    def value(self) -> float:
        return self._value

    @property
    def samples(self) -> int:
        return self._samples


class FairQueue:
    """
    Priority queue of waiting requests for one resource.

    Not self-locking: all calls happen inside the resource's scope.
    """

    def __init__(
        self,
        resource_id: str,
        max_size: int = 10000,
        estimate_ttl_seconds: float = 2.0,
        durations: Optional[SessionDurationEstimator] = None,
        journal: Optional[QueueJournal] = None,
        clock: Clock = utcnow,
    ):
        self.resource_id = resource_id
        self.max_size = max_size
        self.estimate_ttl_seconds = estimate_ttl_seconds
        self.durations = durations or SessionDurationEstimator()
        self._journal = journal
        self._clock = clock
        self._heap: List[Tuple[tuple, str]] = []
        self._entries: Dict[str, QueueEntry] = {}
        self._seq = 0
        self._estimates: Dict[Tuple[str, int, int], Tuple[datetime, timedelta]] = {}

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    @property
    def depth(self) -> int:
        return len(self._entries)

    @property
    def is_empty(self) -> bool:
        return not self._entries

    def get(self, entry_id: str) -> Optional[QueueEntry]:
        return self._entries.get(entry_id)

    def entries(self) -> List[QueueEntry]:
        """Waiting entries in service order."""
        return sorted(self._entries.values(), key=lambda e: e.sort_key())

    def position(self, entry_id: str) -> Optional[int]:
        """1-based position of a waiting entry, derived on every call."""
        entry = self._entries.get(entry_id)
        if entry is None:
            return None
        key = entry.sort_key()
        return 1 + sum(1 for other in self._entries.values() if other.sort_key() < key)

    def has_underserved_ahead(self, entry_id: str) -> bool:
        """Whether an underserved entry outranks ``entry_id``; never true for the head."""
        entry = self._entries.get(entry_id)
        if entry is None:
            return False
        key = entry.sort_key()
        return any(
            other.is_underserved and other.sort_key() < key
            for other in self._entries.values()
        )

    def peek(self) -> Optional[QueueEntry]:
        """Get the head entry without removing it."""
        self._prune()
        if not self._heap:
            return None
        return self._entries[self._heap[0][1]]

    def _prune(self) -> None:
        # Lazy deletion: drop heap slots whose entry left the queue.
        while self._heap and self._heap[0][1] not in self._entries:
            heapq.heappop(self._heap)

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def enqueue(self, entry: QueueEntry) -> int:
        """Add a waiting entry and return its position."""
        if len(self._entries) >= self.max_size:
            raise QueueFullError(f"Queue for {self.resource_id} is full ({self.max_size})")

        self._seq += 1
        entry.seq = self._seq
        entry.status = EntryStatus.WAITING
        self._insert(entry)
        if self._journal is not None:
            self._journal.append(JournalEvent.ENQUEUED, entry)

        position = self.position(entry.id)
        logger.info(
            "queue_entry_added",
            resource_id=self.resource_id,
            entry_id=entry.id,
            requester_id=entry.requester_id,
            score=entry.score,
            position=position,
            depth=self.depth,
        )
        return position

    def _insert(self, entry: QueueEntry) -> None:
        self._entries[entry.id] = entry
        heapq.heappush(self._heap, (entry.sort_key(), entry.id))
        self._estimates.clear()

    def dequeue_if_admissible(
        self,
        is_admissible: Callable[[QueueEntry], bool],
    ) -> Optional[QueueEntry]:
        """
        Pop the head entry only if it can be admitted now.

        Returns None, leaving the queue untouched, when the queue is empty or
        the head is not admissible; lower entries are never considered.
        """
        head = self.peek()
        if head is None or not is_admissible(head):
            return None
        heapq.heappop(self._heap)
        self._resolve(head, EntryStatus.ADMITTED)
        return head

    def requeue(self, entry: QueueEntry) -> None:
        """Put back an entry whose admission failed, keeping its original order."""
        entry.status = EntryStatus.WAITING
        entry.resolved_at = None
        self._insert(entry)
        if self._journal is not None:
            self._journal.append(JournalEvent.ENQUEUED, entry)

    def withdraw(
        self,
        entry_id: str,
        status: EntryStatus = EntryStatus.WITHDRAWN,
        reason: Optional[RejectionReason] = None,
    ) -> Optional[QueueEntry]:
        """Remove a waiting entry (cancellation, timeout or rejection)."""
        entry = self._entries.get(entry_id)
        if entry is None:
            return None
        entry.rejection_reason = reason
        self._resolve(entry, status)
        return entry

    def sweep_expired(self, now: Optional[datetime] = None) -> List[QueueEntry]:
        """Time out every entry whose deadline has passed."""
        now = now or self._clock()
        expired = [
            e for e in self._entries.values()
            if e.expires_at is not None and e.expires_at <= now
        ]
        for entry in sorted(expired, key=lambda e: e.sort_key()):
            self._resolve(entry, EntryStatus.TIMED_OUT)
        return expired

    def _resolve(self, entry: QueueEntry, status: EntryStatus) -> None:
        self._entries.pop(entry.id, None)
        entry.status = status
        entry.resolved_at = self._clock()
        self._estimates.clear()
        if self._journal is not None:
            self._journal.append(JournalEvent.RESOLVED, entry)
        logger.info(
            "queue_entry_resolved",
            resource_id=self.resource_id,
            entry_id=entry.id,
            status=status.value,
            depth=self.depth,
        )

    # -------------------------------------------------------------------------
    # Wait estimation
    # -------------------------------------------------------------------------

    def estimate_wait(self, entry_id: str, capacity: int, in_use: int) -> Optional[timedelta]:
        """
        Estimate how long a waiting entry will wait.

        Entries that fit in the currently free units wait zero; the rest wait
        one average session per full turnover of the resource ahead of them.
        """
        position = self.position(entry_id)
        if position is None:
            return None

        now = self._clock()
        key = (entry_id, capacity, in_use)
        cached = self._estimates.get(key)
        if cached is not None:
            computed_at, value = cached
            if (now - computed_at).total_seconds() < self.estimate_ttl_seconds:
                return value

        ahead = position - max(0, capacity - in_use)
        if ahead <= 0:
            value = timedelta(0)
        else:
            turnovers = math.ceil(ahead / max(capacity, 1))
            value = timedelta(seconds=turnovers * self.durations.value)

        self._estimates[key] = (now, value)
        return value

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    @classmethod
    def rebuild(
        cls,
        resource_id: str,
        journal: QueueJournal,
        **kwargs,
    ) -> "FairQueue":
        """Reconstruct the waiting entries of a resource from its journal."""
        pending: Dict[str, QueueEntry] = {}
        for event, data in journal.replay():
            if data.get("resource_id") != resource_id:
                continue
            if event == JournalEvent.ENQUEUED:
                entry = QueueEntry.from_dict(data)
                pending[entry.id] = entry
            else:
                pending.pop(data.get("id"), None)

        queue = cls(resource_id, journal=journal, **kwargs)
        for entry in pending.values():
            entry.status = EntryStatus.WAITING
            queue._insert(entry)
            queue._seq = max(queue._seq, entry.seq)

        logger.info("queue_rebuilt", resource_id=resource_id, depth=queue.depth)
        return queue
