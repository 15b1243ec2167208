"""
Quota Ledger
============

Authoritative per-(requester, resource, period) usage counters.

Check-and-increment is atomic per resource: two concurrent reservations that
would jointly exceed a requester's limit can never both succeed. A request
that would push ``used`` past ``limit`` is refused, never clamped.

Usage:
    ledger = QuotaLedger(locks)
    ledger.register_resource("gpu-a100", limit=10, period=QuotaPeriod.DAILY)

    result = await ledger.check_and_reserve("org_1", "gpu-a100")
    if not result.granted:
        ...  # surface limit/used/reset_at to the caller
"""

import math
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import structlog

from fairshare_core.core.clock import Clock, utcnow

from .base import (
    QuotaCheckResult,
    QuotaExceeded,
    QuotaPeriod,
    QuotaRecord,
    ResourceNotFoundError,
)
from .locks import ResourceLockRegistry

logger = structlog.get_logger(__name__)


@dataclass
class _ResourcePeriod:
    """Quota window currently open for a resource."""

    limit: int
    period: QuotaPeriod
    period_start: datetime
    reset_at: datetime


class QuotaLedger:
    """
    Per-resource quota bookkeeping.

    Public coroutines acquire the resource scope themselves. The ``*_locked``
    methods are for callers that already hold it (the coordinator), so a
    quota reservation and a capacity commit can share one critical section.
    """

    def __init__(self, locks: ResourceLockRegistry, clock: Clock = utcnow):
        self._locks = locks
        self._clock = clock
        self._periods: Dict[str, _ResourcePeriod] = {}
        self._records: Dict[str, Dict[str, QuotaRecord]] = {}

    # -------------------------------------------------------------------------
    # Resources and periods
    # -------------------------------------------------------------------------

    def register_resource(
        self,
        resource_id: str,
        limit: int,
        period: QuotaPeriod = QuotaPeriod.DAILY,
        at: Optional[datetime] = None,
    ) -> None:
        """Register a resource or update its per-requester limit.

        Lowering the limit never drops an existing record below its usage.
        """
        current = self._periods.get(resource_id)
        if current is None:
            start = period.start_of(at or self._clock())
            self._periods[resource_id] = _ResourcePeriod(
                limit=limit,
                period=period,
                period_start=start,
                reset_at=period.next_start(start),
            )
            self._records.setdefault(resource_id, {})
            return

        current.limit = limit
        current.period = period
        current.reset_at = period.next_start(current.period_start)
        for record in self._records[resource_id].values():
            restricted = record.limit < record.base_limit
            record.base_limit = limit
            new_limit = min(record.limit, limit) if restricted else limit
            record.limit = max(record.used, new_limit)
            record.reset_at = current.reset_at

    def period_of(self, resource_id: str) -> Tuple[datetime, datetime]:
        """Get (period_start, reset_at) for a resource."""
        period = self._require(resource_id)
        return period.period_start, period.reset_at

    def due_for_rollover(self, resource_id: str, now: datetime) -> Optional[datetime]:
        """Get the period start a rollover should move to, if the boundary passed."""
        period = self._require(resource_id)
        if now < period.reset_at:
            return None
        return period.period.start_of(now)

    def _require(self, resource_id: str) -> _ResourcePeriod:
        period = self._periods.get(resource_id)
        if period is None:
            raise ResourceNotFoundError(f"Resource {resource_id} has no quota configuration")
        return period

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    def _record(self, requester_id: str, resource_id: str) -> QuotaRecord:
        """Get the live record, creating it lazily on first use in a period."""
        period = self._require(resource_id)
        records = self._records[resource_id]
        record = records.get(requester_id)
        if record is None:
            record = QuotaRecord(
                requester_id=requester_id,
                resource_id=resource_id,
                period_start=period.period_start,
                reset_at=period.reset_at,
                base_limit=period.limit,
                limit=period.limit,
            )
            records[requester_id] = record
        return record

    def get_record(self, requester_id: str, resource_id: str) -> QuotaRecord:
        """Get a snapshot copy of a requester's record."""
        return replace(self._record(requester_id, resource_id))

    def records_for(self, resource_id: str) -> List[QuotaRecord]:
        """Get snapshot copies of all records of a resource."""
        self._require(resource_id)
        return [replace(r) for r in self._records[resource_id].values()]

    # -------------------------------------------------------------------------
    # Reservation
    # -------------------------------------------------------------------------

    def reserve_locked(
        self,
        requester_id: str,
        resource_id: str,
        amount: int = 1,
    ) -> QuotaCheckResult:
        """Check and increment; the caller holds the resource scope."""
        if amount <= 0:
            raise ValueError(f"amount must be positive, got {amount}")

        record = self._record(requester_id, resource_id)
        if record.used + amount > record.limit:
            logger.info(
                "quota_exceeded",
                requester_id=requester_id,
                resource_id=resource_id,
                used=record.used,
                limit=record.limit,
                amount=amount,
            )
            return QuotaCheckResult(
                granted=False,
                limit=record.limit,
                used=record.used,
                remaining=record.remaining,
                reset_at=record.reset_at,
            )

        record.used += amount
        return QuotaCheckResult(
            granted=True,
            limit=record.limit,
            used=record.used,
            remaining=record.remaining,
            reset_at=record.reset_at,
        )

    async def check_and_reserve(
        self,
        requester_id: str,
        resource_id: str,
        amount: int = 1,
    ) -> QuotaCheckResult:
        """Atomically reserve ``amount`` units of a requester's quota."""
        async with self._locks.scope(resource_id):
            return self.reserve_locked(requester_id, resource_id, amount)

    async def acquire(
        self,
        requester_id: str,
        resource_id: str,
        amount: int = 1,
    ) -> QuotaCheckResult:
        """Reserve quota, raising QuotaExceeded if denied."""
        result = await self.check_and_reserve(requester_id, resource_id, amount)
        if not result.granted:
            raise QuotaExceeded(
                message=f"Quota exceeded for {requester_id} on {resource_id}",
                requester_id=requester_id,
                resource_id=resource_id,
                limit=result.limit,
                used=result.used,
                reset_at=result.reset_at,
            )
        return result

    def release_locked(self, requester_id: str, resource_id: str, amount: int) -> int:
        """Give back reserved units; returns how many were actually released."""
        if amount <= 0:
            return 0
        records = self._records.get(resource_id, {})
        record = records.get(requester_id)
        if record is None or record.used == 0:
            return 0
        released = min(amount, record.used)
        record.used -= released
        return released

    async def release(self, requester_id: str, resource_id: str, amount: int) -> int:
        """Reverse a reservation for a session that ended early or never started."""
        async with self._locks.scope(resource_id):
            return self.release_locked(requester_id, resource_id, amount)

    def restrict_limit_locked(
        self,
        requester_id: str,
        resource_id: str,
        factor: float,
    ) -> QuotaRecord:
        """Scale a requester's limit down for the rest of the period."""
        record = self._record(requester_id, resource_id)
        reduced = max(record.used, math.floor(record.base_limit * factor))
        if reduced < record.limit:
            logger.info(
                "quota_limit_restricted",
                requester_id=requester_id,
                resource_id=resource_id,
                base_limit=record.base_limit,
                limit=reduced,
            )
            record.limit = reduced
        return replace(record)

    async def restrict_limit(
        self,
        requester_id: str,
        resource_id: str,
        factor: float,
    ) -> QuotaRecord:
        async with self._locks.scope(resource_id):
            return self.restrict_limit_locked(requester_id, resource_id, factor)

    # -------------------------------------------------------------------------
    # Rollover
    # -------------------------------------------------------------------------

    def rollover_locked(self, resource_id: str, new_period_start: datetime) -> bool:
        """Reset every record of a resource; the caller holds the scope.

        Returns False without touching anything when the period already began
        at or after ``new_period_start``.
        """
        period = self._require(resource_id)
        if new_period_start <= period.period_start:
            logger.debug(
                "quota_rollover_skipped",
                resource_id=resource_id,
                period_start=period.period_start.isoformat(),
                requested=new_period_start.isoformat(),
            )
            return False

        period.period_start = new_period_start
        period.reset_at = period.period.next_start(new_period_start)
        records = self._records[resource_id]
        for record in records.values():
            record.used = 0
            record.limit = record.base_limit = period.limit
            record.period_start = new_period_start
            record.reset_at = period.reset_at

        logger.info(
            "quota_rollover",
            resource_id=resource_id,
            period_start=new_period_start.isoformat(),
            reset_at=period.reset_at.isoformat(),
            records=len(records),
        )
        return True

    async def rollover(self, resource_id: str, new_period_start: datetime) -> bool:
        """Start a new quota period for a resource."""
        async with self._locks.scope(resource_id):
            return self.rollover_locked(resource_id, new_period_start)
