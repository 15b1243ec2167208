"""
Reservation Pool
================

Partitions each resource's concurrent capacity into a pool reserved for
underserved requesters and a general pool:

    reserved = floor(total_capacity * reservation_fraction)
    general  = total_capacity - reserved

Underserved requesters draw from the reserved pool first and may spill into
general slack only when no other underserved requester is waiting. General
requesters never touch the reserved pool, even when it sits idle; unused
reserved capacity expires unclaimed at period end.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import structlog

from .base import (
    CapacityUnavailable,
    PoolKind,
    Requester,
    ResourceCapacity,
    ResourceNotFoundError,
    reserved_units,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ReservationState:
    """Point-in-time view of a resource's pools."""

    resource_id: str
    total: int
    reserved: int
    general: int
    reserved_in_use: int
    general_in_use: int

    @property
    def in_use(self) -> int:
        return self.reserved_in_use + self.general_in_use

    @property
    def reserved_slack(self) -> int:
        return max(0, self.reserved - self.reserved_in_use)

    @property
    def general_slack(self) -> int:
        return max(0, self.general - self.general_in_use)

    @property
    def reserved_utilization(self) -> float:
        if self.reserved == 0:
            return 0.0
        return self.reserved_in_use / self.reserved

    @property
    def partition_holds(self) -> bool:
        return self.reserved + self.general == self.total

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "resource_id": self.resource_id,
            "total": self.total,
            "reserved": self.reserved,
            "general": self.general,
            "reserved_in_use": self.reserved_in_use,
            "general_in_use": self.general_in_use,
            "reserved_slack": self.reserved_slack,
            "general_slack": self.general_slack,
            "reserved_utilization": self.reserved_utilization,
        }


@dataclass
class PeriodStats:
    """Per-period pool statistics, reset at rollover."""

    period_start: Optional[datetime] = None
    reserved_grants: int = 0
    general_grants: int = 0
    spillover_grants: int = 0
    peak_reserved_in_use: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period_start": self.period_start.isoformat() if self.period_start else None,
            "reserved_grants": self.reserved_grants,
            "general_grants": self.general_grants,
            "spillover_grants": self.spillover_grants,
            "peak_reserved_in_use": self.peak_reserved_in_use,
        }


@dataclass
class _Pool:
    capacity: ResourceCapacity
    reserved: int
    general: int
    reserved_in_use: int = 0
    general_in_use: int = 0


class ReservationPool:
    """Tracks reserved and general capacity per resource.

    Not self-locking: callers mutate a resource's pool only inside that
    resource's scope.
    """

    def __init__(self):
        self._pools: Dict[str, _Pool] = {}
        self._stats: Dict[str, PeriodStats] = {}

    def configure(self, capacity: ResourceCapacity) -> ReservationState:
        """Install or replace a resource's envelope.

        Grants already in use are kept; if the new envelope is smaller than
        current usage, admission stays blocked until releases catch up.
        """
        reserved = reserved_units(capacity.total_capacity, capacity.reservation_fraction)
        pool = self._pools.get(capacity.resource_id)
        if pool is None:
            pool = _Pool(
                capacity=capacity,
                reserved=reserved,
                general=capacity.total_capacity - reserved,
            )
            self._pools[capacity.resource_id] = pool
            self._stats.setdefault(capacity.resource_id, PeriodStats())
        else:
            capacity.in_use = pool.reserved_in_use + pool.general_in_use
            pool.capacity = capacity
            pool.reserved = reserved
            pool.general = capacity.total_capacity - reserved

        logger.info(
            "reservation_pool_configured",
            resource_id=capacity.resource_id,
            total=capacity.total_capacity,
            reserved=pool.reserved,
            general=pool.general,
            in_use=capacity.in_use,
        )
        return self.snapshot(capacity.resource_id)

    def _require(self, resource_id: str) -> _Pool:
        pool = self._pools.get(resource_id)
        if pool is None:
            raise ResourceNotFoundError(f"Resource {resource_id} has no reservation pool")
        return pool

    def snapshot(self, resource_id: str) -> ReservationState:
        """Get a point-in-time view of a resource's pools."""
        pool = self._require(resource_id)
        return ReservationState(
            resource_id=resource_id,
            total=pool.capacity.total_capacity,
            reserved=pool.reserved,
            general=pool.general,
            reserved_in_use=pool.reserved_in_use,
            general_in_use=pool.general_in_use,
        )

    def period_stats(self, resource_id: str) -> PeriodStats:
        self._require(resource_id)
        return self._stats[resource_id]

    def try_admit(
        self,
        requester: Requester,
        resource_id: str,
        underserved_waiting: bool = False,
    ) -> Optional[PoolKind]:
        """
        Decide which pool would serve a requester right now, without mutating.

        Args:
            requester: The requester asking for a unit
            resource_id: Target resource
            underserved_waiting: Whether an underserved requester is queued ahead of this one

        Returns:
            The pool to draw from, or None if the request must wait
        """
        state = self.snapshot(resource_id)
        if state.in_use >= state.total:
            return None

        if requester.is_underserved:
            if state.reserved_slack > 0:
                return PoolKind.RESERVED
            if state.general_slack > 0 and not underserved_waiting:
                return PoolKind.GENERAL
            return None

        if state.general_slack > 0:
            return PoolKind.GENERAL
        return None

    def commit(self, resource_id: str, kind: PoolKind, spillover: bool = False) -> ReservationState:
        """Take one unit from a pool."""
        pool = self._require(resource_id)
        state = self.snapshot(resource_id)
        slack = state.reserved_slack if kind == PoolKind.RESERVED else state.general_slack
        if slack <= 0 or state.in_use >= state.total:
            raise CapacityUnavailable(f"No {kind.value} capacity left on {resource_id}")

        stats = self._stats[resource_id]
        if kind == PoolKind.RESERVED:
            pool.reserved_in_use += 1
            stats.reserved_grants += 1
            stats.peak_reserved_in_use = max(stats.peak_reserved_in_use, pool.reserved_in_use)
        else:
            pool.general_in_use += 1
            stats.general_grants += 1
            if spillover:
                stats.spillover_grants += 1
        pool.capacity.in_use = pool.reserved_in_use + pool.general_in_use
        return self.snapshot(resource_id)

    def release(self, resource_id: str, kind: PoolKind) -> ReservationState:
        """Return one unit to a pool; a no-op when the pool has nothing in use."""
        pool = self._require(resource_id)
        if kind == PoolKind.RESERVED and pool.reserved_in_use > 0:
            pool.reserved_in_use -= 1
        elif kind == PoolKind.GENERAL and pool.general_in_use > 0:
            pool.general_in_use -= 1
        else:
            logger.warning(
                "reservation_release_without_use",
                resource_id=resource_id,
                pool=kind.value,
            )
        pool.capacity.in_use = pool.reserved_in_use + pool.general_in_use
        return self.snapshot(resource_id)

    def begin_period(self, resource_id: str, period_start: datetime) -> PeriodStats:
        """Close out the previous period's statistics and start fresh ones.

        Units still in use carry over; unclaimed reserved units are not
        reassigned.
        """
        pool = self._require(resource_id)
        previous = self._stats.get(resource_id)
        if previous is not None and previous.period_start is not None:
            logger.info(
                "reservation_period_closed",
                resource_id=resource_id,
                unclaimed_reserved=max(0, pool.reserved - previous.peak_reserved_in_use),
                **previous.to_dict(),
            )
        stats = PeriodStats(
            period_start=period_start,
            peak_reserved_in_use=pool.reserved_in_use,
        )
        self._stats[resource_id] = stats
        return stats
