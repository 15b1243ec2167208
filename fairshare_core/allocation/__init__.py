"""
Allocation Module

This module decides, for every request to use a scarce shared resource,
whether it is admitted now, queued, or rejected.

Features:
- Quota Ledger: Per-requester, per-resource, per-period limits enforced atomically
- Reservation Pool: Capacity share held back for underserved requesters
- Priority Scoring: Weighted need signals with a penalty for flagged hoarders
- Hoarding Monitor: Usage relative to peers, escalated only under contention
- Fair Queue: Strict head-of-line ordering with advisory wait estimates
- Journal: Queue state rebuilt from an append-only log after restart

Example usage:

    from fairshare_core.allocation import (
        AccessRequest,
        AdmissionOutcome,
        AllocationCoordinator,
        Requester,
    )

    coordinator = AllocationCoordinator()
    await coordinator.configure_resource({
        "resource_id": "gpu-a100",
        "total_capacity": 10,
        "per_requester_limit": 20,
        "reservation_fraction": 0.3,
    })

    decision = await coordinator.request_access(
        AccessRequest(
            requester=Requester(id="org_42", is_underserved=True),
            resource_id="gpu-a100",
            need_signal=6.5,
        )
    )

    if decision.outcome == AdmissionOutcome.QUEUED:
        print(decision.position, decision.estimated_wait)
"""

from .base import (
    AccessDecision,
    AccessHistory,
    AccessRequest,
    AdmissionOutcome,
    AllocationError,
    CapacityUnavailable,
    ConcurrentModificationRetry,
    ConfigurationInvalid,
    EntryStatus,
    Grant,
    GrantNotFoundError,
    GrantStatus,
    HoardingFlag,
    PoolKind,
    QueueEntry,
    QueueFullError,
    QuotaCheckResult,
    QuotaExceeded,
    QuotaPeriod,
    QuotaRecord,
    Rejection,
    RejectionReason,
    Requester,
    ResourceCapacity,
    ResourceConfig,
    ResourceNotFoundError,
    RestrictedRequester,
    reserved_units,
)
from .coordinator import AllocationCoordinator, ResourceState
from .hoarding import HoardingMonitor, HoardingProfile, UsageSample, UsageWindow
from .journal import FileQueueJournal, InMemoryQueueJournal, JournalEvent, QueueJournal
from .ledger import QuotaLedger
from .locks import ResourceLockRegistry
from .queue import FairQueue, SessionDurationEstimator
from .reservation import PeriodStats, ReservationPool, ReservationState
from .scoring import PriorityScorer, ScoringSignals

__all__ = [
    # Coordinator
    "AllocationCoordinator",
    "ResourceState",
    # Components
    "QuotaLedger",
    "ResourceLockRegistry",
    "ReservationPool",
    "ReservationState",
    "PeriodStats",
    "PriorityScorer",
    "ScoringSignals",
    "HoardingMonitor",
    "HoardingProfile",
    "UsageSample",
    "UsageWindow",
    "FairQueue",
    "SessionDurationEstimator",
    "QueueJournal",
    "InMemoryQueueJournal",
    "FileQueueJournal",
    "JournalEvent",
    # Enums
    "QuotaPeriod",
    "PoolKind",
    "HoardingFlag",
    "AdmissionOutcome",
    "RejectionReason",
    "EntryStatus",
    "GrantStatus",
    # Types
    "ResourceConfig",
    "reserved_units",
    "AccessHistory",
    "Requester",
    "ResourceCapacity",
    "QuotaRecord",
    "QuotaCheckResult",
    "Grant",
    "QueueEntry",
    "AccessRequest",
    "Rejection",
    "AccessDecision",
    # Exceptions
    "AllocationError",
    "QuotaExceeded",
    "CapacityUnavailable",
    "ConfigurationInvalid",
    "RestrictedRequester",
    "ConcurrentModificationRetry",
    "ResourceNotFoundError",
    "GrantNotFoundError",
    "QueueFullError",
]
