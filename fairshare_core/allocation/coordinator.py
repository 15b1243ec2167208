"""
Allocation Coordinator
======================

Orchestrates the quota ledger, reservation pool, hoarding monitor, priority
scorer and fair queues into the engine's public operations.

Every operation on a resource runs inside that resource's exclusion scope,
so "check quota, check reservation, increment both" is one atomic unit and a
release is never raced by the queue drain that follows it. Nothing here
waits for capacity: a request is admitted, queued or rejected right away,
and queued requesters learn about later admission through status callbacks.

Usage:
    coordinator = AllocationCoordinator()
    await coordinator.configure_resource({
        "resource_id": "gpu-a100",
        "total_capacity": 10,
        "per_requester_limit": 20,
        "reservation_fraction": 0.3,
    })

    decision = await coordinator.request_access(
        AccessRequest(requester=Requester(id="org_1"), resource_id="gpu-a100")
    )
    if decision.outcome == AdmissionOutcome.ADMITTED:
        ...
        await coordinator.complete_session(decision.grant.id)

    await coordinator.start()   # background sweeper
"""

import asyncio
import inspect
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

import structlog

from fairshare_core.config import EngineSettings, get_settings
from fairshare_core.core.clock import Clock, utcnow

from .base import (
    AccessDecision,
    AccessRequest,
    AllocationError,
    CapacityUnavailable,
    ConfigurationInvalid,
    EntryStatus,
    Grant,
    GrantNotFoundError,
    GrantStatus,
    HoardingFlag,
    PoolKind,
    QueueEntry,
    QueueFullError,
    QuotaExceeded,
    QuotaRecord,
    Rejection,
    RejectionReason,
    Requester,
    ResourceCapacity,
    ResourceConfig,
    ResourceNotFoundError,
    RestrictedRequester,
)
from .hoarding import HoardingMonitor
from .journal import QueueJournal
from .ledger import QuotaLedger
from .locks import ResourceLockRegistry
from .queue import FairQueue, SessionDurationEstimator
from .reservation import ReservationPool
from .scoring import PriorityScorer

StatusCallback = Callable[[QueueEntry], Any]


@dataclass
class ResourceState:
    """Live state of one configured resource."""

    capacity: ResourceCapacity
    queue: FairQueue
    grants: Dict[str, Grant] = field(default_factory=dict)


class AllocationCoordinator:
    """Single entry point for admission, session lifecycle and queue draining."""

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        clock: Clock = utcnow,
        journal: Optional[QueueJournal] = None,
    ):
        self.settings = settings or get_settings()
        self._clock = clock
        self._journal = journal
        self._locks = ResourceLockRegistry(
            timeout_seconds=self.settings.lock_timeout_seconds,
            retries=self.settings.lock_retries,
            backoff_seconds=self.settings.lock_retry_backoff_seconds,
        )
        self.ledger = QuotaLedger(self._locks, clock)
        self.pool = ReservationPool()
        self.scorer = PriorityScorer(self.settings.scoring)
        self.hoarding = HoardingMonitor(self.settings.hoarding, clock)

        self._resources: Dict[str, ResourceState] = {}
        self._invalid: Dict[str, ConfigurationInvalid] = {}
        self._grants: Dict[str, Grant] = {}
        self._entries: Dict[str, QueueEntry] = {}
        self._status_callbacks: List[StatusCallback] = []

        self._running = False
        self._sweeper_task: Optional[asyncio.Task] = None
        self._logger = structlog.get_logger("allocation_coordinator")

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    async def configure_resource(
        self,
        config: Union[ResourceConfig, Mapping[str, Any]],
    ) -> ResourceCapacity:
        """
        Install or update a resource's allocation envelope.

        Invalid configuration blocks admission to that resource until a valid
        one is loaded. Queued entries are kept and re-evaluated by the drain
        that follows every (re)configuration.

        Raises:
            ConfigurationInvalid: a limit or fraction is out of range
        """
        if isinstance(config, ResourceConfig):
            validated = config
        else:
            try:
                validated = ResourceConfig.load(config)
            except ConfigurationInvalid as e:
                self._invalid[e.resource_id] = e
                self._logger.error(
                    "resource_configuration_invalid",
                    resource_id=e.resource_id,
                    errors=e.errors,
                )
                raise

        resource_id = validated.resource_id
        capacity = ResourceCapacity.from_config(validated)

        async with self._locks.scope(resource_id):
            now = self._clock()
            self._invalid.pop(resource_id, None)
            self.ledger.register_resource(
                resource_id, capacity.per_requester_limit, capacity.period, now
            )
            self.pool.configure(capacity)

            state = self._resources.get(resource_id)
            if state is None:
                state = ResourceState(capacity=capacity, queue=self._new_queue(resource_id))
                self._resources[resource_id] = state
                period_start, _ = self.ledger.period_of(resource_id)
                self.pool.begin_period(resource_id, period_start)
                for entry in state.queue.entries():
                    self._entries[entry.id] = entry
            else:
                state.capacity = capacity
            resolved = self._drain_locked(state, now)

        self._logger.info(
            "resource_configured",
            resource_id=resource_id,
            total_capacity=capacity.total_capacity,
            reserved=capacity.reserved_capacity,
            per_requester_limit=capacity.per_requester_limit,
        )
        await self._notify(resolved)
        return capacity

    def _new_queue(self, resource_id: str) -> FairQueue:
        queue_settings = self.settings.queue
        kwargs = dict(
            max_size=queue_settings.max_size,
            estimate_ttl_seconds=queue_settings.estimate_ttl_seconds,
            durations=SessionDurationEstimator(
                alpha=queue_settings.ewma_alpha,
                initial_seconds=queue_settings.initial_session_seconds,
            ),
            clock=self._clock,
        )
        if self._journal is not None:
            return FairQueue.rebuild(resource_id, self._journal, **kwargs)
        return FairQueue(resource_id, **kwargs)

    def _state(self, resource_id: str) -> ResourceState:
        state = self._resources.get(resource_id)
        if state is None:
            raise ResourceNotFoundError(f"Resource {resource_id} not configured")
        return state

    # -------------------------------------------------------------------------
    # Admission
    # -------------------------------------------------------------------------

    async def request_access(self, request: AccessRequest) -> AccessDecision:
        """
        Decide on an access request: Admitted(grant), Queued(position, wait)
        or Rejected(reason).
        """
        if request.amount <= 0:
            raise ValueError(f"amount must be positive, got {request.amount}")

        rejected = self._precheck(request)
        if rejected is not None:
            self._log_decision(request, rejected)
            return rejected

        state = self._resources[request.resource_id]
        async with self._locks.scope(request.resource_id):
            now = self._clock()
            self._maybe_rollover_locked(state, now)
            decision, resolved = self._request_locked(state, request, now)

        self._log_decision(request, decision)
        await self._notify(resolved)
        return decision

    async def acquire(self, request: AccessRequest) -> Grant:
        """
        Admit immediately or raise; never joins the queue.

        For callers that cannot wait, e.g. a batch job probing for a free
        unit. A non-empty queue counts as no capacity, so waiting requesters
        are never overtaken.

        Raises:
            QuotaExceeded: the requester's limit for the period is used up
            RestrictedRequester: the reduced quota of a restricted requester is used up
            CapacityUnavailable: no unit can be granted right now
            ConfigurationInvalid: the resource's configuration is invalid
            ResourceNotFoundError: the resource is not configured
        """
        if request.amount <= 0:
            raise ValueError(f"amount must be positive, got {request.amount}")

        rejected = self._precheck(request)
        if rejected is not None:
            raise self._error_for(request, rejected.rejection)

        requester = request.requester
        resource_id = request.resource_id
        state = self._resources[resource_id]
        async with self._locks.scope(resource_id):
            now = self._clock()
            self._maybe_rollover_locked(state, now)
            if resource_id in self._invalid:
                raise self._invalid[resource_id]

            flag = self.hoarding.get_flag(requester.id, now)
            record = self._effective_record(requester.id, resource_id, flag)
            if record.used + request.amount > record.limit:
                rejection = self._quota_rejection(requester.id, record, flag, now).rejection
                raise self._error_for(request, rejection)

            kind = self.pool.try_admit(requester, resource_id) if state.queue.is_empty else None
            if kind is None:
                raise CapacityUnavailable(
                    f"No capacity on {resource_id} for immediate admission "
                    f"({state.queue.depth} waiting)"
                )
            return self._admit_locked(
                state, requester.id, requester.is_underserved, request.amount, kind, now
            )

    def _precheck(self, request: AccessRequest) -> Optional[AccessDecision]:
        """Rejections that need no resource scope."""
        resource_id = request.resource_id

        if resource_id in self._invalid:
            return self._reject(
                RejectionReason.CONFIGURATION_INVALID,
                str(self._invalid[resource_id]),
            )

        state = self._resources.get(resource_id)
        if state is None:
            return self._reject(
                RejectionReason.UNKNOWN_RESOURCE,
                f"Resource {resource_id} is not configured",
            )

        if request.requester.access_level < state.capacity.required_access_level:
            return self._reject(
                RejectionReason.ACCESS_DENIED,
                f"Resource {resource_id} requires access level "
                f"{state.capacity.required_access_level}",
            )
        return None

    def _error_for(self, request: AccessRequest, rejection: Rejection) -> AllocationError:
        """Exception equivalent of a rejection."""
        requester_id = request.requester.id
        resource_id = request.resource_id
        if rejection.reason == RejectionReason.QUOTA_EXCEEDED:
            return QuotaExceeded(
                message=rejection.message,
                requester_id=requester_id,
                resource_id=resource_id,
                limit=rejection.limit,
                used=rejection.used,
                reset_at=rejection.reset_at,
            )
        if rejection.reason == RejectionReason.RESTRICTED_REQUESTER:
            return RestrictedRequester(requester_id, rejection.cooldown_until)
        if rejection.reason == RejectionReason.CONFIGURATION_INVALID:
            return self._invalid[resource_id]
        if rejection.reason == RejectionReason.UNKNOWN_RESOURCE:
            return ResourceNotFoundError(rejection.message)
        return AllocationError(rejection.message)

    def _request_locked(
        self,
        state: ResourceState,
        request: AccessRequest,
        now: datetime,
    ) -> Tuple[AccessDecision, List[QueueEntry]]:
        requester = request.requester
        resource_id = state.capacity.resource_id

        # Configuration may have been invalidated while waiting for the scope.
        if resource_id in self._invalid:
            return self._reject(
                RejectionReason.CONFIGURATION_INVALID, str(self._invalid[resource_id])
            ), []

        flag = self.hoarding.get_flag(requester.id, now)
        record = self._effective_record(requester.id, resource_id, flag)
        if record.used + request.amount > record.limit:
            return self._quota_rejection(requester.id, record, flag, now), []

        if state.queue.is_empty:
            kind = self.pool.try_admit(requester, resource_id)
            if kind is not None:
                grant = self._admit_locked(
                    state, requester.id, requester.is_underserved, request.amount, kind, now
                )
                return AccessDecision.admitted(grant), []

        scored = replace(requester, history=self.hoarding.access_history(requester.id, now))
        score = self.scorer.score(
            scored,
            state.capacity,
            self.pool.snapshot(resource_id),
            need=request.need_signal,
            flag=flag,
        )
        entry = QueueEntry(
            id="",
            requester_id=requester.id,
            resource_id=resource_id,
            submitted_at=now,
            score=score,
            amount=request.amount,
            is_underserved=requester.is_underserved,
            need_signal=self.scorer.clamp_need(request.need_signal),
            expires_at=now + timedelta(seconds=state.capacity.queue_timeout_seconds),
        )
        try:
            state.queue.enqueue(entry)
        except QueueFullError as e:
            return self._reject(
                RejectionReason.QUEUE_FULL, str(e), queue_depth=state.queue.depth
            ), []

        self._entries[entry.id] = entry

        resolved = self._drain_locked(state, now)
        others = [e for e in resolved if e.id != entry.id]
        if entry.is_waiting:
            self.hoarding.record_denial(requester.id, resource_id, now)

        if entry.status == EntryStatus.ADMITTED:
            return AccessDecision.admitted(self._grants[entry.grant_id]), others
        if entry.status == EntryStatus.REJECTED:
            record = self.ledger.get_record(requester.id, resource_id)
            return self._quota_rejection(requester.id, record, flag, now), others

        position = state.queue.position(entry.id)
        wait = self._estimate_locked(state, entry)
        return AccessDecision.queued(entry.id, position, wait), others

    def _effective_record(
        self,
        requester_id: str,
        resource_id: str,
        flag: HoardingFlag,
    ) -> QuotaRecord:
        """Quota record with the hoarding restriction applied, if any."""
        if flag == HoardingFlag.RESTRICTED:
            return self.ledger.restrict_limit_locked(
                requester_id,
                resource_id,
                self.hoarding.settings.restricted_quota_factor,
            )
        return self.ledger.get_record(requester_id, resource_id)

    def _quota_rejection(
        self,
        requester_id: str,
        record: QuotaRecord,
        flag: HoardingFlag,
        now: datetime,
    ) -> AccessDecision:
        if flag == HoardingFlag.RESTRICTED:
            profile = self.hoarding.get_profile(requester_id, now)
            return self._reject(
                RejectionReason.RESTRICTED_REQUESTER,
                f"Requester {requester_id} is restricted for hoarding and its "
                f"reduced quota on {record.resource_id} is used up",
                limit=record.limit,
                used=record.used,
                reset_at=record.reset_at,
                cooldown_until=profile.cooldown_until,
            )
        return self._reject(
            RejectionReason.QUOTA_EXCEEDED,
            f"Quota for {record.resource_id} used up until {record.reset_at.isoformat()}",
            limit=record.limit,
            used=record.used,
            reset_at=record.reset_at,
        )

    def _admit_locked(
        self,
        state: ResourceState,
        requester_id: str,
        is_underserved: bool,
        amount: int,
        kind: PoolKind,
        now: datetime,
        entry: Optional[QueueEntry] = None,
    ) -> Grant:
        """Reserve quota and capacity together; on any failure, neither sticks."""
        resource_id = state.capacity.resource_id
        result = self.ledger.reserve_locked(requester_id, resource_id, amount)
        if not result.granted:
            raise QuotaExceeded(
                message=f"Quota exceeded for {requester_id} on {resource_id}",
                requester_id=requester_id,
                resource_id=resource_id,
                limit=result.limit,
                used=result.used,
                reset_at=result.reset_at,
            )

        committed = False
        grant: Optional[Grant] = None
        try:
            self.pool.commit(
                resource_id,
                kind,
                spillover=is_underserved and kind == PoolKind.GENERAL,
            )
            committed = True
            period_start, _ = self.ledger.period_of(resource_id)
            grant = Grant(
                id="",
                requester_id=requester_id,
                resource_id=resource_id,
                amount=amount,
                pool=kind,
                granted_at=now,
                expires_at=now + timedelta(seconds=state.capacity.session_timeout_seconds),
                period_start=period_start,
                entry_id=entry.id if entry else None,
            )
            self._grants[grant.id] = grant
            state.grants[grant.id] = grant
        except BaseException:
            if grant is not None:
                self._grants.pop(grant.id, None)
                state.grants.pop(grant.id, None)
            if committed:
                self.pool.release(resource_id, kind)
            self.ledger.release_locked(requester_id, resource_id, amount)
            self._logger.error(
                "admission_rolled_back",
                resource_id=resource_id,
                requester_id=requester_id,
            )
            raise

        self.hoarding.record_grant(requester_id, resource_id, now)
        self._logger.info(
            "access_granted",
            grant_id=grant.id,
            resource_id=resource_id,
            requester_id=requester_id,
            pool=kind.value,
            remaining_quota=result.remaining,
        )
        return grant

    def _reject(self, reason: RejectionReason, message: str, **details: Any) -> AccessDecision:
        return AccessDecision.rejected(Rejection(reason=reason, message=message, **details))

    def _log_decision(self, request: AccessRequest, decision: AccessDecision) -> None:
        self._logger.info(
            "access_decision",
            requester_id=request.requester.id,
            resource_id=request.resource_id,
            outcome=decision.outcome.value,
            position=decision.position,
            reason=decision.rejection.reason.value if decision.rejection else None,
        )

    # -------------------------------------------------------------------------
    # Queue draining
    # -------------------------------------------------------------------------

    async def drain(self, resource_id: str) -> List[Grant]:
        """Admit queued entries while the head of the line is admissible."""
        state = self._state(resource_id)
        async with self._locks.scope(resource_id):
            resolved = self._drain_locked(state, self._clock())
        await self._notify(resolved)
        return [
            self._grants[e.grant_id]
            for e in resolved
            if e.status == EntryStatus.ADMITTED and e.grant_id in self._grants
        ]

    def _drain_locked(self, state: ResourceState, now: datetime) -> List[QueueEntry]:
        """Head-of-line admission loop; the caller holds the resource scope."""
        resource_id = state.capacity.resource_id
        queue = state.queue
        resolved: List[QueueEntry] = []

        if resource_id in self._invalid:
            return resolved

        while True:
            head = queue.peek()
            if head is None:
                break

            # An entry whose quota ran out since it was queued can never be
            # admitted; resolve it rather than block the line forever.
            flag = self.hoarding.get_flag(head.requester_id, now)
            record = self._effective_record(head.requester_id, resource_id, flag)
            if record.used + head.amount > record.limit:
                reason = (
                    RejectionReason.RESTRICTED_REQUESTER
                    if flag == HoardingFlag.RESTRICTED
                    else RejectionReason.QUOTA_EXCEEDED
                )
                queue.withdraw(head.id, EntryStatus.REJECTED, reason)
                resolved.append(head)
                continue

            chosen: Dict[str, PoolKind] = {}

            def admissible(entry: QueueEntry) -> bool:
                kind = self.pool.try_admit(
                    Requester(id=entry.requester_id, is_underserved=entry.is_underserved),
                    resource_id,
                    underserved_waiting=queue.has_underserved_ahead(entry.id),
                )
                if kind is None:
                    return False
                chosen["kind"] = kind
                return True

            entry = queue.dequeue_if_admissible(admissible)
            if entry is None:
                break

            try:
                grant = self._admit_locked(
                    state,
                    entry.requester_id,
                    entry.is_underserved,
                    entry.amount,
                    chosen["kind"],
                    now,
                    entry,
                )
            except BaseException:
                queue.requeue(entry)
                raise
            entry.grant_id = grant.id
            resolved.append(entry)

        return resolved

    # -------------------------------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------------------------------

    async def complete_session(self, grant_id: str, consumed: Optional[int] = None) -> Grant:
        """
        End an admitted session.

        Releases the capacity unit and the unconsumed part of the quota
        reservation (``consumed`` defaults to the full amount; pass 0 for a
        session that never started), then drains the queue. Completing an
        already-ended grant changes nothing.
        """
        return await self._end_grant(grant_id, GrantStatus.COMPLETED, consumed)

    async def expire_grant(self, grant_id: str) -> Grant:
        """End a session that timed out without completion.

        Bookkeeping matches complete_session; the expiry also feeds the
        hoarding monitor as an anomaly signal.
        """
        return await self._end_grant(grant_id, GrantStatus.EXPIRED, None)

    async def _end_grant(
        self,
        grant_id: str,
        status: GrantStatus,
        consumed: Optional[int],
    ) -> Grant:
        grant = self._grants.get(grant_id)
        if grant is None:
            raise GrantNotFoundError(f"Grant {grant_id} not found")

        async with self._locks.scope(grant.resource_id):
            resolved = self._end_grant_locked(grant, status, self._clock(), consumed)

        await self._notify(resolved)
        return grant

    def _end_grant_locked(
        self,
        grant: Grant,
        status: GrantStatus,
        now: datetime,
        consumed: Optional[int],
    ) -> List[QueueEntry]:
        if not grant.is_active:
            return []

        state = self._state(grant.resource_id)
        resource_id = grant.resource_id
        used = grant.amount if consumed is None else min(max(consumed, 0), grant.amount)

        grant.status = status
        grant.ended_at = now
        grant.consumed = used
        state.grants.pop(grant.id, None)

        self.pool.release(resource_id, grant.pool)
        period_start, _ = self.ledger.period_of(resource_id)
        if grant.period_start == period_start and used < grant.amount:
            self.ledger.release_locked(grant.requester_id, resource_id, grant.amount - used)

        duration = max(0.0, (now - grant.granted_at).total_seconds())
        state.queue.durations.record(duration)
        if status == GrantStatus.EXPIRED:
            self.hoarding.record_expiry(grant.requester_id, resource_id, duration, now)
        else:
            self.hoarding.record_usage(grant.requester_id, resource_id, duration, now)

        self._logger.info(
            "session_ended",
            grant_id=grant.id,
            resource_id=resource_id,
            requester_id=grant.requester_id,
            status=status.value,
            duration_seconds=duration,
            consumed=used,
        )
        return self._drain_locked(state, now)

    # -------------------------------------------------------------------------
    # Queue operations
    # -------------------------------------------------------------------------

    async def withdraw(self, entry_id: str) -> bool:
        """Cancel a queued request. Returns False if it is no longer waiting."""
        entry = self._entries.get(entry_id)
        if entry is None or not entry.is_waiting:
            return False

        state = self._state(entry.resource_id)
        async with self._locks.scope(entry.resource_id):
            if state.queue.withdraw(entry_id) is None:
                return False
            # Removing a blocked head can unblock the line.
            resolved = self._drain_locked(state, self._clock())

        await self._notify(resolved)
        return True

    async def estimate_wait(self, entry_id: str) -> Optional[timedelta]:
        """Current advisory wait estimate for a queued request."""
        entry = self._entries.get(entry_id)
        if entry is None or not entry.is_waiting:
            return None
        state = self._state(entry.resource_id)
        async with self._locks.scope(entry.resource_id):
            return self._estimate_locked(state, entry)

    def _estimate_locked(self, state: ResourceState, entry: QueueEntry) -> Optional[timedelta]:
        snapshot = self.pool.snapshot(state.capacity.resource_id)
        if entry.is_underserved:
            capacity, in_use = snapshot.total, snapshot.in_use
        else:
            capacity, in_use = snapshot.general, snapshot.general_in_use
        return state.queue.estimate_wait(entry.id, capacity, in_use)

    def get_entry(self, entry_id: str) -> Optional[QueueEntry]:
        return self._entries.get(entry_id)

    def get_grant(self, grant_id: str) -> Optional[Grant]:
        return self._grants.get(grant_id)

    def get_quota(self, requester_id: str, resource_id: str) -> QuotaRecord:
        self._state(resource_id)
        return self.ledger.get_record(requester_id, resource_id)

    def add_status_callback(self, callback: StatusCallback) -> None:
        """Add callback for resolved queue entries (admitted, rejected, timed out)."""
        self._status_callbacks.append(callback)

    async def _notify(self, entries: List[QueueEntry]) -> None:
        for entry in entries:
            for callback in self._status_callbacks:
                try:
                    if inspect.iscoroutinefunction(callback):
                        await callback(entry)
                    else:
                        callback(entry)
                except Exception as e:
                    self._logger.error(
                        "status_callback_error",
                        entry_id=entry.id,
                        error=str(e),
                    )

    # -------------------------------------------------------------------------
    # Periods
    # -------------------------------------------------------------------------

    async def rollover(self, resource_id: str, new_period_start: datetime) -> bool:
        """Start a new quota period; a repeated rollover is a no-op."""
        state = self._state(resource_id)
        async with self._locks.scope(resource_id):
            return self._rollover_locked(state, new_period_start)

    def _rollover_locked(self, state: ResourceState, new_period_start: datetime) -> bool:
        resource_id = state.capacity.resource_id
        if not self.ledger.rollover_locked(resource_id, new_period_start):
            return False
        self.pool.begin_period(resource_id, new_period_start)
        return True

    def _maybe_rollover_locked(self, state: ResourceState, now: datetime) -> bool:
        target = self.ledger.due_for_rollover(state.capacity.resource_id, now)
        if target is None:
            return False
        return self._rollover_locked(state, target)

    # -------------------------------------------------------------------------
    # Sweeper
    # -------------------------------------------------------------------------

    async def sweep(self) -> Dict[str, int]:
        """Enforce period boundaries, queue timeouts and session timeouts."""
        now = self._clock()
        counts = {"rollovers": 0, "timed_out": 0, "expired_grants": 0}

        for resource_id, state in list(self._resources.items()):
            async with self._locks.scope(resource_id):
                if self._maybe_rollover_locked(state, now):
                    counts["rollovers"] += 1

                resolved = state.queue.sweep_expired(now)
                counts["timed_out"] += len(resolved)

                overdue = [g for g in state.grants.values() if g.expires_at <= now]
                for grant in overdue:
                    resolved.extend(
                        self._end_grant_locked(grant, GrantStatus.EXPIRED, now, None)
                    )
                counts["expired_grants"] += len(overdue)

                if resolved:
                    resolved.extend(self._drain_locked(state, now))

            await self._notify(resolved)

        self._prune_history(now)
        if any(counts.values()):
            self._logger.info("sweep_completed", **counts)
        return counts

    def _prune_history(self, now: datetime) -> None:
        """Forget resolved entries, ended grants and idle hoarding profiles."""
        cutoff = now - timedelta(seconds=self.settings.retention_seconds)
        self.hoarding.prune(now)
        for entry_id, entry in list(self._entries.items()):
            if not entry.is_waiting and entry.resolved_at and entry.resolved_at < cutoff:
                del self._entries[entry_id]
        for grant_id, grant in list(self._grants.items()):
            if not grant.is_active and grant.ended_at and grant.ended_at < cutoff:
                del self._grants[grant_id]

    async def start(self) -> None:
        """Start the background sweeper."""
        if self._running:
            return
        self._running = True
        self._sweeper_task = asyncio.create_task(self._sweeper_loop())
        self._logger.info(
            "coordinator_started",
            resources=len(self._resources),
            sweep_interval=self.settings.sweep_interval_seconds,
        )

    async def stop(self) -> None:
        """Stop the background sweeper."""
        self._running = False
        if self._sweeper_task:
            self._sweeper_task.cancel()
            try:
                await self._sweeper_task
            except asyncio.CancelledError:
                pass
            self._sweeper_task = None
        self._logger.info("coordinator_stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _sweeper_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.settings.sweep_interval_seconds)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._logger.error("sweeper_loop_error", error=str(e))

    # -------------------------------------------------------------------------
    # Administrative reads
    # -------------------------------------------------------------------------

    def get_resource_status(self, resource_id: str) -> Dict[str, Any]:
        """Queue depth, reservation utilization and period stats of a resource."""
        state = self._state(resource_id)
        period_start, reset_at = self.ledger.period_of(resource_id)
        return {
            "resource_id": resource_id,
            "capacity": state.capacity.to_dict(),
            "configuration_valid": resource_id not in self._invalid,
            "queue_depth": state.queue.depth,
            "active_grants": len(state.grants),
            "reservation": self.pool.snapshot(resource_id).to_dict(),
            "period": self.pool.period_stats(resource_id).to_dict(),
            "period_start": period_start.isoformat(),
            "reset_at": reset_at.isoformat(),
            "avg_session_seconds": state.queue.durations.value,
        }

    def list_resource_status(self) -> List[Dict[str, Any]]:
        return [self.get_resource_status(rid) for rid in sorted(self._resources)]

    def get_flagged_requesters(self) -> List[Dict[str, Any]]:
        return [p.to_dict() for p in self.hoarding.flagged_requesters(self._clock())]

    def get_dashboard(self) -> Dict[str, Any]:
        """Everything an operator dashboard shows, in one read."""
        resources = self.list_resource_status()
        return {
            "resources": resources,
            "flagged_requesters": self.get_flagged_requesters(),
            "invalid_configurations": {
                rid: error.errors for rid, error in self._invalid.items()
            },
            "totals": {
                "resources": len(resources),
                "queued": sum(r["queue_depth"] for r in resources),
                "active_grants": sum(r["active_grants"] for r in resources),
            },
        }
