"""
Allocation Base Types Module

This module defines the core types for quota bookkeeping, capacity
reservation, hoarding profiles, queue entries and admission decisions,
together with the exceptions raised across the allocation engine.
"""

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError


# =============================================================================
# Enums
# =============================================================================


class QuotaPeriod(str, Enum):
    """Length of a quota accounting period."""

    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    def start_of(self, at: datetime) -> datetime:
        """Get the start of the period containing ``at``."""
        if self is QuotaPeriod.HOURLY:
            return at.replace(minute=0, second=0, microsecond=0)
        day = at.replace(hour=0, minute=0, second=0, microsecond=0)
        if self is QuotaPeriod.DAILY:
            return day
        if self is QuotaPeriod.WEEKLY:
            return day - timedelta(days=day.weekday())
        return day.replace(day=1)

    def next_start(self, start: datetime) -> datetime:
        """Get the start of the period following the one starting at ``start``."""
        if self is QuotaPeriod.HOURLY:
            return start + timedelta(hours=1)
        if self is QuotaPeriod.DAILY:
            return start + timedelta(days=1)
        if self is QuotaPeriod.WEEKLY:
            return start + timedelta(weeks=1)
        if start.month == 12:
            return start.replace(year=start.year + 1, month=1)
        return start.replace(month=start.month + 1)


class PoolKind(str, Enum):
    """Capacity pool a grant was drawn from."""

    RESERVED = "reserved"
    GENERAL = "general"


class HoardingFlag(str, Enum):
    """Hoarding state of a requester."""

    CLEAR = "clear"
    WATCHED = "watched"
    RESTRICTED = "restricted"


class AdmissionOutcome(str, Enum):
    """Outcome of an access request."""

    ADMITTED = "admitted"
    QUEUED = "queued"
    REJECTED = "rejected"


class RejectionReason(str, Enum):
    """Why an access request was rejected."""

    QUOTA_EXCEEDED = "quota_exceeded"
    RESTRICTED_REQUESTER = "restricted_requester"
    CONFIGURATION_INVALID = "configuration_invalid"
    UNKNOWN_RESOURCE = "unknown_resource"
    ACCESS_DENIED = "access_denied"
    QUEUE_FULL = "queue_full"


class EntryStatus(str, Enum):
    """Lifecycle status of a queue entry."""

    WAITING = "waiting"
    ADMITTED = "admitted"
    WITHDRAWN = "withdrawn"
    TIMED_OUT = "timed_out"
    REJECTED = "rejected"


class GrantStatus(str, Enum):
    """Lifecycle status of a grant."""

    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"


# =============================================================================
# Exceptions
# =============================================================================


class AllocationError(Exception):
    """Base exception for allocation engine errors."""
    pass


class QuotaExceeded(AllocationError):
    """Requester's own quota for the period is used up."""

    def __init__(
        self,
        message: str,
        requester_id: str,
        resource_id: str,
        limit: int,
        used: int,
        reset_at: Optional[datetime],
    ):
        super().__init__(message)
        self.requester_id = requester_id
        self.resource_id = resource_id
        self.limit = limit
        self.used = used
        self.reset_at = reset_at


class CapacityUnavailable(AllocationError):
    """No slack in the pool a commit targeted."""
    pass


class ConfigurationInvalid(AllocationError):
    """Resource configuration is out of its valid range."""

    def __init__(self, resource_id: str, errors: List[str]):
        super().__init__(
            f"Invalid configuration for resource {resource_id}: {'; '.join(errors)}"
        )
        self.resource_id = resource_id
        self.errors = errors


class RestrictedRequester(AllocationError):
    """Requester is restricted for hoarding and has no effective quota left."""

    def __init__(self, requester_id: str, cooldown_until: Optional[datetime]):
        super().__init__(f"Requester {requester_id} is restricted")
        self.requester_id = requester_id
        self.cooldown_until = cooldown_until


class ConcurrentModificationRetry(AllocationError):
    """A resource scope could not be acquired in time; the caller retries."""
    pass


class ResourceNotFoundError(AllocationError):
    """Resource is not configured."""
    pass


class GrantNotFoundError(AllocationError):
    """Grant not found."""
    pass


class QueueFullError(AllocationError):
    """Queue is at maximum size."""
    pass


# =============================================================================
# Resource Configuration
# =============================================================================


def reserved_units(total_capacity: int, reservation_fraction: float) -> int:
    """floor(total * fraction), computed in decimal so 0.29 * 100 stays 29."""
    return int(math.floor(Decimal(str(reservation_fraction)) * total_capacity))


class ResourceConfig(BaseModel):
    """Allocation envelope supplied by the resource catalog."""

    resource_id: str = Field(min_length=1)
    total_capacity: int = Field(ge=0)
    per_requester_limit: int = Field(ge=1)
    reservation_fraction: float = Field(default=0.0, ge=0.0, le=1.0)
    required_access_level: int = Field(default=0, ge=0)
    category: str = "general"
    period: QuotaPeriod = QuotaPeriod.DAILY
    session_timeout_seconds: float = Field(default=3600.0, gt=0)
    queue_timeout_seconds: float = Field(default=1800.0, gt=0)

    @classmethod
    def load(cls, data: Mapping[str, Any]) -> "ResourceConfig":
        """Validate catalog data, raising ConfigurationInvalid on bad input."""
        try:
            return cls.model_validate(dict(data))
        except ValidationError as e:
            errors = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in e.errors()
            ]
            raise ConfigurationInvalid(str(data.get("resource_id", "")), errors) from e


# =============================================================================
# Requester Types
# =============================================================================


@dataclass
class AccessHistory:
    """Rolling counts of past grants and denials."""

    grants: int = 0
    denials: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"grants": self.grants, "denials": self.denials}


@dataclass
class Requester:
    """An organization or member competing for resource capacity."""

    id: str
    is_underserved: bool = False
    access_level: int = 0
    organization_id: Optional[str] = None
    history: AccessHistory = field(default_factory=AccessHistory)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "is_underserved": self.is_underserved,
            "access_level": self.access_level,
            "organization_id": self.organization_id,
            "history": self.history.to_dict(),
        }


# =============================================================================
# Capacity and Quota Types
# =============================================================================


@dataclass
class ResourceCapacity:
    """A resource's allocation envelope for the current period.

    ``in_use`` is owned by the reservation pool and never written elsewhere.
    """

    resource_id: str
    total_capacity: int
    per_requester_limit: int
    reservation_fraction: float = 0.0
    required_access_level: int = 0
    category: str = "general"
    period: QuotaPeriod = QuotaPeriod.DAILY
    session_timeout_seconds: float = 3600.0
    queue_timeout_seconds: float = 1800.0
    in_use: int = 0

    @classmethod
    def from_config(cls, config: ResourceConfig) -> "ResourceCapacity":
        """Create from a validated catalog configuration."""
        return cls(
            resource_id=config.resource_id,
            total_capacity=config.total_capacity,
            per_requester_limit=config.per_requester_limit,
            reservation_fraction=config.reservation_fraction,
            required_access_level=config.required_access_level,
            category=config.category,
            period=config.period,
            session_timeout_seconds=config.session_timeout_seconds,
            queue_timeout_seconds=config.queue_timeout_seconds,
        )

    @property
    def reserved_capacity(self) -> int:
        return reserved_units(self.total_capacity, self.reservation_fraction)

    @property
    def general_capacity(self) -> int:
        return self.total_capacity - self.reserved_capacity

    @property
    def available(self) -> int:
        return max(0, self.total_capacity - self.in_use)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "resource_id": self.resource_id,
            "total_capacity": self.total_capacity,
            "per_requester_limit": self.per_requester_limit,
            "reservation_fraction": self.reservation_fraction,
            "reserved_capacity": self.reserved_capacity,
            "general_capacity": self.general_capacity,
            "required_access_level": self.required_access_level,
            "category": self.category,
            "period": self.period.value,
            "in_use": self.in_use,
        }


@dataclass
class QuotaRecord:
    """Usage state of one requester on one resource for one period."""

    requester_id: str
    resource_id: str
    period_start: datetime
    reset_at: datetime
    base_limit: int
    limit: int
    used: int = 0

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "requester_id": self.requester_id,
            "resource_id": self.resource_id,
            "period_start": self.period_start.isoformat(),
            "reset_at": self.reset_at.isoformat(),
            "base_limit": self.base_limit,
            "limit": self.limit,
            "used": self.used,
            "remaining": self.remaining,
        }


@dataclass
class QuotaCheckResult:
    """Result of a quota check-and-reserve."""

    granted: bool
    limit: int
    used: int
    remaining: int
    reset_at: Optional[datetime]


# =============================================================================
# Grant and Queue Types
# =============================================================================


@dataclass
class Grant:
    """An admitted session's claim on quota and capacity."""

    id: str
    requester_id: str
    resource_id: str
    amount: int
    pool: PoolKind
    granted_at: datetime
    expires_at: datetime
    period_start: datetime
    status: GrantStatus = GrantStatus.ACTIVE
    ended_at: Optional[datetime] = None
    consumed: Optional[int] = None
    entry_id: Optional[str] = None

    def __post_init__(self):
        if not self.id:
            self.id = f"grant_{uuid.uuid4().hex[:18]}"

    @property
    def is_active(self) -> bool:
        return self.status == GrantStatus.ACTIVE

    @property
    def duration(self) -> Optional[timedelta]:
        if self.ended_at is None:
            return None
        return self.ended_at - self.granted_at

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "requester_id": self.requester_id,
            "resource_id": self.resource_id,
            "amount": self.amount,
            "pool": self.pool.value,
            "granted_at": self.granted_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "period_start": self.period_start.isoformat(),
            "status": self.status.value,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "consumed": self.consumed,
            "entry_id": self.entry_id,
        }


@dataclass
class QueueEntry:
    """A pending access request (a waiting requester)."""

    id: str
    requester_id: str
    resource_id: str
    submitted_at: datetime
    score: float
    amount: int = 1
    is_underserved: bool = False
    need_signal: float = 0.0
    expires_at: Optional[datetime] = None
    status: EntryStatus = EntryStatus.WAITING
    seq: int = 0
    grant_id: Optional[str] = None
    resolved_at: Optional[datetime] = None
    rejection_reason: Optional[RejectionReason] = None

    def __post_init__(self):
        if not self.id:
            self.id = f"qentry_{uuid.uuid4().hex[:18]}"

    @property
    def is_waiting(self) -> bool:
        return self.status == EntryStatus.WAITING

    def sort_key(self) -> tuple:
        """Higher score first, then earlier submission, then insertion order."""
        return (-self.score, self.submitted_at.timestamp(), self.seq)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "requester_id": self.requester_id,
            "resource_id": self.resource_id,
            "submitted_at": self.submitted_at.isoformat(),
            "score": self.score,
            "amount": self.amount,
            "is_underserved": self.is_underserved,
            "need_signal": self.need_signal,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "status": self.status.value,
            "seq": self.seq,
            "grant_id": self.grant_id,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "rejection_reason": self.rejection_reason.value if self.rejection_reason else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueueEntry":
        """Create from dictionary."""
        return cls(
            id=data.get("id", ""),
            requester_id=data["requester_id"],
            resource_id=data["resource_id"],
            submitted_at=datetime.fromisoformat(data["submitted_at"]),
            score=float(data["score"]),
            amount=int(data.get("amount", 1)),
            is_underserved=bool(data.get("is_underserved", False)),
            need_signal=float(data.get("need_signal", 0.0)),
            expires_at=datetime.fromisoformat(data["expires_at"]) if data.get("expires_at") else None,
            status=EntryStatus(data.get("status", EntryStatus.WAITING.value)),
            seq=int(data.get("seq", 0)),
            grant_id=data.get("grant_id"),
        )


# =============================================================================
# Request and Decision Types
# =============================================================================


@dataclass
class AccessRequest:
    """A request to use one resource, as forwarded by provisioning."""

    requester: Requester
    resource_id: str
    amount: int = 1
    need_signal: float = 0.0


@dataclass
class Rejection:
    """Structured explanation of a rejected request."""

    reason: RejectionReason
    message: str
    limit: Optional[int] = None
    used: Optional[int] = None
    reset_at: Optional[datetime] = None
    cooldown_until: Optional[datetime] = None
    queue_depth: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "reason": self.reason.value,
            "message": self.message,
            "limit": self.limit,
            "used": self.used,
            "reset_at": self.reset_at.isoformat() if self.reset_at else None,
            "cooldown_until": self.cooldown_until.isoformat() if self.cooldown_until else None,
            "queue_depth": self.queue_depth,
        }


@dataclass
class AccessDecision:
    """Admitted(grant) | Queued(position, estimated_wait) | Rejected(reason)."""

    outcome: AdmissionOutcome
    grant: Optional[Grant] = None
    entry_id: Optional[str] = None
    position: Optional[int] = None
    estimated_wait: Optional[timedelta] = None
    rejection: Optional[Rejection] = None

    @classmethod
    def admitted(cls, grant: Grant) -> "AccessDecision":
        return cls(outcome=AdmissionOutcome.ADMITTED, grant=grant, entry_id=grant.entry_id)

    @classmethod
    def queued(
        cls,
        entry_id: str,
        position: int,
        estimated_wait: timedelta,
    ) -> "AccessDecision":
        return cls(
            outcome=AdmissionOutcome.QUEUED,
            entry_id=entry_id,
            position=position,
            estimated_wait=estimated_wait,
        )

    @classmethod
    def rejected(cls, rejection: Rejection) -> "AccessDecision":
        return cls(outcome=AdmissionOutcome.REJECTED, rejection=rejection)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "outcome": self.outcome.value,
            "grant": self.grant.to_dict() if self.grant else None,
            "entry_id": self.entry_id,
            "position": self.position,
            "estimated_wait_seconds": (
                self.estimated_wait.total_seconds() if self.estimated_wait is not None else None
            ),
            "rejection": self.rejection.to_dict() if self.rejection else None,
        }


# =============================================================================
# Exports
# =============================================================================


__all__ = [
    # Enums
    "QuotaPeriod",
    "PoolKind",
    "HoardingFlag",
    "AdmissionOutcome",
    "RejectionReason",
    "EntryStatus",
    "GrantStatus",
    # Configuration
    "ResourceConfig",
    "reserved_units",
    # Types
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
