"""
Hoarding Monitor
================

Rolling usage statistics per requester and resource, used to spot requesters
that consume disproportionate *contested* capacity.

A window deviates when a requester's usage exceeds a configured multiple of
the median usage of its peers on the same resource (or when its grants keep
expiring without completion). A deviating sample marks the requester
``watched``. Deviation that persists across consecutive windows while other
requesters on the resource are being denied escalates to ``restricted``.
Heavy use of a resource nobody else is waiting for never restricts.

Flags decay on their own after a quiet cooldown. The monitor never rejects a
request; it only feeds the priority penalty and the restricted quota factor.
"""

import statistics
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, List, Optional

import structlog

from fairshare_core.config import HoardingSettings
from fairshare_core.core.clock import Clock, utcnow

from .base import AccessHistory, HoardingFlag

logger = structlog.get_logger(__name__)


# =============================================================================
# Types
# =============================================================================


@dataclass
class UsageWindow:
    """One requester's activity on one resource within one window."""

    duration_seconds: float = 0.0
    sessions: int = 0
    grants: int = 0
    denials: int = 0
    expiries: int = 0


@dataclass
class UsageSample:
    """A completed or expired session."""

    resource_id: str
    duration_seconds: float
    at: datetime
    expired: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "duration_seconds": self.duration_seconds,
            "at": self.at.isoformat(),
            "expired": self.expired,
        }


@dataclass
class HoardingProfile:
    """Hoarding state of a requester."""

    requester_id: str
    flag: HoardingFlag = HoardingFlag.CLEAR
    samples: Deque[UsageSample] = field(default_factory=deque)
    flagged_at: Optional[datetime] = None
    restricted_at: Optional[datetime] = None
    last_anomaly_at: Optional[datetime] = None
    cooldown_until: Optional[datetime] = None
    cleared_through_window: Optional[int] = None
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "requester_id": self.requester_id,
            "flag": self.flag.value,
            "flagged_at": self.flagged_at.isoformat() if self.flagged_at else None,
            "restricted_at": self.restricted_at.isoformat() if self.restricted_at else None,
            "last_anomaly_at": self.last_anomaly_at.isoformat() if self.last_anomaly_at else None,
            "cooldown_until": self.cooldown_until.isoformat() if self.cooldown_until else None,
            "recent_samples": [s.to_dict() for s in list(self.samples)[-10:]],
            "reasons": list(self.reasons),
        }


# =============================================================================
# Monitor
# =============================================================================


class HoardingMonitor:
    """Maintains hoarding profiles for all requesters."""

    def __init__(
        self,
        settings: Optional[HoardingSettings] = None,
        clock: Clock = utcnow,
    ):
        self.settings = settings or HoardingSettings()
        self._clock = clock
        # resource_id -> window index -> requester_id -> window
        self._windows: Dict[str, Dict[int, Dict[str, UsageWindow]]] = defaultdict(dict)
        self._profiles: Dict[str, HoardingProfile] = {}

    # -------------------------------------------------------------------------
    # Windows
    # -------------------------------------------------------------------------

    def window_index(self, at: datetime) -> int:
        return int(at.timestamp() // self.settings.window_seconds)

    def _oldest_retained(self, idx: int) -> int:
        return idx - self.settings.window_count + 1

    def _window(self, requester_id: str, resource_id: str, at: datetime) -> UsageWindow:
        idx = self.window_index(at)
        windows = self._windows[resource_id]
        oldest = self._oldest_retained(idx)
        for stale in [i for i in windows if i < oldest]:
            del windows[stale]
        bucket = windows.setdefault(idx, {})
        window = bucket.get(requester_id)
        if window is None:
            window = UsageWindow()
            bucket[requester_id] = window
        return window

    def _profile(self, requester_id: str) -> HoardingProfile:
        profile = self._profiles.get(requester_id)
        if profile is None:
            profile = HoardingProfile(
                requester_id=requester_id,
                samples=deque(maxlen=self.settings.max_samples),
            )
            self._profiles[requester_id] = profile
        return profile

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------

    def record_grant(self, requester_id: str, resource_id: str, at: Optional[datetime] = None) -> None:
        """Record that a requester was granted a unit."""
        self._window(requester_id, resource_id, at or self._clock()).grants += 1

    def record_denial(self, requester_id: str, resource_id: str, at: Optional[datetime] = None) -> None:
        """Record that a requester had to wait for capacity."""
        self._window(requester_id, resource_id, at or self._clock()).denials += 1

    def record_usage(
        self,
        requester_id: str,
        resource_id: str,
        duration_seconds: float,
        at: Optional[datetime] = None,
    ) -> HoardingFlag:
        """Record a finished session and re-evaluate the requester."""
        at = at or self._clock()
        window = self._window(requester_id, resource_id, at)
        window.duration_seconds += max(0.0, duration_seconds)
        window.sessions += 1
        profile = self._profile(requester_id)
        profile.samples.append(UsageSample(resource_id, duration_seconds, at))
        return self._evaluate(profile, resource_id, at)

    def record_expiry(
        self,
        requester_id: str,
        resource_id: str,
        duration_seconds: float = 0.0,
        at: Optional[datetime] = None,
    ) -> HoardingFlag:
        """Record a grant that timed out without being completed."""
        at = at or self._clock()
        window = self._window(requester_id, resource_id, at)
        window.duration_seconds += max(0.0, duration_seconds)
        window.sessions += 1
        window.expiries += 1
        profile = self._profile(requester_id)
        profile.samples.append(UsageSample(resource_id, duration_seconds, at, expired=True))
        return self._evaluate(profile, resource_id, at)

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def _deviation(self, requester_id: str, resource_id: str, idx: int) -> Optional[str]:
        """Describe why a window deviates, or None if it does not."""
        bucket = self._windows[resource_id].get(idx, {})
        own = bucket.get(requester_id)
        if own is None:
            return None

        if own.expiries >= self.settings.expiry_anomaly_threshold:
            return f"{own.expiries} expired grants on {resource_id}"

        peers = [
            w.duration_seconds
            for rid, w in bucket.items()
            if rid != requester_id and w.duration_seconds > 0
        ]
        if len(peers) < self.settings.min_peers:
            return None
        median = statistics.median(peers)
        if median > 0 and own.duration_seconds > self.settings.watch_multiple * median:
            return (
                f"usage {own.duration_seconds:.0f}s on {resource_id} exceeds "
                f"{self.settings.watch_multiple}x peer median {median:.0f}s"
            )
        return None

    def _streak(
        self,
        requester_id: str,
        resource_id: str,
        idx: int,
        floor: Optional[int],
    ) -> int:
        """Count consecutive deviating windows ending at ``idx``."""
        streak = 0
        oldest = self._oldest_retained(idx)
        current = idx
        while current >= oldest:
            if floor is not None and current <= floor:
                break
            if self._deviation(requester_id, resource_id, current) is None:
                break
            streak += 1
            current -= 1
        return streak

    def _is_contended(self, requester_id: str, resource_id: str, idx: int, span: int) -> bool:
        """Whether other requesters were being denied across the last ``span`` windows."""
        grants = 0
        denials = 0
        windows = self._windows[resource_id]
        for current in range(idx - span + 1, idx + 1):
            for rid, window in windows.get(current, {}).items():
                if rid == requester_id:
                    continue
                grants += window.grants
                denials += window.denials
        if denials == 0:
            return False
        return grants / denials <= self.settings.contention_ratio

    def _evaluate(self, profile: HoardingProfile, resource_id: str, at: datetime) -> HoardingFlag:
        self._apply_decay(profile, at)

        idx = self.window_index(at)
        reason = self._deviation(profile.requester_id, resource_id, idx)
        if reason is None:
            return profile.flag

        profile.last_anomaly_at = at
        profile.reasons = (profile.reasons + [reason])[-10:]

        streak = self._streak(
            profile.requester_id, resource_id, idx, profile.cleared_through_window
        )
        if streak >= self.settings.restrict_after_windows and self._is_contended(
            profile.requester_id, resource_id, idx, streak
        ):
            if profile.flag != HoardingFlag.RESTRICTED:
                profile.restricted_at = at
                self._transition(profile, HoardingFlag.RESTRICTED, at, reason)
        elif profile.flag == HoardingFlag.CLEAR:
            self._transition(profile, HoardingFlag.WATCHED, at, reason)

        if profile.flag == HoardingFlag.RESTRICTED:
            quiet = self.settings.cooldown_seconds
        else:
            quiet = self.settings.watch_decay_seconds
        profile.cooldown_until = at + timedelta(seconds=quiet)
        return profile.flag

    def _apply_decay(self, profile: HoardingProfile, at: datetime) -> None:
        """Clear a flag once its cooldown has passed without anomalies."""
        if profile.flag == HoardingFlag.CLEAR or profile.cooldown_until is None:
            return
        if at < profile.cooldown_until:
            return

        previous = profile.flag
        profile.flag = HoardingFlag.CLEAR
        if profile.last_anomaly_at is not None:
            profile.cleared_through_window = self.window_index(profile.last_anomaly_at)
        profile.flagged_at = None
        profile.restricted_at = None
        profile.cooldown_until = None
        logger.info(
            "hoarding_flag_decayed",
            requester_id=profile.requester_id,
            previous=previous.value,
        )

    def _transition(
        self,
        profile: HoardingProfile,
        flag: HoardingFlag,
        at: datetime,
        reason: str,
    ) -> None:
        previous = profile.flag
        profile.flag = flag
        if previous == HoardingFlag.CLEAR:
            profile.flagged_at = at
        logger.warning(
            "hoarding_flag_changed",
            requester_id=profile.requester_id,
            previous=previous.value,
            flag=flag.value,
            reason=reason,
        )

    def prune(self, at: Optional[datetime] = None) -> int:
        """
        Drop windows that fell out of retention on every resource, then
        forget clear profiles with no retained activity.

        Returns:
            Number of profiles removed
        """
        at = at or self._clock()
        oldest = self._oldest_retained(self.window_index(at))
        active = set()
        for resource_id, windows in list(self._windows.items()):
            for stale in [i for i in windows if i < oldest]:
                del windows[stale]
            if not windows:
                del self._windows[resource_id]
                continue
            for bucket in windows.values():
                active.update(bucket)

        removed = 0
        for requester_id, profile in list(self._profiles.items()):
            self._apply_decay(profile, at)
            if profile.flag == HoardingFlag.CLEAR and requester_id not in active:
                del self._profiles[requester_id]
                removed += 1
        return removed

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_profile(self, requester_id: str, at: Optional[datetime] = None) -> HoardingProfile:
        """Get a requester's profile with any due decay applied."""
        profile = self._profile(requester_id)
        self._apply_decay(profile, at or self._clock())
        return profile

    def get_flag(self, requester_id: str, at: Optional[datetime] = None) -> HoardingFlag:
        profile = self._profiles.get(requester_id)
        if profile is None:
            return HoardingFlag.CLEAR
        self._apply_decay(profile, at or self._clock())
        return profile.flag

    def quota_factor(self, requester_id: str, at: Optional[datetime] = None) -> float:
        """Multiplier applied to a requester's quota limit."""
        if self.get_flag(requester_id, at) == HoardingFlag.RESTRICTED:
            return self.settings.restricted_quota_factor
        return 1.0

    def access_history(self, requester_id: str, at: Optional[datetime] = None) -> AccessHistory:
        """Grants and denials across all resources in the retained windows."""
        oldest = self._oldest_retained(self.window_index(at or self._clock()))
        history = AccessHistory()
        for windows in self._windows.values():
            for idx, bucket in windows.items():
                if idx < oldest:
                    continue
                window = bucket.get(requester_id)
                if window is not None:
                    history.grants += window.grants
                    history.denials += window.denials
        return history

    def flagged_requesters(self, at: Optional[datetime] = None) -> List[HoardingProfile]:
        """All requesters currently watched or restricted."""
        at = at or self._clock()
        flagged = []
        for profile in self._profiles.values():
            self._apply_decay(profile, at)
            if profile.flag != HoardingFlag.CLEAR:
                flagged.append(profile)
        return sorted(flagged, key=lambda p: (p.flag != HoardingFlag.RESTRICTED, p.requester_id))
