"""
Priority Scoring
================

Admission priority as a weighted sum over explicit need signals. Higher
scores are served sooner. Weights come from configuration; the scorer holds
no mutable state and never reads the clock, so identical inputs always give
identical scores.
"""

import math
from dataclasses import dataclass
from typing import Dict, Optional

from fairshare_core.config import ScoringWeights

from .base import HoardingFlag, Requester, ResourceCapacity
from .reservation import ReservationState


@dataclass(frozen=True)
class ScoringSignals:
    """Inputs of the priority formula."""

    need: float
    recent_grants: int
    is_underserved: bool
    hoarding_flag: HoardingFlag = HoardingFlag.CLEAR
    reserved_slack: int = 0


class PriorityScorer:
    """
    Computes admission priorities.

    Usage:
        scorer = PriorityScorer(ScoringWeights())
        priority = scorer.score(requester, capacity, pool.snapshot(rid), need=4.0)
    """

    def __init__(self, weights: Optional[ScoringWeights] = None):
        self.weights = weights or ScoringWeights()

    def clamp_need(self, need: float) -> float:
        """Range-clamp the opaque need signal from the impact service."""
        if need is None or math.isnan(need):
            return 0.0
        return min(max(need, 0.0), self.weights.need_max)

    def signals_for(
        self,
        requester: Requester,
        resource: ResourceCapacity,
        reservation_state: Optional[ReservationState] = None,
        need: float = 0.0,
        flag: HoardingFlag = HoardingFlag.CLEAR,
    ) -> ScoringSignals:
        """Build the signal struct for one requester on one resource."""
        return ScoringSignals(
            need=self.clamp_need(need),
            recent_grants=requester.history.grants,
            is_underserved=requester.is_underserved,
            hoarding_flag=flag,
            reserved_slack=reservation_state.reserved_slack if reservation_state else 0,
        )

    def explain(self, signals: ScoringSignals) -> Dict[str, float]:
        """Per-term contributions, for audit trails."""
        w = self.weights
        terms = {
            "need": w.need_weight * signals.need,
            "history": -w.history_weight * min(signals.recent_grants, w.history_cap),
            "underserved": w.underserved_bonus if signals.is_underserved else 0.0,
            "reserved_slack": (
                w.reserved_slack_bonus
                if signals.is_underserved and signals.reserved_slack > 0
                else 0.0
            ),
            "hoarding": 0.0,
        }
        if signals.hoarding_flag == HoardingFlag.WATCHED:
            terms["hoarding"] = -w.watched_penalty
        elif signals.hoarding_flag == HoardingFlag.RESTRICTED:
            terms["hoarding"] = -w.restricted_penalty
        return terms

    def score_signals(self, signals: ScoringSignals) -> float:
        """Weighted sum of the signal terms."""
        return float(sum(self.explain(signals).values()))

    def score(
        self,
        requester: Requester,
        resource: ResourceCapacity,
        reservation_state: Optional[ReservationState] = None,
        need: float = 0.0,
        flag: HoardingFlag = HoardingFlag.CLEAR,
    ) -> float:
        """Compute the admission priority of a request."""
        return self.score_signals(
            self.signals_for(requester, resource, reservation_state, need, flag)
        )
