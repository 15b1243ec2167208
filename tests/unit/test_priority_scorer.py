"""Unit tests for priority scoring."""

import math

import pytest

from fairshare_core.allocation import (
    AccessHistory,
    HoardingFlag,
    PriorityScorer,
    Requester,
    ResourceCapacity,
    ReservationState,
)
from fairshare_core.config import ScoringWeights


@pytest.fixture
def scorer() -> PriorityScorer:
    return PriorityScorer(ScoringWeights())


@pytest.fixture
def resource() -> ResourceCapacity:
    return ResourceCapacity(
        resource_id="gpu-a100",
        total_capacity=10,
        per_requester_limit=20,
        reservation_fraction=0.3,
    )


def _state(reserved_in_use: int = 0) -> ReservationState:
    return ReservationState(
        resource_id="gpu-a100",
        total=10,
        reserved=3,
        general=7,
        reserved_in_use=reserved_in_use,
        general_in_use=0,
    )


class TestPriorityScorer:
    """Tests for PriorityScorer."""

    def test_identical_inputs_identical_scores(self, scorer, resource):
        """Test scoring is deterministic."""
        requester = Requester(id="org_1", history=AccessHistory(grants=4, denials=1))

        scores = {scorer.score(requester, resource, _state(), need=3.5) for _ in range(20)}

        assert len(scores) == 1

    def test_need_raises_priority(self, scorer, resource):
        """Test higher need scores higher."""
        requester = Requester(id="org_1")

        assert scorer.score(requester, resource, need=4.0) == 40.0
        assert scorer.score(requester, resource, need=5.0) > scorer.score(
            requester, resource, need=4.0
        )

    def test_recent_grants_lower_priority(self, scorer, resource):
        """Test requesters served recently rank lower."""
        fresh = Requester(id="org_1")
        served = Requester(id="org_2", history=AccessHistory(grants=3))

        assert scorer.score(served, resource) == -3.0
        assert scorer.score(fresh, resource) > scorer.score(served, resource)

    def test_history_is_capped(self, scorer, resource):
        """Test the history penalty stops at the cap."""
        heavy = Requester(id="org_1", history=AccessHistory(grants=500))

        assert scorer.score(heavy, resource) == -50.0

    def test_underserved_bonus_with_reserved_slack(self, scorer, resource):
        """Test underserved requesters gain more while reserved capacity is idle."""
        requester = Requester(id="org_1", is_underserved=True)

        with_slack = scorer.score(requester, resource, _state(reserved_in_use=0))
        without_slack = scorer.score(requester, resource, _state(reserved_in_use=3))

        assert with_slack == 30.0
        assert without_slack == 25.0

    def test_reserved_slack_ignored_for_general(self, scorer, resource):
        """Test reserved slack gives general requesters nothing."""
        requester = Requester(id="org_1")

        assert scorer.score(requester, resource, _state()) == 0.0

    @pytest.mark.parametrize(
        "flag,expected",
        [
            (HoardingFlag.CLEAR, 0.0),
            (HoardingFlag.WATCHED, -20.0),
            (HoardingFlag.RESTRICTED, -100.0),
        ],
    )
    def test_hoarding_penalty(self, scorer, resource, flag, expected):
        """Test flagged requesters are penalized by flag severity."""
        requester = Requester(id="org_1")

        assert scorer.score(requester, resource, flag=flag) == expected

    def test_need_signal_clamped(self, scorer):
        """Test out-of-range need signals are clamped."""
        assert scorer.clamp_need(-3.0) == 0.0
        assert scorer.clamp_need(1e9) == 10.0
        assert scorer.clamp_need(math.nan) == 0.0
        assert scorer.clamp_need(2.5) == 2.5

    def test_explain_terms_sum_to_score(self, scorer, resource):
        """Test the explanation adds up to the score."""
        requester = Requester(
            id="org_1",
            is_underserved=True,
            history=AccessHistory(grants=2),
        )
        signals = scorer.signals_for(
            requester, resource, _state(), need=1.0, flag=HoardingFlag.WATCHED
        )

        terms = scorer.explain(signals)

        assert terms == {
            "need": 10.0,
            "history": -2.0,
            "underserved": 25.0,
            "reserved_slack": 5.0,
            "hoarding": -20.0,
        }
        assert scorer.score_signals(signals) == sum(terms.values())

    def test_custom_weights(self, resource):
        """Test weights come from configuration."""
        scorer = PriorityScorer(ScoringWeights(need_weight=1.0, underserved_bonus=100.0))
        requester = Requester(id="org_1", is_underserved=True)

        assert scorer.score(requester, resource, need=2.0) == 102.0
