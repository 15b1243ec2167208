"""Unit tests for quota ledger functionality."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from fairshare_core.allocation import (
    QuotaExceeded,
    QuotaLedger,
    QuotaPeriod,
    ResourceLockRegistry,
    ResourceNotFoundError,
)


DAY_START = datetime(2026, 3, 2, tzinfo=timezone.utc)


@pytest.fixture
def ledger(clock) -> QuotaLedger:
    ledger = QuotaLedger(ResourceLockRegistry(), clock)
    ledger.register_resource("gpu-a100", limit=5, period=QuotaPeriod.DAILY)
    return ledger


class TestQuotaReservation:
    """Tests for check-and-reserve."""

    @pytest.mark.asyncio
    async def test_reserve_within_limit(self, ledger):
        """Test reserving within the limit increments usage."""
        result = await ledger.check_and_reserve("org_1", "gpu-a100", amount=2)

        assert result.granted is True
        assert result.used == 2
        assert result.remaining == 3
        assert ledger.get_record("org_1", "gpu-a100").used == 2

    @pytest.mark.asyncio
    async def test_reserve_refused_not_clamped(self, ledger):
        """Test a reservation that would exceed the limit is refused outright."""
        await ledger.check_and_reserve("org_1", "gpu-a100", amount=4)
        result = await ledger.check_and_reserve("org_1", "gpu-a100", amount=2)

        assert result.granted is False
        assert result.used == 4
        assert result.limit == 5
        assert result.reset_at == DAY_START + timedelta(days=1)
        assert ledger.get_record("org_1", "gpu-a100").used == 4

    @pytest.mark.asyncio
    async def test_concurrent_reservations_never_exceed_limit(self, ledger):
        """Test concurrent reservations cannot jointly exceed the limit."""
        results = await asyncio.gather(
            *[ledger.check_and_reserve("org_1", "gpu-a100") for _ in range(12)]
        )

        assert sum(1 for r in results if r.granted) == 5
        assert ledger.get_record("org_1", "gpu-a100").used == 5

    @pytest.mark.asyncio
    async def test_requesters_are_independent(self, ledger):
        """Test one requester's usage does not affect another's."""
        for _ in range(5):
            await ledger.check_and_reserve("org_1", "gpu-a100")

        result = await ledger.check_and_reserve("org_2", "gpu-a100")
        assert result.granted is True

    @pytest.mark.asyncio
    async def test_acquire_raises_quota_exceeded(self, ledger):
        """Test acquire surfaces limit, usage and reset time."""
        await ledger.acquire("org_1", "gpu-a100", amount=5)

        with pytest.raises(QuotaExceeded) as exc_info:
            await ledger.acquire("org_1", "gpu-a100")

        assert exc_info.value.limit == 5
        assert exc_info.value.used == 5
        assert exc_info.value.reset_at == DAY_START + timedelta(days=1)

    @pytest.mark.asyncio
    async def test_non_positive_amount_rejected(self, ledger):
        """Test zero and negative amounts are invalid."""
        with pytest.raises(ValueError):
            await ledger.check_and_reserve("org_1", "gpu-a100", amount=0)

    @pytest.mark.asyncio
    async def test_unknown_resource(self, ledger):
        """Test reserving on an unregistered resource fails."""
        with pytest.raises(ResourceNotFoundError):
            await ledger.check_and_reserve("org_1", "tpu-v5")


class TestQuotaRelease:
    """Tests for releasing reserved units."""

    @pytest.mark.asyncio
    async def test_release_returns_units(self, ledger):
        """Test releasing gives units back."""
        await ledger.check_and_reserve("org_1", "gpu-a100", amount=3)

        released = await ledger.release("org_1", "gpu-a100", 2)

        assert released == 2
        assert ledger.get_record("org_1", "gpu-a100").used == 1

    @pytest.mark.asyncio
    async def test_release_never_goes_negative(self, ledger):
        """Test over-release stops at zero."""
        await ledger.check_and_reserve("org_1", "gpu-a100", amount=1)

        assert await ledger.release("org_1", "gpu-a100", 3) == 1
        assert await ledger.release("org_1", "gpu-a100", 1) == 0
        assert ledger.get_record("org_1", "gpu-a100").used == 0

    @pytest.mark.asyncio
    async def test_release_unknown_requester(self, ledger):
        """Test releasing for a requester with no record is a no-op."""
        assert await ledger.release("org_9", "gpu-a100", 1) == 0


class TestQuotaRollover:
    """Tests for period rollover."""

    @pytest.mark.asyncio
    async def test_rollover_resets_usage(self, ledger):
        """Test rollover zeroes usage and moves the window."""
        await ledger.check_and_reserve("org_1", "gpu-a100", amount=5)
        next_start = DAY_START + timedelta(days=1)

        assert await ledger.rollover("gpu-a100", next_start) is True

        record = ledger.get_record("org_1", "gpu-a100")
        assert record.used == 0
        assert record.period_start == next_start
        assert record.reset_at == next_start + timedelta(days=1)

    @pytest.mark.asyncio
    async def test_rollover_is_idempotent(self, ledger):
        """Test repeating a rollover changes nothing."""
        next_start = DAY_START + timedelta(days=1)
        await ledger.rollover("gpu-a100", next_start)
        await ledger.check_and_reserve("org_1", "gpu-a100", amount=2)

        assert await ledger.rollover("gpu-a100", next_start) is False
        assert await ledger.rollover("gpu-a100", DAY_START) is False
        assert ledger.get_record("org_1", "gpu-a100").used == 2

    @pytest.mark.asyncio
    async def test_rollover_lifts_restriction(self, ledger):
        """Test a restricted limit does not outlive its period."""
        ledger.restrict_limit_locked("org_1", "gpu-a100", 0.5)
        await ledger.rollover("gpu-a100", DAY_START + timedelta(days=1))

        assert ledger.get_record("org_1", "gpu-a100").limit == 5

    def test_due_for_rollover(self, ledger):
        """Test the rollover target is the period containing now."""
        assert ledger.due_for_rollover("gpu-a100", DAY_START + timedelta(hours=23)) is None
        assert ledger.due_for_rollover(
            "gpu-a100", DAY_START + timedelta(days=2, hours=3)
        ) == DAY_START + timedelta(days=2)


class TestQuotaLimits:
    """Tests for limit changes."""

    @pytest.mark.asyncio
    async def test_restrict_limit(self, ledger):
        """Test restriction scales the base limit down."""
        record = await ledger.restrict_limit("org_1", "gpu-a100", 0.5)

        assert record.limit == 2
        assert record.base_limit == 5

    @pytest.mark.asyncio
    async def test_restrict_limit_never_below_usage(self, ledger):
        """Test restriction keeps the limit at or above current usage."""
        await ledger.check_and_reserve("org_1", "gpu-a100", amount=4)

        record = ledger.restrict_limit_locked("org_1", "gpu-a100", 0.5)

        assert record.limit == 4
        result = await ledger.check_and_reserve("org_1", "gpu-a100")
        assert result.granted is False

    @pytest.mark.asyncio
    async def test_lowered_limit_keeps_usage(self, ledger):
        """Test re-registering a lower limit never invalidates existing usage."""
        await ledger.check_and_reserve("org_1", "gpu-a100", amount=4)

        ledger.register_resource("gpu-a100", limit=2, period=QuotaPeriod.DAILY)

        record = ledger.get_record("org_1", "gpu-a100")
        assert record.used == 4
        assert record.limit == 4
        assert record.base_limit == 2
        assert ledger.get_record("org_2", "gpu-a100").limit == 2
