"""Shared pytest fixtures for testing."""

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Awaitable, Callable, Dict, Optional
from uuid import uuid4

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import AsyncClient, ASGITransport

from fairshare_core.allocation import (
    AccessRequest,
    AllocationCoordinator,
    Requester,
)
from fairshare_core.config import EngineSettings, HoardingSettings


# Monday, so daily and weekly periods start on the same day.
START = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock for deterministic tests."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now


# =============================================================================
# Engine Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    """Create a fake clock at a fixed start time."""
    return FakeClock()


@pytest.fixture
def hoarding_settings() -> HoardingSettings:
    """Hourly hoarding windows so tests can cross window boundaries quickly."""
    return HoardingSettings(
        window_seconds=3600,
        window_count=4,
        watch_multiple=3.0,
        min_peers=1,
        restrict_after_windows=2,
        contention_ratio=1.0,
        cooldown_seconds=14400,
        watch_decay_seconds=7200,
        restricted_quota_factor=0.5,
        expiry_anomaly_threshold=3,
    )


@pytest.fixture
def settings(hoarding_settings: HoardingSettings) -> EngineSettings:
    """Engine settings with short timeouts for testing."""
    return EngineSettings(
        lock_timeout_seconds=0.5,
        lock_retries=2,
        lock_retry_backoff_seconds=0.001,
        sweep_interval_seconds=0.01,
        hoarding=hoarding_settings,
    )


@pytest.fixture
def coordinator(settings: EngineSettings, clock: FakeClock) -> AllocationCoordinator:
    """Create a coordinator with no resources configured."""
    return AllocationCoordinator(settings=settings, clock=clock)


@pytest.fixture
def make_resource(
    coordinator: AllocationCoordinator,
) -> Callable[..., Awaitable]:
    """Factory configuring a resource on the shared coordinator."""

    async def _make(
        resource_id: str = "gpu-a100",
        total_capacity: int = 10,
        per_requester_limit: int = 20,
        reservation_fraction: float = 0.0,
        **extra,
    ):
        config: Dict = {
            "resource_id": resource_id,
            "total_capacity": total_capacity,
            "per_requester_limit": per_requester_limit,
            "reservation_fraction": reservation_fraction,
        }
        config.update(extra)
        return await coordinator.configure_resource(config)

    return _make


@pytest.fixture
def request_access(
    coordinator: AllocationCoordinator,
) -> Callable[..., Awaitable]:
    """Shortcut for submitting an access request."""

    async def _request(
        requester_id: str,
        resource_id: str = "gpu-a100",
        is_underserved: bool = False,
        need: float = 0.0,
        amount: int = 1,
        access_level: int = 0,
        organization_id: Optional[str] = None,
    ):
        requester = Requester(
            id=requester_id,
            is_underserved=is_underserved,
            access_level=access_level,
            organization_id=organization_id,
        )
        return await coordinator.request_access(
            AccessRequest(
                requester=requester,
                resource_id=resource_id,
                amount=amount,
                need_signal=need,
            )
        )

    return _request


# =============================================================================
# API Fixtures
# =============================================================================


@pytest.fixture
def app(coordinator: AllocationCoordinator, settings: EngineSettings) -> FastAPI:
    """Create test FastAPI application around the shared coordinator."""
    from fairshare_core.api import create_app

    return create_app(coordinator=coordinator, settings=settings)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# =============================================================================
# Test Data Fixtures
# =============================================================================


@pytest.fixture
def organization_id() -> str:
    """Generate a test organization ID."""
    return f"org_{uuid4().hex}"
