"""Unit tests for configuration and logging setup."""

import logging

import pytest
import structlog
from pydantic import ValidationError

from fairshare_core.allocation import ConfigurationInvalid, QuotaPeriod, ResourceConfig
from fairshare_core.config import EngineSettings, HoardingSettings
from fairshare_core.core import LogFormat, configure_logging


class TestEngineSettings:
    """Tests for EngineSettings."""

    def test_defaults(self):
        """Test default policy values."""
        settings = EngineSettings()

        assert settings.service_name == "fairshare-engine"
        assert settings.scoring.underserved_bonus == 25.0
        assert settings.hoarding.restricted_quota_factor == 0.5
        assert settings.queue.ewma_alpha == 0.2

    def test_environment_overrides(self, monkeypatch):
        """Test settings load from prefixed environment variables."""
        monkeypatch.setenv("FAIRSHARE_LOCK_RETRIES", "5")
        monkeypatch.setenv("FAIRSHARE_HOARDING__WATCH_MULTIPLE", "4.5")
        monkeypatch.setenv("FAIRSHARE_SCORING__NEED_WEIGHT", "2")

        settings = EngineSettings()

        assert settings.lock_retries == 5
        assert settings.hoarding.watch_multiple == 4.5
        assert settings.scoring.need_weight == 2.0

    def test_restrict_after_windows_bounded(self):
        """Test escalation cannot require more windows than are retained."""
        with pytest.raises(ValidationError):
            HoardingSettings(window_count=3, restrict_after_windows=4)

    def test_quota_factor_must_reduce(self):
        """Test the restricted quota factor is a true reduction."""
        with pytest.raises(ValidationError):
            HoardingSettings(restricted_quota_factor=1.0)


class TestResourceConfig:
    """Tests for ResourceConfig."""

    def test_load_valid(self):
        """Test loading catalog data."""
        config = ResourceConfig.load(
            {
                "resource_id": "gpu-a100",
                "total_capacity": 10,
                "per_requester_limit": 20,
                "reservation_fraction": 0.3,
                "period": "weekly",
            }
        )

        assert config.period == QuotaPeriod.WEEKLY
        assert config.reservation_fraction == 0.3

    @pytest.mark.parametrize(
        "overrides,field",
        [
            ({"total_capacity": -1}, "total_capacity"),
            ({"per_requester_limit": 0}, "per_requester_limit"),
            ({"reservation_fraction": 1.2}, "reservation_fraction"),
            ({"reservation_fraction": -0.1}, "reservation_fraction"),
        ],
    )
    def test_load_invalid(self, overrides, field):
        """Test out-of-range values raise ConfigurationInvalid."""
        data = {"resource_id": "gpu-a100", "total_capacity": 10, "per_requester_limit": 5}
        data.update(overrides)

        with pytest.raises(ConfigurationInvalid) as exc_info:
            ResourceConfig.load(data)

        assert exc_info.value.resource_id == "gpu-a100"
        assert any(e.startswith(field) for e in exc_info.value.errors)


class TestLogging:
    """Tests for logging setup."""

    def test_configure_logging_json(self, capsys):
        """Test JSON logging renders bound service context."""
        try:
            configure_logging(level="INFO", log_format=LogFormat.JSON, service_name="test-engine")
            structlog.get_logger("test").info("test_event", resource_id="gpu-a100")

            output = capsys.readouterr().out
            assert '"event": "test_event"' in output
            assert '"service": "test-engine"' in output
            assert logging.getLogger().level == logging.INFO
        finally:
            structlog.reset_defaults()
            for handler in logging.getLogger().handlers[:]:
                logging.getLogger().removeHandler(handler)
            structlog.contextvars.clear_contextvars()
