"""Unit tests for the admin API."""

from datetime import timedelta

import pytest

from fairshare_core.allocation import ConfigurationInvalid, HoardingFlag


class TestAdminResources:
    """Tests for resource status endpoints."""

    @pytest.mark.asyncio
    async def test_list_resources(self, client, make_resource, request_access):
        """Test listing every configured resource."""
        await make_resource("gpu-a100", total_capacity=10, reservation_fraction=0.3)
        await make_resource("tpu-v5", total_capacity=4, category="accelerator")
        await request_access("org_1")

        response = await client.get("/admin/resources")

        assert response.status_code == 200
        data = response.json()
        assert [r["resource_id"] for r in data] == ["gpu-a100", "tpu-v5"]
        assert data[0]["reservation"]["reserved"] == 3
        assert data[0]["reservation"]["general_in_use"] == 1
        assert data[0]["active_grants"] == 1

    @pytest.mark.asyncio
    async def test_filter_by_category(self, client, make_resource):
        """Test filtering resources by category."""
        await make_resource("gpu-a100")
        await make_resource("tpu-v5", category="accelerator")

        response = await client.get("/admin/resources", params={"category": "accelerator"})

        assert [r["resource_id"] for r in response.json()] == ["tpu-v5"]

    @pytest.mark.asyncio
    async def test_get_resource(self, client, make_resource, request_access):
        """Test queue depth and period data of one resource."""
        await make_resource(total_capacity=1)
        await request_access("org_1")
        await request_access("org_2")

        response = await client.get("/admin/resources/gpu-a100")

        assert response.status_code == 200
        data = response.json()
        assert data["queue_depth"] == 1
        assert data["configuration_valid"] is True
        assert data["period"]["general_grants"] == 1
        assert data["reset_at"].startswith("2026-03-03T00:00:00")

    @pytest.mark.asyncio
    async def test_get_unknown_resource(self, client):
        """Test unknown resources return 404."""
        response = await client.get("/admin/resources/tpu-v5")

        assert response.status_code == 404


class TestAdminRequesters:
    """Tests for flagged requester endpoints."""

    @pytest.mark.asyncio
    async def test_flagged_requesters(self, client, coordinator, clock, make_resource):
        """Test watched and restricted requesters are listed."""
        await make_resource()
        for _ in range(3):
            coordinator.hoarding.record_expiry("org_idle", "gpu-a100", 3600)
        profile = coordinator.hoarding.get_profile("org_hog")
        profile.flag = HoardingFlag.RESTRICTED
        profile.cooldown_until = clock() + timedelta(days=1)

        response = await client.get("/admin/requesters/flagged")

        assert response.status_code == 200
        assert [(p["requester_id"], p["flag"]) for p in response.json()] == [
            ("org_hog", "restricted"),
            ("org_idle", "watched"),
        ]

        response = await client.get("/admin/requesters/flagged", params={"flag": "watched"})
        assert [p["requester_id"] for p in response.json()] == ["org_idle"]


class TestAdminDashboard:
    """Tests for the dashboard endpoint."""

    @pytest.mark.asyncio
    async def test_dashboard(self, client, make_resource, request_access):
        """Test the dashboard totals across resources."""
        await make_resource("gpu-a100", total_capacity=1)
        await make_resource("tpu-v5", total_capacity=2)
        await request_access("org_1")
        await request_access("org_2")
        await request_access("org_3", resource_id="tpu-v5")

        response = await client.get("/admin/dashboard")

        assert response.status_code == 200
        totals = response.json()["totals"]
        assert totals == {"resources": 2, "queued": 1, "active_grants": 2}

    @pytest.mark.asyncio
    async def test_dashboard_lists_invalid_configurations(self, client, make_resource):
        """Test invalid resource configurations are surfaced."""
        await make_resource("gpu-a100")
        with pytest.raises(ConfigurationInvalid):
            await make_resource("gpu-a100", reservation_fraction=2.0)

        response = await client.get("/admin/dashboard")

        data = response.json()
        assert list(data["invalid_configurations"]) == ["gpu-a100"]
        assert data["resources"][0]["configuration_valid"] is False

    @pytest.mark.asyncio
    async def test_health(self, client):
        """Test the health endpoint."""
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
