"""
API tests for /api/v1/channels.

Tests:
- provisioning returns 200 with a pending channel, second attempt 409
- list / get never expose the gateway token, 404 for other tenants
- status and QR endpoints, cancel / retry / logout / delete
- gateway failures map to 503, missing tenant header to 401
"""
import pytest

from replyflow.channels.base import HealthStatus
from replyflow.errors import GatewayUnavailable
from tests.factories import make_channel

BASE = "/api/v1/channels"


async def _add_channel(db_session, **kwargs):
    channel = make_channel(**kwargs)
    db_session.add(channel)
    await db_session.commit()
    return channel


@pytest.mark.asyncio
class TestProvisioning:

    async def test_create_returns_pending(self, client):
        resp = await client.post(BASE)

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "pending"
        assert data["channel_id"]

    async def test_create_with_name(self, client, gateway):
        resp = await client.post(BASE, json={"name": "front-desk"})

        assert resp.status_code == 200
        assert ("create_channel", "front-desk") in gateway.calls

    async def test_second_create_conflicts(self, client):
        first = await client.post(BASE)
        second = await client.post(BASE)

        assert first.status_code == 200
        assert second.status_code == 409

    async def test_funding_outage_maps_to_503(self, client, gateway):
        gateway.extend_error = GatewayUnavailable("manager down", 502)

        resp = await client.post(BASE)

        assert resp.status_code == 503
        assert ("delete_channel", "EXT-1") in gateway.calls

    async def test_missing_tenant_header(self, app):
        from httpx import ASGITransport, AsyncClient

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as anonymous:
            resp = await anonymous.post(BASE)

        assert resp.status_code == 401


@pytest.mark.asyncio
class TestReadChannels:

    async def test_list_hides_token(self, client, db_session):
        await _add_channel(db_session, status="connected")
        await _add_channel(db_session, tenant_id="tenant-0002")

        resp = await client.get(BASE)

        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 1
        channel = data["channels"][0]
        assert channel["status"] == "connected"
        assert "external_token" not in channel
        assert "token" not in channel

    async def test_list_shows_in_flight_provisioning(self, client):
        created = (await client.post(BASE)).json()

        resp = await client.get(f"{BASE}/{created['channel_id']}")

        assert resp.status_code == 200
        assert resp.json()["provisioning"] == "in_flight"

    async def test_get_other_tenant_is_404(self, client, db_session):
        channel = await _add_channel(db_session, tenant_id="tenant-0002")

        resp = await client.get(f"{BASE}/{channel.id}")

        assert resp.status_code == 404

    async def test_status_connects_and_registers_webhook(self, client, gateway, db_session):
        gateway.health = HealthStatus(status_text="AUTH", phone="15550002222")
        channel = await _add_channel(db_session, status="awaiting_scan", phone_number=None)

        resp = await client.get(f"{BASE}/{channel.id}/status")

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "connected"
        assert data["phone_number"] == "15550002222"
        assert data["webhook_registered"] is True

    async def test_status_gateway_unavailable(self, client, gateway, db_session):
        gateway.health_error = GatewayUnavailable("gate timeout")
        channel = await _add_channel(db_session, status="awaiting_scan")

        resp = await client.get(f"{BASE}/{channel.id}/status")

        assert resp.status_code == 503

    async def test_status_unknown_channel(self, client):
        resp = await client.get(f"{BASE}/missing/status")

        assert resp.status_code == 404

    async def test_qr(self, client, db_session):
        channel = await _add_channel(db_session, status="awaiting_scan", phone_number=None)

        resp = await client.get(f"{BASE}/{channel.id}/qr")

        assert resp.status_code == 200
        assert resp.json() == {"qr": "2@qr-payload", "expire": 20, "connected": False, "phone_number": None}

    async def test_qr_already_paired(self, client, gateway, db_session):
        gateway.authenticated = True
        gateway.health = HealthStatus(status_text="AUTH", phone="15550003333")
        channel = await _add_channel(db_session, status="awaiting_scan", phone_number=None)

        resp = await client.get(f"{BASE}/{channel.id}/qr")

        data = resp.json()
        assert data["connected"] is True
        assert data["qr"] is None


@pytest.mark.asyncio
class TestLifecycle:

    async def test_cancel(self, client, gateway):
        created = (await client.post(BASE)).json()

        resp = await client.post(f"{BASE}/{created['channel_id']}/cancel")

        assert resp.status_code == 200
        assert resp.json() == {"status": "cancelled"}
        assert (await client.get(f"{BASE}/{created['channel_id']}")).status_code == 404
        assert ("delete_channel", "EXT-1") in gateway.calls

    async def test_cancel_provisioning(self, client, db_session):
        await _add_channel(db_session, status="pending", phone_number=None)
        await _add_channel(db_session, status="connected")

        resp = await client.post(f"{BASE}/cancel-provisioning")

        assert resp.json() == {"deleted": 1}
        assert (await client.get(BASE)).json()["total"] == 1

    async def test_retry_non_pending_conflicts(self, client, db_session):
        channel = await _add_channel(db_session, status="connected")

        resp = await client.post(f"{BASE}/{channel.id}/retry")

        assert resp.status_code == 409

    async def test_logout(self, client, db_session):
        channel = await _add_channel(db_session, status="connected", webhook_registered=True)

        resp = await client.post(f"{BASE}/{channel.id}/logout")

        assert resp.status_code == 200
        assert resp.json()["status"] == "disconnected"
        assert resp.json()["webhook_registered"] is False

    async def test_delete(self, client, gateway, db_session):
        channel = await _add_channel(db_session, status="connected")

        resp = await client.delete(f"{BASE}/{channel.id}")

        assert resp.status_code == 200
        assert resp.json() == {"status": "deleted"}
        assert ("delete_channel", channel.external_channel_id) in gateway.calls
        assert (await client.get(f"{BASE}/{channel.id}")).status_code == 404

    async def test_delete_other_tenant(self, client, gateway, db_session):
        channel = await _add_channel(db_session, tenant_id="tenant-0002")

        resp = await client.delete(f"{BASE}/{channel.id}")

        assert resp.status_code == 404
        assert gateway.count("delete_channel") == 0
