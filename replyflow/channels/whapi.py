"""
WhAPI gateway client using httpx.

Two APIs are involved:
- Manager API (partner token): create / fund / delete channels
- Gate API (channel token): QR, health, webhook settings, logout, send

HTTP failures are translated into the replyflow.errors gateway taxonomy so
callers never see httpx exceptions.
"""

import asyncio
import logging
from typing import Any, Optional

import httpx

from replyflow.channels.base import GatewayChannel, GatewayClient, HealthStatus, QRCode
from replyflow.errors import (
    GatewayConflict,
    GatewayNotFound,
    GatewayRejected,
    GatewayUnavailable,
    ProvisioningCancelled,
    ProvisioningTimeout,
)

logger = logging.getLogger(__name__)


def _error_detail(response: httpx.Response) -> str:
    """Best-effort human readable error detail from a gateway response."""
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error)
        return str(data.get("message") or error or data)
    return str(data)


def _raise_for_status(response: httpx.Response, action: str) -> None:
    status = response.status_code
    if status < 400:
        return
    detail = f"WhAPI {action} error ({status}): {_error_detail(response)}"
    if status == 404:
        raise GatewayNotFound(detail, status)
    if status == 409:
        raise GatewayConflict(detail, status)
    if status >= 500 or status == 429:
        raise GatewayUnavailable(detail, status)
    raise GatewayRejected(detail, status)


class WhapiGateway(GatewayClient):
    """Gateway client for WhAPI (manager.whapi.cloud / gate.whapi.cloud)."""

    def __init__(
        self,
        partner_token: str,
        project_id: str,
        manager_url: str = "https://manager.whapi.cloud",
        gate_url: str = "https://gate.whapi.cloud",
        timeout: float = 30.0,
        poll_interval: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._partner_token = partner_token
        self._project_id = project_id
        self._manager_url = manager_url.rstrip("/")
        self._gate_url = gate_url.rstrip("/")
        self._poll_interval = poll_interval
        self._http = httpx.AsyncClient(timeout=timeout, transport=transport)

    @classmethod
    def from_settings(cls, settings) -> "WhapiGateway":
        return cls(
            partner_token=settings.gateway_partner_token,
            project_id=settings.gateway_project_id,
            manager_url=settings.gateway_manager_url,
            gate_url=settings.gateway_gate_url,
            timeout=settings.gateway_request_timeout,
            poll_interval=settings.provision_poll_interval,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        url: str,
        token: str,
        action: str,
        **kwargs: Any,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}"}
        try:
            response = await self._http.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise GatewayUnavailable(f"WhAPI {action} timed out: {e}") from e
        except httpx.TransportError as e:
            raise GatewayUnavailable(f"WhAPI {action} unreachable: {e}") from e
        _raise_for_status(response, action)
        return response

    async def _manager(self, method: str, path: str, action: str, **kwargs: Any) -> httpx.Response:
        return await self._request(
            method, f"{self._manager_url}{path}", self._partner_token, action, **kwargs
        )

    async def _gate(self, method: str, path: str, token: str, action: str, **kwargs: Any) -> httpx.Response:
        return await self._request(method, f"{self._gate_url}{path}", token, action, **kwargs)

    # ------------------------------------------------------------------
    # Manager API (partner token)
    # ------------------------------------------------------------------

    async def create_channel(self, name: str) -> GatewayChannel:
        response = await self._manager(
            "PUT", "/channels", "create channel",
            json={"name": name, "projectId": self._project_id},
        )
        data = response.json()
        return GatewayChannel(
            id=str(data["id"]),
            token=data["token"],
            name=data.get("name", name),
            status=data.get("status"),
        )

    async def extend_channel(self, channel_id: str, days: int) -> None:
        await self._manager(
            "POST", f"/channels/{channel_id}/extend", "extend channel",
            json={"days": days, "comment": f"Reply Flow auto-provision ({days}d)"},
        )

    async def delete_channel(self, channel_id: str) -> None:
        try:
            await self._manager("DELETE", f"/channels/{channel_id}", "delete channel")
        except GatewayNotFound:
            logger.debug(f"Channel {channel_id} already gone on gateway")

    # ------------------------------------------------------------------
    # Gate API (channel token)
    # ------------------------------------------------------------------

    async def logout_channel(self, token: str) -> None:
        await self._gate("POST", "/users/logout", token, "logout")

    async def get_qr(self, token: str) -> QRCode:
        # rowdata returns the raw QR string; the client renders it
        response = await self._gate("GET", "/users/login/rowdata", token, "QR")
        data = response.json()
        expire = data.get("expire")
        return QRCode(
            qr=data.get("qr") or data.get("data") or data.get("rowdata") or "",
            expire=expire if isinstance(expire, int) else None,
        )

    async def check_health(self, token: str, accelerate: bool = False) -> HealthStatus:
        params = {"wakeup": "true"} if accelerate else None
        response = await self._gate("GET", "/health", token, "health", params=params)
        data = response.json()
        status = data.get("status") or {}
        return HealthStatus(
            status_text=str(status.get("text") or ""),
            phone=data.get("phone") or None,
        )

    async def register_webhook(self, token: str, url: str) -> None:
        await self._gate(
            "PATCH", "/settings", token, "register webhook",
            json={
                "webhooks": [
                    {
                        "url": url,
                        "events": [
                            {"type": "messages", "method": "post"},
                            {"type": "statuses", "method": "post"},
                        ],
                    }
                ]
            },
        )

    async def wait_for_ready(
        self,
        token: str,
        timeout: float,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> None:
        """Poll /health?wakeup=true until the gate answers for this channel.

        The gate returns 404 while the channel is still being provisioned
        (WhAPI documents up to ~90 seconds).
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        cancel_event = cancel_event or asyncio.Event()

        while True:
            if cancel_event.is_set():
                raise ProvisioningCancelled("Provisioning cancelled")
            try:
                await self.check_health(token, accelerate=True)
                return
            except (GatewayNotFound, GatewayUnavailable) as e:
                logger.debug(f"Channel not ready yet: {e}")

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ProvisioningTimeout(
                    f"Channel provisioning timed out after {int(timeout)} seconds"
                )
            try:
                await asyncio.wait_for(
                    cancel_event.wait(), timeout=min(self._poll_interval, remaining)
                )
            except asyncio.TimeoutError:
                continue
            raise ProvisioningCancelled("Provisioning cancelled")

    async def send_text(self, token: str, to: str, body: str) -> Optional[str]:
        response = await self._gate(
            "POST", "/messages/text", token, "send message",
            json={"to": to, "body": body},
        )
        try:
            data = response.json()
        except ValueError:
            return None
        message = data.get("message") if isinstance(data, dict) else None
        if isinstance(message, dict) and message.get("id"):
            return str(message["id"])
        if isinstance(data, dict) and data.get("message_id"):
            return str(data["message_id"])
        return None


