"""
Status Reconciler.

Brings the locally stored channel status in line with what the gateway
reports. Callers drive it (status polling, QR refresh); nothing here runs
on a timer.

Every status write is a compare-and-swap on the status the row had when it
was read, and calls for the same channel are serialized, so two checks
racing each other (or racing a provisioning task) cannot apply the same
transition twice or register the webhook twice.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from replyflow.channels.base import GatewayClient
from replyflow.db.database import AsyncSessionLocal
from replyflow.db.models import (
    CHANNEL_CONNECTED,
    CHANNEL_PENDING,
    CHANNEL_AWAITING_SCAN,
    ChannelDB,
    can_transition,
)
from replyflow.errors import GatewayConflict, GatewayError, NotFoundError

logger = logging.getLogger(__name__)


@dataclass
class ChannelStatus:
    channel_id: str
    status: str
    phone_number: Optional[str] = None
    webhook_registered: bool = False


@dataclass
class QRResult:
    qr: Optional[str] = None
    expire: Optional[int] = None
    connected: bool = False
    phone_number: Optional[str] = None


async def load_channel(db: AsyncSession, channel_id: str, tenant_id: Optional[str] = None) -> ChannelDB:
    """Fetch a channel, scoped to ``tenant_id`` when given."""
    query = select(ChannelDB).where(ChannelDB.id == channel_id)
    if tenant_id is not None:
        query = query.where(ChannelDB.tenant_id == tenant_id)
    result = await db.execute(query)
    channel = result.scalar_one_or_none()
    if channel is None:
        raise NotFoundError(f"Channel {channel_id} not found")
    return channel


async def transition_channel(
    db: AsyncSession,
    channel: ChannelDB,
    target: str,
    phone_number: Optional[str] = None,
) -> bool:
    """Move ``channel`` to ``target`` if it still has the status we read.

    Returns False when the transition is not allowed or another writer got
    there first (including the row having been deleted).
    """
    current = channel.status
    if current == target:
        return False
    if not can_transition(current, target):
        logger.warning(f"Refusing channel {channel.id} transition {current} -> {target}")
        return False

    values = {"status": target, "updated_at": datetime.utcnow()}
    if phone_number:
        values["phone_number"] = phone_number

    result = await db.execute(
        update(ChannelDB)
        .where(ChannelDB.id == channel.id, ChannelDB.status == current)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount != 1:
        logger.info(f"Channel {channel.id} changed concurrently, skipped {current} -> {target}")
        await db.get(ChannelDB, channel.id, populate_existing=True)
        return False
    await db.refresh(channel)
    logger.info(f"Channel {channel.id}: {current} -> {target}")
    return True


class StatusReconciler:
    """Reconciles channel status and webhook registration with the gateway."""

    def __init__(
        self,
        gateway: GatewayClient,
        webhook_url: str,
        session_factory=None,
    ):
        self._gateway = gateway
        self._webhook_url = webhook_url
        self._session_factory = session_factory or AsyncSessionLocal
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, channel_id: str) -> asyncio.Lock:
        lock = self._locks.get(channel_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[channel_id] = lock
        return lock

    def forget(self, channel_id: str) -> None:
        """Drop per-channel state once the channel is deleted."""
        self._locks.pop(channel_id, None)

    async def check_status(self, channel_id: str, tenant_id: Optional[str] = None) -> ChannelStatus:
        """Refresh the channel's status from the gateway.

        A pending channel that the gateway cannot reach yet stays pending.
        For other channels gateway failures propagate (GatewayUnavailable).
        A connected channel is never downgraded here.
        """
        async with self.lock_for(channel_id):
            async with self._session_factory() as db:
                channel = await load_channel(db, channel_id, tenant_id)

                if channel.status == CHANNEL_PENDING:
                    try:
                        health = await self._gateway.check_health(channel.external_token, accelerate=True)
                    except GatewayError as e:
                        logger.debug(f"Channel {channel_id} still provisioning: {e}")
                    else:
                        target = CHANNEL_CONNECTED if health.is_authenticated else CHANNEL_AWAITING_SCAN
                        await transition_channel(db, channel, target, health.phone)
                else:
                    health = await self._gateway.check_health(channel.external_token)
                    if health.is_authenticated and channel.status != CHANNEL_CONNECTED:
                        await transition_channel(db, channel, CHANNEL_CONNECTED, health.phone)

                if channel.status == CHANNEL_CONNECTED and not channel.webhook_registered:
                    await self._ensure_webhook(db, channel)

                return ChannelStatus(
                    channel_id=channel.id,
                    status=channel.status,
                    phone_number=channel.phone_number,
                    webhook_registered=channel.webhook_registered,
                )

    async def get_qr(self, channel_id: str, tenant_id: Optional[str] = None) -> QRResult:
        """Fetch a pairing QR.

        The gateway answers 409 once the phone is paired; that is treated
        as the channel becoming connected.
        """
        async with self.lock_for(channel_id):
            async with self._session_factory() as db:
                channel = await load_channel(db, channel_id, tenant_id)
                try:
                    qr = await self._gateway.get_qr(channel.external_token)
                except GatewayConflict:
                    logger.info(f"Channel {channel_id} already authenticated")
                    await self._mark_connected(db, channel)
                    return QRResult(connected=True, phone_number=channel.phone_number)

                return QRResult(qr=qr.qr, expire=qr.expire, connected=False)

    async def _mark_connected(self, db: AsyncSession, channel: ChannelDB) -> None:
        phone = None
        try:
            health = await self._gateway.check_health(channel.external_token)
            phone = health.phone
        except GatewayError as e:
            logger.warning(f"Could not fetch phone for channel {channel.id}: {e}")

        if channel.status != CHANNEL_CONNECTED:
            await transition_channel(db, channel, CHANNEL_CONNECTED, phone)
        if channel.status == CHANNEL_CONNECTED and not channel.webhook_registered:
            await self._ensure_webhook(db, channel)

    async def _ensure_webhook(self, db: AsyncSession, channel: ChannelDB) -> bool:
        """Register the webhook once; failures are retried on the next check."""
        try:
            await self._gateway.register_webhook(channel.external_token, self._webhook_url)
        except GatewayError as e:
            logger.warning(f"Webhook registration failed for channel {channel.id}: {e}")
            return False

        channel.webhook_registered = True
        await db.commit()
        logger.info(f"Webhook registered for channel {channel.id}: {self._webhook_url}")
        return True
