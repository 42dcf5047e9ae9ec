"""
Provisioning Orchestrator.

Creates and funds a gateway channel, persists it as ``pending`` and hands
the slow part (waiting for the gateway to finish provisioning, up to a
couple of minutes) to a background task the orchestrator owns.

Each run is a ProvisioningAttempt kept in a registry keyed by channel id.
The attempt carries the task and its cancel event, so cancel() can stop the
wait, await the task and only then tear down external and local state.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import delete, select

from replyflow.channels.base import GatewayClient
from replyflow.db.database import AsyncSessionLocal
from replyflow.db.models import (
    CHANNEL_AWAITING_SCAN,
    CHANNEL_DISCONNECTED,
    CHANNEL_PENDING,
    ChannelDB,
)
from replyflow.errors import (
    ChannelStateError,
    GatewayError,
    NotFoundError,
    ProvisioningCancelled,
    ProvisioningInProgress,
    ProvisioningTimeout,
)
from replyflow.services.reconciler import (
    ChannelStatus,
    StatusReconciler,
    load_channel,
    transition_channel,
)

logger = logging.getLogger(__name__)

# Attempt outcomes
OUTCOME_READY = "ready"
OUTCOME_TIMEOUT = "timeout"
OUTCOME_CANCELLED = "cancelled"
OUTCOME_FAILED = "failed"


@dataclass
class ProvisioningAttempt:
    """Handle for one provisioning run."""
    channel_id: str
    tenant_id: str
    external_channel_id: str
    external_token: str
    task: Optional[asyncio.Task] = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    outcome: Optional[str] = None
    error: Optional[str] = None

    @property
    def in_flight(self) -> bool:
        return self.outcome is None and not (self.task is not None and self.task.done())

    async def wait(self) -> Optional[str]:
        """Wait for the background task and return its outcome."""
        if self.task is not None:
            await asyncio.wait({self.task})
        return self.outcome


@dataclass
class _PendingCreation:
    """A provision() call that has not stored its channel row yet."""
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    aborted: bool = False


class ProvisioningOrchestrator:
    """Owns channel creation, the background readiness wait and teardown."""

    def __init__(
        self,
        gateway: GatewayClient,
        reconciler: StatusReconciler,
        session_factory=None,
        funding_days: int = 1,
        timeout: float = 120.0,
    ):
        self._gateway = gateway
        self._reconciler = reconciler
        self._session_factory = session_factory or AsyncSessionLocal
        self._funding_days = funding_days
        self._timeout = timeout
        self._attempts: dict[str, ProvisioningAttempt] = {}
        self._tenant_locks: dict[str, asyncio.Lock] = {}
        self._creations: dict[str, _PendingCreation] = {}

    def _tenant_lock(self, tenant_id: str) -> asyncio.Lock:
        lock = self._tenant_locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._tenant_locks[tenant_id] = lock
        return lock

    def get_attempt(self, channel_id: str) -> Optional[ProvisioningAttempt]:
        return self._attempts.get(channel_id)

    def _in_flight_for(self, tenant_id: str) -> Optional[ProvisioningAttempt]:
        for attempt in self._attempts.values():
            if attempt.tenant_id == tenant_id and attempt.in_flight:
                return attempt
        return None

    # ------------------------------------------------------------------
    # Provision
    # ------------------------------------------------------------------

    async def provision(self, tenant_id: str, name: Optional[str] = None) -> ProvisioningAttempt:
        """Create, fund and persist a channel, then wait for it in the background.

        Returns as soon as the pending row exists. Raises
        ProvisioningInProgress when the tenant already has a run in flight,
        and ProvisioningCancelled when cancel_pending() interrupted the
        create or fund step.
        """
        async with self._tenant_lock(tenant_id):
            running = self._in_flight_for(tenant_id)
            if running is not None:
                raise ProvisioningInProgress(
                    f"Channel {running.channel_id} is still being provisioned"
                )

            creation = _PendingCreation()
            self._creations[tenant_id] = creation
            try:
                return await self._create(tenant_id, name, creation)
            finally:
                self._creations.pop(tenant_id, None)

    async def _create(
        self, tenant_id: str, name: Optional[str], creation: _PendingCreation
    ) -> ProvisioningAttempt:
        name = name or f"reply-flow-{tenant_id[:8]}-{int(time.time() * 1000)}"
        external = await self._gateway.create_channel(name)
        logger.info(f"Created gateway channel {external.id} for tenant {tenant_id}")
        if creation.cancel_event.is_set():
            await self._abort_creation(creation, external.id, None)

        try:
            await self._gateway.extend_channel(external.id, self._funding_days)
        except Exception as e:
            logger.error(f"Funding channel {external.id} failed, rolling back: {e}")
            await self._discard_external(external.id, None)
            raise
        if creation.cancel_event.is_set():
            await self._abort_creation(creation, external.id, external.token)

        try:
            async with self._session_factory() as db:
                channel = ChannelDB(
                    tenant_id=tenant_id,
                    external_channel_id=external.id,
                    external_token=external.token,
                    name=external.name,
                    status=CHANNEL_PENDING,
                )
                db.add(channel)
                await db.commit()
                channel_id = channel.id
        except Exception as e:
            logger.error(f"Persisting channel {external.id} failed, rolling back: {e}")
            await self._discard_external(external.id, external.token)
            raise

        attempt = self._start(channel_id, tenant_id, external.id, external.token)
        logger.info(f"Provisioning channel {channel_id} in background")
        return attempt

    async def _abort_creation(
        self, creation: _PendingCreation, external_channel_id: str, token: Optional[str]
    ) -> None:
        creation.aborted = True
        logger.info(f"Provisioning of gateway channel {external_channel_id} cancelled before it was stored")
        await self._discard_external(external_channel_id, token)
        raise ProvisioningCancelled("Provisioning cancelled")

    def _start(
        self, channel_id: str, tenant_id: str, external_channel_id: str, external_token: str
    ) -> ProvisioningAttempt:
        attempt = ProvisioningAttempt(
            channel_id=channel_id,
            tenant_id=tenant_id,
            external_channel_id=external_channel_id,
            external_token=external_token,
        )
        self._attempts[channel_id] = attempt
        attempt.task = asyncio.create_task(
            self._complete(attempt), name=f"provision-{channel_id}"
        )
        return attempt

    async def _complete(self, attempt: ProvisioningAttempt) -> None:
        """Background half of provisioning: wait for readiness, then pending -> awaiting_scan."""
        try:
            await self._gateway.wait_for_ready(
                attempt.external_token, self._timeout, attempt.cancel_event
            )
        except ProvisioningCancelled:
            attempt.outcome = OUTCOME_CANCELLED
            logger.info(f"Provisioning of channel {attempt.channel_id} cancelled")
            return
        except ProvisioningTimeout as e:
            attempt.outcome = OUTCOME_TIMEOUT
            attempt.error = str(e)
            logger.warning(f"Channel {attempt.channel_id}: {e}; left pending")
            return
        except Exception as e:
            attempt.outcome = OUTCOME_FAILED
            attempt.error = str(e)
            logger.error(f"Background provisioning of channel {attempt.channel_id} failed: {e}")
            return

        if attempt.cancel_event.is_set():
            attempt.outcome = OUTCOME_CANCELLED
            return

        try:
            async with self._reconciler.lock_for(attempt.channel_id):
                async with self._session_factory() as db:
                    channel = await db.get(ChannelDB, attempt.channel_id)
                    if channel is None:
                        attempt.outcome = OUTCOME_CANCELLED
                        return
                    if channel.status == CHANNEL_PENDING:
                        await transition_channel(db, channel, CHANNEL_AWAITING_SCAN)
        except Exception as e:
            attempt.outcome = OUTCOME_FAILED
            attempt.error = str(e)
            logger.error(f"Could not record readiness of channel {attempt.channel_id}: {e}")
            return

        attempt.outcome = OUTCOME_READY
        logger.info(f"Channel {attempt.channel_id} ready for QR scan")

    async def retry(self, channel_id: str, tenant_id: str) -> ProvisioningAttempt:
        """Restart the readiness wait for a pending channel whose attempt ended."""
        async with self._tenant_lock(tenant_id):
            existing = self._attempts.get(channel_id)
            if existing is not None and existing.tenant_id == tenant_id and existing.in_flight:
                return existing

            running = self._in_flight_for(tenant_id)
            if running is not None:
                raise ProvisioningInProgress(
                    f"Channel {running.channel_id} is still being provisioned"
                )

            async with self._session_factory() as db:
                channel = await load_channel(db, channel_id, tenant_id)
                if channel.status != CHANNEL_PENDING:
                    raise ChannelStateError(
                        f"Channel {channel_id} is {channel.status}, only pending channels can be retried"
                    )
                external_id, token = channel.external_channel_id, channel.external_token

            logger.info(f"Retrying provisioning of channel {channel_id}")
            return self._start(channel_id, tenant_id, external_id, token)

    # ------------------------------------------------------------------
    # Cancel / delete
    # ------------------------------------------------------------------

    async def _stop_attempt(self, channel_id: str) -> Optional[ProvisioningAttempt]:
        attempt = self._attempts.pop(channel_id, None)
        if attempt is None:
            return None
        attempt.cancel_event.set()
        await attempt.wait()
        if attempt.outcome is None:
            attempt.outcome = OUTCOME_CANCELLED
        return attempt

    async def _discard_external(self, external_channel_id: str, token: Optional[str]) -> None:
        """Best-effort logout and delete of a gateway channel."""
        if token:
            try:
                await self._gateway.logout_channel(token)
            except GatewayError as e:
                logger.debug(f"Logout of {external_channel_id} ignored: {e}")
        try:
            await self._gateway.delete_channel(external_channel_id)
        except GatewayError as e:
            logger.warning(f"Could not delete gateway channel {external_channel_id}: {e}")

    async def _delete_row(self, channel_id: str) -> None:
        async with self._reconciler.lock_for(channel_id):
            async with self._session_factory() as db:
                await db.execute(delete(ChannelDB).where(ChannelDB.id == channel_id))
                await db.commit()
        self._reconciler.forget(channel_id)

    async def cancel(self, channel_id: str, tenant_id: str) -> None:
        """Abort provisioning of ``channel_id`` and remove it everywhere.

        Safe at any point of the run, including after the background task
        already moved the channel to awaiting_scan.
        """
        attempt = self._attempts.get(channel_id)
        if attempt is not None and attempt.tenant_id != tenant_id:
            attempt = None

        async with self._session_factory() as db:
            result = await db.execute(
                select(ChannelDB).where(
                    ChannelDB.id == channel_id, ChannelDB.tenant_id == tenant_id
                )
            )
            channel = result.scalar_one_or_none()
            if channel is None and attempt is None:
                raise NotFoundError(f"Channel {channel_id} not found")
            if channel is not None:
                external_id, token = channel.external_channel_id, channel.external_token
            else:
                external_id, token = attempt.external_channel_id, attempt.external_token

        await self._stop_attempt(channel_id)
        await self._discard_external(external_id, token)
        await self._delete_row(channel_id)
        logger.info(f"Cancelled provisioning of channel {channel_id}")

    async def cancel_pending(self, tenant_id: str) -> int:
        """Cancel every pending channel of the tenant. Returns how many.

        A provision() still creating or funding its channel is told to stop
        and is waited for, so a client that aborted before learning the
        channel id leaves nothing behind.
        """
        creation = self._creations.get(tenant_id)
        if creation is not None:
            creation.cancel_event.set()

        async with self._tenant_lock(tenant_id):
            async with self._session_factory() as db:
                result = await db.execute(
                    select(ChannelDB.id).where(
                        ChannelDB.tenant_id == tenant_id,
                        ChannelDB.status == CHANNEL_PENDING,
                    )
                )
                channel_ids: List[str] = list(result.scalars().all())

            for attempt in list(self._attempts.values()):
                if attempt.tenant_id == tenant_id and attempt.in_flight and attempt.channel_id not in channel_ids:
                    channel_ids.append(attempt.channel_id)

            for channel_id in channel_ids:
                try:
                    await self.cancel(channel_id, tenant_id)
                except NotFoundError:
                    continue

        aborted = 1 if creation is not None and creation.aborted else 0
        return len(channel_ids) + aborted

    async def delete_channel(self, channel_id: str, tenant_id: str) -> None:
        """Delete a channel in any status.

        Unlike cancel(), a gateway failure on delete propagates and the local
        row is kept so the call can be repeated.
        """
        async with self._session_factory() as db:
            channel = await load_channel(db, channel_id, tenant_id)
            external_id, token = channel.external_channel_id, channel.external_token

        await self._stop_attempt(channel_id)
        try:
            await self._gateway.logout_channel(token)
        except GatewayError as e:
            logger.debug(f"Logout of {external_id} ignored: {e}")
        await self._gateway.delete_channel(external_id)
        await self._delete_row(channel_id)
        logger.info(f"Deleted channel {channel_id}")

    async def logout(self, channel_id: str, tenant_id: str) -> ChannelStatus:
        """Unpair the phone; the channel can be re-paired with a new QR scan."""
        async with self._reconciler.lock_for(channel_id):
            async with self._session_factory() as db:
                channel = await load_channel(db, channel_id, tenant_id)
                if channel.status == CHANNEL_PENDING:
                    raise ChannelStateError(f"Channel {channel_id} is still provisioning")

                await self._gateway.logout_channel(channel.external_token)
                if channel.status != CHANNEL_DISCONNECTED:
                    await transition_channel(db, channel, CHANNEL_DISCONNECTED)
                channel.webhook_registered = False
                await db.commit()

                logger.info(f"Channel {channel_id} logged out")
                return ChannelStatus(
                    channel_id=channel.id,
                    status=channel.status,
                    phone_number=channel.phone_number,
                    webhook_registered=False,
                )

    async def shutdown(self) -> None:
        """Stop all background waits. Rows stay pending and can be retried."""
        attempts = [a for a in self._attempts.values() if a.in_flight]
        for attempt in attempts:
            attempt.cancel_event.set()
        for attempt in attempts:
            await attempt.wait()
        if attempts:
            logger.info(f"Stopped {len(attempts)} provisioning task(s)")
