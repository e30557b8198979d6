############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# reconciler.py: Folds provider-reported CVM state into bot status
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Status reconciliation between local bot records and the provider.

The provider's view is eventually consistent and "running" there only
means the VM is up. A bot counts as running once its own health
endpoint answers, so pre-run bots are probed before being promoted.
"""

from datetime import timedelta
from typing import Optional

import httpx

from backend.app.core.errors import ClawsterError, ExternalNotFound
from backend.app.core.locks import KeyedLockManager
from backend.app.core.provisioning.client import PhalaClient
from backend.app.db import crud
from backend.app.db.base import ensure_aware, utcnow
from backend.app.db.models import (
    PRE_RUN_STATUSES,
    RECONCILABLE_STATUSES,
    Bot,
    BotStatus,
)
from backend.app.db.session import SessionFactory, session_scope
from backend.app.logging_config import get_logger

logger = get_logger(__name__)

# Provider status -> local status (remote "running" is handled separately)
REMOTE_STATUS_MAP = {
    "starting": BotStatus.PROVISIONING,
    "creating": BotStatus.PROVISIONING,
    "stopped": BotStatus.STOPPED,
    "exited": BotStatus.STOPPED,
    "error": BotStatus.ERROR,
    "failed": BotStatus.ERROR,
}


class LivenessProbe:
    """Checks a bot's own /health endpoint with a short timeout."""

    def __init__(self, timeout: float = 3.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def check(self, endpoint: Optional[str]) -> bool:
        """True if GET {endpoint}/health answers 2xx within the timeout."""
        if not endpoint:
            return False
        client = await self._get_client()
        url = f"{endpoint.rstrip('/')}/health"
        try:
            response = await client.get(url)
        except httpx.HTTPError as e:
            logger.debug("liveness_probe_failed", url=url, error=str(e))
            return False
        return response.is_success


def map_remote_status(
    local: BotStatus, remote: str, probe_ok: Optional[bool] = None
) -> BotStatus:
    """
    Compute the new local status from the provider's status.

    ``probe_ok`` is only consulted when the remote reports running and
    the bot has not been seen running yet.
    """
    remote = (remote or "").lower()
    if remote == "running":
        if local == BotStatus.RUNNING:
            return BotStatus.RUNNING
        return BotStatus.RUNNING if probe_ok else BotStatus.BOOTING
    return REMOTE_STATUS_MAP.get(remote, local)


class StatusReconciler:
    """Best-effort reconciliation; never raises for remote failures."""

    def __init__(
        self,
        session_factory: SessionFactory,
        client: PhalaClient,
        locks: KeyedLockManager,
        probe: LivenessProbe,
        booting_timeout_seconds: Optional[int] = 900,
    ):
        self.session_factory = session_factory
        self.client = client
        self.locks = locks
        self.probe = probe
        self.booting_timeout_seconds = booting_timeout_seconds

    async def _load(self, bot_id: str) -> Optional[Bot]:
        async with session_scope(self.session_factory) as db:
            return await crud.get_bot(db, bot_id)

    async def reconcile(self, bot_id: str) -> Optional[Bot]:
        """
        Reconcile one bot and return its (possibly updated) record.

        Skips without waiting if another lifecycle operation holds the
        bot's lock.
        """
        async with self.locks.try_lock(bot_id) as acquired:
            if not acquired:
                logger.debug("reconcile_skipped_busy", bot_id=bot_id)
                return await self._load(bot_id)
            return await self._reconcile_locked(bot_id)

    async def _reconcile_locked(self, bot_id: str) -> Optional[Bot]:
        bot = await self._load(bot_id)
        if bot is None:
            return None
        if bot.status not in RECONCILABLE_STATUSES or not bot.phala_cvm_id:
            return bot

        local = bot.status
        endpoint = bot.cvm_endpoint
        try:
            cvm = await self.client.get_status(bot.phala_cvm_id)
        except ExternalNotFound:
            logger.info("reconcile_instance_gone", bot_id=bot_id, cvm_id=bot.phala_cvm_id)
            return await self._persist(bot_id, local, BotStatus.STOPPED, endpoint, endpoint)
        except ClawsterError as e:
            logger.warning("reconcile_status_unavailable", bot_id=bot_id, error=e.message)
            return bot

        if cvm.endpoint:
            endpoint = cvm.endpoint

        probe_ok: Optional[bool] = None
        if cvm.status == "running" and local in PRE_RUN_STATUSES:
            probe_ok = await self.probe.check(endpoint)

        new_status = map_remote_status(local, cvm.status, probe_ok)
        detail = None
        if new_status == BotStatus.BOOTING and local == BotStatus.BOOTING and self._booting_expired(bot):
            new_status = BotStatus.ERROR
            detail = f"Bot did not become healthy within {self.booting_timeout_seconds}s of booting"
            logger.warning("reconcile_booting_timeout", bot_id=bot_id)

        return await self._persist(bot_id, local, new_status, endpoint, bot.cvm_endpoint, detail)

    def _booting_expired(self, bot: Bot) -> bool:
        if not self.booting_timeout_seconds:
            return False
        since = ensure_aware(bot.status_changed_at)
        if since is None:
            return False
        return utcnow() - since > timedelta(seconds=self.booting_timeout_seconds)

    async def _persist(
        self,
        bot_id: str,
        old_status: BotStatus,
        new_status: BotStatus,
        endpoint: Optional[str],
        old_endpoint: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> Optional[Bot]:
        fields = {}
        if new_status != old_status:
            fields["status"] = new_status
        if endpoint and endpoint != old_endpoint:
            fields["cvm_endpoint"] = endpoint
        if detail:
            fields["error_detail"] = detail

        if not fields:
            return await self._load(bot_id)

        async with session_scope(self.session_factory) as db:
            bot = await crud.update_bot_fields(db, bot_id, **fields)

        if new_status != old_status:
            logger.info(
                "bot_status_changed",
                bot_id=bot_id,
                old_status=old_status.value,
                new_status=new_status.value,
            )
        return bot
