############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# deployment.py: Deployment orchestrator for bot CVMs
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Deployment orchestrator.

Turns a staged bot record into a running confidential VM. This is the
single deploy path for both direct spawns and payment-triggered spawns.

Flow per bot (under the bot's lock):
1. Mark the bot provisioning
2. Assemble the env from staged (or supplied) secrets
3. Declare -> encrypt -> commit via the provider client
4. Persist identifiers, mark starting, and erase staged secrets in one write
5. On any failure, delete whatever remote resource may exist and mark error
"""

from dataclasses import dataclass
from typing import Optional

from backend.app.core.enclave.secrets import PendingSecrets, build_env_vars
from backend.app.core.errors import ClawsterError
from backend.app.core.locks import KeyedLockManager
from backend.app.core.provisioning.client import PhalaClient
from backend.app.core.provisioning.models import SpawnResult
from backend.app.db import crud
from backend.app.db.models import BotStatus
from backend.app.db.session import SessionFactory, session_scope
from backend.app.logging_config import get_logger

logger = get_logger(__name__)

# Statuses from which a deploy may start
DEPLOYABLE_STATUSES = frozenset({
    BotStatus.PENDING_PAYMENT,
    BotStatus.PROVISIONING,
    BotStatus.STOPPED,
    BotStatus.ERROR,
})


@dataclass
class DeployResult:
    """Outcome of a deploy. Failed and skipped deploys carry an error string."""

    bot_id: str
    status: BotStatus
    app_id: Optional[str] = None
    instance_id: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


class DeploymentOrchestrator:
    """Deploys bots into CVMs and cleans up after failed deploys."""

    def __init__(
        self,
        session_factory: SessionFactory,
        client: PhalaClient,
        locks: KeyedLockManager,
        node_options: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.client = client
        self.locks = locks
        self.node_options = node_options

    async def deploy(
        self,
        bot_id: str,
        secrets: Optional[PendingSecrets] = None,
        expected_status: Optional[BotStatus] = None,
    ) -> DeployResult:
        """
        Deploy a bot.

        Args:
            bot_id: Bot to deploy
            secrets: Secrets to deliver; defaults to those staged on the record
            expected_status: Only deploy if the bot is still in this status,
                checked under the lock (makes duplicate triggers no-ops)

        Returns:
            DeployResult. Failures are recorded on the bot and returned,
            never raised.
        """
        async with self.locks.lock(bot_id):
            try:
                return await self._deploy_locked(bot_id, secrets, expected_status)
            except Exception as e:
                # Last-resort boundary: persistence or programming errors
                logger.exception("deploy_unexpected_error", bot_id=bot_id)
                return await self._mark_failed(bot_id, f"Unexpected deploy error: {e}")

    async def _deploy_locked(
        self,
        bot_id: str,
        supplied: Optional[PendingSecrets],
        expected_status: Optional[BotStatus],
    ) -> DeployResult:
        async with session_scope(self.session_factory) as db:
            bot = await crud.get_bot(db, bot_id)
            if bot is None:
                return DeployResult(bot_id=bot_id, status=BotStatus.ERROR, error="Bot not found")
            if bot.status not in DEPLOYABLE_STATUSES or (
                expected_status is not None and bot.status != expected_status
            ):
                logger.info("deploy_skipped", bot_id=bot_id, status=bot.status.value)
                return DeployResult(
                    bot_id=bot_id,
                    status=bot.status,
                    app_id=bot.phala_app_id,
                    instance_id=bot.phala_cvm_id,
                    error=f"Bot is {bot.status.value}, not deployable",
                    skipped=True,
                )

            secrets = supplied or bot.pending_secrets()
            name, model, size = bot.name, bot.model, bot.instance_size
            await crud.update_bot_fields(
                db, bot_id, status=BotStatus.PROVISIONING, error_detail=None
            )

        logger.info("deploy_started", bot_id=bot_id, name=name, size=size, model=model)

        try:
            env_vars = build_env_vars(model, secrets, self.node_options)
            logger.debug("deploy_env_assembled", bot_id=bot_id, keys=[k for k, _ in env_vars])
            spawned = await self.client.spawn(name, size, env_vars)
        except ClawsterError as e:
            # A timed-out or 5xx commit may still have created the CVM
            orphan = e.app_id if e.commit_attempted else None
            if orphan:
                await self._cleanup_orphan(bot_id, orphan)
            logger.warning(
                "deploy_failed",
                bot_id=bot_id,
                error_type=type(e).__name__,
                error=e.message,
                app_id=e.app_id,
            )
            return await self._mark_failed(bot_id, _describe(e), app_id=e.app_id)

        return await self._record_success(bot_id, spawned)

    async def _record_success(self, bot_id: str, spawned: SpawnResult) -> DeployResult:
        """Persist identifiers and erase staged secrets in one transaction."""
        try:
            async with session_scope(self.session_factory) as db:
                await crud.update_bot_fields(
                    db,
                    bot_id,
                    status=BotStatus.STARTING,
                    phala_app_id=spawned.app_id,
                    phala_cvm_id=spawned.instance.id,
                    tee_pubkey=spawned.enclave_pubkey,
                    cvm_endpoint=spawned.instance.endpoint,
                    error_detail=None,
                    **crud.CLEARED_SECRETS,
                )
        except Exception as e:
            # The CVM exists but we could not record it; do not leave it running
            logger.error("deploy_persist_failed", bot_id=bot_id, cvm_id=spawned.instance.id, error=str(e))
            await self._cleanup_orphan(bot_id, spawned.instance.id)
            return await self._mark_failed(
                bot_id, f"Failed to record deployment: {e}", app_id=spawned.app_id
            )

        logger.info(
            "deploy_succeeded",
            bot_id=bot_id,
            app_id=spawned.app_id,
            cvm_id=spawned.instance.id,
        )
        return DeployResult(
            bot_id=bot_id,
            status=BotStatus.STARTING,
            app_id=spawned.app_id,
            instance_id=spawned.instance.id,
        )

    async def _cleanup_orphan(self, bot_id: str, external_id: str) -> None:
        """Best-effort delete of a remote resource left by a failed deploy."""
        try:
            await self.client.delete(external_id)
            logger.info("orphan_cleaned_up", bot_id=bot_id, external_id=external_id)
        except ClawsterError as e:
            logger.error(
                "orphan_cleanup_failed",
                bot_id=bot_id,
                external_id=external_id,
                error=e.message,
            )

    async def _mark_failed(
        self, bot_id: str, detail: str, app_id: Optional[str] = None
    ) -> DeployResult:
        """Move the bot to error, keeping the detail and erasing staged secrets."""
        fields = {"status": BotStatus.ERROR, "error_detail": detail[:2000], **crud.CLEARED_SECRETS}
        if app_id:
            fields["phala_app_id"] = app_id
        try:
            async with session_scope(self.session_factory) as db:
                await crud.update_bot_fields(db, bot_id, **fields)
        except Exception as e:
            logger.error("deploy_mark_failed_error", bot_id=bot_id, error=str(e))
        return DeployResult(bot_id=bot_id, status=BotStatus.ERROR, app_id=app_id, error=detail)


def _describe(error: ClawsterError) -> str:
    if error.detail:
        return f"{error.message}: {error.detail}"
    return error.message
