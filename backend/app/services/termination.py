############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# termination.py: Safe teardown of bot CVMs
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Termination coordinator.

A bot is only marked terminated once the provider has confirmed the
delete or confirmed the resource is already gone. If every candidate
delete fails, the bot keeps its previous status and the caller gets a
TerminationFailed.
"""

from typing import List, Optional

from backend.app.core.errors import ClawsterError, ExternalNotFound, NotFoundError, TerminationFailed
from backend.app.core.locks import KeyedLockManager
from backend.app.core.provisioning.client import PhalaClient
from backend.app.db import crud
from backend.app.db.base import utcnow
from backend.app.db.models import Bot, BotStatus
from backend.app.db.session import SessionFactory, session_scope
from backend.app.logging_config import get_logger

logger = get_logger(__name__)


def candidate_ids(bot: Bot) -> List[str]:
    """External IDs to try deleting, app ID first."""
    ids: List[str] = []
    for external_id in (bot.phala_app_id, bot.phala_cvm_id):
        if external_id and external_id not in ids:
            ids.append(external_id)
    return ids


class TerminationCoordinator:
    """Deletes a bot's CVM and retires its record."""

    def __init__(
        self,
        session_factory: SessionFactory,
        client: PhalaClient,
        locks: KeyedLockManager,
    ):
        self.session_factory = session_factory
        self.client = client
        self.locks = locks

    async def terminate(self, bot_id: str) -> Bot:
        """
        Terminate a bot.

        Returns:
            The terminated bot record

        Raises:
            NotFoundError: Unknown bot
            TerminationFailed: No candidate ID could be deleted
        """
        async with self.locks.lock(bot_id):
            async with session_scope(self.session_factory) as db:
                bot = await crud.get_bot(db, bot_id)
                if bot is None:
                    raise NotFoundError(f"Bot {bot_id} not found")
                if bot.status == BotStatus.TERMINATED:
                    return bot

                previous = bot.status
                candidates = candidate_ids(bot)
                cvm_id = bot.phala_cvm_id
                if candidates:
                    await crud.update_bot_fields(db, bot_id, status=BotStatus.TERMINATING)

            if candidates:
                try:
                    deleted_id = await self._delete_first(bot_id, candidates)
                except Exception as e:
                    # Nothing confirmed: put the bot back as it was
                    async with session_scope(self.session_factory) as db:
                        await crud.update_bot_fields(db, bot_id, status=previous)
                    if isinstance(e, TerminationFailed):
                        raise
                    logger.error(
                        "terminate_delete_unexpected_error",
                        bot_id=bot_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    raise TerminationFailed(
                        f"Could not delete CVM for bot {bot_id}: {type(e).__name__}"
                    ) from e
                if deleted_id != cvm_id and cvm_id:
                    await self._verify_gone(bot_id, cvm_id)
            else:
                logger.info("terminate_no_external_resource", bot_id=bot_id)

            async with session_scope(self.session_factory) as db:
                bot = await crud.update_bot_fields(
                    db,
                    bot_id,
                    status=BotStatus.TERMINATED,
                    terminated_at=utcnow(),
                    **crud.CLEARED_SECRETS,
                )

        logger.info("bot_terminated", bot_id=bot_id, previous_status=previous.value)
        return bot

    async def _delete_first(self, bot_id: str, candidates: List[str]) -> str:
        """Delete candidates in order until one is confirmed gone."""
        last_error: Optional[ClawsterError] = None
        for external_id in candidates:
            try:
                await self.client.delete(external_id)
                return external_id
            except ExternalNotFound:
                return external_id
            except ClawsterError as e:
                last_error = e
                logger.warning(
                    "terminate_delete_failed",
                    bot_id=bot_id,
                    external_id=external_id,
                    error=e.message,
                )

        message = last_error.message if last_error else "unknown error"
        raise TerminationFailed(
            f"Could not delete CVM for bot {bot_id}: {message}",
            detail=last_error.detail if last_error else None,
        )

    async def _verify_gone(self, bot_id: str, cvm_id: str) -> None:
        """Warn if the provider still reports the instance running."""
        try:
            cvm = await self.client.get_status(cvm_id)
        except ExternalNotFound:
            return
        except Exception as e:
            logger.debug(
                "terminate_verify_unavailable", bot_id=bot_id, cvm_id=cvm_id, error=str(e)
            )
            return
        if cvm.status == "running":
            logger.warning("terminate_instance_still_running", bot_id=bot_id, cvm_id=cvm_id)
