############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# meter.py: Bot-hour usage metering
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Usage meter.

Once per interval, every running bot with an instance is re-checked with
the provider. Live bots get one usage record for the window that just
ended; bots the provider no longer reports running are moved to stopped
or error instead.

Windows are aligned to the interval (hour boundaries by default), and a
bot has at most one record per window, so a meter that fires twice, or a
cron run overlapping the in-process loop, never double-bills.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError

from backend.app.core.errors import ClawsterError, ExternalNotFound
from backend.app.core.locks import KeyedLockManager
from backend.app.core.provisioning.client import PhalaClient
from backend.app.core.provisioning.sizes import get_size
from backend.app.db import crud
from backend.app.db.base import utcnow
from backend.app.db.models import Bot, BotStatus
from backend.app.db.session import SessionFactory, session_scope
from backend.app.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class MeterReport:
    """Counts from one metering pass."""

    metered: int = 0
    duplicates: int = 0
    stopped: int = 0
    errors: int = 0


def metering_window(now: datetime, interval_seconds: int) -> Tuple[datetime, datetime]:
    """The interval-aligned window ending at or before ``now``."""
    epoch = int(now.timestamp())
    end = datetime.fromtimestamp(epoch - epoch % interval_seconds, tz=timezone.utc)
    return end - timedelta(seconds=interval_seconds), end


class UsageMeter:
    """Background metering loop plus a one-shot entry point."""

    def __init__(
        self,
        session_factory: SessionFactory,
        client: PhalaClient,
        locks: KeyedLockManager,
        interval_seconds: int = 3600,
    ):
        self.session_factory = session_factory
        self.client = client
        self.locks = locks
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the background metering loop."""
        self._task = asyncio.create_task(self._meter_loop())
        logger.info("usage_meter_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        """Stop the background metering loop."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("usage_meter_stopped")

    async def _meter_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("usage_meter_error", error=str(e))

    async def run_once(self, now: Optional[datetime] = None) -> MeterReport:
        """Meter every running bot for the window that just ended."""
        period_start, period_end = metering_window(now or utcnow(), self.interval_seconds)
        hours = self.interval_seconds / 3600.0

        async with session_scope(self.session_factory) as db:
            bots = await crud.list_bots_by_status(db, [BotStatus.RUNNING], with_instance=True)

        report = MeterReport()
        logger.info("usage_meter_run", bots=len(bots), period_start=period_start.isoformat())

        for bot in bots:
            async with self.locks.lock(bot.id):
                await self._meter_bot(bot, period_start, period_end, hours, report)

        logger.info(
            "usage_meter_done",
            metered=report.metered,
            duplicates=report.duplicates,
            stopped=report.stopped,
            errors=report.errors,
        )
        return report

    async def _meter_bot(
        self,
        bot: Bot,
        period_start: datetime,
        period_end: datetime,
        hours: float,
        report: MeterReport,
    ) -> None:
        try:
            cvm = await self.client.get_status(bot.phala_cvm_id)
            remote = cvm.status
        except ExternalNotFound:
            remote = "stopped"
        except ClawsterError as e:
            report.errors += 1
            logger.warning("usage_meter_status_failed", bot_id=bot.id, error=e.message)
            return

        if remote != "running":
            new_status = BotStatus.STOPPED if remote in ("stopped", "exited") else BotStatus.ERROR
            async with session_scope(self.session_factory) as db:
                current = await crud.get_bot(db, bot.id)
                if current is not None and current.status == BotStatus.RUNNING:
                    await crud.update_bot_fields(db, bot.id, status=new_status)
            report.stopped += 1
            logger.info("usage_meter_bot_not_running", bot_id=bot.id, remote_status=remote)
            return

        cost = round(hours * get_size(bot.instance_size).price_per_hour, 6)
        try:
            async with session_scope(self.session_factory) as db:
                record = await crud.create_usage_record(
                    db,
                    bot_id=bot.id,
                    period_start=period_start,
                    period_end=period_end,
                    hours=hours,
                    cost_usd=cost,
                    instance_size=bot.instance_size,
                )
        except IntegrityError:
            record = None

        if record is None:
            report.duplicates += 1
            logger.debug("usage_meter_duplicate", bot_id=bot.id, period_start=period_start.isoformat())
            return

        report.metered += 1
        logger.info("usage_metered", bot_id=bot.id, hours=hours, cost_usd=cost)
