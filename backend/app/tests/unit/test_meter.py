############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# test_meter.py: Unit tests for the usage meter
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Unit tests for UsageMeter and metering windows."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from backend.app.core.errors import ExternalNotFound, ExternalUnavailable
from backend.app.core.provisioning.models import CvmInfo
from backend.app.db import crud
from backend.app.db.models import BotStatus
from backend.app.db.session import session_scope
from backend.app.services.meter import UsageMeter, metering_window

NOW = datetime(2026, 10, 19, 14, 25, 7, tzinfo=timezone.utc)


@pytest.fixture
def meter(session_factory, phala, locks):
    return UsageMeter(session_factory, phala, locks, interval_seconds=3600)


async def usage_for(session_factory, bot_id):
    async with session_scope(session_factory) as db:
        return await crud.get_usage_records_for_bot(db, bot_id)


class TestMeteringWindow:

    def test_hour_aligned(self):
        start, end = metering_window(NOW, 3600)
        assert start == datetime(2026, 10, 19, 13, 0, tzinfo=timezone.utc)
        assert end == datetime(2026, 10, 19, 14, 0, tzinfo=timezone.utc)

    def test_same_window_within_interval(self):
        later = datetime(2026, 10, 19, 14, 59, 59, tzinfo=timezone.utc)
        assert metering_window(NOW, 3600) == metering_window(later, 3600)

    def test_short_interval(self):
        start, end = metering_window(NOW, 300)
        assert (start.minute, end.minute) == (20, 25)


class TestRunOnce:

    @pytest.mark.asyncio
    async def test_meters_running_bot(self, meter, session_factory, make_bot):
        bot = await make_bot(status=BotStatus.RUNNING, phala_cvm_id="cvm-1")

        report = await meter.run_once(NOW)

        assert report.metered == 1
        records = await usage_for(session_factory, bot.id)
        assert len(records) == 1
        assert records[0].hours == pytest.approx(1.0)
        assert records[0].cost_usd == pytest.approx(0.12)
        assert records[0].instance_size == "small"

    @pytest.mark.asyncio
    async def test_second_run_same_window_is_duplicate(self, meter, session_factory, make_bot):
        bot = await make_bot(status=BotStatus.RUNNING, phala_cvm_id="cvm-1")

        await meter.run_once(NOW)
        report = await meter.run_once(NOW.replace(minute=50))

        assert (report.metered, report.duplicates) == (0, 1)
        assert len(await usage_for(session_factory, bot.id)) == 1

    @pytest.mark.asyncio
    async def test_next_window_meters_again(self, meter, session_factory, make_bot):
        bot = await make_bot(status=BotStatus.RUNNING, phala_cvm_id="cvm-1")

        await meter.run_once(NOW)
        await meter.run_once(NOW.replace(hour=15))

        assert len(await usage_for(session_factory, bot.id)) == 2

    @pytest.mark.asyncio
    async def test_stopped_remote_flips_status(self, meter, phala, session_factory, make_bot, load_bot):
        bot = await make_bot(status=BotStatus.RUNNING, phala_cvm_id="cvm-1")
        phala.get_status = AsyncMock(return_value=CvmInfo(id="cvm-1", status="stopped"))

        report = await meter.run_once(NOW)

        assert report.stopped == 1
        assert (await load_bot(bot.id)).status == BotStatus.STOPPED
        assert await usage_for(session_factory, bot.id) == []

    @pytest.mark.asyncio
    async def test_failed_remote_flips_to_error(self, meter, phala, make_bot, load_bot):
        bot = await make_bot(status=BotStatus.RUNNING, phala_cvm_id="cvm-1")
        phala.get_status = AsyncMock(return_value=CvmInfo(id="cvm-1", status="failed"))

        await meter.run_once(NOW)

        assert (await load_bot(bot.id)).status == BotStatus.ERROR

    @pytest.mark.asyncio
    async def test_missing_instance_is_stopped(self, meter, phala, make_bot, load_bot):
        bot = await make_bot(status=BotStatus.RUNNING, phala_cvm_id="cvm-1")
        phala.get_status = AsyncMock(side_effect=ExternalNotFound("gone"))

        report = await meter.run_once(NOW)

        assert report.stopped == 1
        assert (await load_bot(bot.id)).status == BotStatus.STOPPED

    @pytest.mark.asyncio
    async def test_provider_outage_skips_bot(self, meter, phala, session_factory, make_bot, load_bot):
        bot = await make_bot(status=BotStatus.RUNNING, phala_cvm_id="cvm-1")
        phala.get_status = AsyncMock(side_effect=ExternalUnavailable("503"))

        report = await meter.run_once(NOW)

        assert report.errors == 1
        assert (await load_bot(bot.id)).status == BotStatus.RUNNING
        assert await usage_for(session_factory, bot.id) == []

    @pytest.mark.asyncio
    async def test_only_running_bots_with_instances(self, meter, phala, make_bot):
        await make_bot(name="stopped-bot", status=BotStatus.STOPPED, phala_cvm_id="cvm-2")
        await make_bot(name="booting-bot", status=BotStatus.BOOTING, phala_cvm_id="cvm-3")
        await make_bot(name="no-instance", status=BotStatus.RUNNING)

        report = await meter.run_once(NOW)

        assert report.metered == 0
        phala.get_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_start_and_stop(self, meter):
        await meter.start()
        assert meter._task is not None
        await meter.stop()
        assert meter._task is None
