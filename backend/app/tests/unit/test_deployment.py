############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# test_deployment.py: Unit tests for the deployment orchestrator
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Unit tests for DeploymentOrchestrator."""

from unittest.mock import AsyncMock

import pytest

from backend.app.core.errors import (
    ExternalUnavailable,
    ProvisioningError,
)
from backend.app.db.models import BotStatus
from backend.app.services.deployment import DeploymentOrchestrator


def assert_secrets_cleared(bot):
    assert bot.pending_telegram_token is None
    assert bot.pending_api_key is None
    assert bot.pending_owner_id is None
    assert bot.pending_soul is None
    assert bot.pending_config is None
    assert bot.pending_custom_env is None
    assert not bot.has_pending_secrets


@pytest.fixture
def deployer(session_factory, phala, locks):
    return DeploymentOrchestrator(
        session_factory, phala, locks, node_options="--max-old-space-size=1536"
    )


class TestDeploySuccess:

    @pytest.mark.asyncio
    async def test_records_identifiers_and_clears_secrets(
        self, deployer, phala, make_bot, load_bot, secrets
    ):
        bot = await make_bot(pending=secrets)

        result = await deployer.deploy(bot.id)

        assert result.ok
        assert result.instance_id == "cvm-1"
        assert result.app_id == "app-1"

        stored = await load_bot(bot.id)
        assert stored.status == BotStatus.STARTING
        assert stored.phala_cvm_id == "cvm-1"
        assert stored.phala_app_id == "app-1"
        assert stored.tee_pubkey == "ab" * 32
        assert_secrets_cleared(stored)

    @pytest.mark.asyncio
    async def test_env_delivered_to_spawn(self, deployer, phala, make_bot, secrets):
        bot = await make_bot(pending=secrets)

        await deployer.deploy(bot.id)

        name, size, env_vars = phala.spawn.await_args.args
        assert (name, size) == ("jarvis", "small")
        env = dict(env_vars)
        assert env["TELEGRAM_BOT_TOKEN"] == secrets.token
        assert env["ANTHROPIC_API_KEY"] == secrets.api_key
        assert env["NODE_OPTIONS"] == "--max-old-space-size=1536"
        assert env["WEATHER_API_KEY"] == "wx-123"

    @pytest.mark.asyncio
    async def test_supplied_secrets_override_staged(self, deployer, phala, make_bot, secrets):
        bot = await make_bot(status=BotStatus.ERROR)

        result = await deployer.deploy(bot.id, secrets=secrets)

        assert result.ok
        assert dict(phala.spawn.await_args.args[2])["TELEGRAM_OWNER_ID"] == "424242"

    @pytest.mark.asyncio
    async def test_pending_payment_bot_deploys(self, deployer, make_bot, load_bot, secrets):
        bot = await make_bot(status=BotStatus.PENDING_PAYMENT, pending=secrets)

        result = await deployer.deploy(bot.id, expected_status=BotStatus.PENDING_PAYMENT)

        assert result.ok
        assert (await load_bot(bot.id)).status == BotStatus.STARTING


class TestDeployFailure:
    """Failures become status error, never exceptions."""

    @pytest.mark.asyncio
    async def test_ambiguous_commit_failure_cleans_up_app(
        self, deployer, phala, make_bot, load_bot, secrets
    ):
        error = ExternalUnavailable("Phala POST /cvms timed out")
        error.app_id = "app-7"
        error.commit_attempted = True
        phala.spawn = AsyncMock(side_effect=error)
        bot = await make_bot(pending=secrets)

        result = await deployer.deploy(bot.id)

        assert not result.ok
        assert "timed out" in result.error
        phala.delete.assert_awaited_once_with("app-7")

        stored = await load_bot(bot.id)
        assert stored.status == BotStatus.ERROR
        assert "timed out" in stored.error_detail
        assert stored.phala_app_id == "app-7"
        assert_secrets_cleared(stored)

    @pytest.mark.asyncio
    async def test_declare_failure_needs_no_cleanup(self, deployer, phala, make_bot, load_bot, secrets):
        phala.spawn = AsyncMock(side_effect=ProvisioningError("bad request", status_code=400))
        bot = await make_bot(pending=secrets)

        result = await deployer.deploy(bot.id)

        assert not result.ok
        phala.delete.assert_not_awaited()
        assert (await load_bot(bot.id)).status == BotStatus.ERROR

    @pytest.mark.asyncio
    async def test_cleanup_failure_is_logged_not_raised(self, deployer, phala, make_bot, load_bot, secrets):
        error = ExternalUnavailable("commit 502")
        error.app_id = "app-8"
        error.commit_attempted = True
        phala.spawn = AsyncMock(side_effect=error)
        phala.delete = AsyncMock(side_effect=ExternalUnavailable("still down"))
        bot = await make_bot(pending=secrets)

        result = await deployer.deploy(bot.id)

        assert not result.ok
        assert (await load_bot(bot.id)).status == BotStatus.ERROR

    @pytest.mark.asyncio
    async def test_missing_secrets_fail_before_remote_calls(self, deployer, phala, make_bot, load_bot):
        bot = await make_bot()

        result = await deployer.deploy(bot.id)

        assert not result.ok
        assert "Missing required secrets" in result.error
        phala.spawn.assert_not_awaited()
        assert (await load_bot(bot.id)).status == BotStatus.ERROR

    @pytest.mark.asyncio
    async def test_unexpected_error_still_returns_result(self, deployer, phala, make_bot, load_bot, secrets):
        phala.spawn = AsyncMock(side_effect=RuntimeError("boom"))
        bot = await make_bot(pending=secrets)

        result = await deployer.deploy(bot.id)

        assert not result.ok
        assert "boom" in result.error
        stored = await load_bot(bot.id)
        assert stored.status == BotStatus.ERROR
        assert_secrets_cleared(stored)


class TestDeployGuards:

    @pytest.mark.asyncio
    async def test_running_bot_not_redeployed(self, deployer, phala, make_bot):
        bot = await make_bot(status=BotStatus.RUNNING, phala_cvm_id="cvm-1")

        result = await deployer.deploy(bot.id)

        assert result.skipped
        phala.spawn.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expected_status_mismatch_skips(self, deployer, phala, make_bot, secrets):
        bot = await make_bot(status=BotStatus.PROVISIONING, pending=secrets)

        result = await deployer.deploy(bot.id, expected_status=BotStatus.PENDING_PAYMENT)

        assert result.skipped
        phala.spawn.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_bot(self, deployer):
        result = await deployer.deploy("nope")
        assert not result.ok
        assert result.error == "Bot not found"
