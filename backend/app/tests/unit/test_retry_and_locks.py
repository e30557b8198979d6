############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# test_retry_and_locks.py: Unit tests for retry policy and keyed locks
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Unit tests for RetryPolicy and KeyedLockManager."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from backend.app.core.errors import ExternalUnavailable, ProvisioningError
from backend.app.core.locks import KeyedLockManager
from backend.app.core.provisioning.retry import RetryPolicy


class TestRetryPolicy:

    def test_backoff_is_exponential_and_capped(self):
        policy = RetryPolicy(backoff=1.0, max_backoff=5.0)
        assert [policy.delay_for(i) for i in range(4)] == [1.0, 2.0, 4.0, 5.0]

    @pytest.mark.asyncio
    async def test_retries_transient_until_success(self):
        fn = AsyncMock(side_effect=[ExternalUnavailable("x"), ExternalUnavailable("y"), "ok"])
        assert await RetryPolicy(max_attempts=3, backoff=0.0).run("op", fn) == "ok"
        assert fn.await_count == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        fn = AsyncMock(side_effect=ExternalUnavailable("down"))
        with pytest.raises(ExternalUnavailable):
            await RetryPolicy(max_attempts=2, backoff=0.0).run("op", fn)
        assert fn.await_count == 2

    @pytest.mark.asyncio
    async def test_non_idempotent_runs_once(self):
        fn = AsyncMock(side_effect=ExternalUnavailable("down"))
        with pytest.raises(ExternalUnavailable):
            await RetryPolicy(max_attempts=5, backoff=0.0).run("op", fn, idempotent=False)
        assert fn.await_count == 1

    @pytest.mark.asyncio
    async def test_permanent_errors_not_retried(self):
        fn = AsyncMock(side_effect=ProvisioningError("rejected", status_code=422))
        with pytest.raises(ProvisioningError):
            await RetryPolicy(max_attempts=3, backoff=0.0).run("op", fn)
        assert fn.await_count == 1


class TestKeyedLockManager:

    @pytest.mark.asyncio
    async def test_same_key_serializes(self):
        locks = KeyedLockManager()
        order = []

        async def worker(tag):
            async with locks.lock("bot-1"):
                order.append(f"{tag}-in")
                await asyncio.sleep(0.01)
                order.append(f"{tag}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])

    @pytest.mark.asyncio
    async def test_different_keys_run_concurrently(self):
        locks = KeyedLockManager()
        async with locks.lock("bot-1"):
            async with locks.try_lock("bot-2") as acquired:
                assert acquired is True

    @pytest.mark.asyncio
    async def test_try_lock_skips_when_held(self):
        locks = KeyedLockManager()
        async with locks.lock("bot-1"):
            assert locks.is_locked("bot-1")
            async with locks.try_lock("bot-1") as acquired:
                assert acquired is False
        assert not locks.is_locked("bot-1")

    @pytest.mark.asyncio
    async def test_idle_locks_are_dropped(self):
        locks = KeyedLockManager()
        async with locks.lock("bot-1"):
            pass
        assert locks._locks == {}
        assert locks._waiters == {}
