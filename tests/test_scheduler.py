"""Tests for IndexerScheduler."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from paytrail.core.exceptions import ChainUnavailableError
from paytrail.scheduler import IndexerScheduler


class TestIndexerScheduler:
    @pytest.mark.asyncio
    async def test_run_once(self):
        scheduler = IndexerScheduler()
        job = AsyncMock(return_value="done")
        scheduler.add_job("payment", job, interval=60)

        assert await scheduler.run_once("payment") == "done"
        assert scheduler.jobs["payment"].runs == 1

    @pytest.mark.asyncio
    async def test_run_once_propagates_errors(self):
        scheduler = IndexerScheduler()
        scheduler.add_job("payment", AsyncMock(side_effect=RuntimeError("boom")), interval=60)

        with pytest.raises(RuntimeError):
            await scheduler.run_once("payment")
        assert scheduler.jobs["payment"].failures == 1
        assert scheduler.jobs["payment"].last_error == "boom"

    @pytest.mark.asyncio
    async def test_unknown_job(self):
        with pytest.raises(KeyError):
            await IndexerScheduler().run_once("nope")

    def test_add_job_validation(self):
        scheduler = IndexerScheduler()
        with pytest.raises(ValueError):
            scheduler.add_job("bad", AsyncMock(), interval=0)
        scheduler.add_job("ok", AsyncMock(), interval=1)
        with pytest.raises(ValueError):
            scheduler.add_job("ok", AsyncMock(), interval=1)

    @pytest.mark.asyncio
    async def test_loops_until_stopped(self):
        scheduler = IndexerScheduler()
        job = AsyncMock()
        scheduler.add_job("transaction", job, interval=0.01)

        scheduler.start()
        await asyncio.sleep(0.1)
        assert scheduler.is_running
        await scheduler.stop()

        assert job.await_count >= 2
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_failing_job_keeps_running_and_isolated(self):
        scheduler = IndexerScheduler()
        failing = AsyncMock(
            side_effect=ChainUnavailableError("down", method="eth_blockNumber", attempts=2)
        )
        healthy = AsyncMock()
        scheduler.add_job("payment", failing, interval=0.01)
        scheduler.add_job("feedback", healthy, interval=0.01)

        scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert failing.await_count >= 2
        assert healthy.await_count >= 2
        assert scheduler.jobs["payment"].failures == failing.await_count

    @pytest.mark.asyncio
    async def test_delayed_first_run(self):
        scheduler = IndexerScheduler()
        job = AsyncMock()
        scheduler.add_job("reputation", job, interval=60, run_on_start=False)

        scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()

        job.assert_not_awaited()

    def test_from_components(self, config):
        payments = AsyncMock()
        feedback = AsyncMock()
        reputation = AsyncMock()

        scheduler = IndexerScheduler.from_components(
            config, payments=payments, feedback=feedback, reputation=reputation
        )

        jobs = scheduler.jobs
        assert set(jobs) == {"payment", "feedback", "reputation"}
        assert jobs["payment"].interval == config.payment_indexer_interval
        assert jobs["feedback"].interval == config.feedback_indexer_interval
        assert jobs["reputation"].func is reputation.recompute_all

    @pytest.mark.asyncio
    async def test_slow_job_never_overlaps_itself(self):
        scheduler = IndexerScheduler()
        running = []
        overlaps = []

        async def slow_run():
            if running:
                overlaps.append(True)
            running.append(True)
            await asyncio.sleep(0.05)
            running.pop()

        scheduler.add_job("payment", slow_run, interval=0.01)

        scheduler.start()
        await asyncio.sleep(0.2)
        await scheduler.stop()

        assert scheduler.jobs["payment"].runs >= 2
        assert overlaps == []
        assert running == []

    @pytest.mark.asyncio
    async def test_add_job_while_running(self):
        scheduler = IndexerScheduler()
        scheduler.add_job("payment", AsyncMock(), interval=60, run_on_start=False)
        late = AsyncMock()

        scheduler.start()
        scheduler.add_job("feedback", late, interval=60)
        await asyncio.sleep(0.05)
        await scheduler.stop()

        late.assert_awaited()

    @pytest.mark.asyncio
    async def test_restart_after_stop(self):
        scheduler = IndexerScheduler()
        job = AsyncMock()
        scheduler.add_job("transaction", job, interval=60)

        scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()
        scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()

        assert job.await_count == 2
