"""
Tests for the polling dispatcher and its in-flight guard.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

from conftest import run, wait_until
from compute_jobs.compute import ComputationDelegate
from compute_jobs.dispatcher import InFlightGuard, PollingDispatcher
from compute_jobs.observability import get_metrics_collector
from compute_jobs.pipeline import JobPipeline


class BlockingPipeline:
    """Pipeline stub whose runs stay open until released."""

    def __init__(self):
        self.started = []
        self.release = asyncio.Event()

    async def run(self, job_id):
        self.started.append(job_id)
        await self.release.wait()


class TestInFlightGuard:

    def test_acquire_is_exclusive(self):
        guard = InFlightGuard()
        assert guard.try_acquire("a") is True
        assert guard.try_acquire("a") is False
        assert "a" in guard
        guard.release("a")
        assert "a" not in guard
        assert guard.try_acquire("a") is True

    def test_release_unknown_is_harmless(self):
        guard = InFlightGuard()
        guard.release("never-acquired")
        assert len(guard) == 0


class TestPollingDispatcher:

    def test_dispatch_is_idempotent_while_running(self, store):
        async def scenario():
            pipeline = BlockingPipeline()
            dispatcher = PollingDispatcher(store, pipeline)

            first = dispatcher.dispatch("job-1")
            second = dispatcher.dispatch("job-1")
            await asyncio.sleep(0)

            assert first is not None
            assert second is None
            assert dispatcher.in_flight == {"job-1"}

            pipeline.release.set()
            await first
            assert dispatcher.in_flight == set()
            return pipeline.started

        assert run(scenario()) == ["job-1"]

    def test_guard_released_after_pipeline_error(self, store):
        async def scenario():
            pipeline = MagicMock()
            pipeline.run = AsyncMock(side_effect=RuntimeError("boom"))
            dispatcher = PollingDispatcher(store, pipeline)

            await dispatcher.dispatch("job-1")
            return dispatcher.in_flight

        assert run(scenario()) == set()

    def test_poll_respects_batch_limit(self, store):
        for i in range(7):
            run(store.create_job(i, 1))

        async def scenario():
            pipeline = BlockingPipeline()
            dispatcher = PollingDispatcher(store, pipeline, batch_limit=5)
            started = await dispatcher.poll_once()
            again = await dispatcher.poll_once()
            pipeline.release.set()
            await dispatcher.stop()
            return started, again, len(pipeline.started)

        started, again, runs = run(scenario())
        assert started == 5
        # Same pending jobs are still in flight on the second tick
        assert again == 0
        assert runs == 5

    def test_poll_error_is_survived(self):
        async def scenario():
            failing_store = MagicMock()
            failing_store.find_jobs_by_status = AsyncMock(side_effect=RuntimeError("db down"))
            dispatcher = PollingDispatcher(failing_store, BlockingPipeline(), poll_interval=0.01)

            await dispatcher.start()
            await asyncio.sleep(0.05)
            await dispatcher.stop()
            return failing_store.find_jobs_by_status.await_count

        polls = run(scenario())
        assert polls >= 2
        assert get_metrics_collector().get_metrics_summary()["jobs"]["poll_errors"] == polls

    def test_stop_without_drain_cancels_runs(self, store):
        async def scenario():
            pipeline = BlockingPipeline()
            dispatcher = PollingDispatcher(store, pipeline)
            task = dispatcher.dispatch("job-1")
            await asyncio.sleep(0)
            await dispatcher.stop(drain=False)
            return task.cancelled(), dispatcher.in_flight

        cancelled, in_flight = run(scenario())
        assert cancelled is True
        assert in_flight == set()

    def test_cancelled_job_is_marked_failed(self, store, channel):
        job = run(store.create_job(10, 5))

        async def scenario():
            pipeline = JobPipeline.build(store, ComputationDelegate(), channel, operation_delay=30)
            dispatcher = PollingDispatcher(store, pipeline)
            task = dispatcher.dispatch(job.id)
            await wait_until(lambda: "job_created" in channel.types())
            await dispatcher.stop(drain=False)
            return task.cancelled()

        assert run(scenario()) is True
        assert run(store.find_job_by_id(job.id)).status == "failed"
        assert channel.events[-1].type == "error"
        assert "cancelled" in channel.events[-1].error
        assert "job_complete" not in channel.types()
