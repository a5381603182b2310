import asyncio
from unittest.mock import AsyncMock, MagicMock

from conftest import FakeSocket, RecordingChannel, run, wait_until
from compute_jobs.broadcast import BroadcastChannel, GatewayTransport, RedisTransport
from compute_jobs.config import Settings
from compute_jobs.observability import get_metrics_collector
from compute_jobs.worker import ComputeWorker


class StartableChannel(RecordingChannel):

    async def start(self):
        pass

    async def close(self):
        pass


def test_worker_processes_pending_job_and_shuts_down(store):
    config = Settings(OPENAI_API_KEY=None, POLL_INTERVAL_S=0.01, OPERATION_DELAY_S=0)
    channel = StartableChannel()
    job = run(store.create_job(6, 7))

    async def scenario():
        worker = ComputeWorker(config, store=store, channel=channel)
        task = asyncio.create_task(worker.run())
        for _ in range(500):
            current = await store.find_job_by_id(job.id)
            if current.status == "completed":
                break
            await asyncio.sleep(0.01)
        worker.request_shutdown()
        await task
        return worker

    worker = run(scenario())
    assert worker.delegate.mode == "local"

    final = run(store.find_job_by_id(job.id))
    assert final.status == "completed"
    assert final.result_for("multiply").result == 42.0
    assert channel.types()[-1] == "job_complete"


def test_jobs_run_while_broker_is_still_retrying(store):
    client = MagicMock()
    client.ping = AsyncMock(side_effect=ConnectionError("refused"))
    client.aclose = AsyncMock()
    sock = FakeSocket()

    async def slow_backoff(delay):
        await asyncio.sleep(60)

    broker = RedisTransport("redis://localhost:6379", client_factory=lambda u: client, sleep=slow_backoff)
    direct = GatewayTransport("ws://localhost:3001/ws", connect=AsyncMock(return_value=sock))
    config = Settings(OPENAI_API_KEY=None, POLL_INTERVAL_S=0.01, OPERATION_DELAY_S=0)
    job = run(store.create_job(10, 5))

    async def scenario():
        worker = ComputeWorker(config, store=store, channel=BroadcastChannel(primary=broker, fallback=direct))
        task = asyncio.create_task(worker.run())
        await wait_until(lambda: any('"job_complete"' in frame for frame in sock.sent), timeout=5.0)
        retrying = not broker.disabled and not broker.available
        worker.request_shutdown()
        await task
        return retrying

    assert run(scenario()) is True
    assert run(store.find_job_by_id(job.id)).status == "completed"
    assert get_metrics_collector().get_metrics_summary()["broadcasts"]["counts"].get("broker", 0) == 0
