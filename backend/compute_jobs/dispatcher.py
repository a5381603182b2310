"""Polling dispatcher: finds pending jobs and starts their pipelines."""

from __future__ import annotations
import asyncio
import logging
import threading
from typing import Optional, Protocol, Set

from .observability import get_metrics_collector
from .store import JobStore

logger = logging.getLogger(__name__)


class Pipeline(Protocol):
    async def run(self, job_id: str) -> None:
        ...


class InFlightGuard:
    """Process-local set of job ids currently being processed."""

    def __init__(self):
        self._ids: Set[str] = set()
        self._lock = threading.Lock()

    def try_acquire(self, job_id: str) -> bool:
        with self._lock:
            if job_id in self._ids:
                return False
            self._ids.add(job_id)
            return True

    def release(self, job_id: str) -> None:
        with self._lock:
            self._ids.discard(job_id)

    def snapshot(self) -> Set[str]:
        with self._lock:
            return set(self._ids)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)


class PollingDispatcher:
    """Polls the store every ``poll_interval`` seconds and runs up to ``batch_limit`` new jobs per tick."""

    def __init__(self, store: JobStore, pipeline: Pipeline, poll_interval: float = 2.0, batch_limit: int = 5,
                 guard: Optional[InFlightGuard] = None):
        self.store = store
        self.pipeline = pipeline
        self.poll_interval = poll_interval
        self.batch_limit = batch_limit
        self.guard = guard or InFlightGuard()
        self._tasks: Set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    @property
    def in_flight(self) -> Set[str]:
        return self.guard.snapshot()

    def dispatch(self, job_id: str) -> Optional[asyncio.Task]:
        """Start a pipeline for ``job_id`` unless one is already running in this process."""
        if not self.guard.try_acquire(job_id):
            logger.debug(f"Job {job_id} already processing, skipping")
            return None

        task = asyncio.create_task(self._run_guarded(job_id), name=f"job-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_guarded(self, job_id: str) -> None:
        try:
            logger.info(f"Starting to process job {job_id}...")
            await self.pipeline.run(job_id)
        except Exception as e:
            logger.error(f"Failed to process job {job_id}: {e}")
        finally:
            self.guard.release(job_id)

    async def poll_once(self) -> int:
        """Run one poll tick. Returns the number of pipelines started."""
        try:
            pending = await self.store.find_jobs_by_status("pending", self.batch_limit)
        except Exception as e:
            get_metrics_collector().record_poll_error()
            logger.error(f"Error polling for jobs: {e}")
            return 0

        if pending:
            logger.info(f"Found {len(pending)} pending job(s), processing...")

        started = 0
        for job in pending:
            if self.dispatch(job.id) is not None:
                started += 1
        return started

    async def _poll_loop(self) -> None:
        logger.info(f"Worker started, polling for jobs every {self.poll_interval} seconds...")
        while not self._stopping.is_set():
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"Poll tick failed: {e}")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                continue

    async def start(self) -> None:
        self._stopping.clear()
        self._loop_task = asyncio.create_task(self._poll_loop(), name="job-poller")

    async def stop(self, drain: bool = True) -> None:
        """
        Stop polling. With ``drain`` the running pipelines finish first, otherwise they
        are cancelled and each claimed job is marked failed.
        """
        self._stopping.set()
        if self._loop_task is not None:
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        tasks = list(self._tasks)
        if not tasks:
            return
        if not drain:
            for task in tasks:
                task.cancel()
        logger.info(f"Waiting for {len(tasks)} in-flight job(s)...")
        await asyncio.gather(*tasks, return_exceptions=True)
