"""
Job and operation pipelines.

A job fans out into four concurrent operations. Each operation updates its own
result entry and emits its own events; the job waits for all four to reach a
terminal state before it is marked completed.
"""
from __future__ import annotations
import asyncio
import json
import logging
import time
from typing import Awaitable, Callable, List, Optional

from .broadcast import BroadcastChannel
from .compute import ComputationDelegate
from .models import (
    OPERATIONS,
    ErrorEvent,
    JobCreatedEvent,
    JobProgressEvent,
    OperationCompleteEvent,
    OperationType,
    job_complete_from,
)
from .observability import get_metrics_collector
from .store import JobStore

logger = logging.getLogger(__name__)

class JobNotFoundError(Exception):
    """The job record does not exist (or vanished mid-processing)."""
    pass

class OperationPipeline:
    """Drives one operation: processing -> delay -> compute -> completed/failed."""

    def __init__(self, store: JobStore, delegate: ComputationDelegate, channel: BroadcastChannel,
                 operation_delay: float = 3.0, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.store = store
        self.delegate = delegate
        self.channel = channel
        self.operation_delay = operation_delay
        self._sleep = sleep

    async def run(self, job_id: str, operation: OperationType, a: float, b: float) -> float:
        logger.info(f"Processing {operation} for job {job_id}...")
        await self.store.update_operation_result(job_id, operation, None, "processing")

        try:
            if self.operation_delay > 0:
                await self._sleep(self.operation_delay)
            outcome = await self.delegate.compute(operation, a, b)
            await self.store.update_operation_result(job_id, operation, outcome.result, "completed")
        except Exception as e:
            logger.error(f"Error processing operation {operation} for job {job_id}: {e}")
            await self._mark_failed(job_id, operation, e)
            get_metrics_collector().record_operation(False)
            raise

        get_metrics_collector().record_operation(True)
        logger.info(f"{operation} result for job {job_id}: {outcome.result} (via {outcome.source})")

        await self.channel.publish(
            OperationCompleteEvent(jobId=job_id, operation=operation, result=outcome.result)
        )
        return outcome.result

    async def _mark_failed(self, job_id: str, operation: OperationType, error: BaseException) -> None:
        try:
            await self.store.update_operation_result(job_id, operation, None, "failed", str(error) or type(error).__name__)
        except Exception as e:
            logger.error(f"Could not mark {operation} failed for job {job_id}: {e}")

class JobPipeline:
    """Runs all operations of a job in parallel and records the job outcome."""

    def __init__(self, store: JobStore, channel: BroadcastChannel, operations: OperationPipeline):
        self.store = store
        self.channel = channel
        self.operations = operations

    @classmethod
    def build(cls, store: JobStore, delegate: ComputationDelegate, channel: BroadcastChannel,
              operation_delay: float = 3.0, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> "JobPipeline":
        return cls(store, channel, OperationPipeline(store, delegate, channel, operation_delay, sleep))

    async def run(self, job_id: str) -> None:
        """Process one job. Job-level failures become an ``error`` event; only cancellation propagates."""
        start = time.perf_counter()
        metrics = get_metrics_collector()
        outcome = "cancelled"
        claimed = False
        error: Optional[str] = None
        try:
            job = await self.store.find_job_by_id(job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")

            if not await self.store.update_job_status(job_id, "processing"):
                outcome = "skipped"
                logger.info(f"Job {job_id} already claimed (status {job.status}), skipping")
                return
            claimed = True

            metrics.record_job("started")
            logger.info(json.dumps({
                "event": "job_start",
                "job_id": job_id,
                "number_a": job.numberA,
                "number_b": job.numberB,
            }))
            await self.channel.publish(JobCreatedEvent(jobId=job_id))

            failures = await self._run_operations(job_id, job.numberA, job.numberB)
            for operation, exc in failures:
                logger.warning(f"Operation {operation} failed for job {job_id}: {exc}")

            final = await self.store.find_job_by_id(job_id)
            if final is None:
                raise JobNotFoundError(f"Job {job_id} not found after processing")
            if not final.all_terminal:
                pending = [r.operation for r in final.results if not r.terminal]
                raise RuntimeError(f"Operations left unfinished for job {job_id}: {', '.join(pending)}")

            await self.store.update_job_status(job_id, "completed")
            final.status = "completed"
            outcome = "completed"
            metrics.record_job("completed")
            await self.channel.publish(job_complete_from(final))
        except asyncio.CancelledError:
            # A claimed job is never polled again, so it must not stay processing
            if claimed and outcome != "completed":
                error = "Job processing was cancelled"
                logger.warning(f"{error}: {job_id}")
                await self._fail_job(job_id, error)
            raise
        except Exception as e:
            outcome = "failed"
            error = str(e) or type(e).__name__
            logger.error(f"Error processing job {job_id}: {error}")
            await self._fail_job(job_id, error)
        finally:
            logger.info(json.dumps({
                "event": "job_end",
                "job_id": job_id,
                "outcome": outcome,
                "duration_ms": int((time.perf_counter() - start) * 1000),
                **({"error": error} if error else {}),
            }))

    async def _run_operations(self, job_id: str, a: float, b: float) -> List[tuple]:
        total = len(OPERATIONS)
        done = 0

        async def _tracked(operation: OperationType) -> float:
            nonlocal done
            try:
                return await self.operations.run(job_id, operation, a, b)
            finally:
                done += 1
                await self.channel.publish(JobProgressEvent(
                    jobId=job_id,
                    progress=done / total * 100,
                    completed=done,
                    total=total,
                ))

        results = await asyncio.gather(*(_tracked(op) for op in OPERATIONS), return_exceptions=True)
        return [(op, r) for op, r in zip(OPERATIONS, results) if isinstance(r, BaseException)]

    async def _fail_job(self, job_id: str, error: str) -> None:
        get_metrics_collector().record_job("failed")
        try:
            if not await self.store.update_job_status(job_id, "failed"):
                logger.warning(f"Job {job_id} could not be marked failed (missing or already terminal)")
        except Exception as e:
            logger.error(f"Could not mark job {job_id} failed: {e}")
        await self.channel.publish(ErrorEvent(jobId=job_id, error=error))
