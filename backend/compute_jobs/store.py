"""
Job store backed by SQLAlchemy.

Every public call is async and pushes the blocking session work onto a
worker thread, so a slow database never stalls the event loop.
"""
import asyncio
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from .database import JobRow, OperationResultRow, create_engine_instance, create_session_factory, init_db
from .models import OPERATIONS, Job, JobStatus, OperationResult, OperationType

logger = logging.getLogger(__name__)

# Status a job must currently be in for a transition to apply
_PREDECESSORS: Dict[str, Tuple[str, ...]] = {
    "pending": (),
    "processing": ("pending",),
    "completed": ("processing",),
    "failed": ("pending", "processing"),
}

class StoreError(Exception):
    """Job store errors."""
    pass

def _to_model(row: JobRow) -> Job:
    return Job(
        id=row.id,
        numberA=row.number_a,
        numberB=row.number_b,
        status=row.status,
        results=[
            OperationResult(operation=r.operation, status=r.status, result=r.result, error=r.error)
            for r in row.results
        ],
        createdAt=row.created_at,
        updatedAt=row.updated_at,
    )

class JobStore:
    """Create/read/update-by-filter access to job records."""

    def __init__(self, database_url: Optional[str] = None, engine=None):
        self.engine = engine if engine is not None else create_engine_instance(database_url)
        self._session_factory = create_session_factory(self.engine)

    def init_schema(self) -> None:
        init_db(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Job store operation failed: {e}")
            raise StoreError(f"Job store operation failed: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ---- sync implementations ----
    def _create_job(self, number_a: float, number_b: float) -> Job:
        now = datetime.utcnow()
        row = JobRow(
            id=uuid.uuid4().hex,
            number_a=number_a,
            number_b=number_b,
            status="pending",
            created_at=now,
            updated_at=now,
        )
        row.results = [
            OperationResultRow(position=i, operation=op, status="pending")
            for i, op in enumerate(OPERATIONS)
        ]
        with self._session() as session:
            session.add(row)
            session.flush()
            job = _to_model(row)
        logger.info(f"Created job {job.id}: {number_a}, {number_b}")
        return job

    def _find_job_by_id(self, job_id: str) -> Optional[Job]:
        with self._session() as session:
            row = session.execute(
                select(JobRow).options(selectinload(JobRow.results)).where(JobRow.id == job_id)
            ).scalar_one_or_none()
            return _to_model(row) if row is not None else None

    def _find_jobs_by_status(self, status: JobStatus, limit: int) -> List[Job]:
        with self._session() as session:
            rows = session.execute(
                select(JobRow)
                .options(selectinload(JobRow.results))
                .where(JobRow.status == status)
                .order_by(JobRow.created_at)
                .limit(limit)
            ).scalars().all()
            return [_to_model(r) for r in rows]

    def _update_job_status(self, job_id: str, status: JobStatus) -> bool:
        allowed_from = _PREDECESSORS[status]
        if not allowed_from:
            return False
        with self._session() as session:
            res = session.execute(
                update(JobRow)
                .where(JobRow.id == job_id, JobRow.status.in_(allowed_from))
                .values(status=status, updated_at=datetime.utcnow())
            )
            applied = res.rowcount == 1
        if applied:
            logger.debug(f"Job {job_id} -> {status}")
        else:
            logger.info(f"Status update to {status} not applied for job {job_id}")
        return applied

    def _update_operation_result(self, job_id: str, operation: OperationType, result: Optional[float],
                                 status: JobStatus, error: Optional[str]) -> bool:
        with self._session() as session:
            res = session.execute(
                update(OperationResultRow)
                .where(OperationResultRow.job_id == job_id, OperationResultRow.operation == operation)
                .values(result=result, status=status, error=error)
            )
            if res.rowcount != 1:
                return False
            session.execute(
                update(JobRow).where(JobRow.id == job_id).values(updated_at=datetime.utcnow())
            )
        return True

    # ---- async API ----
    async def create_job(self, number_a: float, number_b: float) -> Job:
        return await asyncio.to_thread(self._create_job, number_a, number_b)

    async def find_job_by_id(self, job_id: str) -> Optional[Job]:
        return await asyncio.to_thread(self._find_job_by_id, job_id)

    async def find_jobs_by_status(self, status: JobStatus, limit: int) -> List[Job]:
        return await asyncio.to_thread(self._find_jobs_by_status, status, limit)

    async def update_job_status(self, job_id: str, status: JobStatus) -> bool:
        """
        Move a job to ``status`` if it is currently in an allowed predecessor state.

        Returns True when the transition applied. ``pending -> processing`` is
        the atomic claim: only one caller ever sees True for a given job.
        """
        return await asyncio.to_thread(self._update_job_status, job_id, status)

    async def update_operation_result(self, job_id: str, operation: OperationType, result: Optional[float],
                                      status: JobStatus, error: Optional[str] = None) -> bool:
        """Targeted update of the single result entry matching ``operation``."""
        return await asyncio.to_thread(self._update_operation_result, job_id, operation, result, status, error)
