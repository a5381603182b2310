from __future__ import annotations
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

OperationType = Literal["add", "subtract", "multiply", "divide"]
JobStatus = Literal["pending", "processing", "completed", "failed"]

OPERATIONS: Tuple[OperationType, ...] = ("add", "subtract", "multiply", "divide")
TERMINAL_STATUSES = frozenset({"completed", "failed"})

# Largest integer a browser client can represent exactly
MAX_SAFE_INTEGER = 2**53 - 1

# ---- Job documents ----
class OperationResult(BaseModel):
    operation: OperationType
    status: JobStatus = "pending"
    result: Optional[float] = Field(None, description="Present only when completed")
    error: Optional[str] = Field(None, description="Present only when failed")

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

class Job(BaseModel):
    id: str
    numberA: float
    numberB: float
    status: JobStatus = "pending"
    results: List[OperationResult] = Field(default_factory=list)
    createdAt: datetime
    updatedAt: datetime

    def result_for(self, operation: OperationType) -> Optional[OperationResult]:
        for r in self.results:
            if r.operation == operation:
                return r
        return None

    @property
    def all_terminal(self) -> bool:
        return len(self.results) == len(OPERATIONS) and all(r.terminal for r in self.results)

# ---- API boundary ----
class ComputeRequest(BaseModel):
    numberA: float = Field(..., strict=True, ge=-MAX_SAFE_INTEGER, le=MAX_SAFE_INTEGER, allow_inf_nan=False)
    numberB: float = Field(..., strict=True, ge=-MAX_SAFE_INTEGER, le=MAX_SAFE_INTEGER, allow_inf_nan=False)

class JobCreatedData(BaseModel):
    id: str

class JobEnvelope(BaseModel):
    success: Literal[True] = True
    data: Job

def success_response(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": data}

def error_response(error: str, code: Optional[int] = None) -> Dict[str, Any]:
    return {"success": False, "error": error, "code": code}

# ---- Notification events (wire format) ----
class JobCreatedEvent(BaseModel):
    type: Literal["job_created"] = "job_created"
    jobId: str

class JobProgressEvent(BaseModel):
    type: Literal["job_progress"] = "job_progress"
    jobId: str
    progress: float = Field(..., ge=0, le=100)
    completed: int
    total: int

class OperationCompleteEvent(BaseModel):
    type: Literal["operation_complete"] = "operation_complete"
    jobId: str
    operation: OperationType
    # Non-finite results travel as null
    result: Optional[float] = None

class JobResultEntry(BaseModel):
    operation: OperationType
    status: JobStatus
    result: Optional[float] = None
    error: Optional[str] = None

class JobCompleteEvent(BaseModel):
    type: Literal["job_complete"] = "job_complete"
    jobId: str
    results: List[JobResultEntry]

class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    jobId: str
    error: str

NotificationEvent = Annotated[
    Union[JobCreatedEvent, JobProgressEvent, OperationCompleteEvent, JobCompleteEvent, ErrorEvent],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter = TypeAdapter(NotificationEvent)

def serialize_event(event: BaseModel) -> str:
    """Render an event as the JSON frame sent to brokers and sockets."""
    return event.model_dump_json(exclude_none=True)

def parse_event(raw: Union[str, bytes, Dict[str, Any]]) -> BaseModel:
    """Validate a raw frame into its event variant. Raises ValueError when malformed."""
    try:
        if isinstance(raw, dict):
            return _event_adapter.validate_python(raw)
        return _event_adapter.validate_json(raw)
    except ValidationError as e:
        raise ValueError(f"Invalid notification event: {e}") from e

def job_complete_from(job: Job) -> JobCompleteEvent:
    return JobCompleteEvent(
        jobId=job.id,
        results=[
            JobResultEntry(operation=r.operation, status=r.status, result=r.result, error=r.error)
            for r in job.results
        ],
    )
