"""Pydantic models for job queue data structures.

This module defines the type-safe models shared by the job store, worker
pool and queue service. Jobs are serialized to JSON with ``model_dump_json``
before they are written to the key-value store.
"""

from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Job processing states with explicit semantics.

    State transitions:
        pending → queued        (placed on a priority list)
        pending → processing    (worker claims the job)
        pending → completed     (dedup hit, no rendering)
        processing → completed  (render + upload succeeded)
        processing → pending    (render failed, retries left)
        processing → failed     (max retries exhausted or reclaimed)
        failed → pending        (manual retry)
        pending|queued|processing|failed → cancelled
        cancelled → completed   (only the in-flight render of a job cancelled
                                 while processing)

    completed and cancelled are otherwise absorbing.
    """

    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


TRANSITIONS = {
    JobStatus.PENDING: {
        JobStatus.QUEUED,
        JobStatus.PROCESSING,
        JobStatus.COMPLETED,
        JobStatus.CANCELLED,
    },
    JobStatus.QUEUED: {JobStatus.PROCESSING, JobStatus.CANCELLED},
    JobStatus.PROCESSING: {
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.PENDING,
        JobStatus.CANCELLED,
    },
    JobStatus.FAILED: {JobStatus.PENDING, JobStatus.CANCELLED},
    JobStatus.COMPLETED: set(),
    JobStatus.CANCELLED: set(),
}


def can_transition(current: JobStatus, target: JobStatus, in_flight: bool = False) -> bool:
    """Check a status change against the job state machine.

    Args:
        current: Status currently stored for the job
        target: Requested status
        in_flight: True when the caller is the worker settling a render it
            started before the job was cancelled

    Returns:
        True if the transition is permitted
    """
    if in_flight and current == JobStatus.CANCELLED and target == JobStatus.COMPLETED:
        return True
    return target in TRANSITIONS[current]


class JobPriority(IntEnum):
    """Dequeue order: higher values are claimed first."""

    LOW = 1
    NORMAL = 2
    HIGH = 3
    URGENT = 4

    def demoted(self) -> "JobPriority":
        """One level lower, floored at LOW."""
        return JobPriority(max(JobPriority.LOW, self - 1))

    @classmethod
    def parse(cls, value: Any) -> "JobPriority":
        """Accept a member, its integer value or its (case-insensitive) name."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str) and not value.isdigit():
            try:
                return cls[value.upper()]
            except KeyError:
                raise ValueError(f"Unknown priority: {value}")
        return cls(int(value))


class JobMetadata(BaseModel):
    """Mutable per-job bookkeeping, patched by ``JobStore.update_status``."""

    title: Optional[str] = Field(default=None, description="Human readable document title")
    created_at: Optional[datetime] = Field(default=None, description="Creation time")
    started_at: Optional[datetime] = Field(
        default=None, description="First transition into processing"
    )
    completed_at: Optional[datetime] = Field(
        default=None, description="Transition into completed or failed"
    )
    error: Optional[str] = Field(default=None, description="Last error message")
    retry_count: int = Field(default=0, ge=0, description="Failed render attempts")
    download_url: Optional[str] = Field(default=None, description="Public artifact URL")
    cache_key: Optional[str] = Field(default=None, description="Object store key of artifact")


class Job(BaseModel):
    """One unit of requested rendering work."""

    id: str = Field(..., description="Unique job identifier (UUID)")
    type: str = Field(..., description="Job type tag selecting the renderer")
    status: JobStatus = Field(default=JobStatus.PENDING, description="Current job state")
    priority: JobPriority = Field(default=JobPriority.NORMAL, description="Queue tier")
    payload: Dict[str, Any] = Field(
        default_factory=dict, description="Opaque renderer input, passed verbatim"
    )
    owner_id: Optional[str] = Field(default=None, description="Owner used for listing")
    logical_id: Optional[str] = Field(
        default=None, description="Caller identifier used for artifact dedup"
    )
    metadata: JobMetadata = Field(default_factory=JobMetadata)
    created_at: datetime = Field(default_factory=utcnow, description="Creation time")
    updated_at: datetime = Field(default_factory=utcnow, description="Last mutation time")


class StatusEvent(BaseModel):
    """Message published on the status channel after every mutation.

    Delivery is at-most-once; consumers must still poll job status.
    """

    job_id: str
    status: JobStatus
    job: Job


class WorkerStats(BaseModel):
    """Counters kept by a worker pool instance."""

    active: int = Field(default=0, ge=0, description="Jobs currently executing")
    completed: int = Field(default=0, ge=0, description="Jobs completed by this pool")
    failed: int = Field(default=0, ge=0, description="Jobs terminally failed by this pool")
    retried: int = Field(default=0, ge=0, description="Failed attempts sent back to the queue")
    avg_processing_time_s: float = Field(
        default=0.0, ge=0.0, description="Mean wall time of completed jobs"
    )


class QueueStats(BaseModel):
    """Aggregate view returned by ``QueueService.stats``."""

    active: int = 0
    queued: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    avg_processing_time_s: float = 0.0
    queue_depth_by_priority: Dict[str, int] = Field(default_factory=dict)
    running: bool = False
