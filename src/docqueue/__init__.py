"""Prioritized, deduplicating document rendering queue."""

from .config import DocQueueConfig, resolve_config
from .dedup import DedupCache
from .errors import (
    AlreadyCompletedError,
    DocQueueError,
    InvalidPayloadError,
    InvalidTransitionError,
    JobNotFoundError,
    StoreUnavailableError,
)
from .job_store import JobStore
from .models import Job, JobPriority, JobStatus, QueueStats, WorkerStats
from .renderer import Renderer, RendererRegistry
from .service import QueueService
from .worker import WorkerPool

__version__ = "0.1.0"

__all__ = [
    "DocQueueConfig",
    "resolve_config",
    "DedupCache",
    "AlreadyCompletedError",
    "DocQueueError",
    "InvalidPayloadError",
    "InvalidTransitionError",
    "JobNotFoundError",
    "StoreUnavailableError",
    "JobStore",
    "Job",
    "JobPriority",
    "JobStatus",
    "QueueStats",
    "WorkerStats",
    "Renderer",
    "RendererRegistry",
    "QueueService",
    "WorkerPool",
]
