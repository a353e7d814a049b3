"""Tests for Pydantic models, the status state machine and the renderer registry."""

import pytest
from pydantic import ValidationError

from docqueue.config import WorkerConfig
from docqueue.errors import UnknownJobTypeError
from docqueue.models import Job, JobMetadata, JobPriority, JobStatus, StatusEvent, can_transition
from docqueue.renderer import RendererRegistry


def test_terminal_statuses():
    """Test which statuses end a job's life."""
    assert JobStatus.COMPLETED.is_terminal
    assert JobStatus.FAILED.is_terminal
    assert JobStatus.CANCELLED.is_terminal
    assert not JobStatus.PENDING.is_terminal
    assert not JobStatus.PROCESSING.is_terminal


@pytest.mark.parametrize(
    "current,target",
    [
        (JobStatus.PENDING, JobStatus.PROCESSING),
        (JobStatus.PENDING, JobStatus.COMPLETED),
        (JobStatus.PENDING, JobStatus.CANCELLED),
        (JobStatus.QUEUED, JobStatus.CANCELLED),
        (JobStatus.PROCESSING, JobStatus.COMPLETED),
        (JobStatus.PROCESSING, JobStatus.FAILED),
        (JobStatus.PROCESSING, JobStatus.PENDING),
        (JobStatus.FAILED, JobStatus.PENDING),
    ],
)
def test_allowed_transitions(current, target):
    assert can_transition(current, target)


@pytest.mark.parametrize(
    "current,target",
    [
        (JobStatus.COMPLETED, JobStatus.PROCESSING),
        (JobStatus.COMPLETED, JobStatus.CANCELLED),
        (JobStatus.CANCELLED, JobStatus.PENDING),
        (JobStatus.CANCELLED, JobStatus.PROCESSING),
        (JobStatus.CANCELLED, JobStatus.COMPLETED),
        (JobStatus.FAILED, JobStatus.COMPLETED),
        (JobStatus.PENDING, JobStatus.FAILED),
    ],
)
def test_rejected_transitions(current, target):
    assert not can_transition(current, target)


def test_in_flight_render_may_complete_cancelled_job():
    assert can_transition(JobStatus.CANCELLED, JobStatus.COMPLETED, in_flight=True)
    assert not can_transition(JobStatus.CANCELLED, JobStatus.PENDING, in_flight=True)


def test_job_json_round_trip_keeps_types():
    """Test a job survives serialization to the store unchanged."""
    job = Job(
        id="j1",
        type="test",
        priority=JobPriority.HIGH,
        payload={"testId": "t1"},
        metadata=JobMetadata(title="Mock", retry_count=2),
    )
    loaded = Job.model_validate_json(job.model_dump_json())

    assert loaded == job
    assert loaded.priority is JobPriority.HIGH
    assert loaded.status is JobStatus.PENDING


def test_status_event_serializes_status_value():
    job = Job(id="j1", type="document")
    event = StatusEvent(job_id=job.id, status=job.status, job=job)
    assert '"status":"pending"' in event.model_dump_json()


def test_metadata_rejects_negative_retry_count():
    with pytest.raises(ValidationError):
        JobMetadata(retry_count=-1)


def test_worker_config_bounds():
    """Test pool size must stay within one to five slots."""
    assert WorkerConfig(max_concurrent_workers=5).max_concurrent_workers == 5
    with pytest.raises(ValidationError):
        WorkerConfig(max_concurrent_workers=0)
    with pytest.raises(ValidationError):
        WorkerConfig(max_concurrent_workers=6)


def test_renderer_registry_dispatch():
    registry = RendererRegistry({"test": lambda payload: b"test:" + payload["testId"].encode()})
    registry.register("DPP", lambda payload: b"dpp")

    assert registry.job_types == ["dpp", "test"]
    assert registry.render("test", {"testId": "t1"}) == b"test:t1"
    assert registry.render("dpp", {}) == b"dpp"


def test_renderer_registry_unknown_type():
    with pytest.raises(UnknownJobTypeError):
        RendererRegistry().render("invoice", {})
