"""Exception hierarchy for the document job queue."""


class DocQueueError(Exception):
    """Base exception for docqueue errors."""
    pass


class StoreUnavailableError(DocQueueError):
    """The shared key-value store could not be reached or timed out on a lock."""
    pass


class JobNotFoundError(DocQueueError):
    def __init__(self, job_id):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class InvalidTransitionError(DocQueueError):
    def __init__(self, current_status, target_status):
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(f"Cannot transition from {current_status} to {target_status}")


class AlreadyCompletedError(InvalidTransitionError):
    def __init__(self, job_id):
        super().__init__("completed", "cancelled")
        self.job_id = job_id
        self.args = (f"Job {job_id} is already completed",)


class InvalidPayloadError(DocQueueError):
    pass


class UnknownJobTypeError(DocQueueError):
    def __init__(self, job_type):
        self.job_type = job_type
        super().__init__(f"No renderer registered for job type: {job_type}")


class ObjectStoreError(DocQueueError):
    """Artifact upload or download failed."""
    pass


class RenderTimeoutError(DocQueueError):
    """A render call exceeded the processing timeout."""
    pass
