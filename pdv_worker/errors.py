class PDVWorkerError(Exception):
    """Base class for every error raised by pdv_worker."""


class QueueError(PDVWorkerError):
    """The queue broker rejected or failed an operation."""


class JobNotFoundError(QueueError):
    def __init__(self, queue_name: str, job_id: str):
        super().__init__(f"Job {job_id} not found in queue {queue_name}")
        self.queue_name = queue_name
        self.job_id = job_id


class JobStateError(QueueError):
    """Operation not allowed for the job's current state."""


class RecordStoreError(PDVWorkerError):
    """The record store is unreachable or rejected a write."""


class RecordNotFoundError(RecordStoreError):
    pass


class StageTimeoutError(PDVWorkerError):
    def __init__(self, label: str, timeout: float):
        super().__init__(f"{label} exceeded deadline of {timeout:.1f}s")
        self.label = label
        self.timeout = timeout


class TextGenerationError(PDVWorkerError):
    pass


class RenderError(PDVWorkerError):
    pass


class MailTransportError(PDVWorkerError):
    def __init__(self, message: str, error_code: int | None = None):
        super().__init__(message)
        self.error_code = error_code


class ConfigurationError(PDVWorkerError):
    """A required setting is missing or unusable."""
