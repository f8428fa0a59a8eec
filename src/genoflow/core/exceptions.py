"""Custom exceptions for genoflow."""


class GenoflowError(Exception):
    """Base exception for genoflow."""
    pass


class UploadError(GenoflowError):
    """Base exception for chunked upload failures."""
    pass


class InvalidChunkMetadata(UploadError):
    """Exception raised when a chunk's index or total count is invalid."""
    pass


class ChunkConflict(UploadError):
    """Exception raised when a chunk index already holds different bytes."""
    pass


class IncompleteUpload(UploadError):
    """Exception raised when a merge runs before every chunk is present."""
    pass


class DuplicateContent(UploadError):
    """Exception raised when merged content already exists and reuse is disabled."""
    pass


class UploadSessionNotFound(UploadError):
    """Exception raised when no in-flight upload matches the session key."""
    pass


class TaskError(GenoflowError):
    """Base exception for processing job failures."""
    pass


class InvalidTaskRequest(TaskError):
    """Exception raised when a job cannot be created from the request."""
    pass


class JobNotFound(TaskError):
    """Exception raised when a job id is unknown."""
    pass


class InvalidJobTransition(TaskError):
    """Exception raised when a job status change is not allowed."""

    def __init__(self, job_id: str, current: str, target: str):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Job {job_id} cannot move from {current} to {target}")


class DownstreamUnavailable(TaskError):
    """Exception raised when the processing service rejects or misses a request."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class JobFailed(TaskError):
    """Exception raised when a job has exhausted its retries."""

    def __init__(self, job_id: str, attempts: int, last_error: str):
        self.job_id = job_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Job {job_id} failed after {attempts} attempts: {last_error}")


class ResourcePressure(GenoflowError):
    """Deferral signal raised when the host is short on memory."""
    pass
