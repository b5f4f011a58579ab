from typing import Optional


class ServiceError(Exception):
    """Base class for failures reported to the caller as a structured response."""

    status_code = 500

    def __init__(self, message: str, job_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.job_id = job_id


class ValidationError(ServiceError):
    status_code = 400


class ToolUnavailableError(ServiceError):
    status_code = 503


class ExecutionError(ServiceError):
    status_code = 500


class PostconditionError(ServiceError):
    status_code = 500


class InfoParseError(ServiceError):
    status_code = 502


class JobTimeoutError(ServiceError):
    status_code = 504


class FileNotFoundInStoreError(ServiceError):
    status_code = 404
