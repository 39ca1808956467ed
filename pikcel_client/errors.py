from typing import Any, Dict, Optional


class PikcelError(Exception):
    """Root of every error raised by the PikcelAI client"""

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.__class__.__name__, "message": str(self)}


class RemoteError(PikcelError):
    """The PikcelAI API rejected the request"""

    def __init__(
        self,
        code: str,
        message: str,
        status: int,
        details: Optional[Any] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status
        self.details = details

    def __str__(self):
        return f"[{self.code}] HTTP {self.status}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": "RemoteError",
            "code": self.code,
            "message": self.message,
            "status": self.status,
            "details": self.details,
        }


class NetworkError(PikcelError):
    """Transport failure, timeout or cancellation before a response arrived"""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        return {"error": "NetworkError", "message": self.message}


class RateLimitError(PikcelError):
    """HTTP 429; the caller decides whether to wait and resubmit"""

    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.retry_after = retry_after

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": "RateLimitError",
            "message": self.message,
            "retry_after": self.retry_after,
        }


class PollingTimeoutError(PikcelError):
    def __init__(self, job_id: str, timeout: float, last_job: Optional[Any] = None):
        super().__init__(f"Job {job_id} did not finish within {timeout} seconds")
        self.job_id = job_id
        self.timeout = timeout
        self.last_job = last_job


class PollingCancelledError(PikcelError):
    def __init__(self, job_id: str, last_job: Optional[Any] = None):
        super().__init__(f"Polling for job {job_id} was cancelled")
        self.job_id = job_id
        self.last_job = last_job


class ConfigurationError(PikcelError):
    """Missing or unusable client configuration"""


class WebhookVerificationError(PikcelError):
    """An inbound webhook could not be authenticated"""


def format_api_error(error: BaseException) -> str:
    """Message that is safe to show to an end user"""
    if isinstance(error, RemoteError):
        return error.message
    if isinstance(error, NetworkError):
        return "Network error. Please check your connection."
    if isinstance(error, RateLimitError):
        if error.retry_after:
            return f"Rate limit exceeded. Try again in {error.retry_after} seconds."
        return "Rate limit exceeded. Please try again later."
    if isinstance(error, PollingTimeoutError):
        return "The job is taking longer than expected. Check back later."
    return "An unexpected error occurred"
