"""Error taxonomy for the extraction pipeline.

Remote-call failures derive from ``ExtractionError`` and carry a ``kind`` plus a
``retryable`` flag that the retry policy consults. Misuse of the registry, the
store or the job state machine raises the ``ValueError``/``KeyError`` subclasses
below; those are programming errors and never become a Job's error message.
"""

from __future__ import annotations


class ExtractionError(Exception):
    kind = "extraction_error"
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class TransientNetworkError(ExtractionError):
    kind = "transient_network"
    retryable = True


class RateLimitedError(ExtractionError):
    kind = "rate_limited"
    retryable = True


class ImageQualityRejectedError(ExtractionError):
    kind = "image_quality_rejected"


class MalformedResponseError(ExtractionError):
    kind = "malformed_response"


class SchemaValidationFailedError(ExtractionError):
    kind = "schema_validation_failed"


class PreconditionMissingError(ExtractionError):
    kind = "precondition_missing"


class RemoteServiceError(ExtractionError):
    """Any non-2xx answer that is neither a rate limit nor a server fault."""

    kind = "remote_service_error"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class InvalidTransitionError(ValueError):
    def __init__(self, job_id: str, current: str, target: str) -> None:
        super().__init__(f"Job {job_id}: invalid transition {current} -> {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class UnknownKeyError(KeyError):
    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "unknown key"


class UnknownJobError(KeyError):
    def __str__(self) -> str:
        return f"Job '{self.args[0]}' not found" if self.args else "job not found"


class UnknownResourceError(KeyError):
    def __str__(self) -> str:
        return f"Resource '{self.args[0]}' is not tracked" if self.args else "resource not tracked"


class InvalidSchemaError(ValueError):
    pass


class ExtractionAlreadyRunningError(RuntimeError):
    pass
