"""Export pipeline error taxonomy.

Synchronous errors carry an HTTP status and a machine-readable code so the
error handler can render them uniformly. ``ExecutionError`` is only ever
recorded on a job record, and ``StaleClaim`` is an internal no-op signal.
"""


class ExportPipelineError(Exception):
    """Base class for errors surfaced to submission and status callers."""

    code = "EXPORT_ERROR"
    status_code = 400

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(ExportPipelineError):
    """Malformed request; rejected before any record is created."""

    code = "VALIDATION_ERROR"
    status_code = 400


class NotFound(ExportPipelineError):
    code = "NOT_FOUND"
    status_code = 404


class DuplicateName(ExportPipelineError):
    code = "DUPLICATE_NAME"
    status_code = 409


class NotAvailable(ExportPipelineError):
    """Download requested on a job that has no artifact."""

    code = "NOT_AVAILABLE"
    status_code = 409


class InvalidTransition(ExportPipelineError):
    """Requested status change is not allowed from the job's current status."""

    code = "INVALID_TRANSITION"
    status_code = 409


class ExecutionError(ExportPipelineError):
    """Query, serialization or artifact-write failure inside the job runner."""

    code = "EXECUTION_ERROR"
    status_code = 500


class StaleClaim(ExportPipelineError):
    """Another scheduler tick already claimed the due schedule."""

    code = "STALE_CLAIM"
    status_code = 409
