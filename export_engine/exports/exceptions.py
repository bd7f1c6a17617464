# export_engine/exports/exceptions.py

"""
Export Module Custom Exceptions

Command-handler errors (validation, access, not found, state transition)
surface synchronously to the caller and are never retried automatically.
Worker-level errors (transient I/O, unrecoverable) end up on the job record.
"""


class ExportError(Exception):
    """Base exception for all export module errors"""
    pass


class ExportValidationError(ExportError):
    """
    Raised when an export request or value object is invalid

    Examples:
    - Unsupported format or resource type
    - Date range with from after to
    - Too many active exports for the user or organization
    """
    pass


class ExportAccessDeniedError(ExportError):
    """Raised when a user acts on an export job they do not own"""
    def __init__(self, export_id: str, user_id: int):
        self.export_id = export_id
        self.user_id = user_id
        super().__init__(f"User {user_id} is not allowed to access export '{export_id}'.")


class ExportNotFoundError(ExportError):
    """Raised when a specific export job cannot be found"""
    def __init__(self, export_id: str):
        self.export_id = export_id
        super().__init__(f"Export job with ID '{export_id}' not found.")


class InvalidStateTransitionError(ExportError):
    """Raised when an operation is not allowed in the job's current status"""
    pass


class CannotRetryNonFailedExportError(InvalidStateTransitionError):
    """Raised when retrying an export that is not in failed status"""
    def __init__(self, export_id: str, status: str):
        self.export_id = export_id
        self.status = status
        super().__init__(f"Only failed exports can be retried. Export '{export_id}' is {status}.")


class CannotDeleteProcessingExportError(InvalidStateTransitionError):
    """Raised when deleting an export that is still pending or processing"""
    def __init__(self, export_id: str, status: str):
        self.export_id = export_id
        self.status = status
        super().__init__(
            f"Export '{export_id}' is {status} and cannot be deleted until it finishes or is cancelled."
        )


class ExportNotDownloadableError(InvalidStateTransitionError):
    """Raised when a download URL is requested for an export that is not ready or expired"""
    pass


class TransientIOError(ExportError):
    """
    Raised by record sources and file stores for I/O that may succeed on retry

    Examples:
    - Database connection dropped mid-batch
    - S3 throttling or endpoint timeout
    """
    pass


class UnrecoverableExportError(ExportError):
    """
    Ends the job as failed. The message is user-facing and must not contain
    internal diagnostics.
    """
    pass


class ExportTimeoutError(UnrecoverableExportError):
    """Raised when a worker run exceeds its wall-clock ceiling"""
    pass


class ExportLimitExceededError(UnrecoverableExportError):
    """Raised when an export exceeds the record or file size ceiling of its format"""
    pass
