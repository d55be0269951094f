"""Error taxonomy surfaced to the UI boundary."""


class DermaSyncError(Exception):
    """Base class for errors the UI is expected to render."""

    default_message = "An error occurred"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class NotAuthenticatedError(DermaSyncError):
    """Raised when an owner-scoped operation runs without a signed-in identity."""

    default_message = "User is not authenticated"


class NotAuthorizedError(DermaSyncError):
    """Raised when the record's owner is not the caller."""

    default_message = "User is not authorized to access this document"


class OfflineError(DermaSyncError):
    """Raised by the reachability pre-flight check."""

    default_message = (
        "You are currently offline. Please check your internet connection and try again"
    )


class OperationTimeoutError(DermaSyncError, TimeoutError):
    """Raised when the deadline fires first. The remote outcome is unknown."""

    default_message = (
        "Operation timed out. The change may or may not have been saved; "
        "check again before retrying"
    )


class DocumentNotFoundError(DermaSyncError):
    default_message = "Document not found"


class InvalidDataError(DermaSyncError):
    """Raised for unusable input or an unparseable AI response."""

    default_message = "Invalid data format"


class RemoteStoreError(DermaSyncError):
    """Generic document store failure. Carries the underlying message."""

    default_message = "Remote store error"


class AIServiceError(DermaSyncError):
    """Raised when the classification service rejects or fails a request."""

    default_message = "Invalid response from server"

    def __init__(self, message: str | None = None, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class AuthenticationError(DermaSyncError):
    """Raised by the auth provider for bad credentials or duplicate accounts."""

    default_message = "Authentication failed"


def describe_error(error: BaseException) -> str:
    """Render any exception as a human-readable message for the UI."""
    if isinstance(error, DermaSyncError):
        return error.message
    if isinstance(error, TimeoutError):
        return OperationTimeoutError.default_message
    return f"An error occurred: {error}"
