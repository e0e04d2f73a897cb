"""
Typed service errors.

Raised by repositories and services, rendered by the exception handler
registered in app.main as ``{"detail": message}`` with ``status_code``.
"""


class ServiceError(Exception):
    status_code: int = 500

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        if status_code:
            self.status_code = status_code
        super().__init__(self.message)


class NotFoundError(ServiceError):
    """Space, post or session does not exist."""
    status_code = 404

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message)


class PermissionDeniedError(ServiceError):
    status_code = 403

    def __init__(self, message: str = "Permission denied"):
        super().__init__(message)


class InvalidStateError(ServiceError):
    """
    The operation is not allowed in the record's current state, e.g.
    archiving a space that is already archived, or joining an expired space.
    """
    status_code = 409

    def __init__(self, message: str = "Invalid state"):
        super().__init__(message)


class StorageError(ServiceError):
    """Transient failure of the persistence layer."""
    status_code = 503

    def __init__(self, message: str = "Storage unavailable"):
        super().__init__(message)


class ArchiveTimeoutError(StorageError):
    status_code = 504

    def __init__(self, message: str = "Archive operation timed out"):
        super().__init__(message)
