"""Error taxonomy shared by the storage services and the API layer.

Each error carries a human-readable message and the HTTP status the API
renders it with. Partial batch failures are not errors: they are reported
through result values (see batch_delete and folder_engine).
"""


class DriveError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(DriveError):
    """Malformed input, rejected before any backend call."""

    status_code = 400


class AuthorizationError(DriveError):
    """Missing or insufficiently privileged actor."""

    status_code = 403

    def __init__(self, message: str, authenticated: bool = True):
        super().__init__(message)
        if not authenticated:
            self.status_code = 401


class NotFoundError(DriveError):
    status_code = 404


class ConflictError(DriveError):
    """The target key already exists in one of the stores."""

    status_code = 409


class BackendUnavailableError(DriveError):
    """Object store or metadata store call failed or timed out. Retryable."""

    status_code = 503
