"""Error taxonomy for the client portal.

Every failure the portal core can surface is a PortalError subclass carrying
an error code and the HTTP status the API layer maps it to. None of them are
fatal; the portal stays interactive and every retry is a fresh user action.
"""


class PortalError(Exception):
    """Base exception for portal operations."""
    error_code = "PORTAL_ERROR"
    http_status = 500
    retryable = False

    def __init__(self, message: str = ""):
        self.message = message or self.__class__.__doc__ or self.error_code
        super().__init__(self.message)


# --- Identity ---------------------------------------------------------------

class AuthError(PortalError):
    """Authentication failed; no session was established."""
    error_code = "AUTH_ERROR"
    http_status = 401


class InvalidCredentials(AuthError):
    """Invalid credentials."""
    error_code = "INVALID_CREDENTIALS"


class ProviderUnavailable(AuthError):
    """Identity provider unavailable."""
    error_code = "PROVIDER_UNAVAILABLE"
    http_status = 503


# --- Input ------------------------------------------------------------------

class ValidationError(PortalError):
    """A required field is missing or invalid."""
    error_code = "VALIDATION_ERROR"
    http_status = 400


class EmptyInputError(ValidationError):
    """No signature was drawn."""
    error_code = "EMPTY_SIGNATURE"


# --- Records ----------------------------------------------------------------

class NotFoundError(PortalError):
    """Record not found."""
    error_code = "NOT_FOUND"
    http_status = 404


class RemoteStoreError(PortalError):
    """The record store could not complete the operation."""
    error_code = "REMOTE_STORE_ERROR"
    http_status = 503
    retryable = True


class RemoteWriteError(RemoteStoreError):
    """The record store rejected or failed a write. Nothing was changed."""
    error_code = "REMOTE_WRITE_FAILED"


class RemoteReadError(RemoteStoreError):
    """The record store could not be read."""
    error_code = "REMOTE_READ_FAILED"


# --- Session ----------------------------------------------------------------

class DuplicateSubmissionError(PortalError):
    """The same action is already in progress."""
    error_code = "DUPLICATE_SUBMISSION"
    http_status = 409


class AccessDeniedError(NotFoundError):
    """No project is linked to this account."""
    error_code = "ACCESS_DENIED"
    http_status = 403
