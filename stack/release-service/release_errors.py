"""
Error taxonomy for the release service.

Every error carries the HTTP status it is rendered with, so request handlers
can let them propagate and the app-level exception handler maps them.
"""

from typing import Optional


class ReleaseServiceError(Exception):
    """Base class for all release service errors."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInput(ReleaseServiceError):
    """Missing or malformed request parameter."""

    status_code = 400


class NotFound(ReleaseServiceError):
    """No matching version, SKU or artifact to serve."""

    status_code = 404


class IntegrityFailure(ReleaseServiceError):
    """Artifact digest does not match its published hash file."""

    status_code = 500


class UpstreamFailure(ReleaseServiceError):
    """Object store or database failure not otherwise classified."""

    status_code = 500

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class ConfigurationError(ReleaseServiceError):
    """Server-side release configuration is inconsistent."""

    status_code = 500


# Storage-level errors
class ObjectNotFound(NotFound):
    pass


class ObjectStoreError(UpstreamFailure):
    pass


class ReleaseStoreError(UpstreamFailure):
    pass
