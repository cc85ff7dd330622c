"""Error taxonomy shared by the gateway, the service layer and the API.

Every error carries a human-readable message and the HTTP status the API
answers with. Persistence failures are never raised (see store.persistence).
"""

from __future__ import annotations


class StudioError(Exception):
    """Base class for all errors surfaced to callers."""

    status_code: int = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class InputValidationError(StudioError):
    """Rejected before any network call."""

    status_code = 400


class NotFoundError(StudioError):
    status_code = 404


class NoUsableCredentialError(StudioError):
    """The key pool has no enabled credential and no fallback is allowed."""

    status_code = 409

    def __init__(self, message: str = "No usable credential: add or enable an API key first."):
        super().__init__(message)


class TransportError(StudioError):
    """Network failure or a response body that could not be read."""

    status_code = 502


class UpstreamRequestError(StudioError):
    """The upstream API answered with a non-success status."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message, status_code=status_code if status_code >= 400 else 502)
        self.upstream_status = status_code

    @property
    def is_auth_failure(self) -> bool:
        return self.upstream_status in (401, 403)

    @property
    def is_rate_limited(self) -> bool:
        return self.upstream_status == 429
