"""Error taxonomy for the chat relay."""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Required configuration is missing or invalid. Fatal at startup."""


class RelayError(Exception):
    """Base class for request-scoped failures.

    `status_code` is the HTTP status used when the error is raised before the
    response has been committed.
    """

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(RelayError):
    """Bad or missing input."""

    status_code = 400


class PayloadTooLargeError(RelayError):
    """Request body exceeds the configured limit."""

    status_code = 413


class ProviderNotConfiguredError(RelayError):
    """The selected provider has no credentials configured."""

    status_code = 503


class ClientDisconnected(RelayError):
    """The caller closed the connection before the response was committed."""

    status_code = 499


class UpstreamError(RelayError):
    """Upstream provider failure."""

    status_code = 502


class UpstreamHTTPError(UpstreamError):
    """Upstream returned a non-success HTTP status."""

    def __init__(self, message: str, upstream_status: int | None = None) -> None:
        super().__init__(message)
        self.upstream_status = upstream_status


class UpstreamProtocolError(UpstreamError):
    """Upstream response is missing expected fields."""


class UpstreamStreamError(UpstreamError):
    """Upstream stream failed after it was opened."""
