"""Custom exceptions for OpsPulse."""

from __future__ import annotations


class OpsPulseError(Exception):
    """Base exception for all OpsPulse errors."""

    pass


class ConfigurationError(OpsPulseError):
    """Raised when configuration is invalid or missing."""

    pass


class AuthenticationError(OpsPulseError):
    """Raised when a connection's credentials are invalid, expired, or cannot be refreshed."""

    def __init__(self, message: str, *, connection_id: str | None = None) -> None:
        super().__init__(message)
        self.connection_id = connection_id


class ConcurrencyConflictError(OpsPulseError):
    """Raised when a sync is already running for a connection."""

    def __init__(self, connection_id: str) -> None:
        super().__init__(f"A sync is already in progress for connection '{connection_id}'")
        self.connection_id = connection_id


class TransientNetworkError(OpsPulseError):
    """Raised when a vendor call fails for reasons that may succeed on a later attempt."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SyncTimeoutError(TransientNetworkError):
    """Raised when a sync run exceeds its configured time budget."""

    pass


class SyncCancelledError(OpsPulseError):
    """Recorded on the history of a sync run that was cancelled before it finished."""

    pass


class SourceApiError(OpsPulseError):
    """Raised when a vendor API rejects a request with a non-retryable error."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DataIntegrityError(OpsPulseError):
    """Raised when a single vendor record is missing required fields or is malformed."""

    pass


class ConnectorNotFoundError(OpsPulseError):
    """Raised when no source API client is registered for a vendor."""

    pass


class UnknownStrategyError(OpsPulseError):
    """Raised when a metric definition references an unregistered custom strategy."""

    pass


class NotFoundError(OpsPulseError):
    """Raised when a tenant-scoped entity does not exist."""

    pass


class ConnectionNotFoundError(NotFoundError):
    """Raised when a connection does not exist for the tenant."""

    pass


class MetricNotFoundError(NotFoundError):
    """Raised when a metric definition does not exist for the tenant."""

    pass


class ImpactNotFoundError(NotFoundError):
    """Raised when a business impact record does not exist for the tenant."""

    pass


class InvalidMetricDefinitionError(OpsPulseError):
    """Raised when a metric definition create/update/delete request is not allowed."""

    pass


class MetricAlreadyExistsError(OpsPulseError):
    """Raised when a metric key is already defined for the tenant."""

    pass
