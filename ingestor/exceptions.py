"""Custom exception hierarchy for the stream ingestor and report refresh."""

from __future__ import annotations


class IngestorError(Exception):
    """Base exception for all ingestor-related errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(IngestorError):
    """Raised when configuration is missing or invalid."""
    pass


class TransientInfrastructureError(IngestorError):
    """Queue, network or database blip. Callers decide whether to retry."""
    pass


class QueueError(TransientInfrastructureError):
    """Raised when a queue operation fails."""
    pass


class StorageError(TransientInfrastructureError):
    """Raised when a database operation fails."""
    pass


class CredentialError(IngestorError):
    """Raised when queue or database credentials are missing or rejected."""
    pass


class ValidationError(IngestorError):
    """Raised when input fails validation."""
    pass


class PayloadValidationError(ValidationError):
    """Raised when a queue payload doesn't match its schema."""
    pass


class InvalidControlValueError(ValidationError):
    """Raised when a worker control value is out of range."""
    pass


class ExternalApiError(IngestorError):
    """Base exception for reporting API failures."""
    pass


class APIConnectionError(ExternalApiError):
    """Raised when unable to connect to the reporting API."""
    pass


class APITimeoutError(ExternalApiError):
    """Raised when a reporting API request times out."""
    pass


class APIResponseError(ExternalApiError):
    """Raised when the reporting API returns an unexpected response."""
    pass


class InvariantViolation(IngestorError):
    """Raised (or logged) when persisted state breaks an expected invariant."""
    pass
