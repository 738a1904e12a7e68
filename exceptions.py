"""Custom exception classes for Chohan."""

from __future__ import annotations

from typing import Optional


class ChohanError(Exception):
    """Base exception for all Chohan errors."""

    pass


class CaptureError(ChohanError):
    """Base exception for capture device errors."""

    def __init__(self, message: str, device_id: Optional[str] = None):
        self.device_id = device_id
        super().__init__(message)


class CameraConnectionError(CaptureError):
    """Raised when a capture device cannot be opened or stops responding."""

    pass


class ConfigError(ChohanError):
    """Base exception for configuration errors."""

    pass


class InvalidConfigError(ConfigError):
    """Raised when configuration file is invalid or corrupted."""

    pass


class ConfigValidationError(ConfigError):
    """Raised when configuration fails schema validation."""

    def __init__(self, message: str, validation_errors: Optional[list] = None):
        self.validation_errors = validation_errors or []
        super().__init__(message)


class AuthError(ChohanError):
    """Base exception for streaming service authentication errors."""

    pass


class AuthConfigurationError(AuthError):
    """Raised when client credentials are missing for an authorization flow."""

    pass


class AuthenticationRequiredError(AuthError):
    """Raised when a request cannot be authenticated and the user must log in again."""

    pass


class OperationCancelledError(AuthError):
    """Raised when a network operation is cancelled before it is sent."""

    pass


class PredictionError(ChohanError):
    """Raised when the prediction service rejects or fails a request."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class HistoryError(ChohanError):
    """Raised when a history entry cannot be written."""

    pass
