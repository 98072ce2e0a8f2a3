"""Exceptions raised by the Stellantis remote control integration."""

from __future__ import annotations

from typing import Any


class StellantisError(Exception):
    """Base class for all Stellantis remote control errors."""


class StellantisConnectionError(StellantisError):
    """Raised when a backend or broker cannot be reached or answers with an error status."""


class StellantisAuthenticationError(StellantisConnectionError):
    """Raised when a token grant is rejected."""


class StellantisConfigError(StellantisError):
    """Raised when the server answers with a malformed or unexpected payload.

    The raw payload is kept so callers can inspect backend status codes
    (quota exhaustion is not distinguished from other setup failures).
    """

    def __init__(self, message: str, payload: Any = None) -> None:
        """Initialize the error.

        Args:
            message: Human readable description
            payload: Raw server response, if any
        """
        if payload is not None:
            message = f"{message}: {payload}"
        super().__init__(message)
        self.payload = payload


class OtpStateError(StellantisError):
    """Raised when an OTP engine round is invoked out of order."""


class OtpIssueError(StellantisError):
    """Raised when no OTP code could be issued."""


class CommandError(StellantisError):
    """Raised when the vehicle backend rejects a remote command."""

    def __init__(self, return_code: Any, response: dict[str, Any]) -> None:
        """Initialize the error.

        Args:
            return_code: Non-zero status code from the backend
            response: Full response body
        """
        super().__init__(f"Command failed with code {return_code}")
        self.return_code = return_code
        self.response = response


class CommandTimeoutError(StellantisError):
    """Raised when no response correlates with a command before the deadline."""

    def __init__(self, correlation_id: str, timeout: float) -> None:
        """Initialize the error."""
        super().__init__(
            f"No response for command {correlation_id} within {timeout:g} seconds"
        )
        self.correlation_id = correlation_id
        self.timeout = timeout
