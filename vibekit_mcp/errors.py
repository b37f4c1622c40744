"""
Exceptions raised by the VibeCodersKit client.

Every authentication-related error names the login command, so the text can be
shown to the end user unchanged.
"""

from __future__ import annotations

from vibekit_mcp.config import LOGIN_COMMAND


class VibekitError(Exception):
    """Base class for all bridge errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotAuthenticatedError(VibekitError):
    def __init__(self, message: str | None = None):
        super().__init__(
            message
            or f"Not authenticated. Run `{LOGIN_COMMAND}` to connect your account."
        )


class AuthenticationExpiredError(VibekitError):
    def __init__(self, message: str | None = None):
        super().__init__(
            message or f"Authentication expired. Run `{LOGIN_COMMAND}` to reconnect."
        )


class NetworkError(VibekitError):
    """The remote service could not be reached (connect failure, timeout, ...)."""

    def __init__(self, url: str, original_error: Exception):
        super().__init__(f"Network error contacting {url}: {original_error}")
        self.url = url
        self.original_error = original_error


class ApiError(VibekitError):
    """Non-2xx response from the remote service."""

    def __init__(self, status_code: int, message: str | None = None):
        super().__init__(message or f"API error: {status_code}")
        self.status_code = status_code


class DeviceFlowError(VibekitError):
    """Terminal failure of the device authorization flow."""


class AuthorizationTimeoutError(DeviceFlowError):
    def __init__(self, message: str | None = None):
        super().__init__(message or "Authorization timed out. Please try again.")
