"""Error taxonomy for the auth bridge.

- ConfigurationError: fatal at startup
- InvalidToken: bad signature, wrong type, expired or malformed token
- OAuthError / AuthorizationError: structured errors rendered at the HTTP boundary
- StorageError: refresh-token backing store failed
- UpstreamError: paywall API call failed
"""

from typing import Optional


class BridgeError(Exception):
    """Base class for all auth bridge errors."""


class ConfigurationError(BridgeError):
    """Missing or invalid configuration. Raised once, at startup."""


class InvalidToken(BridgeError):
    """A signed token failed verification."""

    def __init__(self, reason: str = "invalid token"):
        super().__init__(reason)
        self.reason = reason


class OAuthError(BridgeError):
    """Token endpoint error, rendered as {error, error_description}."""

    def __init__(self, error: str, description: str = "", status_code: int = 400):
        super().__init__(f"{error}: {description}" if description else error)
        self.error = error
        self.description = description
        self.status_code = status_code

    def to_dict(self) -> dict:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


class AuthorizationError(BridgeError):
    """Authorization endpoint error, rendered as an error redirect."""

    def __init__(self, error: str):
        super().__init__(error)
        self.error = error


class StorageError(BridgeError):
    """The refresh-token backing store is unavailable or rejected the call."""


class UpstreamError(BridgeError):
    """The upstream paywall call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
