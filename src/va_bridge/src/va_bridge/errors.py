"""Error taxonomy shared across the bridge."""

from __future__ import annotations

from virtual_agent_api import DecodeError, TransportError

__all__ = [
    "APIError",
    "AlreadyConnectedError",
    "AuthError",
    "AuthorizationMismatchError",
    "BridgeError",
    "ConfigError",
    "CryptoError",
    "DecodeError",
    "InconsistentWriteError",
    "NotFoundError",
    "OAuthStateError",
    "TransportError",
]

GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again later."


class BridgeError(Exception):
    """Base class for bridge failures."""


class ConfigError(BridgeError):
    """Configuration is missing or invalid."""


class AuthError(BridgeError):
    """Caller identity or shared secret is missing or wrong."""


class NotFoundError(BridgeError):
    """A stored record or file reference does not exist (or has expired)."""


class CryptoError(BridgeError):
    """Cipher setup failed or ciphertext did not authenticate."""


class InconsistentWriteError(BridgeError):
    """The second half of a dual-keyed write failed after the first succeeded."""


class OAuthStateError(AuthError):
    """The OAuth2 state is missing, expired or does not match."""


class AuthorizationMismatchError(AuthError):
    """The user completing OAuth2 is not the user who started it."""


class AlreadyConnectedError(BridgeError):
    """The user already has a linked ServiceNow account."""


class APIError(BridgeError):
    """HTTP-facing error carrying the status code to return."""

    def __init__(self, status_code: int, message: str) -> None:
        """Create an error rendered as ``{"message": message}``."""
        super().__init__(message)
        self.status_code = status_code
        self.message = message
