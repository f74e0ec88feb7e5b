"""Access-token helpers for the weather API."""

from .jwt import AuthTokenError, Identity, create_access_token, verify_access_token

__all__ = [
    "AuthTokenError",
    "Identity",
    "create_access_token",
    "verify_access_token",
]
