"""
Error taxonomy shared by the session, OAuth and storage layers.

Configuration errors abort startup. Auth and crypto errors invalidate a single
session and are turned into "logged out" by the session resolver. Storage
errors propagate to the HTTP layer as generic 500s.
"""


class AppError(Exception):
    """Base class for errors raised by this application."""


class ConfigError(AppError):
    """Missing or malformed configuration; raised only at startup."""


class AuthError(AppError):
    """OAuth code exchange, refresh or user lookup failed."""


class StorageError(AppError):
    """The backing database failed to complete an operation."""


class CryptoError(AppError):
    """A stored token could not be decrypted."""


class MalformedCiphertextError(CryptoError):
    """Ciphertext or nonce is not valid hex, or has the wrong shape."""


class TamperedCiphertextError(CryptoError):
    """Authentication tag did not verify (tampered data or wrong key)."""
