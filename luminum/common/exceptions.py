"""
Custom exceptions for the enrollment system.
"""

from __future__ import annotations


class LuminumError(Exception):
    """Base class for all errors raised by the package."""


class LuminumIOError(LuminumError, OSError):
    """Filesystem or socket failure."""


class CryptoError(LuminumError):
    """Key generation, encryption, decryption or signing failure."""


class AuthError(LuminumError):
    """Passphrase or enrollment key mismatch."""


class ProtocolError(LuminumError):
    """Malformed or unexpected message."""


class ChannelClosed(ProtocolError):
    """The peer closed the stream."""


class ConfigError(LuminumError):
    """Missing or invalid configuration."""

    def __init__(self, message: str, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key
