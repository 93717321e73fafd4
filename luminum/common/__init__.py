# Common utilities
from luminum.common.exceptions import (
    AuthError as AuthError,
    ConfigError as ConfigError,
    CryptoError as CryptoError,
    LuminumError as LuminumError,
    LuminumIOError as LuminumIOError,
    ProtocolError as ProtocolError,
)
from luminum.common.vault import CredentialVault as CredentialVault

__all__ = [
    "AuthError",
    "ConfigError",
    "CredentialVault",
    "CryptoError",
    "LuminumError",
    "LuminumIOError",
    "ProtocolError",
]
