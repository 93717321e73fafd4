"""
Credential vault: protects secrets at rest with a key derived from the
per-install ServerKey.
"""

from __future__ import annotations

import base64
import binascii
import os
import secrets
import string
from dataclasses import dataclass, field

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from luminum.common.exceptions import CryptoError

NONCE_SIZE = 12
KEY_ALPHABET = string.ascii_letters + string.digits + string.punctuation

_VAULT_SALT = b"luminum-vault"
_VAULT_INFO = b"secret-at-rest:v1"


@dataclass(frozen=True)
class CipherHandle:
    """Symmetric cipher configuration derived from a ServerKey."""

    key: bytes = field(repr=False)

    @property
    def aead(self) -> AESGCM:
        return AESGCM(self.key)


def derive_cipher(server_key: str) -> CipherHandle:
    """Derive the vault cipher. The same ServerKey always yields the same key."""
    if not server_key:
        msg = "server key must not be empty"
        raise CryptoError(msg)
    key = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_VAULT_SALT,
        info=_VAULT_INFO,
    ).derive(server_key.encode("utf-8"))
    return CipherHandle(key=key)


def seal(cipher: CipherHandle, plaintext: str) -> str:
    """Encrypt a secret and return base64(nonce || ciphertext)."""
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = cipher.aead.encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.b64encode(nonce + ciphertext).decode("ascii")


def open_sealed(cipher: CipherHandle, ciphertext_b64: str) -> str:
    """Decrypt a value produced by :func:`seal`."""
    try:
        raw = base64.b64decode(ciphertext_b64.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as err:
        msg = "sealed value is not valid base64"
        raise CryptoError(msg) from err
    if len(raw) <= NONCE_SIZE:
        msg = "sealed value is truncated"
        raise CryptoError(msg)
    try:
        plaintext = cipher.aead.decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], None)
    except InvalidTag as err:
        msg = "sealed value is corrupt or was sealed with a different key"
        raise CryptoError(msg) from err
    return plaintext.decode("utf-8")


def generate_secret(length: int, alphabet: str = KEY_ALPHABET) -> str:
    """Random string drawn from ``alphabet`` with the OS CSPRNG."""
    return "".join(secrets.choice(alphabet) for _ in range(length))


def generate_server_key(length: int = 128) -> str:
    # 128 chars over a 94-symbol alphabet is ~838 bits of entropy
    if length < 22:  # noqa: PLR2004
        msg = "server key must carry at least 128 bits of entropy"
        raise CryptoError(msg)
    return generate_secret(length)


class CredentialVault:
    """Convenience wrapper binding a derived cipher."""

    def __init__(self, server_key: str) -> None:
        self._cipher = derive_cipher(server_key)

    def seal(self, plaintext: str) -> str:
        return seal(self._cipher, plaintext)

    def open(self, ciphertext_b64: str) -> str:
        return open_sealed(self._cipher, ciphertext_b64)
