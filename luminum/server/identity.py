"""
Server identity: RSA key pair, self-signed certificate and PKCS#12 bundle.
"""

from __future__ import annotations

import datetime
import ipaddress
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, cast

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from luminum.common.config import Config
from luminum.common.exceptions import AuthError, CryptoError, LuminumIOError
from luminum.common.models import SubjectFields

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = ".old"


@dataclass(frozen=True)
class KeyMaterial:
    """A key pair whose private half only exists encrypted."""

    private_pem: bytes = field(repr=False)
    public_pem: bytes

    def load_private_key(self, passphrase: str) -> rsa.RSAPrivateKey:
        return _load_private_key(self.private_pem, passphrase)

    def load_public_key(self) -> rsa.RSAPublicKey:
        try:
            key = serialization.load_pem_public_key(self.public_pem)
        except (ValueError, UnsupportedAlgorithm) as err:
            msg = "Public key is malformed"
            raise CryptoError(msg) from err
        if not isinstance(key, rsa.RSAPublicKey):
            msg = "Public key is not an RSA key"
            raise CryptoError(msg)
        return key


@dataclass(frozen=True)
class IdentityPaths:
    private_key: Path
    public_key: Path
    certificate: Path
    identity: Path

    @classmethod
    def from_config(cls, config: Config | None = None) -> IdentityPaths:
        config = config or Config()
        return cls(
            private_key=config.PRIVATE_KEY_PATH,
            public_key=config.PUBLIC_KEY_PATH,
            certificate=config.CERTIFICATE_PATH,
            identity=config.IDENTITY_PATH,
        )

    def all(self) -> tuple[Path, Path, Path, Path]:
        return (self.private_key, self.public_key, self.certificate, self.identity)


def _load_private_key(private_pem: bytes, passphrase: str) -> rsa.RSAPrivateKey:
    try:
        key = serialization.load_pem_private_key(
            private_pem, password=passphrase.encode("utf-8")
        )
    except TypeError as err:
        msg = "Private key is not passphrase protected"
        raise CryptoError(msg) from err
    except ValueError as err:
        # cryptography reports a bad passphrase and a corrupt PEM alike
        msg = "Could not decrypt private key (incorrect passphrase?)"
        raise AuthError(msg) from err
    except UnsupportedAlgorithm as err:
        msg = "Private key uses an unsupported algorithm"
        raise CryptoError(msg) from err
    if not isinstance(key, rsa.RSAPrivateKey):
        msg = "Private key is not an RSA key"
        raise CryptoError(msg)
    return key


def _encryption(passphrase: str) -> serialization.KeySerializationEncryption:
    if not passphrase:
        msg = "A non-empty passphrase is required"
        raise CryptoError(msg)
    return serialization.BestAvailableEncryption(passphrase.encode("utf-8"))


def _general_name(name: str) -> x509.GeneralName:
    try:
        return x509.IPAddress(ipaddress.ip_address(name))
    except ValueError:
        return x509.DNSName(name)


class IdentityAuthority:
    """Creates, stores and rotates the server's TLS identity."""

    def __init__(self, paths: IdentityPaths | None = None, config: Config | None = None):
        self.config = config or Config()
        self.paths = paths or IdentityPaths.from_config(self.config)

    # Generation

    def generate_key_pair(self, passphrase: str) -> KeyMaterial:
        """Generate an RSA key pair with the private key encrypted under ``passphrase``."""
        logger.info("Generating %d-bit RSA key pair...", self.config.RSA_KEY_SIZE)
        encryption = _encryption(passphrase)
        try:
            private_key = rsa.generate_private_key(
                public_exponent=65537,
                key_size=self.config.RSA_KEY_SIZE,
            )
            private_pem = private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=encryption,
            )
            public_pem = private_key.public_key().public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            )
        except (ValueError, UnsupportedAlgorithm) as err:
            msg = f"Key generation failed: {err}"
            raise CryptoError(msg) from err
        return KeyMaterial(private_pem=private_pem, public_pem=public_pem)

    def generate_self_signed_certificate(
        self,
        keys: KeyMaterial,
        passphrase: str,
        subject_fields: SubjectFields,
        alt_names: Iterable[str] = (),
    ) -> x509.Certificate:
        """Issue a certificate for ``keys`` signed by its own private key.

        Valid from now for CERT_VALIDITY_DAYS, with a random 159-bit serial.
        """
        private_key = keys.load_private_key(passphrase)
        public_key = keys.load_public_key()
        if private_key.public_key().public_numbers() != public_key.public_numbers():
            msg = "Public key does not belong to the private key"
            raise CryptoError(msg)

        names = [subject_fields.common_name]
        names.extend(n for n in alt_names if n and n not in names)

        try:
            name = x509.Name([
                x509.NameAttribute(NameOID.COUNTRY_NAME, subject_fields.country),
                x509.NameAttribute(NameOID.STATE_OR_PROVINCE_NAME, subject_fields.state),
                x509.NameAttribute(NameOID.LOCALITY_NAME, subject_fields.locality),
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, subject_fields.organization),
                x509.NameAttribute(NameOID.COMMON_NAME, subject_fields.common_name),
            ])
            now = datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)
            certificate = (
                x509.CertificateBuilder()
                .subject_name(name)
                .issuer_name(name)  # self-signed
                .public_key(public_key)
                .serial_number(x509.random_serial_number())
                .not_valid_before(now)
                .not_valid_after(now + datetime.timedelta(days=self.config.CERT_VALIDITY_DAYS))
                .add_extension(
                    x509.BasicConstraints(ca=True, path_length=0),
                    critical=True,
                )
                .add_extension(
                    x509.KeyUsage(
                        digital_signature=True,
                        content_commitment=False,
                        key_encipherment=True,
                        data_encipherment=False,
                        key_agreement=False,
                        key_cert_sign=True,
                        crl_sign=False,
                        encipher_only=False,
                        decipher_only=False,
                    ),
                    critical=True,
                )
                .add_extension(
                    x509.SubjectAlternativeName([_general_name(n) for n in names]),
                    critical=False,
                )
                .add_extension(
                    x509.SubjectKeyIdentifier.from_public_key(public_key),
                    critical=False,
                )
                .add_extension(
                    x509.AuthorityKeyIdentifier.from_issuer_public_key(public_key),
                    critical=False,
                )
                .sign(private_key=private_key, algorithm=hashes.SHA256())
            )
        except ValueError as err:
            msg = f"Certificate creation failed: {err}"
            raise CryptoError(msg) from err
        return certificate

    def build_identity_bundle(
        self, keys: KeyMaterial, certificate: x509.Certificate, passphrase: str
    ) -> bytes:
        """Package key and certificate as password-protected PKCS#12."""
        private_key = keys.load_private_key(passphrase)
        try:
            return pkcs12.serialize_key_and_certificates(
                name=self.config.IDENTITY_FRIENDLY_NAME,
                key=private_key,
                cert=certificate,
                cas=None,
                encryption_algorithm=_encryption(passphrase),
            )
        except ValueError as err:
            msg = f"Could not build identity bundle: {err}"
            raise CryptoError(msg) from err

    @staticmethod
    def load_identity_bundle(
        data: bytes, passphrase: str
    ) -> tuple[rsa.RSAPrivateKey, x509.Certificate]:
        try:
            key, certificate, _ = pkcs12.load_key_and_certificates(
                data, passphrase.encode("utf-8")
            )
        except ValueError as err:
            msg = "Could not open identity bundle (incorrect password?)"
            raise AuthError(msg) from err
        if not isinstance(key, rsa.RSAPrivateKey) or certificate is None:
            msg = "Identity bundle does not hold an RSA key and certificate"
            raise CryptoError(msg)
        return key, certificate

    # Persistence

    def save_key_pair(self, keys: KeyMaterial) -> None:
        _write_file(self.paths.private_key, keys.private_pem, private=True)
        _write_file(self.paths.public_key, keys.public_pem)
        logger.info("Private key written to %s", self.paths.private_key)
        logger.info("Public key written to %s", self.paths.public_key)

    def load_key_pair(self) -> KeyMaterial:
        return KeyMaterial(
            private_pem=_read_file(self.paths.private_key),
            public_pem=_read_file(self.paths.public_key),
        )

    def save_certificate(self, certificate: x509.Certificate) -> None:
        _write_file(self.paths.certificate, certificate.public_bytes(serialization.Encoding.PEM))
        logger.info("Certificate written to %s", self.paths.certificate)

    def load_certificate(self) -> x509.Certificate:
        try:
            return x509.load_pem_x509_certificate(_read_file(self.paths.certificate))
        except ValueError as err:
            msg = f"Certificate {self.paths.certificate} is malformed"
            raise CryptoError(msg) from err

    def save_identity_bundle(self, bundle: bytes) -> None:
        _write_file(self.paths.identity, bundle, private=True)
        logger.info("Identity written to %s", self.paths.identity)

    def load_identity(self, passphrase: str) -> tuple[rsa.RSAPrivateKey, x509.Certificate]:
        return self.load_identity_bundle(_read_file(self.paths.identity), passphrase)

    def missing_artifacts(self) -> list[Path]:
        return [p for p in self.paths.all() if not p.is_file()]

    def artifacts_exist(self) -> bool:
        return not self.missing_artifacts()

    def key_exists(self) -> bool:
        return self.paths.private_key.is_file()

    # Rotation

    def backup_existing(self) -> list[Path]:
        """Move every artifact to its ``.old`` sibling.

        Stale backups are removed first. If any rename fails, the ones
        already moved are put back and :class:`LuminumIOError` is raised.
        """
        moved: list[tuple[Path, Path]] = []
        try:
            for path in self.paths.all():
                backup = _backup_path(path)
                if backup.exists():
                    backup.unlink()
            for path in self.paths.all():
                backup = _backup_path(path)
                path.rename(backup)
                moved.append((path, backup))
                logger.info("Backed up %s to %s", path, backup)
        except OSError as err:
            for original, backup in reversed(moved):
                try:
                    backup.rename(original)
                except OSError:
                    logger.exception("Could not restore %s from %s", original, backup)
            msg = f"Backup of existing identity failed: {err}"
            raise LuminumIOError(msg) from err
        return [backup for _, backup in moved]

    def provision(
        self,
        passphrase: str,
        subject_fields: SubjectFields,
        alt_names: Iterable[str] = (),
        *,
        rotate: bool = False,
        reuse_key: bool = False,
    ) -> x509.Certificate:
        """Create (or rotate) the complete identity on disk."""
        if rotate:
            self.backup_existing()
        if reuse_key:
            keys = self.load_key_pair()
        else:
            keys = self.generate_key_pair(passphrase)
        certificate = self.generate_self_signed_certificate(
            keys, passphrase, subject_fields, alt_names
        )
        bundle = self.build_identity_bundle(keys, certificate, passphrase)
        if not reuse_key:
            self.save_key_pair(keys)
        self.save_certificate(certificate)
        self.save_identity_bundle(bundle)
        return certificate


def _backup_path(path: Path) -> Path:
    return path.with_name(path.name + BACKUP_SUFFIX)


def _write_file(path: Path, data: bytes, private: bool = False) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        mode = 0o600 if private else 0o644
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.chmod(path, mode)
    except OSError as err:
        msg = f"Could not write {path}: {err}"
        raise LuminumIOError(msg) from err


def _read_file(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as err:
        msg = f"Could not read {path}: {err}"
        raise LuminumIOError(msg) from err


def certificate_validity(certificate: x509.Certificate) -> tuple[datetime.datetime, datetime.datetime]:
    """Return the (not_before, not_after) window as aware UTC datetimes."""
    not_before = cast(datetime.datetime, certificate.not_valid_before_utc)
    not_after = cast(datetime.datetime, certificate.not_valid_after_utc)
    return not_before, not_after
