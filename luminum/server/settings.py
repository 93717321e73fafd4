"""
Builds the immutable server configuration from the config store.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import SecretStr, ValidationError

from luminum.common.config import Config
from luminum.common.exceptions import ConfigError
from luminum.common.models import ServerConfig
from luminum.common.store import (
    KEY_ADDRESS,
    KEY_DB_PASSWORD,
    KEY_ENROLLMENT_KEY,
    KEY_KEY_PASSPHRASE,
    KEY_PORT,
    KEY_SERVER_KEY,
    ConfigStore,
)
from luminum.common.vault import CredentialVault
from luminum.server.identity import IdentityPaths

logger = logging.getLogger(__name__)


def load_server_config(
    store: ConfigStore,
    paths: IdentityPaths,
    clients_db_path: Path | None = None,
    address: str | None = None,
    port: int | None = None,
) -> ServerConfig:
    """Read and decrypt everything the daemon needs.

    Command-line ``address``/``port`` override the stored values. Raises
    :class:`ConfigError` for missing keys and :class:`CryptoError` when a
    sealed value does not open with the stored ServerKey.
    """
    if not store.exists():
        msg = f"Configuration database {store.path} not found. (Run with --setup)"
        raise ConfigError(msg)

    vault = CredentialVault(store.require(KEY_SERVER_KEY))
    key_passphrase = vault.open(store.require(KEY_KEY_PASSPHRASE))
    database_password = vault.open(store.require(KEY_DB_PASSWORD))
    enrollment_key = vault.open(store.require(KEY_ENROLLMENT_KEY))

    address = address or store.require(KEY_ADDRESS)
    raw_port = port if port is not None else store.require(KEY_PORT)
    try:
        port = int(raw_port)
    except ValueError as err:
        msg = f"Invalid port specified: {raw_port}"
        raise ConfigError(msg, key=KEY_PORT) from err

    config = Config()
    try:
        return ServerConfig(
            address=address,
            port=port,
            enrollment_key=SecretStr(enrollment_key),
            key_passphrase=SecretStr(key_passphrase),
            database_password=SecretStr(database_password),
            private_key_path=paths.private_key,
            public_key_path=paths.public_key,
            certificate_path=paths.certificate,
            identity_path=paths.identity,
            clients_db_path=clients_db_path or config.CLIENTS_DB_PATH,
            accept_poll_interval=config.ACCEPT_POLL_INTERVAL,
        )
    except ValidationError as err:
        msg = f"Invalid server configuration: {err.error_count()} error(s)"
        raise ConfigError(msg) from err
