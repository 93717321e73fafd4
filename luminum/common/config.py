"""
Configuration defaults for the server daemon and the client.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path


class Config:
    """Central defaults for all system settings.

    Values that depend on the environment are resolved when the instance is
    created, so tests and the CLI can override them through env vars.
    """

    VERSION: str = "0.0.1"
    PRODUCT: str = "Luminum Client"

    def __init__(self) -> None:
        # Network
        self.DEFAULT_PORT: int = 10465
        self.CONTROL_HOST: str = "127.0.0.1"
        self.CONTROL_PORT: int = 10466
        self.ACCEPT_POLL_INTERVAL: float = 1.0
        self.CHANNEL_POLL_INTERVAL: float = 0.2
        self.RECV_BUFFER_SIZE: int = 4096
        self.CONTROL_BUFFER_SIZE: int = 1024
        self.CONTROL_MAX_CONNECTIONS: int = 64

        # Client behaviour
        self.RETRY_INTERVAL: float = 30.0  # fixed backoff between connection attempts
        self.HEARTBEAT_INTERVAL: float = 60.0

        # Key material
        self.RSA_KEY_SIZE: int = 2048
        self.CERT_VALIDITY_DAYS: int = 365
        self.IDENTITY_FRIENDLY_NAME: bytes = b"Luminum Server Key"
        self.SERVER_KEY_LENGTH: int = 128
        self.DB_PASSWORD_LENGTH: int = 16

        # Privilege drop
        self.SERVICE_USER: str = "luminum"

        # Server file layout
        self.SERVER_HOME: Path = Path(
            os.getenv("LUMINUM_SERVER_HOME", "/opt/Luminum/LuminumServer")
        )
        self.SERVER_CONFIG_DIR: Path = self.SERVER_HOME / "config"
        self.SERVER_CONFIG_PATH: Path = self.SERVER_CONFIG_DIR / "server.conf.db"
        # owned by the service user once the daemon starts as root
        self.CLIENTS_DB_PATH: Path = self.SERVER_CONFIG_DIR / "registry" / "clients.db"
        self.PRIVATE_KEY_PATH: Path = self.SERVER_CONFIG_DIR / "luminum.key"
        self.PUBLIC_KEY_PATH: Path = self.SERVER_CONFIG_DIR / "luminum.pub"
        self.CERTIFICATE_PATH: Path = self.SERVER_CONFIG_DIR / "luminum.crt"
        self.IDENTITY_PATH: Path = self.SERVER_CONFIG_DIR / "luminum.pfx"

        # Client file layout
        self.CLIENT_HOME: Path = Path(
            os.getenv("LUMINUM_CLIENT_HOME", "/opt/luminum/LuminumClient")
        )
        self.CLIENT_CONFIG_PATH: Path = self.CLIENT_HOME / "conf" / "server.conf.db"
        self.TRUST_ANCHOR_PATH: Path = self.CLIENT_HOME / "conf" / "luminum.crt"

        # Logging
        self.LOG_LEVEL: int = logging.WARNING
        self.LOG_FORMAT: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        self.LOG_FILE: str | None = os.getenv("LUMINUM_LOG_FILE")
