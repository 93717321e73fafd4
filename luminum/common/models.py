"""
Pydantic models for wire envelopes and runtime settings.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from luminum.common.config import Config


class MessageData(BaseModel):
    """Action-dependent payload. Every field is optional and named."""

    model_config = ConfigDict(extra="ignore")

    serverkey: str | None = None
    hostname: str | None = None
    uid: str | None = None
    osplat: str | None = None
    osver: str | None = None
    ipv4: str | None = None
    ipv6: str | None = None


class MessageContent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    module: str
    status: str
    action: str
    data: MessageData | None = None


class ClientMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    uid: str = ""
    product: str = Config.PRODUCT
    version: str = Config.VERSION
    content: MessageContent


class ServerMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    version: str = Config.VERSION
    content: MessageContent


class SubjectFields(BaseModel):
    """Distinguished name of the server certificate."""

    country: str = Field(min_length=2, max_length=2)
    state: str = Field(min_length=1)
    locality: str = Field(min_length=1)
    organization: str = Field(min_length=1)
    common_name: str = Field(min_length=1)


class ServerConfig(BaseModel):
    """Immutable server settings, built once at startup."""

    model_config = ConfigDict(frozen=True)

    address: str
    port: int = Field(ge=0, lt=65536)  # 0 binds an ephemeral port
    enrollment_key: SecretStr
    key_passphrase: SecretStr
    database_password: SecretStr
    private_key_path: Path
    public_key_path: Path
    certificate_path: Path
    identity_path: Path
    clients_db_path: Path
    accept_poll_interval: float = 1.0


class ClientConfig(BaseModel):
    """Immutable client settings, built once at startup."""

    model_config = ConfigDict(frozen=True)

    server_host: str
    server_port: int = Field(gt=0, lt=65536)
    enrollment_key: SecretStr
    trust_anchor_path: Path
    config_path: Path
    retry_interval: float = 30.0
    heartbeat_interval: float = 60.0
    control_host: str = "127.0.0.1"
    control_port: int | None = None
