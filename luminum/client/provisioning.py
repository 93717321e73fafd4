"""
Client configuration: interactive setup and loading at startup.
"""

from __future__ import annotations

from pathlib import Path

import click
from pydantic import SecretStr, ValidationError

from luminum.common.config import Config
from luminum.common.exceptions import ConfigError
from luminum.common.models import ClientConfig
from luminum.common.store import (
    KEY_ENROLLMENT_KEY,
    KEY_SERVER_HOST,
    KEY_SERVER_PORT,
    ConfigStore,
)


def interactive_setup(store: ConfigStore, config: Config | None = None) -> None:
    """Prompt for the enrollment target and shared key, then persist them."""
    config = config or Config()
    if store.exists():
        msg = "Client configuration already exists. Aborting."
        raise ConfigError(msg)

    click.echo("Luminum Client\n")
    click.echo("Client Configuration\n--------------------")
    host = click.prompt("Enter server address").strip()
    port = click.prompt(
        "Enter server port", default=config.DEFAULT_PORT, type=click.IntRange(1, 65535)
    )
    enrollment_key = click.prompt(
        "Enter enrollment key",
        hide_input=True,
        confirmation_prompt="Verify enrollment key",
    )
    write_client_config(store, host, port, enrollment_key)
    click.echo(f"Server: {host}:{port}")
    click.echo(f"Configuration: {store.path}")


def write_client_config(store: ConfigStore, host: str, port: int, enrollment_key: str) -> None:
    store.initialize()
    store.set_many({
        KEY_SERVER_HOST: host,
        KEY_SERVER_PORT: str(port),
        KEY_ENROLLMENT_KEY: enrollment_key,
    })


def load_client_config(
    store: ConfigStore,
    trust_anchor: Path | None = None,
    config: Config | None = None,
) -> ClientConfig:
    config = config or Config()
    if not store.exists():
        msg = f"Configuration database {store.path} not found. (Run with --setup)"
        raise ConfigError(msg)

    raw_port = store.require(KEY_SERVER_PORT)
    try:
        return ClientConfig(
            server_host=store.require(KEY_SERVER_HOST),
            server_port=int(raw_port),
            enrollment_key=SecretStr(store.require(KEY_ENROLLMENT_KEY)),
            trust_anchor_path=trust_anchor or config.TRUST_ANCHOR_PATH,
            config_path=store.path,
            retry_interval=config.RETRY_INTERVAL,
            heartbeat_interval=config.HEARTBEAT_INTERVAL,
            control_host=config.CONTROL_HOST,
            control_port=config.CONTROL_PORT,
        )
    except ValueError as err:
        # pydantic's ValidationError is a ValueError; keep values out of the message
        count = err.error_count() if isinstance(err, ValidationError) else 1
        msg = f"Invalid client configuration: {count} error(s)"
        raise ConfigError(msg) from err
