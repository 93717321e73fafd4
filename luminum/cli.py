"""
Command-line interface for the Luminum server daemon and client.
"""

from __future__ import annotations

from pathlib import Path

import click

from luminum.client import start_client
from luminum.client.provisioning import interactive_setup, load_client_config
from luminum.common.config import Config
from luminum.common.exceptions import LuminumError
from luminum.common.logging_config import setup_logging
from luminum.common.store import ConfigStore
from luminum.server import start_server
from luminum.server.identity import IdentityAuthority, IdentityPaths
from luminum.server.provisioning import ServerProvisioner
from luminum.server.settings import load_server_config

_PATH = click.Path(dir_okay=False, path_type=Path)


@click.group()
@click.version_option(Config.VERSION, prog_name="luminum")
def cli() -> None:
    """Luminum endpoint enrollment"""


@cli.command()
@click.option("-c", "--certificate", type=_PATH, default=None, help="Path to the certificate file")
@click.option("-k", "--key", type=_PATH, default=None, help="Path to the private key file")
@click.option("-b", "--pubkey", type=_PATH, default=None, help="Path to the public key file")
@click.option("-i", "--identity", type=_PATH, default=None, help="Path to the PFX identity file")
@click.option("-a", "--address", default=None, help="Network IP address to bind to")
@click.option(
    "-p", "--port", type=click.IntRange(1, 65535), default=None, help="Network data port to use"
)
@click.option(
    "--config", "config_path", type=_PATH, default=None, help="Path to the configuration database"
)
@click.option("--user", default=None, help="System user to run as (default: luminum)")
@click.option("-s", "--setup", is_flag=True, help="Set daemon configuration parameters")
@click.option("-d", "--debug", is_flag=True, help="Enables debug mode")
def server(  # noqa: PLR0913
    certificate: Path | None,
    key: Path | None,
    pubkey: Path | None,
    identity: Path | None,
    address: str | None,
    port: int | None,
    config_path: Path | None,
    user: str | None,
    setup: bool,  # noqa: FBT001
    debug: bool,  # noqa: FBT001
) -> None:
    """Run the Luminum server daemon"""
    setup_logging(debug)
    defaults = Config()
    paths = IdentityPaths(
        private_key=key or defaults.PRIVATE_KEY_PATH,
        public_key=pubkey or defaults.PUBLIC_KEY_PATH,
        certificate=certificate or defaults.CERTIFICATE_PATH,
        identity=identity or defaults.IDENTITY_PATH,
    )
    store = ConfigStore(config_path or defaults.SERVER_CONFIG_PATH)
    clients_db_path = (
        config_path.parent / defaults.CLIENTS_DB_PATH.relative_to(defaults.SERVER_CONFIG_DIR)
        if config_path
        else defaults.CLIENTS_DB_PATH
    )
    authority = IdentityAuthority(paths, defaults)

    try:
        if setup:
            ServerProvisioner(store, authority, defaults).interactive_setup()
            return

        server_config = load_server_config(
            store, paths, clients_db_path=clients_db_path, address=address, port=port
        )
        for missing in authority.missing_artifacts():
            if missing != paths.public_key:
                msg = f"{missing} does not exist."
                raise click.ClickException(msg)
        start_server(server_config, run_as=user or defaults.SERVICE_USER)
    except LuminumError as err:
        raise click.ClickException(str(err)) from err


@cli.command()
@click.option(
    "-c", "--config", "config_path", type=_PATH, default=None,
    help="Path to the configuration database",
)
@click.option(
    "--certificate", type=_PATH, default=None, help="Path to the server certificate to trust"
)
@click.option("-s", "--setup", is_flag=True, help="Set client configuration parameters")
@click.option("-d", "--debug", is_flag=True, help="Enables debug mode")
def client(
    config_path: Path | None,
    certificate: Path | None,
    setup: bool,  # noqa: FBT001
    debug: bool,  # noqa: FBT001
) -> None:
    """Run the Luminum client"""
    setup_logging(debug)
    defaults = Config()
    store = ConfigStore(config_path or defaults.CLIENT_CONFIG_PATH)

    try:
        if setup:
            interactive_setup(store, defaults)
            return
        start_client(load_client_config(store, trust_anchor=certificate, config=defaults))
    except LuminumError as err:
        raise click.ClickException(str(err)) from err


if __name__ == "__main__":
    cli()
