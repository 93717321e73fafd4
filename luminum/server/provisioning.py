"""
Interactive daemon setup: network settings, identity and sealed secrets.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import click

from luminum.common.config import Config
from luminum.common.exceptions import AuthError, ConfigError
from luminum.common.models import SubjectFields
from luminum.common.netaddr import is_valid_bind_address
from luminum.common.store import (
    KEY_ADDRESS,
    KEY_DB_PASSWORD,
    KEY_ENROLLMENT_KEY,
    KEY_KEY_PASSPHRASE,
    KEY_PORT,
    KEY_SERVER_KEY,
)
from luminum.common.vault import CredentialVault, generate_secret, generate_server_key

if TYPE_CHECKING:
    from luminum.common.store import ConfigStore
    from luminum.server.identity import IdentityAuthority


@dataclass
class SetupPlan:
    """Answers collected from the operator."""

    address: str
    port: int
    passphrase: str
    enrollment_key: str
    subject: SubjectFields | None = None
    reuse_key: bool = False
    rotate: bool = False


class ServerProvisioner:
    """Runs ``--setup`` for the daemon."""

    def __init__(
        self,
        store: ConfigStore,
        authority: IdentityAuthority,
        config: Config | None = None,
    ):
        self.store = store
        self.authority = authority
        self.config = config or Config()
        self.logger = logging.getLogger(__name__)

    def ensure_unconfigured(self) -> None:
        if self.store.exists():
            msg = "Server configuration already exists. Aborting."
            raise ConfigError(msg)

    def interactive_setup(self) -> SetupPlan:
        """Prompt for every setting and apply them."""
        self.ensure_unconfigured()
        click.echo("Luminum Server Daemon\n")
        click.echo("Daemon Configuration\n--------------------")

        address = self._prompt_address()
        port = click.prompt(
            "Enter server port",
            default=self.config.DEFAULT_PORT,
            type=click.IntRange(1, 65535),
        )

        reuse_key = rotate = False
        paths = self.authority.paths
        if not self.authority.key_exists():
            click.echo("\nServer key pair does not exist. Creating...")
            passphrase = self._prompt_new_passphrase()
        else:
            click.echo(f"\nA private key was found at {paths.private_key}")
            if click.confirm("Do you want to use this key?", default=True):
                reuse_key = True
                passphrase = self._prompt_existing_passphrase()
            else:
                rotate = True
                click.echo("\nCreating new keypair and identity...")
                passphrase = self._prompt_new_passphrase()

        subject = None
        if rotate or not reuse_key or not paths.certificate.is_file():
            click.echo("\nServer certificate details:")
            subject = self._prompt_subject()

        enrollment_key = click.prompt(
            "Enter client enrollment key",
            hide_input=True,
            confirmation_prompt="Verify client enrollment key",
        )

        plan = SetupPlan(
            address=address,
            port=port,
            passphrase=passphrase,
            enrollment_key=enrollment_key,
            subject=subject,
            reuse_key=reuse_key,
            rotate=rotate,
        )
        self.apply(plan)

        click.echo(f"Server IP address: {address}")
        click.echo(f"Server Port: {port}")
        click.echo(f"Private Key: {paths.private_key}")
        click.echo(f"Public Key: {paths.public_key}")
        click.echo(f"Certificate: {paths.certificate}")
        click.echo(f"Identity: {paths.identity}")
        return plan

    def apply(self, plan: SetupPlan) -> None:
        """Create the identity and write the configuration store.

        The store is written last, in one transaction, so a failure leaves
        no configuration behind and setup can be rerun.
        """
        self.ensure_unconfigured()
        self._ensure_identity(plan)

        server_key = generate_server_key(self.config.SERVER_KEY_LENGTH)
        vault = CredentialVault(server_key)
        database_password = generate_secret(self.config.DB_PASSWORD_LENGTH)

        self.store.initialize()
        self.store.set_many({
            KEY_SERVER_KEY: server_key,
            KEY_ADDRESS: plan.address,
            KEY_PORT: str(plan.port),
            KEY_KEY_PASSPHRASE: vault.seal(plan.passphrase),
            KEY_DB_PASSWORD: vault.seal(database_password),
            KEY_ENROLLMENT_KEY: vault.seal(plan.enrollment_key),
        })
        self.logger.info("Configuration written to %s", self.store.path)

    def _ensure_identity(self, plan: SetupPlan) -> None:
        paths = self.authority.paths
        needs_certificate = plan.rotate or not plan.reuse_key or not paths.certificate.is_file()
        if needs_certificate:
            if plan.subject is None:
                msg = "Certificate details are required to create a certificate"
                raise ConfigError(msg)
            self.authority.provision(
                plan.passphrase,
                plan.subject,
                alt_names=[plan.address],
                rotate=plan.rotate,
                reuse_key=plan.reuse_key,
            )
            return

        keys = self.authority.load_key_pair()
        keys.load_private_key(plan.passphrase)
        if not paths.identity.is_file():
            certificate = self.authority.load_certificate()
            bundle = self.authority.build_identity_bundle(keys, certificate, plan.passphrase)
            self.authority.save_identity_bundle(bundle)

    def _prompt_address(self) -> str:
        while True:
            address = click.prompt("Enter server IP address").strip()
            if is_valid_bind_address(address):
                return address
            click.echo(f"Invalid IP address: {address}\n")

    def _prompt_new_passphrase(self) -> str:
        return click.prompt(
            "Enter PEM passphrase for private key",
            hide_input=True,
            confirmation_prompt="Verify PEM passphrase",
        )

    def _prompt_existing_passphrase(self) -> str:
        keys = self.authority.load_key_pair()
        while True:
            passphrase = click.prompt(
                "Enter PEM passphrase for private key", hide_input=True
            ).strip()
            try:
                keys.load_private_key(passphrase)
            except AuthError:
                click.echo("Error: Incorrect passphrase\n")
                continue
            return passphrase

    def _prompt_required(self, text: str) -> str:
        while True:
            value = click.prompt(text).strip()
            if value:
                return value
            click.echo(f"{text} cannot be blank\n")

    def _prompt_subject(self) -> SubjectFields:
        while True:
            country = click.prompt("Two-letter country code").strip().upper()
            if len(country) == 2 and country.isalpha():  # noqa: PLR2004
                break
            click.echo(f"Invalid country code: {country}\n")
        return SubjectFields(
            country=country,
            state=self._prompt_required("State or province"),
            locality=self._prompt_required("City or locality name"),
            organization=self._prompt_required("Organization"),
            common_name=self._prompt_required("Enter certificate common name (CN)"),
        )
