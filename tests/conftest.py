import shutil
import socket
import threading
import time
from pathlib import Path
from typing import Callable

import pytest
from pydantic import SecretStr

from luminum.common.channel import SecureChannel, client_context, connect, server_context
from luminum.common.models import ClientMessage, ServerConfig, SubjectFields
from luminum.server.identity import IdentityAuthority, IdentityPaths

PASSPHRASE = "correct horse battery staple"
ENROLLMENT_KEY = "enroll-me-please"


def make_paths(directory: Path) -> IdentityPaths:
    return IdentityPaths(
        private_key=directory / "luminum.key",
        public_key=directory / "luminum.pub",
        certificate=directory / "luminum.crt",
        identity=directory / "luminum.pfx",
    )


def _wait_until(predicate: Callable[[], bool], timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


@pytest.fixture
def wait_until() -> Callable[..., bool]:
    return _wait_until


@pytest.fixture(scope="session")
def subject() -> SubjectFields:
    return SubjectFields(
        country="US",
        state="Oregon",
        locality="Portland",
        organization="Luminum Test",
        common_name="127.0.0.1",
    )


@pytest.fixture(scope="session")
def identity(tmp_path_factory: pytest.TempPathFactory, subject: SubjectFields) -> IdentityAuthority:
    """One RSA identity shared by the whole session; treat as read-only."""
    authority = IdentityAuthority(make_paths(tmp_path_factory.mktemp("identity")))
    authority.provision(PASSPHRASE, subject)
    return authority


@pytest.fixture
def identity_copy(identity: IdentityAuthority, tmp_path: Path) -> IdentityAuthority:
    """A private copy of the session identity that tests may modify."""
    paths = make_paths(tmp_path / "config")
    paths.private_key.parent.mkdir(parents=True)
    for source, target in zip(identity.paths.all(), paths.all()):
        shutil.copy2(source, target)
    return IdentityAuthority(paths)


@pytest.fixture(scope="session")
def server_ssl_context(identity: IdentityAuthority):
    private_key, certificate = identity.load_identity(PASSPHRASE)
    return server_context(private_key, certificate, PASSPHRASE)


@pytest.fixture(scope="session")
def client_ssl_context(identity: IdentityAuthority):
    return client_context(identity.paths.certificate)


@pytest.fixture
def server_config(identity: IdentityAuthority, tmp_path: Path) -> ServerConfig:
    return ServerConfig(
        address="127.0.0.1",
        port=0,
        enrollment_key=SecretStr(ENROLLMENT_KEY),
        key_passphrase=SecretStr(PASSPHRASE),
        database_password=SecretStr("dbpass"),
        private_key_path=identity.paths.private_key,
        public_key_path=identity.paths.public_key,
        certificate_path=identity.paths.certificate,
        identity_path=identity.paths.identity,
        clients_db_path=tmp_path / "clients.db",
        accept_poll_interval=0.1,
    )


@pytest.fixture
def tls_pair(server_ssl_context, client_ssl_context):
    """A connected (server side, client side) pair of secure channels."""
    listener = socket.create_server(("127.0.0.1", 0))
    port = listener.getsockname()[1]
    accepted = {}

    def accept() -> None:
        conn, _ = listener.accept()
        accepted["sock"] = server_ssl_context.wrap_socket(conn, server_side=True)

    thread = threading.Thread(target=accept, daemon=True)
    thread.start()
    client = connect("127.0.0.1", port, client_ssl_context)
    thread.join(timeout=5)
    server = SecureChannel(accepted["sock"], ClientMessage)

    yield server, client

    client.close()
    server.close()
    listener.close()
