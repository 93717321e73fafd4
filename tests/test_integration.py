# Integration tests: a real server and client talking TLS on loopback
import threading
from pathlib import Path

import pytest
from pydantic import SecretStr

from luminum.client.client import LuminumClient
from luminum.client.enrollment import EnrollmentState
from luminum.client.provisioning import write_client_config
from luminum.common.models import ClientConfig, ServerConfig
from luminum.common.protocol import ACTION_HEARTBEAT, ACTION_REGISTER, STATUS_DENIED
from luminum.common.store import KEY_REGISTRATION_TOKEN, KEY_UID, ConfigStore
from luminum.server.core import EnrollmentServer
from luminum.server.registry import ClientRegistry

from conftest import ENROLLMENT_KEY


@pytest.fixture
def registry(server_config: ServerConfig) -> ClientRegistry:
    registry = ClientRegistry(server_config.clients_db_path)
    registry.initialize()
    return registry


@pytest.fixture
def running_server(server_config, server_ssl_context, registry):
    server = EnrollmentServer(server_config, server_ssl_context, registry)
    server.start_in_thread()
    yield server
    server.stop()


def make_client(
    identity, tmp_path: Path, port: int, enrollment_key: str = ENROLLMENT_KEY, on_message=None
) -> LuminumClient:
    store = ConfigStore(tmp_path / "client" / "server.conf.db")
    if not store.exists():
        write_client_config(store, "127.0.0.1", port, enrollment_key)
    config = ClientConfig(
        server_host="127.0.0.1",
        server_port=port,
        enrollment_key=SecretStr(enrollment_key),
        trust_anchor_path=identity.paths.certificate,
        config_path=store.path,
        retry_interval=0.1,
        heartbeat_interval=0.2,
    )
    return LuminumClient(config, on_message=on_message)


def test_enrollment_happy_path(identity, tmp_path, running_server, registry, wait_until):
    client = make_client(identity, tmp_path, running_server.address[1])
    client.start_in_thread()
    try:
        assert client.enrollment.wait_registered(10)

        uid = client.uid
        assert len(uid) == 32  # noqa: PLR2004
        assert registry.get(uid) is not None
        assert registry.get(uid).ipv4 == "127.0.0.1"
        store = client.store
        assert store.get(KEY_UID) == uid
        assert store.get(KEY_REGISTRATION_TOKEN) is None
        assert wait_until(lambda: running_server.stats[ACTION_HEARTBEAT] >= 1)
    finally:
        client.stop()


def test_wrong_enrollment_key_is_denied(identity, tmp_path, running_server, registry):
    denied = threading.Event()

    def on_message(message) -> None:
        if message.content.action == ACTION_REGISTER and message.content.status == STATUS_DENIED:
            denied.set()

    client = make_client(
        identity, tmp_path, running_server.address[1], enrollment_key="guess", on_message=on_message
    )
    client.start_in_thread()
    try:
        assert denied.wait(10)
        assert client.state is EnrollmentState.UNREGISTERED
        assert client.uid == ""
        assert registry.count() == 0
        assert client.store.get(KEY_UID) is None
    finally:
        client.stop()


def test_registered_client_restart_skips_registration(
    identity, tmp_path, running_server, registry, wait_until
):
    port = running_server.address[1]
    first = make_client(identity, tmp_path, port)
    first.start_in_thread()
    assert first.enrollment.wait_registered(10)
    uid = first.uid
    first.stop()

    second = make_client(identity, tmp_path, port)
    assert second.state is EnrollmentState.REGISTERED
    heartbeats = running_server.stats[ACTION_HEARTBEAT]
    second.start_in_thread()
    try:
        assert wait_until(lambda: running_server.stats[ACTION_HEARTBEAT] > heartbeats)
        assert second.uid == uid
        assert running_server.stats[ACTION_REGISTER] == 1
        assert registry.count() == 1
    finally:
        second.stop()


def test_client_reconnects_after_server_restart(
    identity, tmp_path, server_config, server_ssl_context, registry, wait_until
):
    server = EnrollmentServer(server_config, server_ssl_context, registry)
    server.start_in_thread()
    port = server.address[1]
    client = make_client(identity, tmp_path, port)
    client.start_in_thread()
    replacement = None
    try:
        assert client.enrollment.wait_registered(10)
        assert client.connections == 1

        server.stop()
        assert wait_until(lambda: not client.connected.is_set())

        replacement = EnrollmentServer(
            server_config.model_copy(update={"port": port}), server_ssl_context, registry
        )
        replacement.start_in_thread()

        assert wait_until(lambda: client.connections == 2)  # noqa: PLR2004
        assert wait_until(lambda: replacement.stats[ACTION_HEARTBEAT] >= 1)
        assert replacement.stats[ACTION_REGISTER] == 0
        assert registry.count() == 1
    finally:
        client.stop()
        server.stop()
        if replacement is not None:
            replacement.stop()


def test_concurrent_clients_get_distinct_uids(
    identity, tmp_path, running_server, registry
):
    port = running_server.address[1]
    clients = [make_client(identity, tmp_path / f"c{i}", port) for i in range(4)]
    for client in clients:
        client.start_in_thread()
    try:
        for client in clients:
            assert client.enrollment.wait_registered(10)
        assert len({client.uid for client in clients}) == 4  # noqa: PLR2004
        assert registry.count() == 4  # noqa: PLR2004
    finally:
        for client in clients:
            client.stop()
