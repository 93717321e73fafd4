import socket
import ssl
import threading
import time
from pathlib import Path

import pytest

from luminum.common.channel import ChannelPump, client_context, connect, connect_with_retry
from luminum.common.config import Config
from luminum.common.exceptions import ChannelClosed, ConfigError, LuminumIOError, ProtocolError
from luminum.common.models import MessageData
from luminum.common.protocol import (
    ACTION_HEARTBEAT,
    ACTION_REGISTER,
    STATUS_OK,
    client_message,
    encode,
    server_message,
)


def receive_until(channel, count: int = 1, timeout: float = 5.0) -> list:
    messages: list = []
    deadline = time.monotonic() + timeout
    while len(messages) < count and time.monotonic() < deadline:
        messages.extend(channel.receive(timeout=0.2))
    return messages


def free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def test_client_context_requires_trust_anchor(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        client_context(tmp_path / "missing.crt")


def test_exchange_over_tls(tls_pair) -> None:
    server, client = tls_pair

    client.send(client_message(ACTION_REGISTER, MessageData(hostname="host-1")))
    [request] = receive_until(server)
    assert request.content.data.hostname == "host-1"

    server.send(server_message(ACTION_REGISTER, STATUS_OK, MessageData(uid="abc")))
    [reply] = receive_until(client)
    assert reply.content.data.uid == "abc"
    assert client.local_address == "127.0.0.1"


def test_receive_timeout_returns_nothing(tls_pair) -> None:
    _, client = tls_pair
    assert client.receive(timeout=0.1) == []


def test_peer_close_raises_channel_closed(tls_pair) -> None:
    server, client = tls_pair
    server.close()
    with pytest.raises(ChannelClosed):
        receive_until(client)


def test_garbled_frame_is_counted_and_skipped(tls_pair) -> None:
    server, client = tls_pair
    server.sock.sendall(b"\xc1")
    assert client.receive(timeout=2) == []
    assert client.protocol_errors == 1

    server.send(server_message(ACTION_HEARTBEAT, STATUS_OK))

    messages = receive_until(client)
    assert client.protocol_errors == 1
    assert [m.content.action for m in messages] == [ACTION_HEARTBEAT]


def test_hostname_must_match_certificate(client_ssl_context, server_ssl_context) -> None:
    listener = socket.create_server(("127.0.0.1", 0))
    port = listener.getsockname()[1]

    def accept() -> None:
        conn, _ = listener.accept()
        try:
            server_ssl_context.wrap_socket(conn, server_side=True).close()
        except OSError:
            conn.close()

    thread = threading.Thread(target=accept, daemon=True)
    thread.start()
    try:
        with pytest.raises(LuminumIOError, match="TLS handshake"):
            connect("localhost", port, client_ssl_context)
    finally:
        thread.join(timeout=5)
        listener.close()


def test_connect_refused() -> None:
    with pytest.raises(LuminumIOError, match="Could not connect"):
        connect("127.0.0.1", free_port(), ssl.create_default_context())


def test_connect_with_retry_stops_on_shutdown() -> None:
    shutdown = threading.Event()
    timer = threading.Timer(0.3, shutdown.set)
    timer.start()
    started = time.monotonic()

    channel = connect_with_retry(
        "127.0.0.1", free_port(), ssl.create_default_context(), 0.05, shutdown
    )

    assert channel is None
    assert time.monotonic() - started < 5  # noqa: PLR2004
    timer.cancel()


def test_pump_delivers_in_order_and_flushes_queue(tls_pair) -> None:
    server, client = tls_pair
    received = []
    done = threading.Event()

    def on_message(message) -> None:
        received.append(message.content.action)
        if len(received) == 3:  # noqa: PLR2004
            done.set()

    pump = ChannelPump(client, on_message, poll_interval=0.05)
    pump.start()
    for action in ("first", "second", "third"):
        server.send(server_message(action, STATUS_OK))

    pump.send(client_message(ACTION_HEARTBEAT, uid="uid-1"))
    [outbound] = receive_until(server)

    assert done.wait(5)
    assert received == ["first", "second", "third"]
    assert outbound.uid == "uid-1"
    pump.close()
    assert not pump.alive


def test_pump_stops_when_peer_closes(tls_pair) -> None:
    server, client = tls_pair
    pump = ChannelPump(client, lambda message: None, poll_interval=0.05)
    pump.start()

    server.close()

    assert pump.wait(5)
    assert client.closed
    with pytest.raises(ChannelClosed):
        pump.send(client_message(ACTION_HEARTBEAT))


def test_pump_survives_handler_errors(tls_pair) -> None:
    server, client = tls_pair
    seen = []

    def on_message(message) -> None:
        seen.append(message.content.action)
        if message.content.action == "bad":
            raise ProtocolError("cannot handle")

    pump = ChannelPump(client, on_message, poll_interval=0.05)
    pump.start()
    server.sock.sendall(encode(server_message("bad", STATUS_OK)))
    server.send(server_message("good", STATUS_OK))

    deadline = time.monotonic() + 5
    while len(seen) < 2 and time.monotonic() < deadline:  # noqa: PLR2004
        time.sleep(0.05)
    assert seen == ["bad", "good"]
    assert pump.alive
    pump.close()


def test_read_size_follows_configuration(tls_pair) -> None:
    server, client = tls_pair
    assert client.buffer_size == Config().RECV_BUFFER_SIZE
    assert server.buffer_size == Config().RECV_BUFFER_SIZE
