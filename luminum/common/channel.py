"""
TLS transport and message framing.
"""

from __future__ import annotations

import logging
import os
import queue
import socket
import ssl
import tempfile
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Generic, TypeVar

from cryptography.hazmat.primitives import serialization
from pydantic import BaseModel

from luminum.common.config import Config
from luminum.common.exceptions import (
    ChannelClosed,
    ConfigError,
    CryptoError,
    LuminumError,
    LuminumIOError,
    ProtocolError,
)
from luminum.common.models import ServerMessage
from luminum.common.protocol import FrameDecoder, encode

if TYPE_CHECKING:
    from cryptography import x509
    from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey

logger = logging.getLogger(__name__)

InboundT = TypeVar("InboundT", bound=BaseModel)


def server_context(
    private_key: RSAPrivateKey, certificate: x509.Certificate, passphrase: str
) -> ssl.SSLContext:
    """Build a TLS server context from a loaded identity.

    ``ssl`` only loads key material from files, so the key is written
    re-encrypted under ``passphrase`` to a private temporary directory that
    is removed as soon as the context holds it.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2

    key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.BestAvailableEncryption(
            passphrase.encode("utf-8")
        ),
    )
    cert_pem = certificate.public_bytes(serialization.Encoding.PEM)

    with tempfile.TemporaryDirectory(prefix="luminum-tls-") as tmp:
        key_path = Path(tmp) / "identity.key"
        cert_path = Path(tmp) / "identity.crt"
        fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(key_pem)
        cert_path.write_bytes(cert_pem)
        try:
            context.load_cert_chain(
                certfile=str(cert_path),
                keyfile=str(key_path),
                password=passphrase,
            )
        except ssl.SSLError as err:
            msg = f"Could not load TLS identity: {err.reason or err}"
            raise CryptoError(msg) from err
    return context


def client_context(trust_anchor: Path) -> ssl.SSLContext:
    """TLS client context that trusts only the pinned server certificate."""
    if not trust_anchor.is_file():
        msg = f"Server certificate {trust_anchor} does not exist"
        raise ConfigError(msg)
    try:
        context = ssl.create_default_context(
            ssl.Purpose.SERVER_AUTH, cafile=str(trust_anchor)
        )
    except ssl.SSLError as err:
        msg = f"Could not load server certificate {trust_anchor}: {err}"
        raise CryptoError(msg) from err
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    return context


class SecureChannel(Generic[InboundT]):
    """Framed message stream over an established TLS socket.

    Reads and writes are guarded by independent locks.
    """

    def __init__(
        self,
        sock: ssl.SSLSocket,
        inbound: type[InboundT],
        peer: str = "",
        buffer_size: int | None = None,
    ):
        self.sock = sock
        self.peer = peer or _format_peer(sock)
        self.buffer_size = buffer_size or Config().RECV_BUFFER_SIZE
        self.protocol_errors = 0
        self._decoder = FrameDecoder(inbound)
        self._read_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._closed = False

    @property
    def local_address(self) -> str:
        return self.sock.getsockname()[0]

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, message: BaseModel) -> None:
        """Write one envelope as a single frame."""
        frame = encode(message)
        with self._write_lock:
            try:
                self.sock.sendall(frame)
            except OSError as err:
                msg = f"Write to {self.peer} failed: {err}"
                raise LuminumIOError(msg) from err

    def receive(self, timeout: float | None = None) -> list[InboundT]:
        """Read once from the stream and return every complete envelope.

        Returns an empty list when ``timeout`` expires or when only part of
        a frame has arrived. Garbled frames are logged and skipped.
        """
        with self._read_lock:
            try:
                self.sock.settimeout(timeout)
                data = self.sock.recv(self.buffer_size)
            except socket.timeout:
                return []
            except OSError as err:
                msg = f"Read from {self.peer} failed: {err}"
                raise LuminumIOError(msg) from err
            if not data:
                msg = f"{self.peer} closed the connection"
                raise ChannelClosed(msg)

            messages: list[InboundT] = []
            try:
                self._decoder.feed(data)
                while True:
                    try:
                        message = self._decoder.next_message()
                    except ProtocolError as err:
                        self.protocol_errors += 1
                        logger.warning("Malformed data from %s: %s", self.peer, err)
                        continue
                    if message is None:
                        break
                    messages.append(message)
            except ProtocolError as err:
                self.protocol_errors += 1
                logger.warning("Malformed data from %s: %s", self.peer, err)
            return messages

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.sock.close()
        except OSError:
            logger.debug("Error closing channel to %s", self.peer, exc_info=True)

    def abort(self) -> None:
        """Shut the TCP stream down so a reader blocked in another thread wakes."""
        try:
            socket.socket.shutdown(self.sock, socket.SHUT_RDWR)
        except OSError:
            pass
        self.close()


def connect(
    host: str, port: int, context: ssl.SSLContext
) -> SecureChannel[ServerMessage]:
    """Open a TCP connection and perform the TLS client handshake."""
    try:
        raw = socket.create_connection((host, port))
    except OSError as err:
        msg = f"Could not connect to {host}:{port}: {err}"
        raise LuminumIOError(msg) from err
    try:
        sock = context.wrap_socket(raw, server_hostname=host)
    except (ssl.SSLError, OSError) as err:
        raw.close()
        msg = f"TLS handshake with {host}:{port} failed: {err}"
        raise LuminumIOError(msg) from err
    logger.info("Secure channel established with %s:%s (%s)", host, port, sock.version())
    return SecureChannel(sock, ServerMessage, peer=f"{host}:{port}")


def connect_with_retry(
    host: str,
    port: int,
    context: ssl.SSLContext,
    interval: float,
    shutdown: threading.Event,
) -> SecureChannel[ServerMessage] | None:
    """Connect, retrying every ``interval`` seconds until success or shutdown."""
    attempt = 0
    while not shutdown.is_set():
        attempt += 1
        try:
            return connect(host, port, context)
        except LuminumIOError as err:
            logger.warning(
                "Connection attempt %d failed: %s; retrying in %ss",
                attempt,
                err,
                interval,
            )
        shutdown.wait(interval)
    return None


class ChannelPump(Generic[InboundT]):
    """Single owner of a channel's socket.

    One background worker alternates between flushing queued outbound
    envelopes and reading inbound frames, so callers never touch the
    socket directly. Inbound envelopes are delivered in arrival order.
    """

    def __init__(
        self,
        channel: SecureChannel[InboundT],
        on_message: Callable[[InboundT], None],
        poll_interval: float = 0.2,
    ):
        self.channel = channel
        self.on_message = on_message
        self.poll_interval = poll_interval
        self._outbound: queue.Queue[BaseModel] = queue.Queue()
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def alive(self) -> bool:
        return not self._stopped.is_set()

    def send(self, message: BaseModel) -> None:
        if self._stopped.is_set():
            msg = f"Channel to {self.channel.peer} is closed"
            raise ChannelClosed(msg)
        self._outbound.put(message)

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self.run, name=f"pump-{self.channel.peer}", daemon=True
        )
        self._thread.start()

    def run(self) -> None:
        try:
            while not self._stopped.is_set():
                self._flush()
                for message in self.channel.receive(timeout=self.poll_interval):
                    self._deliver(message)
        except ChannelClosed as err:
            logger.info("%s", err)
        except LuminumIOError as err:
            logger.warning("Channel error: %s", err)
        finally:
            self._stopped.set()
            self.channel.close()

    def _flush(self) -> None:
        while True:
            try:
                message = self._outbound.get_nowait()
            except queue.Empty:
                return
            self.channel.send(message)

    def _deliver(self, message: InboundT) -> None:
        try:
            self.on_message(message)
        except LuminumError:
            logger.exception("Failed to handle message from %s", self.channel.peer)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the pump stops. Returns True if it has stopped."""
        return self._stopped.wait(timeout)

    def close(self) -> None:
        self._stopped.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.poll_interval * 5)


def _format_peer(sock: socket.socket) -> str:
    try:
        host, port = sock.getpeername()[:2]
    except OSError:
        return "unknown"
    return f"{host}:{port}"
