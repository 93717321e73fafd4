"""
TLS enrollment server: one worker thread per accepted connection.
"""

from __future__ import annotations

import logging
import socket
import ssl
import threading
from collections import Counter
from typing import TYPE_CHECKING

from luminum.common.channel import SecureChannel, server_context
from luminum.common.config import Config
from luminum.common.exceptions import ChannelClosed, LuminumError, LuminumIOError
from luminum.common.models import ClientMessage
from luminum.common.protocol import (
    ACTION_HEARTBEAT,
    ACTION_REGISTER,
    MODULE_CORE,
    STATUS_UNSUPPORTED,
    server_message,
)
from luminum.server.domain.heartbeat_handler import HeartbeatHandler
from luminum.server.domain.register_handler import RegisterHandler
from luminum.server.identity import IdentityAuthority, IdentityPaths
from luminum.server.registry import ClientRegistry

if TYPE_CHECKING:
    from luminum.common.models import ServerConfig, ServerMessage


class EnrollmentServer:
    """Accepts TLS clients and answers enrollment and control messages."""

    def __init__(
        self,
        config: ServerConfig,
        ssl_context: ssl.SSLContext,
        registry: ClientRegistry,
    ):
        self.config = config
        self.ssl_context = ssl_context
        self.registry = registry
        self.logger = logging.getLogger(__name__)

        self.register_handler = RegisterHandler(config.enrollment_key, registry)
        self.heartbeat_handler = HeartbeatHandler(registry)
        self.stats: Counter[str] = Counter()

        self._shutdown = threading.Event()
        self._lock = threading.Lock()
        self._channels: set[SecureChannel[ClientMessage]] = set()
        self._thread: threading.Thread | None = None
        self._listener = self._bind()

    @classmethod
    def from_config(cls, config: ServerConfig) -> EnrollmentServer:
        """Load the identity bundle and client registry named by ``config``."""
        authority = IdentityAuthority(
            IdentityPaths(
                private_key=config.private_key_path,
                public_key=config.public_key_path,
                certificate=config.certificate_path,
                identity=config.identity_path,
            )
        )
        passphrase = config.key_passphrase.get_secret_value()
        private_key, certificate = authority.load_identity(passphrase)
        context = server_context(private_key, certificate, passphrase)

        registry = ClientRegistry(config.clients_db_path)
        registry.initialize()
        return cls(config, context, registry)

    def _bind(self) -> socket.socket:
        family = socket.AF_INET6 if ":" in self.config.address else socket.AF_INET
        try:
            listener = socket.create_server(
                (self.config.address, self.config.port), family=family
            )
        except OSError as err:
            msg = f"Failed to bind to {self.config.address}:{self.config.port}: {err}"
            raise LuminumIOError(msg) from err
        listener.settimeout(self.config.accept_poll_interval)
        return listener

    @property
    def address(self) -> tuple[str, int]:
        host, port = self._listener.getsockname()[:2]
        return host, port

    @property
    def running(self) -> bool:
        return not self._shutdown.is_set()

    def serve_forever(self) -> None:
        """Accept connections until :meth:`stop` is called."""
        host, port = self.address
        self.logger.info("Luminum Server Daemon v%s started on %s:%s", Config.VERSION, host, port)
        try:
            while not self._shutdown.is_set():
                try:
                    conn, addr = self._listener.accept()
                except socket.timeout:
                    continue
                except OSError as err:
                    if self._shutdown.is_set():
                        break
                    self.logger.warning("Error accepting connection: %s", err)
                    continue
                worker = threading.Thread(
                    target=self.handle_connection,
                    args=(conn, addr),
                    name=f"client-{addr[0]}:{addr[1]}",
                    daemon=True,
                )
                worker.start()
        finally:
            self._listener.close()
            self.logger.info("Luminum Server Daemon stopped.")

    def start_in_thread(self) -> None:
        if self._thread and self._thread.is_alive():
            self.logger.warning("Server is already running in a thread")
            return
        self._thread = threading.Thread(target=self.serve_forever, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop accepting and drop connected clients."""
        self._shutdown.set()
        with self._lock:
            channels = list(self._channels)
        for channel in channels:
            channel.abort()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.config.accept_poll_interval * 2)
        self._listener.close()

    def handle_connection(self, conn: socket.socket, addr: tuple) -> None:
        """Per-connection worker; every failure ends only this connection."""
        peer = f"{addr[0]}:{addr[1]}"
        self.logger.debug("Connection from %s", peer)
        conn.settimeout(None)
        try:
            tls = self.ssl_context.wrap_socket(conn, server_side=True)
        except (ssl.SSLError, OSError) as err:
            self.logger.warning("Error accepting TLS connection from %s: %s", peer, err)
            conn.close()
            return

        channel: SecureChannel[ClientMessage] = SecureChannel(tls, ClientMessage, peer=peer)
        with self._lock:
            self._channels.add(channel)
        try:
            while not self._shutdown.is_set():
                for message in channel.receive():
                    reply = self.dispatch(message, peer)
                    if reply is not None:
                        channel.send(reply)
        except ChannelClosed:
            self.logger.debug("Connection closed by %s", peer)
        except LuminumIOError as err:
            if not self._shutdown.is_set():
                self.logger.warning("Connection error with %s: %s", peer, err)
        except LuminumError:
            self.logger.exception("Unexpected failure handling %s", peer)
        finally:
            with self._lock:
                self._channels.discard(channel)
            channel.close()

    def dispatch(self, message: ClientMessage, peer: str) -> ServerMessage | None:
        """Route a message to its handler and return the reply, if any."""
        if message.product != Config.PRODUCT:
            self.logger.warning("Ignoring message for product %r from %s", message.product, peer)
            return None

        action = message.content.action
        with self._lock:
            self.stats[action] += 1

        if message.content.module != MODULE_CORE:
            return server_message(action, STATUS_UNSUPPORTED)
        if action == ACTION_REGISTER:
            return self.register_handler.handle_register(message, peer)
        if action == ACTION_HEARTBEAT:
            return self.heartbeat_handler.handle_heartbeat(message, peer)
        self.logger.warning("Unsupported action %r from %s", action, peer)
        return server_message(action, STATUS_UNSUPPORTED)
