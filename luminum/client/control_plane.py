"""
Loopback listener for co-located processes.
"""

from __future__ import annotations

import logging
import socket
import threading
from dataclasses import dataclass, field

from luminum.common.exceptions import ConfigError, LuminumIOError
from luminum.common.netaddr import is_loopback

logger = logging.getLogger(__name__)


@dataclass
class ControlConnection:
    """A live local connection kept for later reuse."""

    peer: str
    sock: socket.socket = field(repr=False)
    payload: bytes = b""


class LocalControlPlane:
    """Accepts local callers; one worker per connection.

    Each worker reads at most ``buffer_size`` bytes and keeps the
    connection handle in :attr:`connections`. Handles whose peer has hung
    up are dropped when the next caller arrives, and at most
    ``max_connections`` are held at once.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 0,
        buffer_size: int = 1024,
        poll_interval: float = 1.0,
        max_connections: int = 64,
    ):
        if not is_loopback(host):
            msg = f"Control plane must bind to a loopback address, not {host}"
            raise ConfigError(msg)
        self.host = host
        self.port = port
        self.buffer_size = buffer_size
        self.poll_interval = poll_interval
        self.max_connections = max_connections
        self._connections: dict[str, ControlConnection] = {}
        self._lock = threading.Lock()
        self._shutdown = threading.Event()
        self._listener: socket.socket | None = None
        self._thread: threading.Thread | None = None

    @property
    def address(self) -> tuple[str, int]:
        if self._listener is None:
            return self.host, self.port
        host, port = self._listener.getsockname()[:2]
        return host, port

    @property
    def connections(self) -> dict[str, ControlConnection]:
        with self._lock:
            return dict(self._connections)

    def start(self) -> None:
        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        try:
            self._listener = socket.create_server((self.host, self.port), family=family)
        except OSError as err:
            msg = f"Could not bind control plane to {self.host}:{self.port}: {err}"
            raise LuminumIOError(msg) from err
        self._listener.settimeout(self.poll_interval)
        self._thread = threading.Thread(target=self._accept_loop, name="control-plane", daemon=True)
        self._thread.start()
        logger.info("Local control plane listening on %s:%s", *self.address)

    def _accept_loop(self) -> None:
        assert self._listener is not None
        while not self._shutdown.is_set():
            try:
                conn, addr = self._listener.accept()
            except socket.timeout:
                continue
            except OSError as err:
                if not self._shutdown.is_set():
                    logger.warning("Control plane accept failed: %s", err)
                break
            threading.Thread(
                target=self._handle, args=(conn, addr), daemon=True
            ).start()

    def _handle(self, conn: socket.socket, addr: tuple) -> None:
        peer = f"{addr[0]}:{addr[1]}"
        try:
            payload = conn.recv(self.buffer_size)
        except OSError as err:
            logger.warning("Read from local caller %s failed: %s", peer, err)
            conn.close()
            return
        with self._lock:
            self._prune()
            if len(self._connections) >= self.max_connections:
                logger.warning("Control plane full; dropping local caller %s", peer)
                conn.close()
                return
            self._connections[peer] = ControlConnection(peer=peer, sock=conn, payload=payload)
        logger.debug("Local caller %s sent %d bytes", peer, len(payload))

    def _prune(self) -> None:
        # caller holds self._lock
        for peer, connection in list(self._connections.items()):
            try:
                alive = connection.sock.recv(1, socket.MSG_PEEK | socket.MSG_DONTWAIT) != b""
            except BlockingIOError:
                alive = True
            except OSError:
                alive = False
            if not alive:
                logger.debug("Local caller %s hung up", peer)
                del self._connections[peer]
                connection.sock.close()

    def release(self, peer: str) -> None:
        """Close and forget a stored connection."""
        with self._lock:
            connection = self._connections.pop(peer, None)
        if connection is not None:
            connection.sock.close()

    def close(self) -> None:
        self._shutdown.set()
        if self._listener is not None:
            self._listener.close()
        if self._thread is not None:
            self._thread.join(timeout=self.poll_interval * 2)
        with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
        for connection in connections:
            connection.sock.close()
