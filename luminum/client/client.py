"""
Client runtime: keeps a channel to the server, enrolls once and sends
heartbeats.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Callable

from luminum.common.channel import ChannelPump, client_context, connect_with_retry
from luminum.common.config import Config
from luminum.common.exceptions import ChannelClosed, ProtocolError
from luminum.common.protocol import (
    ACTION_HEARTBEAT,
    ACTION_REGISTER,
    STATUS_OK,
    client_message,
)
from luminum.common.store import ConfigStore
from luminum.client.control_plane import LocalControlPlane
from luminum.client.enrollment import Enrollment, EnrollmentState

if TYPE_CHECKING:
    import ssl

    from luminum.common.models import ClientConfig, ServerMessage


class LuminumClient:
    """Long-running endpoint agent."""

    def __init__(
        self,
        config: ClientConfig,
        store: ConfigStore | None = None,
        ssl_context: ssl.SSLContext | None = None,
        on_message: Callable[[ServerMessage], None] | None = None,
    ):
        self.config = config
        self.store = store or ConfigStore(config.config_path)
        self.ssl_context = ssl_context or client_context(config.trust_anchor_path)
        self.on_message = on_message
        self.enrollment = Enrollment(self.store, config.enrollment_key)
        self.logger = logging.getLogger(__name__)

        self.connections = 0
        self.connected = threading.Event()
        self.control_plane: LocalControlPlane | None = None
        self._pump: ChannelPump[ServerMessage] | None = None
        self._shutdown = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def state(self) -> EnrollmentState:
        return self.enrollment.state

    @property
    def uid(self) -> str:
        return self.enrollment.uid

    def run(self) -> None:
        """Connect, enroll if needed and stay connected until :meth:`stop`."""
        self._start_control_plane()
        try:
            while not self._shutdown.is_set():
                channel = connect_with_retry(
                    self.config.server_host,
                    self.config.server_port,
                    self.ssl_context,
                    self.config.retry_interval,
                    self._shutdown,
                )
                if channel is None:
                    break

                pump: ChannelPump[ServerMessage] = ChannelPump(
                    channel, self._handle_message, Config().CHANNEL_POLL_INTERVAL
                )
                self._pump = pump
                pump.start()
                self.connections += 1
                self.connected.set()

                if self.enrollment.needs_registration:
                    pump.send(self.enrollment.build_register_request(channel.local_address))
                self._heartbeat_until_closed(pump)

                self.connected.clear()
                if not self._shutdown.is_set():
                    self.logger.warning("Lost connection to server; reconnecting")
        finally:
            if self.control_plane is not None:
                self.control_plane.close()

    def _heartbeat_until_closed(self, pump: ChannelPump[ServerMessage]) -> None:
        while not self._shutdown.is_set():
            if pump.wait(self.config.heartbeat_interval):
                return
            if self.enrollment.state is EnrollmentState.REGISTERED:
                try:
                    pump.send(client_message(ACTION_HEARTBEAT, uid=self.enrollment.uid))
                except ChannelClosed:
                    return
        pump.close()

    def _handle_message(self, message: ServerMessage) -> None:
        """Called on the pump worker for each inbound envelope, in order."""
        action = message.content.action
        if action == ACTION_REGISTER:
            self.enrollment.handle_reply(message)
        elif action == ACTION_HEARTBEAT:
            if message.content.status != STATUS_OK:
                self.logger.warning("Heartbeat answered with %s", message.content.status)
        else:
            self.logger.debug("Unhandled %r message from server", action)
        if self.on_message is not None:
            self.on_message(message)

    def _start_control_plane(self) -> None:
        if self.config.control_port is None or self.control_plane is not None:
            return
        self.control_plane = LocalControlPlane(
            host=self.config.control_host,
            port=self.config.control_port,
            buffer_size=Config().CONTROL_BUFFER_SIZE,
            max_connections=Config().CONTROL_MAX_CONNECTIONS,
        )
        self.control_plane.start()

    def send(self, action: str) -> None:
        """Queue a control message on the current channel."""
        pump = self._pump
        if pump is None or not pump.alive:
            msg = "not connected to the server"
            raise ProtocolError(msg)
        pump.send(client_message(action, uid=self.enrollment.uid))

    def start_in_thread(self) -> None:
        """Start the client in a separate thread."""
        if self._thread and self._thread.is_alive():
            self.logger.warning("Client is already running in a thread")
            return
        self._thread = threading.Thread(target=self.run, name="luminum-client", daemon=True)
        self._thread.start()
        self.logger.info("Client started in background thread")

    def stop(self) -> None:
        self._shutdown.set()
        if self._pump is not None:
            self._pump.close()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        self.logger.info("Client stopped")
