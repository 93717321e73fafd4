"""
Client side of the register-once handshake.
"""

from __future__ import annotations

import logging
import platform
import secrets
import socket
import threading
from enum import Enum
from typing import TYPE_CHECKING

from luminum.common.exceptions import ProtocolError
from luminum.common.models import ClientMessage, MessageData, ServerMessage
from luminum.common.netaddr import classify_address
from luminum.common.protocol import ACTION_REGISTER, STATUS_OK, client_message
from luminum.common.store import KEY_REGISTRATION_TOKEN, KEY_UID

if TYPE_CHECKING:
    from pydantic import SecretStr

    from luminum.common.store import ConfigStore

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "pending-"


class EnrollmentState(str, Enum):
    UNREGISTERED = "unregistered"
    AWAITING_SERVER_ACK = "awaiting_server_ack"
    REGISTERED = "registered"


class Enrollment:
    """Tracks whether this client holds a UID and drives registration.

    ``REGISTERED`` is terminal. A stored registration token without a UID
    means a previous request may have been answered but not persisted; the
    client starts in ``AWAITING_SERVER_ACK`` and replays the same request.
    """

    def __init__(self, store: ConfigStore, enrollment_key: SecretStr):
        self.store = store
        self.enrollment_key = enrollment_key
        self._lock = threading.Lock()
        self._registered = threading.Event()

        self.uid = store.get(KEY_UID) or ""
        if self.uid:
            self._state = EnrollmentState.REGISTERED
            self._registered.set()
        elif store.get(KEY_REGISTRATION_TOKEN):
            self._state = EnrollmentState.AWAITING_SERVER_ACK
        else:
            self._state = EnrollmentState.UNREGISTERED

    @property
    def state(self) -> EnrollmentState:
        return self._state

    @property
    def needs_registration(self) -> bool:
        return self._state is not EnrollmentState.REGISTERED

    def wait_registered(self, timeout: float | None = None) -> bool:
        return self._registered.wait(timeout)

    def registration_token(self) -> str:
        """Return the persisted placeholder UID, creating it on first use."""
        token = self.store.get(KEY_REGISTRATION_TOKEN)
        if not token:
            token = TOKEN_PREFIX + secrets.token_hex(16)
            self.store.set(KEY_REGISTRATION_TOKEN, token)
        return token

    def build_register_request(self, local_address: str) -> ClientMessage:
        """Compose the register message and move to ``AWAITING_SERVER_ACK``."""
        with self._lock:
            if self._state is EnrollmentState.REGISTERED:
                msg = "client is already registered"
                raise ProtocolError(msg)
            ipv4, ipv6 = classify_address(local_address)
            data = MessageData(
                serverkey=self.enrollment_key.get_secret_value(),
                hostname=socket.gethostname(),
                uid=self.registration_token(),
                osplat=platform.system(),
                osver=platform.release(),
                ipv4=ipv4,
                ipv6=ipv6,
            )
            self._state = EnrollmentState.AWAITING_SERVER_ACK
        logger.info("Sending registration request")
        return client_message(ACTION_REGISTER, data)

    def handle_reply(self, message: ServerMessage) -> EnrollmentState:
        """Apply a ``register`` reply from the server."""
        content = message.content
        if content.action != ACTION_REGISTER:
            msg = f"expected a register reply, got {content.action!r}"
            raise ProtocolError(msg)

        with self._lock:
            if self._state is EnrollmentState.REGISTERED:
                logger.debug("Ignoring register reply; already registered as %s", self.uid)
                return self._state

            uid = content.data.uid if content.data else None
            if content.status != STATUS_OK or not uid:
                logger.error("Registration rejected by server (status %s)", content.status)
                self.store.delete(KEY_REGISTRATION_TOKEN)
                self._state = EnrollmentState.UNREGISTERED
                return self._state

            # the UID must be durable before the transition completes
            self.store.set(KEY_UID, uid)
            self.store.delete(KEY_REGISTRATION_TOKEN)
            self.uid = uid
            self._state = EnrollmentState.REGISTERED
            self._registered.set()
        logger.info("Registered with server as %s", uid)
        return self._state
