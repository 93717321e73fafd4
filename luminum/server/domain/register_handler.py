"""Register request handler for the enrollment service.
"""

from __future__ import annotations

import hmac
import logging
from typing import TYPE_CHECKING

from luminum.common.exceptions import AuthError, LuminumIOError, ProtocolError
from luminum.common.models import ClientMessage, MessageData, ServerMessage
from luminum.common.protocol import (
    ACTION_REGISTER,
    STATUS_DENIED,
    STATUS_ERROR,
    STATUS_INVALID,
    STATUS_OK,
    server_message,
)
from luminum.server.registry import ClientRecord

if TYPE_CHECKING:
    from pydantic import SecretStr

    from luminum.server.registry import ClientRegistry


class RegisterHandler:
    """Validates the enrollment key and issues UIDs."""

    def __init__(self, enrollment_key: SecretStr, registry: ClientRegistry):
        self.enrollment_key = enrollment_key
        self.registry = registry
        self.logger = logging.getLogger(__name__)

    def handle_register(self, message: ClientMessage, peer: str) -> ServerMessage:
        """Handle one register request and build the reply."""
        try:
            data = self._validate_register_request(message)
            self._check_enrollment_key(data)
        except ProtocolError as err:
            self.logger.warning("Malformed register request from %s: %s", peer, err)
            return server_message(ACTION_REGISTER, STATUS_INVALID)
        except AuthError:
            self.logger.warning("Rejected registration from %s: enrollment key mismatch", peer)
            return server_message(ACTION_REGISTER, STATUS_DENIED)

        record = ClientRecord(
            uid="",
            token=data.uid or "",
            hostname=data.hostname or "",
            osplat=data.osplat or "",
            osver=data.osver or "",
            ipv4=data.ipv4 or "",
            ipv6=data.ipv6 or "",
            peer=peer,
        )
        try:
            uid, created = self.registry.register(record)
        except LuminumIOError:
            self.logger.exception("UID allocation failed for %s", peer)
            return server_message(ACTION_REGISTER, STATUS_ERROR)

        if created:
            self.logger.info("Registered %s (%s) as %s", record.hostname, peer, uid)
        return server_message(ACTION_REGISTER, STATUS_OK, MessageData(uid=uid))

    def _validate_register_request(self, message: ClientMessage) -> MessageData:
        data = message.content.data
        if data is None:
            msg = "register request carries no data"
            raise ProtocolError(msg)
        missing = [
            name for name in ("serverkey", "hostname", "uid") if not getattr(data, name)
        ]
        if missing:
            msg = f"register request is missing {', '.join(missing)}"
            raise ProtocolError(msg)
        return data

    def _check_enrollment_key(self, data: MessageData) -> None:
        supplied = (data.serverkey or "").encode("utf-8")
        expected = self.enrollment_key.get_secret_value().encode("utf-8")
        if not hmac.compare_digest(supplied, expected):
            msg = "enrollment key mismatch"
            raise AuthError(msg)
