"""Heartbeat handler for registered clients.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from luminum.common.exceptions import LuminumIOError
from luminum.common.protocol import (
    ACTION_HEARTBEAT,
    STATUS_ERROR,
    STATUS_OK,
    STATUS_UNKNOWN,
    server_message,
)

if TYPE_CHECKING:
    from luminum.common.models import ClientMessage, ServerMessage
    from luminum.server.registry import ClientRegistry


class HeartbeatHandler:
    """Records that a registered client is alive."""

    def __init__(self, registry: ClientRegistry):
        self.registry = registry
        self.logger = logging.getLogger(__name__)

    def handle_heartbeat(self, message: ClientMessage, peer: str) -> ServerMessage:
        if not message.uid:
            return server_message(ACTION_HEARTBEAT, STATUS_UNKNOWN)
        try:
            known = self.registry.touch(message.uid)
        except LuminumIOError:
            self.logger.exception("Could not record heartbeat from %s", peer)
            return server_message(ACTION_HEARTBEAT, STATUS_ERROR)
        if not known:
            self.logger.warning("Heartbeat from unknown UID %s at %s", message.uid, peer)
            return server_message(ACTION_HEARTBEAT, STATUS_UNKNOWN)
        self.logger.debug("Heartbeat from %s (%s)", message.uid, peer)
        return server_message(ACTION_HEARTBEAT, STATUS_OK)
