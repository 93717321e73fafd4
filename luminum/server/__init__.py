"""
Entry point for the enrollment server.
"""

from __future__ import annotations

import logging
import signal
from typing import TYPE_CHECKING

from luminum.common.exceptions import LuminumError

from .core import EnrollmentServer
from .privileges import drop_privileges

if TYPE_CHECKING:
    from luminum.common.models import ServerConfig

logger = logging.getLogger(__name__)


def start_server(config: ServerConfig, run_as: str | None = None) -> None:
    """Start the enrollment server and block until interrupted.

    The identity bundle, listener and client registry are all set up
    before switching to ``run_as``; only the registry directory and file
    change owner.
    """
    server = EnrollmentServer.from_config(config)
    if run_as:
        db_path = config.clients_db_path
        try:
            drop_privileges(run_as, writable=[db_path.parent, db_path])
        except LuminumError:
            server.stop()
            raise

    def _interrupt(signum: int, frame: object) -> None:  # noqa: ARG001
        logger.warning("BREAK: terminating Luminum Server Daemon.")
        server.stop()

    signal.signal(signal.SIGINT, _interrupt)
    signal.signal(signal.SIGTERM, _interrupt)
    server.serve_forever()


__all__ = ["EnrollmentServer", "start_server"]
