"""
Entry point for the endpoint client.
"""

from __future__ import annotations

import logging
import signal
from typing import TYPE_CHECKING

from .client import LuminumClient
from .enrollment import Enrollment, EnrollmentState

if TYPE_CHECKING:
    from luminum.common.models import ClientConfig

logger = logging.getLogger(__name__)


def start_client(config: ClientConfig) -> None:
    """Run the client in the foreground until interrupted."""
    client = LuminumClient(config)

    def _interrupt(signum: int, frame: object) -> None:  # noqa: ARG001
        logger.warning("BREAK: terminating Luminum Client.")
        client.stop()

    signal.signal(signal.SIGINT, _interrupt)
    signal.signal(signal.SIGTERM, _interrupt)
    client.run()


__all__ = ["Enrollment", "EnrollmentState", "LuminumClient", "start_client"]
