"""
Drop root privileges to the service account once startup is complete.
"""

from __future__ import annotations

import logging
import os
import pwd
from pathlib import Path
from typing import Iterable

from luminum.common.exceptions import ConfigError, LuminumIOError

logger = logging.getLogger(__name__)


def drop_privileges(username: str, writable: Iterable[Path] = ()) -> bool:
    """Switch the process to ``username`` if running as root.

    Paths in ``writable`` are handed to the service account first, so
    state it keeps writing after the switch stays usable. Returns True
    when the identity changed. A missing account is fatal for a root
    process; non-root processes are left as they are.
    """
    if os.geteuid() != 0:
        logger.debug("Not running as root; keeping current user")
        return False
    try:
        entry = pwd.getpwnam(username)
    except KeyError as err:
        msg = f'The "{username}" system user does not exist.'
        raise ConfigError(msg) from err

    for path in writable:
        try:
            os.chown(path, entry.pw_uid, entry.pw_gid)
        except OSError as err:
            msg = f'Could not hand {path} to "{username}": {err}'
            raise LuminumIOError(msg) from err

    try:
        os.setgroups([])
        os.setgid(entry.pw_gid)
        os.setuid(entry.pw_uid)
    except OSError as err:
        msg = f'Could not assign process to "{username}" system user: {err}'
        raise ConfigError(msg) from err
    logger.info("Running as %s (uid %d)", username, entry.pw_uid)
    return True
