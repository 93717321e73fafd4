"""
Key/value configuration store backed by SQLite.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Mapping

from luminum.common.exceptions import ConfigError, LuminumIOError

logger = logging.getLogger(__name__)

# Server keys
KEY_SERVER_KEY = "SVRKEY"
KEY_ADDRESS = "IPADDR"
KEY_PORT = "PORT"
KEY_KEY_PASSPHRASE = "PKPASS"
KEY_DB_PASSWORD = "DBPASS"
KEY_ENROLLMENT_KEY = "ENROLLKEY"

# Client keys
KEY_SERVER_HOST = "SVRHOST"
KEY_SERVER_PORT = "SVRPORT"
KEY_REGISTRATION_TOKEN = "REGTOKEN"
KEY_UID = "UID"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS CONFIG (
    KEY TEXT NOT NULL UNIQUE,
    VALUE TEXT NOT NULL
)
"""


class ConfigStore:
    """Persistent KEY -> VALUE table.

    A connection is opened per operation, so one instance can be shared
    between worker threads.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.is_file()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(str(self.path))
        except sqlite3.Error as err:
            msg = f"Could not open configuration database {self.path}: {err}"
            raise LuminumIOError(msg) from err
        try:
            with conn:
                yield conn
        except sqlite3.Error as err:
            msg = f"Configuration database error in {self.path}: {err}"
            raise LuminumIOError(msg) from err
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the parent directory and the CONFIG table if missing."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            msg = f"Could not create {self.path.parent}: {err}"
            raise LuminumIOError(msg) from err
        with self._connect() as conn:
            conn.execute(_SCHEMA)
        logger.debug("Configuration schema ensured at %s", self.path)

    def get(self, key: str, default: str | None = None) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT VALUE FROM CONFIG WHERE KEY = ?", (key,)
            ).fetchone()
        return row[0] if row else default

    def require(self, key: str) -> str:
        value = self.get(key)
        if value is None or value == "":
            msg = f"Required configuration key {key} is missing from {self.path}"
            raise ConfigError(msg, key=key)
        return value

    def set(self, key: str, value: str) -> None:
        self.set_many({key: value})

    def set_many(self, values: Mapping[str, str]) -> None:
        """Insert or replace several keys in a single transaction."""
        with self._connect() as conn:
            conn.executemany(
                "INSERT INTO CONFIG (KEY, VALUE) VALUES (?, ?) "
                "ON CONFLICT(KEY) DO UPDATE SET VALUE = excluded.VALUE",
                list(values.items()),
            )

    def delete(self, key: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM CONFIG WHERE KEY = ?", (key,))

    def as_dict(self) -> dict[str, str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT KEY, VALUE FROM CONFIG").fetchall()
        return dict(rows)
