"""
Registration records for enrolled clients.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator

from luminum.common.exceptions import LuminumIOError

logger = logging.getLogger(__name__)

MAX_UID_ATTEMPTS = 8

_SCHEMA = """
CREATE TABLE IF NOT EXISTS CLIENTS (
    UID TEXT PRIMARY KEY,
    TOKEN TEXT NOT NULL UNIQUE,
    HOSTNAME TEXT NOT NULL,
    OSPLAT TEXT NOT NULL DEFAULT '',
    OSVER TEXT NOT NULL DEFAULT '',
    IPV4 TEXT NOT NULL DEFAULT '',
    IPV6 TEXT NOT NULL DEFAULT '',
    PEER TEXT NOT NULL DEFAULT '',
    REGISTERED_AT INTEGER NOT NULL,
    LAST_SEEN INTEGER NOT NULL
)
"""


@dataclass
class ClientRecord:
    uid: str
    token: str
    hostname: str
    osplat: str = ""
    osver: str = ""
    ipv4: str = ""
    ipv6: str = ""
    peer: str = ""
    registered_at: int = 0
    last_seen: int = 0


class ClientRegistry:
    """Stores one record per enrolled client and allocates UIDs.

    Allocation is serialized with a lock; UIDs are random and checked
    against every UID already issued.
    """

    def __init__(self, path: Path | str, uid_factory: Callable[[], str] | None = None):
        self.path = Path(path)
        self.uid_factory = uid_factory or (lambda: uuid.uuid4().hex)
        self._lock = threading.Lock()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(str(self.path))
        except sqlite3.Error as err:
            msg = f"Could not open client database {self.path}: {err}"
            raise LuminumIOError(msg) from err
        try:
            with conn:
                yield conn
        except sqlite3.Error as err:
            msg = f"Client database error: {err}"
            raise LuminumIOError(msg) from err
        finally:
            conn.close()

    def initialize(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            msg = f"Could not create {self.path.parent}: {err}"
            raise LuminumIOError(msg) from err
        with self._connect() as conn:
            conn.execute(_SCHEMA)

    def register(self, record: ClientRecord) -> tuple[str, bool]:
        """Persist a registration and return ``(uid, created)``.

        A token that was already registered returns the UID issued for it
        and leaves the stored record untouched.
        """
        with self._lock:
            existing = self.find_by_token(record.token)
            if existing is not None:
                logger.info(
                    "Replayed registration from %s; returning existing UID", record.hostname
                )
                return existing.uid, False

            now = int(time.time())
            for _ in range(MAX_UID_ATTEMPTS):
                uid = self.uid_factory()
                try:
                    with self._connect() as conn:
                        conn.execute(
                            "INSERT INTO CLIENTS (UID, TOKEN, HOSTNAME, OSPLAT, OSVER, "
                            "IPV4, IPV6, PEER, REGISTERED_AT, LAST_SEEN) "
                            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                            (
                                uid,
                                record.token,
                                record.hostname,
                                record.osplat,
                                record.osver,
                                record.ipv4,
                                record.ipv6,
                                record.peer,
                                now,
                                now,
                            ),
                        )
                except LuminumIOError as err:
                    if isinstance(err.__cause__, sqlite3.IntegrityError) and self.get(uid):
                        logger.warning("UID collision, allocating another")
                        continue
                    raise
                return uid, True

        msg = f"Could not allocate a unique UID after {MAX_UID_ATTEMPTS} attempts"
        raise LuminumIOError(msg)

    def get(self, uid: str) -> ClientRecord | None:
        return self._fetch_one("UID", uid)

    def find_by_token(self, token: str) -> ClientRecord | None:
        return self._fetch_one("TOKEN", token)

    def _fetch_one(self, column: str, value: str) -> ClientRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT UID, TOKEN, HOSTNAME, OSPLAT, OSVER, IPV4, IPV6, PEER, "
                f"REGISTERED_AT, LAST_SEEN FROM CLIENTS WHERE {column} = ?",  # noqa: S608
                (value,),
            ).fetchone()
        return ClientRecord(*row) if row else None

    def touch(self, uid: str) -> bool:
        """Update LAST_SEEN; returns False for an unknown UID."""
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE CLIENTS SET LAST_SEEN = ? WHERE UID = ?", (int(time.time()), uid)
            )
        return cur.rowcount > 0

    def count(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM CLIENTS").fetchone()[0]

    def uids(self) -> list[str]:
        with self._connect() as conn:
            return [row[0] for row in conn.execute("SELECT UID FROM CLIENTS")]
