import itertools
import threading
from pathlib import Path

import pytest

from luminum.common.exceptions import LuminumIOError
from luminum.server.registry import MAX_UID_ATTEMPTS, ClientRecord, ClientRegistry


@pytest.fixture
def registry(tmp_path: Path) -> ClientRegistry:
    registry = ClientRegistry(tmp_path / "clients.db")
    registry.initialize()
    return registry


def record(token: str, hostname: str = "host-1") -> ClientRecord:
    return ClientRecord(
        uid="", token=token, hostname=hostname, osplat="Linux", ipv4="10.0.0.2", peer="10.0.0.2:5000"
    )


def test_register_issues_uid(registry: ClientRegistry) -> None:
    uid, created = registry.register(record("pending-1"))

    assert created
    assert len(uid) == 32  # noqa: PLR2004
    stored = registry.get(uid)
    assert stored.hostname == "host-1"
    assert stored.token == "pending-1"
    assert stored.registered_at > 0


def test_replayed_token_returns_same_uid(registry: ClientRegistry) -> None:
    uid, _ = registry.register(record("pending-1"))
    replay, created = registry.register(record("pending-1", hostname="renamed"))

    assert replay == uid
    assert not created
    assert registry.count() == 1
    assert registry.get(uid).hostname == "host-1"


def test_uids_are_unique(registry: ClientRegistry) -> None:
    uids = {registry.register(record(f"pending-{i}"))[0] for i in range(25)}
    assert len(uids) == 25  # noqa: PLR2004
    assert set(registry.uids()) == uids


def test_uid_collision_allocates_another(tmp_path: Path) -> None:
    candidates = iter(["dup", "dup", "fresh"])
    registry = ClientRegistry(tmp_path / "clients.db", uid_factory=lambda: next(candidates))
    registry.initialize()

    assert registry.register(record("pending-1"))[0] == "dup"
    assert registry.register(record("pending-2"))[0] == "fresh"


def test_uid_allocation_gives_up(tmp_path: Path) -> None:
    calls = itertools.count()

    def factory() -> str:
        next(calls)
        return "dup"

    registry = ClientRegistry(tmp_path / "clients.db", uid_factory=factory)
    registry.initialize()
    registry.register(record("pending-1"))

    with pytest.raises(LuminumIOError, match="unique UID"):
        registry.register(record("pending-2"))
    assert next(calls) == 1 + MAX_UID_ATTEMPTS


def test_concurrent_registrations(registry: ClientRegistry) -> None:
    results: list[str] = []
    lock = threading.Lock()

    def worker(i: int) -> None:
        uid, _ = registry.register(record(f"pending-{i}"))
        with lock:
            results.append(uid)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(16)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(set(results)) == 16  # noqa: PLR2004
    assert registry.count() == 16  # noqa: PLR2004


def test_touch(registry: ClientRegistry) -> None:
    uid, _ = registry.register(record("pending-1"))
    assert registry.touch(uid)
    assert not registry.touch("unknown")
    assert registry.find_by_token("pending-1").uid == uid
    assert registry.find_by_token("pending-2") is None
