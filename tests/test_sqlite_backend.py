"""
SQLite backend: persistence, atomic multi-key commits and range scans.
"""

import asyncio
import sqlite3

import pytest

from dkv.core.backend import KEY_SEPARATOR, Check, Mutation, SQLiteBackend, decode_key, encode_key
from dkv.core.errors import MalformedInput
from dkv.core.store import VersionedStore


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "nested" / "dkv.db")


@pytest.fixture
def backend(db_path, clock):
    return SQLiteBackend(db_path, clock=clock)


def test_database_health(backend):
    """Database file and tables are created on construction."""
    assert backend.health_check() is True
    assert backend.name == "sqlite"


def test_health_check_fails_without_tables(backend, db_path):
    with sqlite3.connect(db_path) as conn:
        conn.execute("DROP TABLE meta")
    assert backend.health_check() is False


def test_values_survive_reopen(backend, db_path, clock):
    stamp = backend.commit([], [Mutation(("data", "a"), {"nested": [1, "two", None]})])

    reopened = SQLiteBackend(db_path, clock=clock)
    entry = reopened.get_now(("data", "a"))
    assert entry.value == {"nested": [1, "two", None]}
    assert entry.versionstamp == stamp


def test_versionstamp_counter_persists(backend, db_path, clock):
    first = backend.commit([], [Mutation(("k",), 1)])
    second = SQLiteBackend(db_path, clock=clock).commit([], [Mutation(("k",), 2)])
    assert second > first
    assert len(second) == 20


def test_multi_key_commit_is_atomic(backend):
    backend.commit([], [Mutation(("a",), 1)])

    result = backend.commit(
        [Check(("a",), "00000000000000000099")],
        [Mutation(("a",), 2), Mutation(("b",), 2)],
    )

    assert result is None
    assert backend.get_now(("a",)).value == 1
    assert backend.get_now(("b",)) is None


def test_check_for_absent_key(backend):
    assert backend.commit([Check(("new",), None)], [Mutation(("new",), 1)]) is not None
    assert backend.commit([Check(("new",), None)], [Mutation(("new",), 2)]) is None


def test_delete(backend):
    backend.commit([], [Mutation(("a",), 1)])
    backend.commit([], [Mutation(("a",), delete=True)])
    assert backend.get_now(("a",)) is None


def test_expiry(backend, clock):
    backend.commit([], [Mutation(("lease",), "x", expire_in=30)])
    clock.advance(31)
    assert backend.get_now(("lease",)) is None
    assert backend.scan((), None, 10) == []


def test_scan_is_bounded_to_prefix(backend):
    for key in [("p", "a"), ("p", "b", "c"), ("pq", "x"), ("p",), ("q",)]:
        backend.commit([], [Mutation(key, list(key))])

    assert [entry.path for entry in backend.scan(("p",), None, 10)] == [("p", "a"), ("p", "b", "c")]


def test_scan_pages_with_after(backend):
    for i in range(5):
        backend.commit([], [Mutation(("p", f"k{i}"), i)])

    first = backend.scan(("p",), None, 2)
    second = backend.scan(("p",), first[-1].path, 2)
    assert [entry.value for entry in first + second] == [0, 1, 2, 3]


def test_list_walks_every_chunk(backend, monkeypatch):
    monkeypatch.setattr("dkv.core.backend.LIST_CHUNK_SIZE", 2)
    for i in range(5):
        backend.commit([], [Mutation(("p", f"k{i}"), i)])

    async def collect():
        return [entry.value async for entry in backend.list(("p",))]

    assert asyncio.run(collect()) == [0, 1, 2, 3, 4]


def test_key_encoding():
    assert decode_key(encode_key(("a", "b/c"))) == ("a", "b/c")
    with pytest.raises(MalformedInput):
        encode_key(("bad" + KEY_SEPARATOR,))


def test_store_conflicts_across_connections(db_path, clock):
    """Two backends on one file see each other's commits."""
    one = VersionedStore(SQLiteBackend(db_path, clock=clock), "data")
    two = VersionedStore(SQLiteBackend(db_path, clock=clock), "data")

    async def scenario():
        stamp = await one.write(("k",), 1)
        await two.write(("k",), 2, expected=stamp)
        return await one.read(("k",))

    assert asyncio.run(scenario()).value == 2


def test_locked_database_does_not_stall_event_loop(backend, db_path):
    """A writer waiting on another connection's lock leaves the loop running."""
    store = VersionedStore(backend, "data")
    blocker = sqlite3.connect(db_path, isolation_level=None)
    blocker.execute("BEGIN IMMEDIATE")

    async def scenario():
        loop = asyncio.get_running_loop()
        loop.call_later(0.5, blocker.execute, "ROLLBACK")
        write = asyncio.ensure_future(store.write(("k",), 1))
        gaps = []
        last = loop.time()
        while not write.done():
            await asyncio.sleep(0.02)
            now = loop.time()
            gaps.append(now - last)
            last = now
        return await write, gaps

    try:
        versionstamp, gaps = asyncio.run(scenario())
    finally:
        blocker.close()

    assert versionstamp is not None
    assert len(gaps) > 5
    assert max(gaps) < 0.25


def test_concurrent_writes_are_watched_in_commit_order(backend):
    store = VersionedStore(backend, "data")

    async def scenario():
        watch = store.watch([("k",)])
        pending = asyncio.ensure_future(watch.__anext__())
        await asyncio.sleep(0)

        await asyncio.gather(*(store.write(("k",), i) for i in range(10)))

        events = list(await pending)
        while len(events) < 10:
            events.extend(await watch.__anext__())
        await watch.aclose()
        return events, await store.read(("k",))

    events, final = asyncio.run(scenario())
    stamps = [event.versionstamp for event in events]
    assert stamps == sorted(stamps)
    assert events[-1].value == final.value
    assert backend.hub.subscriber_count == 0


def test_watch_catch_up_reads_off_loop(backend):
    store = VersionedStore(backend, "data")

    async def scenario():
        stale = await store.write(("a",), "old")
        await store.write(("a",), "new")
        watch = store.watch([("a",), ("b",)], known={("a",): stale, ("b",): None})
        batch = await watch.__anext__()
        await watch.aclose()
        return batch

    (event,) = asyncio.run(scenario())
    assert event.path == ("a",)
    assert event.value == "new"
    assert backend.hub.subscriber_count == 0
