"""
Versioned key-value primitive that the store is built on.

A backend offers atomic multi-key check-and-set, prefix listing and a change
watch. Keys are tuples of string segments; every commit issues a new,
strictly increasing versionstamp shared by all keys it writes.
"""

import asyncio
import json
import logging
import sqlite3
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path as FsPath
from typing import Any, AsyncIterator, Callable, Dict, Generator, Iterable, List, Optional, Sequence

from .errors import MalformedInput, UpstreamUnavailable
from .schema import Entry, Path, WatchEvent
from ..util.logging import logger

KEY_SEPARATOR = "\x1f"
LIST_CHUNK_SIZE = 500
WATCH_QUEUE_SIZE = 1000

# queued in place of a batch when a subscriber falls too far behind
OVERFLOW = None


@dataclass(frozen=True)
class Check:
    """Expect ``key`` to currently carry ``versionstamp`` (None: key must be absent)."""

    key: Path
    versionstamp: Optional[str]


@dataclass(frozen=True)
class Mutation:
    key: Path
    value: Any = None
    delete: bool = False
    expire_in: Optional[float] = None


def format_versionstamp(counter: int) -> str:
    return f"{counter:020x}"


class _Subscriber:
    def __init__(self, keys: Iterable[Path], queue_size: int):
        self.keys = frozenset(keys)
        self.queue: "asyncio.Queue[Optional[List[WatchEvent]]]" = asyncio.Queue(maxsize=queue_size)

    def drain(self) -> List[Optional[List[WatchEvent]]]:
        items = []
        while not self.queue.empty():
            items.append(self.queue.get_nowait())
        return items


class WatchHub:
    """Fans committed mutations out to open watch subscriptions.

    A subscriber whose queue is full is dropped: its pending batches are
    discarded and its watch ends, so the client has to reconnect.
    """

    def __init__(self, queue_size: int = WATCH_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: List[_Subscriber] = []

    def subscribe(self, keys: Iterable[Path]) -> _Subscriber:
        subscriber = _Subscriber(keys, self.queue_size)
        self._subscribers.append(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: _Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, events: Sequence[WatchEvent]) -> None:
        for subscriber in list(self._subscribers):
            batch = [event for event in events if event.path in subscriber.keys]
            if not batch:
                continue
            try:
                subscriber.queue.put_nowait(batch)
            except asyncio.QueueFull:
                self._overflow(subscriber)

    def _overflow(self, subscriber: _Subscriber) -> None:
        self.unsubscribe(subscriber)
        subscriber.drain()
        subscriber.queue.put_nowait(OVERFLOW)
        logger.log_operation(
            "watch.overflow", "dropped",
            {"keys": len(subscriber.keys), "queue_size": self.queue_size},
            level=logging.WARNING,
        )


class KVBackend(ABC):
    """Contract of the external versioned store."""

    name = "abstract"

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self.hub = WatchHub()

    @abstractmethod
    def get_now(self, key: Path) -> Optional[Entry]:
        """Current live entry for ``key``, without suspending."""

    @abstractmethod
    def commit(self, checks: Sequence[Check], mutations: Sequence[Mutation]) -> Optional[str]:
        """Apply ``mutations`` if every check holds. Returns the new versionstamp or None."""

    @abstractmethod
    def scan(self, prefix: Path, after: Optional[Path], limit: int) -> List[Entry]:
        """Up to ``limit`` live entries strictly under ``prefix`` and after ``after``, in key order."""

    async def get(self, key: Path) -> Optional[Entry]:
        return self.get_now(key)

    async def atomic(self, checks: Sequence[Check], mutations: Sequence[Mutation]) -> Optional[str]:
        return self.commit(checks, mutations)

    async def fetch_chunk(self, prefix: Path, after: Optional[Path], limit: int) -> List[Entry]:
        return self.scan(prefix, after, limit)

    async def list(self, prefix: Path) -> AsyncIterator[Entry]:
        after = None
        while True:
            chunk = await self.fetch_chunk(prefix, after, LIST_CHUNK_SIZE)
            for entry in chunk:
                yield entry
            if len(chunk) < LIST_CHUNK_SIZE:
                return
            after = chunk[-1].path
            await asyncio.sleep(0)

    async def watch(self, keys: Sequence[Path], known: Optional[Dict[Path, Optional[str]]] = None) -> AsyncIterator[List[WatchEvent]]:
        """Yield batches of events for ``keys``, starting from the moment of subscription.

        When ``known`` maps keys to versionstamps seen by an earlier snapshot, any key
        whose current versionstamp differs is reported first. The subscription is
        registered before the current versions are read; a key that already has a
        queued event by then is left to that event. The watch ends when the
        subscriber overflows its queue.
        """
        subscriber = self.hub.subscribe(keys)
        try:
            pending: List[Optional[List[WatchEvent]]] = []
            if known is not None:
                current = {key: await self.get(key) for key in keys}
                pending = subscriber.drain()
                queued = {event.path for batch in pending if batch is not OVERFLOW for event in batch}
                catch_up = []
                for key, entry in current.items():
                    versionstamp = entry.versionstamp if entry else None
                    if key not in queued and versionstamp != known.get(key):
                        catch_up.append(WatchEvent(key, entry.value if entry else None, versionstamp))
                if catch_up:
                    pending.insert(0, catch_up)
            for batch in pending:
                if batch is OVERFLOW:
                    return
                yield batch
            while True:
                batch = await subscriber.queue.get()
                if batch is OVERFLOW:
                    return
                yield batch
        finally:
            self.hub.unsubscribe(subscriber)

    def _publish(self, mutations: Sequence[Mutation], versionstamp: str) -> None:
        events = [
            WatchEvent(m.key, None, None) if m.delete else WatchEvent(m.key, m.value, versionstamp)
            for m in mutations
        ]
        self.hub.publish(events)

    def _expiry(self, mutation: Mutation, now: float) -> Optional[float]:
        return now + mutation.expire_in if mutation.expire_in is not None else None

    def health_check(self) -> bool:
        return True


class MemoryBackend(KVBackend):
    """In-process backend for development and tests."""

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self._entries: Dict[Path, Entry] = {}
        self._counter = 0

    def _live(self, key: Path, now: float) -> Optional[Entry]:
        entry = self._entries.get(key)
        if entry is not None and entry.expires_at is not None and entry.expires_at <= now:
            del self._entries[key]
            return None
        return entry

    def get_now(self, key: Path) -> Optional[Entry]:
        return self._live(tuple(key), self.clock())

    def commit(self, checks: Sequence[Check], mutations: Sequence[Mutation]) -> Optional[str]:
        now = self.clock()
        for check in checks:
            entry = self._live(check.key, now)
            if (entry.versionstamp if entry else None) != check.versionstamp:
                return None

        self._counter += 1
        versionstamp = format_versionstamp(self._counter)
        for mutation in mutations:
            if mutation.delete:
                self._entries.pop(mutation.key, None)
            else:
                self._entries[mutation.key] = Entry(
                    path=mutation.key,
                    value=mutation.value,
                    versionstamp=versionstamp,
                    expires_at=self._expiry(mutation, now),
                )
        self._publish(mutations, versionstamp)
        return versionstamp

    def scan(self, prefix: Path, after: Optional[Path], limit: int) -> List[Entry]:
        now = self.clock()
        keys = sorted(
            key for key in self._entries
            if len(key) > len(prefix) and key[:len(prefix)] == prefix and (after is None or key > after)
        )
        chunk = []
        for key in keys:
            entry = self._live(key, now)
            if entry is not None:
                chunk.append(entry)
                if len(chunk) >= limit:
                    break
        return chunk


SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    versionstamp TEXT NOT NULL,
    expires_at REAL
);

CREATE TABLE IF NOT EXISTS meta (
    name TEXT PRIMARY KEY,
    value INTEGER NOT NULL
);
"""


def encode_key(key: Path) -> str:
    for segment in key:
        if KEY_SEPARATOR in segment:
            raise MalformedInput(f"Key segment contains a reserved character: {segment!r}")
    return KEY_SEPARATOR.join(key)


def decode_key(text: str) -> Path:
    return tuple(text.split(KEY_SEPARATOR))


class SQLiteBackend(KVBackend):
    """sqlite3-backed backend. ``BEGIN IMMEDIATE`` makes each commit atomic across connections.

    The async methods run their queries in worker threads, so a writer waiting
    on the database lock does not stall the event loop. Watch notifications are
    delivered to subscribers inside this process only.
    """

    name = "sqlite"

    def __init__(self, db_path: str, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self.db_path = db_path
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dkv-sqlite-writer")
        FsPath(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.init_db()

    @contextmanager
    def _conn(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a SQLite database connection."""
        try:
            conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        except sqlite3.Error as e:
            raise UpstreamUnavailable(f"Cannot open database {self.db_path}: {e}") from e
        try:
            yield conn
        except sqlite3.OperationalError as e:
            raise UpstreamUnavailable(f"Database error: {e}") from e
        finally:
            conn.close()

    def init_db(self) -> None:
        with self._conn() as conn:
            conn.executescript(SCHEMA)

    def _row_to_entry(self, row) -> Entry:
        key_text, value_text, versionstamp, expires_at = row
        return Entry(decode_key(key_text), json.loads(value_text), versionstamp, expires_at)

    def _live(self, conn: sqlite3.Connection, key: Path, now: float) -> Optional[Entry]:
        row = conn.execute(
            "SELECT key, value, versionstamp, expires_at FROM kv WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)",
            (encode_key(key), now),
        ).fetchone()
        return self._row_to_entry(row) if row else None

    def get_now(self, key: Path) -> Optional[Entry]:
        with self._conn() as conn:
            return self._live(conn, tuple(key), self.clock())

    async def get(self, key: Path) -> Optional[Entry]:
        return await asyncio.to_thread(self.get_now, key)

    async def atomic(self, checks: Sequence[Check], mutations: Sequence[Mutation]) -> Optional[str]:
        # one writer thread keeps watch notifications in commit order
        loop = asyncio.get_running_loop()
        versionstamp = await loop.run_in_executor(self._writer, self._apply, checks, mutations)
        if versionstamp is not None:
            self._publish(mutations, versionstamp)
        return versionstamp

    async def fetch_chunk(self, prefix: Path, after: Optional[Path], limit: int) -> List[Entry]:
        return await asyncio.to_thread(self.scan, prefix, after, limit)

    def commit(self, checks: Sequence[Check], mutations: Sequence[Mutation]) -> Optional[str]:
        versionstamp = self._apply(checks, mutations)
        if versionstamp is not None:
            self._publish(mutations, versionstamp)
        return versionstamp

    def _apply(self, checks: Sequence[Check], mutations: Sequence[Mutation]) -> Optional[str]:
        """Run the transaction without notifying watchers. Safe to call from a worker thread."""
        now = self.clock()
        with self._conn() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                for check in checks:
                    entry = self._live(conn, check.key, now)
                    if (entry.versionstamp if entry else None) != check.versionstamp:
                        conn.execute("ROLLBACK")
                        return None

                conn.execute(
                    "INSERT INTO meta (name, value) VALUES ('versionstamp', 1) "
                    "ON CONFLICT(name) DO UPDATE SET value = value + 1"
                )
                counter = conn.execute("SELECT value FROM meta WHERE name = 'versionstamp'").fetchone()[0]
                versionstamp = format_versionstamp(counter)

                for mutation in mutations:
                    if mutation.delete:
                        conn.execute("DELETE FROM kv WHERE key = ?", (encode_key(mutation.key),))
                    else:
                        conn.execute(
                            "INSERT OR REPLACE INTO kv (key, value, versionstamp, expires_at) VALUES (?, ?, ?, ?)",
                            (
                                encode_key(mutation.key),
                                json.dumps(mutation.value),
                                versionstamp,
                                self._expiry(mutation, now),
                            ),
                        )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        return versionstamp

    def scan(self, prefix: Path, after: Optional[Path], limit: int) -> List[Entry]:
        now = self.clock()
        if prefix:
            prefix_text = encode_key(prefix)
            lower, upper = prefix_text + KEY_SEPARATOR, prefix_text + chr(ord(KEY_SEPARATOR) + 1)
        else:
            lower, upper = "", None
        if after is not None:
            lower = max(lower, encode_key(after) + "\x00")

        query = "SELECT key, value, versionstamp, expires_at FROM kv WHERE key >= ? AND (expires_at IS NULL OR expires_at > ?)"
        params: list = [lower, now]
        if upper is not None:
            query += " AND key < ?"
            params.append(upper)
        query += " ORDER BY key LIMIT ?"
        params.append(limit)

        with self._conn() as conn:
            return [self._row_to_entry(row) for row in conn.execute(query, params).fetchall()]

    def health_check(self) -> bool:
        """Check database health."""
        try:
            with self._conn() as conn:
                tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
            return {"kv", "meta"} <= tables
        except UpstreamUnavailable:
            return False
