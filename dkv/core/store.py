"""
Versioned object store: hierarchical paths on top of a KVBackend.

Every path lives under a fixed root segment, so several stores (ordinary
entries, dead-man triggers, credentials, locks) can share one backend without
overlapping. Writes are optimistic; read-modify-write callers go through
``update``, which retries lost compare-and-swap races a bounded number of times.
"""

import asyncio
import copy
import time
from contextlib import aclosing
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

from .backend import Check, KVBackend, Mutation
from .errors import Conflict, MalformedInput, NotFound, RetryExhausted
from .pointer import apply_patch, validate_patch
from .schema import Entry, Path, WatchEvent, format_path, validate_value
from ..util.logging import logger

# Sentinel for "no versionstamp supplied": the write is unconditional.
UNCONDITIONAL = object()


def parse_path(path: str) -> Path:
    """Turn ``/a/b`` into ``("a", "b")``. Leading and trailing slashes are ignored."""
    if not isinstance(path, str):
        raise MalformedInput(f"Path must be a string, got {type(path).__name__}")
    stripped = path.strip("/")
    if not stripped:
        raise MalformedInput("Path must contain at least one segment")
    segments = tuple(stripped.split("/"))
    if any(segment == "" for segment in segments):
        raise MalformedInput(f"Path contains an empty segment: {path!r}")
    return segments


def _check_ttl(ttl: Optional[float]) -> Optional[float]:
    if ttl is not None and ttl <= 0:
        raise MalformedInput(f"ttl must be a positive number of seconds, got {ttl}")
    return ttl


class VersionedStore:
    """Entries under one root segment of a shared backend."""

    def __init__(
        self,
        backend: KVBackend,
        root: str,
        max_attempts: int = 16,
        deadline_sec: float = 5.0,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.backend = backend
        self.root = root
        self.max_attempts = max_attempts
        self.deadline_sec = deadline_sec
        self._monotonic = monotonic

    def key_for(self, path: Path) -> Path:
        return (self.root,) + tuple(path)

    def _relative(self, entry: Entry) -> Entry:
        return Entry(entry.path[1:], entry.value, entry.versionstamp, entry.expires_at)

    async def try_read(self, path: Path) -> Optional[Entry]:
        entry = await self.backend.get(self.key_for(path))
        return self._relative(entry) if entry is not None else None

    async def read(self, path: Path) -> Entry:
        entry = await self.try_read(path)
        if entry is None:
            raise NotFound(f"No entry at {format_path(path)}")
        return entry

    async def write(self, path: Path, value: Any, expected: Any = UNCONDITIONAL, ttl: Optional[float] = None) -> str:
        """Store ``value`` and return its new versionstamp.

        ``expected`` omitted: last writer wins. ``expected=None``: the entry must not
        exist yet. Any other value: compare-and-swap against that versionstamp.
        """
        validate_value(value)
        _check_ttl(ttl)
        key = self.key_for(path)

        checks = [] if expected is UNCONDITIONAL else [Check(key, expected)]
        versionstamp = await self.backend.atomic(checks, [Mutation(key, value, expire_in=ttl)])
        if versionstamp is None:
            if expected is not None and await self.backend.get(key) is None:
                logger.log_kv_operation("write", format_path(path), status="not_found")
                raise NotFound(f"No entry at {format_path(path)}")
            logger.log_kv_operation("write", format_path(path), status="conflict", details={"expected": expected})
            raise Conflict(f"Versionstamp mismatch at {format_path(path)}")

        logger.log_kv_operation("write", format_path(path), versionstamp)
        return versionstamp

    async def delete(self, path: Path, expected: Any = UNCONDITIONAL) -> None:
        key = self.key_for(path)
        checks = [] if expected is UNCONDITIONAL else [Check(key, expected)]
        if await self.backend.atomic(checks, [Mutation(key, delete=True)]) is None:
            raise Conflict(f"Versionstamp mismatch at {format_path(path)}")
        logger.log_kv_operation("delete", format_path(path))

    async def update(
        self,
        path: Path,
        mutate: Callable[[Any], Any],
        ttl: Optional[float] = None,
        operation: str = "update",
    ) -> Entry:
        """Read-modify-write loop. ``mutate`` receives a private copy of the current value.

        Lost races are retried against the fresh versionstamp until ``max_attempts``
        or ``deadline_sec`` runs out, then ``RetryExhausted`` is raised. Errors
        raised by ``mutate`` propagate unchanged.
        """
        _check_ttl(ttl)
        key = self.key_for(path)
        deadline = self._monotonic() + self.deadline_sec

        attempt = 0
        while attempt < self.max_attempts:
            attempt += 1
            current = await self.backend.get(key)
            if current is None:
                raise NotFound(f"No entry at {format_path(path)}")

            new_value = validate_value(mutate(copy.deepcopy(current.value)))
            versionstamp = await self.backend.atomic(
                [Check(key, current.versionstamp)],
                [Mutation(key, new_value, expire_in=ttl)],
            )
            if versionstamp is not None:
                logger.log_kv_operation(operation, format_path(path), versionstamp, details={"attempts": attempt})
                return Entry(tuple(path), new_value, versionstamp)

            logger.debug(f"CAS conflict on {format_path(path)} ({operation}, attempt {attempt})")
            if self._monotonic() >= deadline:
                break
            # let the writer that won run before re-reading
            await asyncio.sleep(0)

        logger.log_kv_operation(operation, format_path(path), status="retry_exhausted", details={"attempts": attempt})
        raise RetryExhausted(f"Gave up on {format_path(path)} after {attempt} attempts", attempts=attempt)

    async def apply_patch(self, path: Path, ops: List[Dict[str, Any]], ttl: Optional[float] = None) -> Entry:
        validate_patch(ops)
        return await self.update(path, lambda value: apply_patch(value, ops), ttl=ttl, operation="patch")

    async def list_range(self, prefix: Path = ()) -> AsyncIterator[Entry]:
        async for entry in self.backend.list(self.key_for(prefix)):
            yield self._relative(entry)

    async def watch(self, paths: Sequence[Path], known: Optional[Dict[Path, Optional[str]]] = None) -> AsyncIterator[List[WatchEvent]]:
        keys = [self.key_for(path) for path in paths]
        known_keys = None if known is None else {self.key_for(path): vs for path, vs in known.items()}
        async with aclosing(self.backend.watch(keys, known=known_keys)) as batches:
            async for batch in batches:
                yield [WatchEvent(event.path[1:], event.value, event.versionstamp) for event in batch]
