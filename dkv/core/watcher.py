"""
Change watcher: turns raw per-key watch batches into client streams.

Two independent choices per subscription:
- format ``full`` (path, value, versionstamp) or ``diff`` (JSON Patch against
  what this subscription last saw for the path);
- transport ``push`` (Server-Sent-Events frames with a per-connection id) or
  ``pull`` (one JSON document per line).

Closing the returned stream closes the underlying store watch.
"""

import json
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from .auth import AuthGate, Capability
from .errors import MalformedInput
from .pointer import diff
from .schema import Path, WatchEvent, format_path
from .store import VersionedStore, parse_path
from ..util.logging import logger

FORMATS = ("full", "diff")
TRANSPORTS = ("push", "pull")
MAX_WATCH_PATHS = 1000


@dataclass
class WatchSubscription:
    paths: List[Path]
    fmt: str = "full"
    transport: str = "push"
    baseline: bool = False
    # last value seen per path; only used in diff format, owned by this subscription
    cache: Dict[Path, Any] = field(default_factory=dict)
    delivered: int = 0

    @property
    def display_paths(self) -> List[str]:
        return [format_path(path) for path in self.paths]

    def render(self, event: WatchEvent) -> Dict[str, Any]:
        self.delivered += 1
        display = format_path(event.path)
        if self.fmt == "full":
            return {"path": display, "value": event.value, "versionstamp": event.versionstamp}

        if event.deleted:
            ops = diff(self.cache.pop(event.path, None), {})
        else:
            ops = diff(self.cache.get(event.path), event.value)
            self.cache[event.path] = event.value
        return {"path": display, "diff": ops}


def _dumps(message: Dict[str, Any]) -> str:
    return json.dumps(message, separators=(",", ":"), ensure_ascii=False)


async def sse_frames(messages: AsyncIterator[Dict[str, Any]]) -> AsyncIterator[str]:
    """Server-Sent-Events framing. Sequence ids restart at 0 for every connection."""
    sequence = 0
    async with aclosing(messages) as stream:
        async for message in stream:
            yield f"id: {sequence}\nevent: change\ndata: {_dumps(message)}\n\n"
            sequence += 1


async def ndjson_lines(messages: AsyncIterator[Dict[str, Any]]) -> AsyncIterator[str]:
    async with aclosing(messages) as stream:
        async for message in stream:
            yield _dumps(message) + "\n"


def parse_watch_paths(raw_paths: Any) -> List[Path]:
    if not isinstance(raw_paths, list) or not raw_paths:
        raise MalformedInput("Watch body must be a non-empty array of paths")
    if len(raw_paths) > MAX_WATCH_PATHS:
        raise MalformedInput(f"At most {MAX_WATCH_PATHS} paths can be watched at once")
    paths: List[Path] = []
    for raw in raw_paths:
        path = parse_path(raw)
        if path not in paths:
            paths.append(path)
    return paths


class ChangeWatcher:
    def __init__(self, store: VersionedStore, auth: AuthGate):
        self.store = store
        self.auth = auth

    async def subscribe(
        self,
        raw_paths: Any,
        credential: Optional[str],
        fmt: str = "full",
        transport: str = "push",
        baseline: bool = False,
    ) -> WatchSubscription:
        """Validate and authorize a subscription. Nothing is opened if any path is refused."""
        if fmt not in FORMATS:
            raise MalformedInput(f"format must be one of: {list(FORMATS)}")
        if transport not in TRANSPORTS:
            raise MalformedInput(f"transport must be one of: {list(TRANSPORTS)}")

        paths = parse_watch_paths(raw_paths)
        await self.auth.check_all(credential, Capability.READ, [format_path(path) for path in paths])
        return WatchSubscription(paths=paths, fmt=fmt, transport=transport, baseline=baseline and fmt == "diff")

    async def open(
        self,
        raw_paths: Any,
        credential: Optional[str],
        fmt: str = "full",
        transport: str = "push",
        baseline: bool = False,
    ) -> AsyncIterator[str]:
        """Authorize, take the baseline snapshot if asked, and return the encoded stream."""
        subscription = await self.subscribe(raw_paths, credential, fmt, transport, baseline)

        known = None
        if subscription.baseline:
            # snapshot first; the watch then reports anything newer than this
            known = {}
            for path in subscription.paths:
                entry = await self.store.try_read(path)
                if entry is not None:
                    subscription.cache[path] = entry.value
                known[path] = entry.versionstamp if entry is not None else None

        messages = self.messages(subscription, known)
        if subscription.transport == "push":
            return sse_frames(messages)
        return ndjson_lines(messages)

    async def messages(self, subscription: WatchSubscription, known: Optional[Dict[Path, Optional[str]]] = None) -> AsyncIterator[Dict[str, Any]]:
        logger.log_watch_event("opened", subscription.display_paths, subscription.fmt, subscription.transport)
        try:
            async with aclosing(self.store.watch(subscription.paths, known=known)) as batches:
                async for batch in batches:
                    for event in batch:
                        yield subscription.render(event)
        finally:
            subscription.cache.clear()
            logger.log_watch_event(
                "closed", subscription.display_paths, subscription.fmt, subscription.transport,
                details={"delivered": subscription.delivered},
            )
