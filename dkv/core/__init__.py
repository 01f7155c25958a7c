"""
Core services: storage backends, versioned store, watcher, auth and dead-man monitor.
"""

from .backend import KVBackend, MemoryBackend, SQLiteBackend
from .errors import (
    Conflict,
    DKVError,
    MalformedInput,
    NotFound,
    PatchApplyError,
    PointerNotFound,
    RetryExhausted,
    Unauthorized,
    UpstreamUnavailable,
)
from .schema import DeadManTrigger, Entry, PermissionRecord, WatchEvent
from .store import VersionedStore, parse_path

__all__ = [
    'KVBackend',
    'MemoryBackend',
    'SQLiteBackend',
    'VersionedStore',
    'parse_path',
    'Entry',
    'WatchEvent',
    'PermissionRecord',
    'DeadManTrigger',
    'DKVError',
    'Unauthorized',
    'NotFound',
    'PointerNotFound',
    'Conflict',
    'RetryExhausted',
    'MalformedInput',
    'PatchApplyError',
    'UpstreamUnavailable',
]
