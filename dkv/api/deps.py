"""
Service container handed to every route through FastAPI dependencies.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Header, Request

from ..core.auth import AuthGate, TokenAuthGate, extract_credential
from ..core.backend import KVBackend
from ..core.config import Settings
from ..core.deadman import DeadManMonitor
from ..core.notify import Notifier
from ..core.scheduler import Scheduler
from ..core.store import VersionedStore
from ..core.watcher import ChangeWatcher


@dataclass
class Services:
    settings: Settings
    backend: KVBackend
    store: VersionedStore
    auth: AuthGate
    watcher: ChangeWatcher
    deadman: DeadManMonitor
    notifier: Notifier
    scheduler: Scheduler

    @classmethod
    def build(cls, settings: Settings, backend: KVBackend, notifier: Notifier) -> "Services":
        def store_for(root: str) -> VersionedStore:
            return VersionedStore(
                backend,
                root,
                max_attempts=settings.cas_max_attempts,
                deadline_sec=settings.cas_deadline_sec,
            )

        store = store_for(settings.data_root)
        auth = TokenAuthGate(store_for(settings.tokens_root))
        deadman = DeadManMonitor(
            store_for(settings.deadman_root),
            notifier,
            locks=store_for(settings.locks_root),
            lease_sec=settings.deadman_lease_sec,
        )
        return cls(
            settings=settings,
            backend=backend,
            store=store,
            auth=auth,
            watcher=ChangeWatcher(store, auth),
            deadman=deadman,
            notifier=notifier,
            scheduler=Scheduler(),
        )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_credential(authorization: Optional[str] = Header(None)) -> Optional[str]:
    return extract_credential(authorization)
