"""
Capability checks for bearer credentials.

Each credential (or the ``public`` sentinel, used when no credential is sent)
maps to a PermissionRecord holding one regex per capability. A missing regex
denies the capability everywhere.
"""

import re
from abc import ABC, abstractmethod
from enum import Enum
from typing import Iterable, Optional

from pydantic import ValidationError

from .errors import MalformedInput, Unauthorized
from .schema import PermissionRecord
from .store import VersionedStore
from ..util.logging import logger

PUBLIC = "public"


class Capability(str, Enum):
    READ = "read"
    WRITE = "write"
    PING = "ping"
    NOTIFY = "notify"


def extract_credential(authorization: Optional[str]) -> Optional[str]:
    """Accept ``Bearer <token>`` as well as a bare token in the Authorization header."""
    if not authorization:
        return None
    value = authorization.strip()
    if value.lower().startswith("bearer "):
        value = value[len("bearer "):].strip()
    return value or None


class AuthGate(ABC):
    """Capability-check contract used by the HTTP layer and the watcher."""

    @abstractmethod
    async def check(self, credential: Optional[str], capability: Capability, path: str) -> PermissionRecord:
        """Return the caller's record, or raise Unauthorized."""

    async def check_all(self, credential: Optional[str], capability: Capability, paths: Iterable[str]) -> Optional[PermissionRecord]:
        """All-or-nothing check over several paths."""
        record = None
        for path in paths:
            record = await self.check(credential, capability, path)
        return record


class TokenAuthGate(AuthGate):
    """Permission records stored under the tokens root of the shared backend."""

    def __init__(self, store: VersionedStore):
        self.store = store

    async def record_for(self, credential: Optional[str]) -> PermissionRecord:
        identifier = credential or PUBLIC
        try:
            entry = await self.store.try_read((identifier,))
        except MalformedInput as e:
            # the credential cannot even be a storage key
            logger.warning("Authentication failed: credential is not a valid key")
            raise Unauthorized("Invalid credential") from e
        if entry is None:
            logger.warning("Authentication failed: unknown credential" if credential else "No public permission record configured")
            raise Unauthorized("Invalid credential" if credential else "Authentication required")
        try:
            return PermissionRecord.model_validate(entry.value)
        except ValidationError as e:
            logger.error(f"Permission record for {'public' if not credential else 'credential'} is invalid: {e}")
            raise Unauthorized("Invalid credential") from e

    async def check(self, credential: Optional[str], capability: Capability, path: str) -> PermissionRecord:
        record = await self.record_for(credential)
        pattern = record.pattern_for(Capability(capability).value)
        granted = pattern is not None and re.search(pattern, path) is not None
        logger.log_auth_decision(Capability(capability).value, path, granted, principal=record.display_name or (PUBLIC if not credential else "token"))
        if not granted:
            raise Unauthorized(f"Not allowed to {Capability(capability).value} {path}")
        return record

    async def grant(self, credential: str, record: PermissionRecord) -> str:
        return await self.store.write((credential,), record.model_dump(by_alias=True, exclude_none=True))

    async def revoke(self, credential: str) -> None:
        await self.store.delete((credential,))
