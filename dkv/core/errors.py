"""
Error taxonomy shared by the store, watcher, auth gate and dead-man monitor.

The API layer maps each class to an HTTP status through ``status_code``.
"""

from typing import Optional


class DKVError(Exception):
    """Base class for expected runtime errors."""

    status_code = 500
    error_type = "INTERNAL_ERROR"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class Unauthorized(DKVError):
    """Missing or unknown credential, or a capability regex that does not match."""

    status_code = 401
    error_type = "UNAUTHORIZED"


class NotFound(DKVError):
    status_code = 404
    error_type = "NOT_FOUND"


class PointerNotFound(NotFound):
    """A JSON Pointer segment does not exist in the document."""

    error_type = "POINTER_NOT_FOUND"

    def __init__(self, pointer: str, reason: str = ""):
        message = f"Pointer {pointer!r} does not resolve"
        if reason:
            message += f": {reason}"
        super().__init__(message)
        self.pointer = pointer
        self.reason = reason


class Conflict(DKVError):
    """A compare-and-swap check lost the race."""

    status_code = 409
    error_type = "CONFLICT"


class RetryExhausted(Conflict):
    """A read-modify-write loop ran out of attempts or time."""

    error_type = "RETRY_EXHAUSTED"

    def __init__(self, message: str = "", attempts: Optional[int] = None):
        super().__init__(message)
        self.attempts = attempts


class MalformedInput(DKVError):
    status_code = 400
    error_type = "MALFORMED_INPUT"


class PatchApplyError(MalformedInput):
    """A patch operation could not be applied. Carries the failing operation index."""

    error_type = "PATCH_APPLY_ERROR"

    def __init__(self, index: int, reason: str):
        super().__init__(f"Patch operation {index} failed: {reason}")
        self.index = index
        self.reason = reason


class UpstreamUnavailable(DKVError):
    """The storage engine or the notification transport is unreachable."""

    status_code = 502
    error_type = "UPSTREAM_UNAVAILABLE"
