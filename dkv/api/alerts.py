"""
Heartbeat and notification endpoints.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from ..core.auth import Capability
from ..core.deadman import entity_name
from ..core.errors import MalformedInput
from ..core.notify import render_message
from ..core.schema import format_path
from ..core.store import parse_path
from ..util.logging import logger
from .deps import Services, get_credential, get_services
from .schemas import NotifyResponse, PingResponse

router = APIRouter()


@router.api_route("/ping/{path:path}", methods=["GET", "POST"], response_model=PingResponse)
async def ping(
    path: str,
    services: Services = Depends(get_services),
    credential: Optional[str] = Depends(get_credential),
):
    """Record a heartbeat for a provisioned dead-man trigger."""
    key = parse_path(path)
    await services.auth.check(credential, Capability.PING, format_path(key))

    trigger = await services.deadman.ping(key)
    return PingResponse(ok=True, entity=entity_name(key), last_ping=trigger.last_ping)


@router.post("/notify/{path:path}", response_model=NotifyResponse)
async def notify(
    path: str,
    request: Request,
    fmt: str = Query("text", alias="format"),
    silent: bool = False,
    services: Services = Depends(get_services),
    credential: Optional[str] = Depends(get_credential),
):
    """Forward the request body to the configured notifier."""
    # the path only scopes the permission check
    key = parse_path(path)
    await services.auth.check(credential, Capability.NOTIFY, format_path(key))

    raw = await request.body()
    try:
        body = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedInput(f"Notification body must be UTF-8 text: {e}") from e

    text = render_message(body, fmt)
    await services.notifier.send(text, fmt=fmt, silent=silent)
    logger.log_operation("notify", "sent", {"path": format_path(key), "format": fmt, "silent": silent})
    return NotifyResponse(ok=True, format=fmt, silent=silent)
