"""
Streaming watch endpoint.

POST a JSON array of paths; the response stays open and carries one message
per change, either as Server-Sent-Events or as newline-delimited JSON.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from .deps import Services, get_credential, get_services
from .kv import read_json_body

router = APIRouter()

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.post("/watch")
@router.post("/api/watch", include_in_schema=False)
async def watch_paths(
    request: Request,
    fmt: str = Query("full", alias="format"),
    no_sse: bool = Query(False, alias="noSSE"),
    baseline: bool = False,
    services: Services = Depends(get_services),
    credential: Optional[str] = Depends(get_credential),
):
    paths = await read_json_body(request)
    transport = "pull" if no_sse else "push"

    # authorization and validation happen here, before any byte is streamed
    stream = await services.watcher.open(paths, credential, fmt=fmt, transport=transport, baseline=baseline)

    media_type = "application/x-ndjson" if no_sse else "text/event-stream"
    return StreamingResponse(stream, media_type=media_type, headers=STREAM_HEADERS)
