"""
Entry endpoints: read, write and patch single paths, list a prefix.

The same routes are mounted under ``/rest`` and the short alias ``/r``.
"""

import json
import re
from contextlib import aclosing
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from ..core.auth import Capability
from ..core.errors import MalformedInput
from ..core.pointer import apply_pointer
from ..core.schema import format_path
from ..core.store import UNCONDITIONAL, parse_path
from .deps import Services, get_credential, get_services
from .schemas import EntryResponse, ListResponse, WriteResponse

VERSIONSTAMP_HEADER = "X-Versionstamp"
MAX_LIST_LIMIT = 1000

router = APIRouter()
list_router = APIRouter()


async def read_json_body(request: Request) -> Any:
    body = await request.body()
    if not body.strip():
        raise MalformedInput("Request body must be a JSON document")
    try:
        return json.loads(body)
    except ValueError as e:
        raise MalformedInput(f"Request body is not valid JSON: {e}") from e


def _expected_versionstamp(versionstamp: Optional[str]) -> Any:
    """``?versionstamp=null`` means "must not exist yet"; no parameter means unconditional."""
    if versionstamp is None:
        return UNCONDITIONAL
    if versionstamp == "null":
        return None
    return versionstamp


@router.get("/{path:path}")
async def get_entry(
    path: str,
    pointer: Optional[str] = None,
    raw_pointer: bool = False,
    services: Services = Depends(get_services),
    credential: Optional[str] = Depends(get_credential),
):
    """Return the value at ``path``, or the part of it addressed by ``pointer``."""
    key = parse_path(path)
    await services.auth.check(credential, Capability.READ, format_path(key))

    entry = await services.store.read(key)
    value = entry.value
    if pointer is not None:
        value = apply_pointer(value, pointer, raw=raw_pointer)
    return JSONResponse(content=value, headers={VERSIONSTAMP_HEADER: entry.versionstamp})


@router.put("/{path:path}", response_model=WriteResponse)
async def put_entry(
    path: str,
    request: Request,
    versionstamp: Optional[str] = None,
    ttl: Optional[float] = None,
    services: Services = Depends(get_services),
    credential: Optional[str] = Depends(get_credential),
):
    key = parse_path(path)
    await services.auth.check(credential, Capability.WRITE, format_path(key))

    value = await read_json_body(request)
    new_versionstamp = await services.store.write(key, value, expected=_expected_versionstamp(versionstamp), ttl=ttl)
    return JSONResponse(
        content=WriteResponse(ok=True, versionstamp=new_versionstamp).model_dump(),
        headers={VERSIONSTAMP_HEADER: new_versionstamp},
    )


@router.patch("/{path:path}")
async def patch_entry(
    path: str,
    request: Request,
    ttl: Optional[float] = None,
    services: Services = Depends(get_services),
    credential: Optional[str] = Depends(get_credential),
):
    """Apply a JSON Patch document and return the patched value."""
    key = parse_path(path)
    await services.auth.check(credential, Capability.WRITE, format_path(key))

    ops = await read_json_body(request)
    entry = await services.store.apply_patch(key, ops, ttl=ttl)
    return JSONResponse(content=entry.value, headers={VERSIONSTAMP_HEADER: entry.versionstamp})


@list_router.get("/list", response_model=ListResponse)
@list_router.get("/list/{prefix:path}", response_model=ListResponse)
async def list_entries(
    prefix: str = "",
    limit: int = Query(MAX_LIST_LIMIT, ge=1, le=MAX_LIST_LIMIT),
    services: Services = Depends(get_services),
    credential: Optional[str] = Depends(get_credential),
):
    """List entries under ``prefix`` that the credential may read."""
    key = parse_path(prefix) if prefix.strip("/") else ()
    record = await services.auth.check(credential, Capability.READ, format_path(key))
    pattern = record.pattern_for(Capability.READ.value)

    items = []
    has_more = False
    async with aclosing(services.store.list_range(key)) as entries:
        async for entry in entries:
            if not re.search(pattern, entry.display_path):
                continue
            if len(items) == limit:
                has_more = True
                break
            items.append(EntryResponse(path=entry.display_path, value=entry.value, versionstamp=entry.versionstamp))

    return ListResponse(items=items, count=len(items), has_more=has_more)
