# api/exclusionsAPI.py
# StashMirror - Hidden entities, restriction rules and computed exclusion counts
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Body, Depends, Header
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from services import MirrorServices, exclusion_cache, get_services
from services.exclusions import ExclusionCache

__all__ = ["router"]

router = APIRouter(prefix="/api/exclusions", tags=["exclusions"])


class HideIn(BaseModel):
    entity_type: str
    entity_id: str
    instance_id: str = ""


class RestrictionIn(BaseModel):
    user_id: str
    entity_type: str
    mode: Literal["EXCLUDE", "INCLUDE"]
    entity_ids: list[str] = Field(default_factory=list)
    instance_id: str = ""


def _need_user(x_user_id: str | None) -> JSONResponse | None:
    if not x_user_id:
        return JSONResponse({"ok": False, "error": "X-User-Id header required"}, status_code=401)
    return None


@router.get("")
def api_exclusions(
    instance_id: str = "default",
    x_user_id: str | None = Header(None),
    cache: ExclusionCache = Depends(exclusion_cache),
) -> Any:
    err = _need_user(x_user_id)
    if err is not None:
        return err
    excl = cache.get(str(x_user_id), instance_id)
    return {"user_id": excl.user_id, "instance_id": excl.instance_id, "total": excl.total(), "counts": excl.counts()}


@router.post("/hide")
def api_hide(
    payload: HideIn = Body(...),
    x_user_id: str | None = Header(None),
    svc: MirrorServices = Depends(get_services),
) -> Any:
    err = _need_user(x_user_id)
    if err is not None:
        return err
    try:
        added = svc.user_data.hide(str(x_user_id), payload.entity_type, payload.entity_id, payload.instance_id)
    except ValueError as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
    return {"ok": True, "changed": added}


@router.post("/unhide")
def api_unhide(
    payload: HideIn = Body(...),
    x_user_id: str | None = Header(None),
    svc: MirrorServices = Depends(get_services),
) -> Any:
    err = _need_user(x_user_id)
    if err is not None:
        return err
    try:
        removed = svc.user_data.unhide(str(x_user_id), payload.entity_type, payload.entity_id, payload.instance_id)
    except ValueError as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
    return {"ok": True, "changed": removed}


@router.put("/restrictions")
def api_set_restriction(
    payload: RestrictionIn = Body(...),
    x_admin: bool = Header(False),
    svc: MirrorServices = Depends(get_services),
) -> Any:
    if not x_admin:
        return JSONResponse({"ok": False, "error": "admin only"}, status_code=403)
    try:
        rule = svc.user_data.set_restriction(
            payload.user_id, payload.entity_type, payload.mode, payload.entity_ids, payload.instance_id
        )
    except ValueError as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
    return {"ok": True, **rule}


@router.delete("/restrictions")
def api_clear_restriction(
    user_id: str,
    entity_type: str,
    instance_id: str = "",
    x_admin: bool = Header(False),
    svc: MirrorServices = Depends(get_services),
) -> Any:
    if not x_admin:
        return JSONResponse({"ok": False, "error": "admin only"}, status_code=403)
    try:
        removed = svc.user_data.clear_restriction(user_id, entity_type, instance_id)
    except ValueError as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
    return {"ok": True, "changed": removed}
