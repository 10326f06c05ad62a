# api/syncAPI.py
# StashMirror - Sync trigger, status, cancellation and state reset endpoints
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from services import MirrorServices, get_services
from sm_platform.entity_types import EntityType
from sm_platform.errors import ConfigError, RemoteAPIError
from sm_platform.orchestrator import SyncMode

__all__ = ["router"]

router = APIRouter(prefix="/api/sync", tags=["synchronization"])


class ResetIn(BaseModel):
    instance_id: str
    entity_type: str | None = None


class RefreshIn(BaseModel):
    entity_type: str
    entity_id: str
    instance_id: str = "default"


def _start(svc: MirrorServices, mode: SyncMode, instance_id: str | None) -> JSONResponse:
    try:
        started, rejected = svc.orchestrator.start(mode, instance_id)
    except ConfigError as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=404)
    if not started and rejected:
        return JSONResponse(
            {"ok": False, "error": "Sync already running", "rejected": rejected},
            status_code=409,
        )
    return JSONResponse({"ok": True, "mode": mode.value, "started": started, "rejected": rejected}, status_code=202)


@router.post("/incremental")
def api_sync_incremental(instance_id: str | None = None, svc: MirrorServices = Depends(get_services)) -> JSONResponse:
    return _start(svc, SyncMode.INCREMENTAL, instance_id)


@router.post("/full")
def api_sync_full(instance_id: str | None = None, svc: MirrorServices = Depends(get_services)) -> JSONResponse:
    return _start(svc, SyncMode.FULL, instance_id)


@router.post("/cancel")
def api_sync_cancel(instance_id: str | None = None, svc: MirrorServices = Depends(get_services)) -> dict[str, Any]:
    return {"ok": True, "cancelled": svc.orchestrator.cancel(instance_id)}


@router.get("/status")
def api_sync_status(instance_id: str | None = None, svc: MirrorServices = Depends(get_services)) -> JSONResponse:
    try:
        return JSONResponse(svc.orchestrator.status(instance_id))
    except ConfigError as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=404)


@router.get("/stats")
def api_sync_stats(svc: MirrorServices = Depends(get_services)) -> dict[str, Any]:
    return svc.stats.overview()


@router.post("/reset")
def api_sync_reset(payload: ResetIn = Body(...), svc: MirrorServices = Depends(get_services)) -> JSONResponse:
    if svc.orchestrator.is_running(payload.instance_id):
        return JSONResponse({"ok": False, "error": "Sync already running"}, status_code=409)
    try:
        et = EntityType.parse(payload.entity_type) if payload.entity_type else None
    except ValueError as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
    removed = svc.orchestrator.reset_state(payload.instance_id, et)
    return JSONResponse({"ok": True, "removed": removed})


@router.post("/refresh")
def api_sync_refresh(payload: RefreshIn = Body(...), svc: MirrorServices = Depends(get_services)) -> JSONResponse:
    try:
        found = svc.orchestrator.refresh_entity(payload.instance_id, EntityType.parse(payload.entity_type), payload.entity_id)
    except ValueError as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
    except ConfigError as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=404)
    except RemoteAPIError as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=502)
    if not found:
        return JSONResponse({"ok": False, "error": "not found upstream"}, status_code=404)
    return JSONResponse({"ok": True})
