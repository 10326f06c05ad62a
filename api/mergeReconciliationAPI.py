# api/mergeReconciliationAPI.py
# StashMirror - Admin endpoints for orphaned scenes and manual reconciliation
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Header
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from services import MirrorServices, get_services
from sm_platform.entity_types import EntityType
from sm_platform.errors import ReconciliationConflict

__all__ = ["router"]

router = APIRouter(prefix="/api/admin/merge", tags=["reconciliation"])


class ReconcileIn(BaseModel):
    target_id: str
    instance_id: str = "default"


class ScopeIn(BaseModel):
    instance_id: str | None = None


@router.get("/orphaned-scenes")
def api_orphans(instance_id: str | None = None, svc: MirrorServices = Depends(get_services)) -> dict[str, Any]:
    items = svc.reconciler.find_orphans_with_activity(instance_id)
    return {"items": items, "total": len(items)}


@router.get("/orphaned-scenes/{scene_id}/matches")
def api_matches(
    scene_id: str,
    instance_id: str = "default",
    svc: MirrorServices = Depends(get_services),
) -> dict[str, Any]:
    matches = svc.reconciler.find_matches(EntityType.SCENE, scene_id, instance_id)
    return {"source_id": scene_id, "matches": [m.to_dict() for m in matches]}


@router.post("/orphaned-scenes/{scene_id}/reconcile")
def api_reconcile(
    scene_id: str,
    payload: ReconcileIn = Body(...),
    x_user_id: str | None = Header(None),
    svc: MirrorServices = Depends(get_services),
) -> JSONResponse:
    try:
        out = svc.reconciler.reconcile(scene_id, payload.target_id, payload.instance_id, reconciled_by=x_user_id or "admin")
    except LookupError as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=404)
    except ReconciliationConflict as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=409)
    return JSONResponse({"ok": True, **out.to_dict()})


@router.post("/orphaned-scenes/{scene_id}/discard")
def api_discard(scene_id: str, payload: ScopeIn = Body(ScopeIn()), svc: MirrorServices = Depends(get_services)) -> JSONResponse:
    try:
        removed = svc.reconciler.discard_orphaned_data(scene_id, payload.instance_id or "default")
    except LookupError as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=404)
    except ValueError as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
    return JSONResponse({"ok": True, "removed": removed})


@router.post("/reconcile-all")
def api_reconcile_all(
    payload: ScopeIn = Body(ScopeIn()),
    x_user_id: str | None = Header(None),
    svc: MirrorServices = Depends(get_services),
) -> dict[str, Any]:
    return {"ok": True, **svc.reconciler.reconcile_all(payload.instance_id, reconciled_by=x_user_id or "admin")}


@router.get("/records")
def api_records(
    instance_id: str | None = None,
    source_id: str | None = None,
    user_id: str | None = None,
    limit: int = 100,
    svc: MirrorServices = Depends(get_services),
) -> dict[str, Any]:
    recs = svc.reconciler.list_merge_records(instance_id, source_id=source_id, user_id=user_id, limit=limit)
    return {"items": [r.to_dict() for r in recs]}
