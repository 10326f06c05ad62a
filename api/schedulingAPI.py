# api/schedulingAPI.py
# StashMirror - Scheduling API for periodic sync runs
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from services import MirrorServices, get_services
from services.scheduling import compute_next_run, merge_defaults

__all__ = ["router"]

router = APIRouter(prefix="/api/scheduling", tags=["scheduling"])


class RunIn(BaseModel):
    mode: Literal["incremental", "full"] | None = None


def _unavailable() -> JSONResponse:
    return JSONResponse({"ok": False, "error": "scheduler not configured"}, status_code=503)


@router.get("")
def sched_get(svc: MirrorServices = Depends(get_services)) -> Any:
    if svc.scheduler is None:
        return merge_defaults(svc.config.get("scheduling") or {})
    return svc.scheduler.status()["config"]


@router.post("")
def sched_post(payload: dict[str, Any] = Body(...), svc: MirrorServices = Depends(get_services)) -> Any:
    if svc.scheduler is None:
        return _unavailable()
    try:
        sch = svc.scheduler.save(payload or {})
    except ValueError as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
    nxt = int(compute_next_run(datetime.now(), sch).timestamp()) if sch["enabled"] else 0
    return {"ok": True, "config": sch, "next_run_at": nxt}


@router.get("/status")
def sched_status(svc: MirrorServices = Depends(get_services)) -> Any:
    if svc.scheduler is None:
        return _unavailable()
    return svc.scheduler.status()


@router.post("/run")
def sched_run(payload: RunIn = Body(RunIn()), svc: MirrorServices = Depends(get_services)) -> Any:
    if svc.scheduler is None:
        return _unavailable()
    ok = svc.scheduler.trigger(payload.mode)
    if not ok:
        return JSONResponse({"ok": False, "error": "Sync already running or rejected"}, status_code=409)
    return {"ok": True}
