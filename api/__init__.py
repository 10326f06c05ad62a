# api/__init__.py
# Router aggregation for the StashMirror HTTP API.
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

from fastapi import FastAPI

from .exclusionsAPI import router as exclusions_router
from .libraryAPI import router as library_router
from .mergeReconciliationAPI import router as merge_router
from .schedulingAPI import router as scheduling_router
from .syncAPI import router as sync_router

__all__ = [
    "sync_router",
    "merge_router",
    "library_router",
    "exclusions_router",
    "scheduling_router",
    "register",
]


def register(app: FastAPI) -> None:
    app.include_router(sync_router)
    app.include_router(merge_router)
    app.include_router(library_router)
    app.include_router(exclusions_router)
    app.include_router(scheduling_router)
