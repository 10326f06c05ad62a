# services/__init__.py
# Service container shared by the API routers and the scheduler.
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable

from fastapi import FastAPI, Request
from sqlalchemy.engine import Engine

from sm_platform.orchestrator import SyncOrchestrator
from sm_platform.orchestrator.facade import SourceFactory

from .exclusions import ExclusionCache, ExclusionComputationService
from .query_builder import QueryBuilder
from .reconciliation import MergeReconciliationService
from .scheduling import SyncScheduler
from .statistics import CatalogStats
from .user_data import UserDataStore

__all__ = [
    "MirrorServices",
    "build_services",
    "register",
    "get_services",
    "exclusion_cache",
]


@dataclass
class MirrorServices:
    config: dict[str, Any]
    engine: Engine
    orchestrator: SyncOrchestrator
    reconciler: MergeReconciliationService
    exclusions: ExclusionComputationService
    user_data: UserDataStore
    query_builder: QueryBuilder
    stats: CatalogStats
    scheduler: SyncScheduler | None = None


def build_services(
    cfg: dict[str, Any],
    engine: Engine,
    *,
    source_factory: SourceFactory | None = None,
    load_config: Callable[[], dict[str, Any]] | None = None,
    save_config: Callable[[dict[str, Any]], None] | None = None,
    on_progress: Callable[[str], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> MirrorServices:
    reconciler = MergeReconciliationService(engine)
    stats = CatalogStats(engine)
    orch = SyncOrchestrator(
        cfg,
        engine,
        source_factory=source_factory,
        reconciler=reconciler,
        on_progress=on_progress,
        sleep=sleep,
        post_sync_hooks=[stats.on_run_finished],
    )
    scheduler = None
    if load_config is not None and save_config is not None:

        def _run(mode: str, instance_id: str | None) -> bool:
            started, _ = orch.start(mode, instance_id)
            return bool(started)

        scheduler = SyncScheduler(load_config, save_config, _run, orch.is_running)

    return MirrorServices(
        config=cfg,
        engine=engine,
        orchestrator=orch,
        reconciler=reconciler,
        exclusions=ExclusionComputationService(
            engine, hide_empty=bool(((cfg or {}).get("query") or {}).get("hide_empty_entities", True))
        ),
        user_data=UserDataStore(engine),
        query_builder=QueryBuilder.from_config(cfg),
        stats=stats,
        scheduler=scheduler,
    )


def register(app: FastAPI, services: MirrorServices) -> None:
    app.state.mirror = services


def get_services(request: Request) -> MirrorServices:
    return request.app.state.mirror


def exclusion_cache(request: Request) -> ExclusionCache:
    # One cache per request; restriction rules may change between requests.
    return ExclusionCache(get_services(request).exclusions)
