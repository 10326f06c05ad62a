# services/statistics.py
# StashMirror - Catalog counts and recent run history, refreshed after each sync
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import case, func, select
from sqlalchemy.engine import Engine

from _logging import log as _root_log
from sm_platform.db import entity_table
from sm_platform.entity_types import SYNC_ORDER
from sm_platform.instances import normalize_instance_id
from sm_platform.orchestrator import RunReport

log = _root_log.child("STATS")

RUN_HISTORY = 50


class CatalogStats:
    def __init__(self, engine: Engine, *, history: int = RUN_HISTORY) -> None:
        self.engine = engine
        self.lock = threading.Lock()
        self._counts: dict[str, dict[str, dict[str, int]]] = {}
        self._runs: deque[dict[str, Any]] = deque(maxlen=max(1, int(history)))
        self._refreshed_at: str | None = None

    def _count_instance(self, instance_id: str) -> dict[str, dict[str, int]]:
        out: dict[str, dict[str, int]] = {}
        with self.engine.connect() as conn:
            for et in SYNC_ORDER:
                t = entity_table(et)
                alive, deleted = conn.execute(
                    select(
                        func.coalesce(func.sum(case((t.c.deleted_at.is_(None), 1), else_=0)), 0),
                        func.coalesce(func.sum(case((t.c.deleted_at.is_not(None), 1), else_=0)), 0),
                    ).where(t.c.instance_id == instance_id)
                ).one()
                out[et.value] = {"alive": int(alive), "deleted": int(deleted)}
        return out

    def refresh(self, instance_id: str) -> dict[str, dict[str, int]]:
        iid = normalize_instance_id(instance_id)
        counts = self._count_instance(iid)
        with self.lock:
            self._counts[iid] = counts
            self._refreshed_at = datetime.now(timezone.utc).isoformat()
        return counts

    def record_run(self, report: RunReport) -> None:
        entry = {
            "instance_id": report.instance_id,
            "mode": report.mode.value,
            "status": report.status.value,
            "finished_at": report.finished_at.isoformat() if report.finished_at else None,
            "created": sum(r.created for r in report.results.values()),
            "updated": sum(r.updated for r in report.results.values()),
            "soft_deleted": sum(c.soft_deleted for c in report.cleanup.values()),
            "reconciled": sum(c.reconciled for c in report.cleanup.values()),
            "errors": len(report.errors),
        }
        with self.lock:
            self._runs.appendleft(entry)

    def on_run_finished(self, report: RunReport) -> None:
        """Post-sync hook."""
        self.record_run(report)
        counts = self.refresh(report.instance_id)
        log.debug(
            "catalog counts refreshed",
            instance=report.instance_id,
            alive=sum(c["alive"] for c in counts.values()),
        )

    def overview(self) -> dict[str, Any]:
        with self.lock:
            return {
                "counts": {k: dict(v) for k, v in self._counts.items()},
                "runs": list(self._runs),
                "refreshed_at": self._refreshed_at,
            }
