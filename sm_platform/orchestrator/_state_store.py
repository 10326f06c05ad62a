# sm_platform/orchestrator/_state_store.py
# Per (instance, entity type) sync timestamps.
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine

from _logging import log as _root_log

from ..db import sync_state, utcnow
from ..entity_types import EntityType
from ..errors import WindowMismatchError
from ..instances import normalize_instance_id
from ._types import SyncMode, SyncResult, SyncWindow
from ..timestamps import later_ts

log = _root_log.child("STATE")


@dataclass(frozen=True)
class SyncState:
    instance_id: str
    entity_type: EntityType
    last_full_sync: str | None = None
    last_incremental_sync: str | None = None
    last_sync_count: int = 0
    last_sync_duration_ms: int = 0
    updated_at: datetime | None = None

    @property
    def since(self) -> str | None:
        return later_ts(self.last_full_sync, self.last_incremental_sync)

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "entity_type": self.entity_type.value,
            "last_full_sync": self.last_full_sync,
            "last_incremental_sync": self.last_incremental_sync,
            "last_sync_count": self.last_sync_count,
            "last_sync_duration_ms": self.last_sync_duration_ms,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


def _row_to_state(row: Any) -> SyncState:
    return SyncState(
        instance_id=row.instance_id,
        entity_type=EntityType.parse(row.entity_type),
        last_full_sync=row.last_full_sync,
        last_incremental_sync=row.last_incremental_sync,
        last_sync_count=int(row.last_sync_count or 0),
        last_sync_duration_ms=int(row.last_sync_duration_ms or 0),
        updated_at=row.updated_at,
    )


class SyncStateStore:
    def __init__(self, engine: Engine):
        self.engine = engine

    def get(self, instance_id: str, entity_type: EntityType) -> SyncState | None:
        et = EntityType.parse(entity_type)
        stmt = select(sync_state).where(
            sync_state.c.instance_id == normalize_instance_id(instance_id),
            sync_state.c.entity_type == et.value,
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).first()
        return _row_to_state(row) if row is not None else None

    def list_states(self, instance_id: str | None = None) -> list[SyncState]:
        stmt = select(sync_state).order_by(sync_state.c.instance_id, sync_state.c.id)
        if instance_id is not None:
            stmt = stmt.where(sync_state.c.instance_id == normalize_instance_id(instance_id))
        with self.engine.connect() as conn:
            return [_row_to_state(r) for r in conn.execute(stmt)]

    def window(self, instance_id: str, entity_type: EntityType) -> SyncWindow:
        et = EntityType.parse(entity_type)
        state = self.get(instance_id, et)
        return SyncWindow(
            instance_id=normalize_instance_id(instance_id),
            entity_type=et,
            since=state.since if state else None,
        )

    def record(self, instance_id: str, entity_type: EntityType, mode: SyncMode, result: SyncResult) -> SyncState:
        """Mark one successful pass as done. Call only after the pass completed."""
        et = EntityType.parse(entity_type)
        if result.entity_type is not et:
            raise WindowMismatchError(f"result for {result.entity_type.value} recorded as {et.value}")
        iid = normalize_instance_id(instance_id)
        mode = SyncMode(mode)
        col = "last_full_sync" if mode is SyncMode.FULL else "last_incremental_sync"

        prior = self.get(iid, et)
        prior_ts = getattr(prior, col) if prior else None
        # Remote clock, not ours: the newest mutation this pass actually saw.
        ts = later_ts(prior_ts, result.max_updated_at)
        now = utcnow()

        values = {
            col: ts,
            "last_sync_count": int(result.scanned),
            "last_sync_duration_ms": int(result.duration_ms),
            "updated_at": now,
        }
        stmt = sqlite_insert(sync_state).values(instance_id=iid, entity_type=et.value, **values)
        stmt = stmt.on_conflict_do_update(index_elements=["instance_id", "entity_type"], set_=values)
        with self.engine.begin() as conn:
            conn.execute(stmt)

        log.debug("recorded", instance=iid, type=et.value, mode=mode.value, ts=ts, scanned=result.scanned)
        state = self.get(iid, et)
        assert state is not None
        return state

    def reset(self, instance_id: str, entity_type: EntityType | None = None) -> int:
        stmt = delete(sync_state).where(sync_state.c.instance_id == normalize_instance_id(instance_id))
        if entity_type is not None:
            stmt = stmt.where(sync_state.c.entity_type == EntityType.parse(entity_type).value)
        with self.engine.begin() as conn:
            n = conn.execute(stmt).rowcount or 0
        log.info("sync state reset", instance=instance_id, type=getattr(entity_type, "value", entity_type), rows=n)
        return n
