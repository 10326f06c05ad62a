# sm_platform/orchestrator/_syncer.py
# fetch -> diff -> upsert for one entity type of one instance.
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

import time
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from sqlalchemy import and_, delete, insert, select, update
from sqlalchemy.engine import Connection, Engine

from _logging import log as _root_log
from providers.sync.stash._normalize import NormalizedEntity, normalize as _default_normalize

from ..db import entity_fingerprints, entity_links, entity_table, utcnow
from ..entity_types import EntityType
from ..errors import WindowMismatchError
from ..instances import normalize_instance_id
from ..timestamps import later_ts
from ._chunking import BATCH_SIZE, iter_chunks
from ._fetcher import EntityFetcher
from ._logging import Emitter
from ._types import NEVER_CANCELLED, CancelToken, FetchFilter, SyncMode, SyncResult, SyncWindow

log = _root_log.child("SYNC")

Normalizer = Callable[[EntityType, Mapping[str, Any]], NormalizedEntity]


class EntitySyncer:
    def __init__(
        self,
        engine: Engine,
        fetcher: EntityFetcher,
        instance_id: str,
        *,
        normalize: Normalizer = _default_normalize,
        emitter: Emitter | None = None,
    ):
        self.engine = engine
        self.fetcher = fetcher
        self.instance_id = normalize_instance_id(instance_id)
        self.normalize = normalize
        self.emitter = emitter or Emitter(None, module="SYNC")

    def sync(
        self,
        entity_type: EntityType,
        mode: SyncMode,
        window: SyncWindow | None = None,
        cancel: CancelToken = NEVER_CANCELLED,
    ) -> SyncResult:
        et = EntityType.parse(entity_type)
        mode = SyncMode(mode)
        if window is not None and (window.entity_type is not et or window.instance_id != self.instance_id):
            raise WindowMismatchError(
                f"window for {window.instance_id}/{window.entity_type.value} "
                f"passed to {self.instance_id}/{et.value}"
            )

        effective = mode
        if mode is SyncMode.INCREMENTAL and (window is None or not window.since):
            log.info("no prior sync for type, running full", instance=self.instance_id, type=et.value)
            effective = SyncMode.FULL
        flt = FetchFilter.from_window(window) if effective is SyncMode.INCREMENTAL else FetchFilter()

        t0 = time.monotonic()
        result = SyncResult(entity_type=et, mode=effective)
        for page in self.fetcher.iter_pages(et, flt, cancel):
            if page.items:
                created, updated, newest = self._upsert_page(et, page.items)
                result.scanned += len(page.items)
                result.created += created
                result.updated += updated
                result.max_updated_at = later_ts(result.max_updated_at, newest)
            self.emitter.emit(
                "page:done",
                instance=self.instance_id,
                type=et.value,
                scanned=result.scanned,
                total=page.total,
            )
        result.duration_ms = int((time.monotonic() - t0) * 1000)

        log.info(
            "type synced",
            instance=self.instance_id,
            type=et.value,
            mode=effective.value,
            since=flt.updated_since,
            scanned=result.scanned,
            created=result.created,
            updated=result.updated,
            ms=result.duration_ms,
        )
        return result

    def sync_one(self, entity_type: EntityType, entity_id: str) -> bool:
        et = EntityType.parse(entity_type)
        item = self.fetcher.fetch_one(et, str(entity_id))
        if item is None:
            return False
        self._upsert_page(et, [item])
        return True

    # ── upsert ──────────────────────────────────────────────────────────────

    def _upsert_page(self, et: EntityType, items: Sequence[Mapping[str, Any]]) -> tuple[int, int, str | None]:
        table = entity_table(et)
        by_id: dict[str, NormalizedEntity] = {}
        for it in items:
            n = self.normalize(et, it)
            by_id[n.id] = n

        created = updated = 0
        newest: str | None = None
        changed: list[NormalizedEntity] = []
        inserts: list[dict[str, Any]] = []
        now = utcnow()

        with self.engine.begin() as conn:
            existing: dict[str, Any] = {}
            for chunk in iter_chunks(list(by_id), BATCH_SIZE):
                stmt = select(table.c.id, table.c.updated_at, table.c.content_hash, table.c.deleted_at).where(
                    table.c.instance_id == self.instance_id,
                    table.c.id.in_(chunk),
                )
                existing.update((r.id, r) for r in conn.execute(stmt))
            for n in by_id.values():
                newest = later_ts(newest, n.updated_at)
                digest = n.content_hash
                row = {
                    "instance_id": self.instance_id,
                    "id": n.id,
                    "created_at": n.created_at,
                    "updated_at": n.updated_at,
                    "content_hash": digest,
                    "data": n.data,
                    "deleted_at": None,
                    "synced_at": now,
                    **n.columns,
                }
                prev = existing.get(n.id)
                if prev is None:
                    inserts.append(row)
                    created += 1
                    changed.append(n)
                    continue
                if prev.deleted_at is None and prev.updated_at == n.updated_at and prev.content_hash == digest:
                    continue
                if prev.deleted_at is not None:
                    # Present in a successful fetch, so it exists upstream again.
                    log.info("undeleting", instance=self.instance_id, type=et.value, id=n.id)
                conn.execute(
                    update(table)
                    .where(and_(table.c.instance_id == self.instance_id, table.c.id == n.id))
                    .values(**row)
                )
                updated += 1
                changed.append(n)

            if inserts:
                conn.execute(insert(table), inserts)
            if changed:
                self._replace_relations(conn, et, changed)

        return created, updated, newest

    def _replace_relations(self, conn: Connection, et: EntityType, changed: Sequence[NormalizedEntity]) -> None:
        for chunk in iter_chunks([n.id for n in changed], BATCH_SIZE):
            conn.execute(
                delete(entity_links).where(
                    entity_links.c.instance_id == self.instance_id,
                    entity_links.c.owner_type == et.value,
                    entity_links.c.owner_id.in_(chunk),
                )
            )
            if et.kind.fingerprinted:
                conn.execute(
                    delete(entity_fingerprints).where(
                        entity_fingerprints.c.instance_id == self.instance_id,
                        entity_fingerprints.c.entity_type == et.value,
                        entity_fingerprints.c.entity_id.in_(chunk),
                    )
                )

        links = [
            {
                "instance_id": self.instance_id,
                "owner_type": et.value,
                "owner_id": n.id,
                "related_type": rt.value,
                "related_id": rid,
            }
            for n in changed
            for rt, rid in n.links
        ]
        if links:
            conn.execute(insert(entity_links), links)

        fps = [
            {
                "instance_id": self.instance_id,
                "entity_type": et.value,
                "entity_id": n.id,
                "algorithm": algo,
                "value": value,
            }
            for n in changed
            for algo, value in dict.fromkeys(n.fingerprints)
        ]
        if fps:
            conn.execute(insert(entity_fingerprints), fps)
