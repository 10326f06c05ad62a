# sm_platform/orchestrator/_cleanup.py
# Detect entities deleted upstream: ID-only enumeration, diff, reconcile, soft-delete.
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.engine import Engine

from _logging import log as _root_log

from ..db import entity_table, soft_delete_rows, utcnow
from ..entity_types import EntityType
from ..instances import normalize_instance_id
from ._chunking import BATCH_SIZE, iter_chunks
from ._fetcher import EntityFetcher
from ._logging import Emitter
from ._types import NEVER_CANCELLED, CancelToken, CleanupResult, Reconciler

log = _root_log.child("CLEANUP")


def maybe_block_mass_delete(
    candidates: int,
    baseline: int,
    *,
    allow_mass_delete: bool,
    ratio: float,
    min_baseline: int,
) -> bool:
    """True when a deletion batch looks like a broken enumeration rather than real deletions."""
    if allow_mass_delete or candidates == 0 or baseline < max(1, min_baseline):
        return False
    threshold = int(baseline * (ratio if ratio > 0 else 0.5))
    return candidates > threshold


class CleanupService:
    def __init__(
        self,
        engine: Engine,
        fetcher: EntityFetcher,
        instance_id: str,
        reconciler: Reconciler,
        *,
        allow_mass_delete: bool = False,
        mass_delete_ratio: float = 0.5,
        mass_delete_min_baseline: int = 50,
        emitter: Emitter | None = None,
    ):
        self.engine = engine
        self.fetcher = fetcher
        self.instance_id = normalize_instance_id(instance_id)
        self.reconciler = reconciler
        self.allow_mass_delete = allow_mass_delete
        self.mass_delete_ratio = mass_delete_ratio
        self.mass_delete_min_baseline = mass_delete_min_baseline
        self.emitter = emitter or Emitter(None, module="CLEANUP")

    def _local_alive_ids(self, et: EntityType) -> set[str]:
        t = entity_table(et)
        stmt = select(t.c.id).where(t.c.instance_id == self.instance_id, t.c.deleted_at.is_(None))
        with self.engine.connect() as conn:
            return {r[0] for r in conn.execution_options(yield_per=BATCH_SIZE * 10).execute(stmt)}

    def _scan(self, et: EntityType, cancel: CancelToken) -> tuple[set[str], int, int]:
        remote: set[str] = set()
        remote_count = 0
        for page in self.fetcher.iter_id_pages(et, cancel):
            remote.update(page.items)
            remote_count = int(page.total or 0)
        local = self._local_alive_ids(et)
        return local - remote, remote_count, len(local)

    def find_deleted_candidates(self, entity_type: EntityType, cancel: CancelToken = NEVER_CANCELLED) -> set[str]:
        return self._scan(EntityType.parse(entity_type), cancel)[0]

    def run(self, entity_type: EntityType, cancel: CancelToken = NEVER_CANCELLED) -> CleanupResult:
        et = EntityType.parse(entity_type)
        result = CleanupResult(entity_type=et)
        candidates, result.remote_count, baseline = self._scan(et, cancel)
        result.candidates = len(candidates)
        if not candidates:
            log.debug("nothing to clean", instance=self.instance_id, type=et.value, remote=result.remote_count)
            return result

        if maybe_block_mass_delete(
            len(candidates),
            baseline,
            allow_mass_delete=self.allow_mass_delete,
            ratio=self.mass_delete_ratio,
            min_baseline=self.mass_delete_min_baseline,
        ):
            result.blocked = True
            self.emitter.emit(
                "mass_delete:blocked",
                instance=self.instance_id,
                type=et.value,
                attempted=len(candidates),
                baseline=baseline,
                remote=result.remote_count,
            )
            return result

        # Reconcile first: a matched candidate has its user data moved and is
        # soft-deleted by the reconciler; the rest are soft-deleted here.
        # Other candidates of this batch are vanishing too and never survive.
        unmatched: list[str] = []
        for cid in sorted(candidates):
            outcome = self.reconciler.attempt(et, cid, self.instance_id, exclude=candidates)
            if outcome.matched:
                result.reconciled += 1
            else:
                unmatched.append(cid)

        t = entity_table(et)
        now = utcnow()
        for chunk in iter_chunks(unmatched, BATCH_SIZE):
            with self.engine.begin() as conn:
                result.soft_deleted += soft_delete_rows(conn, t, self.instance_id, chunk, now)

        log.info(
            "cleanup done",
            instance=self.instance_id,
            type=et.value,
            remote=result.remote_count,
            local=baseline,
            candidates=result.candidates,
            reconciled=result.reconciled,
            soft_deleted=result.soft_deleted,
        )
        return result
