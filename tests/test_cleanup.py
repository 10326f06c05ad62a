from __future__ import annotations

from sqlalchemy import select

from conftest import item, scene, sync_all
from services.reconciliation import MergeReconciliationService
from sm_platform.db import entity_table
from sm_platform.entity_types import EntityType
from sm_platform.orchestrator import CleanupService, EntityFetcher
from sm_platform.orchestrator._cleanup import maybe_block_mass_delete


def _cleanup(engine, remote, **kw) -> CleanupService:
    fetcher = EntityFetcher(remote, page_size=50, id_page_size=2, sleep=lambda _s: None)
    return CleanupService(engine, fetcher, "default", MergeReconciliationService(engine), **kw)


def _deleted(engine, et: EntityType) -> set[str]:
    t = entity_table(et)
    with engine.connect() as conn:
        return {r[0] for r in conn.execute(select(t.c.id).where(t.c.deleted_at.is_not(None)))}


def test_candidates_are_local_ids_missing_upstream(engine, fake_remote) -> None:
    fake_remote.add(EntityType.SCENE, *(scene(i) for i in range(1, 6)))
    sync_all(engine, fake_remote)
    fake_remote.remove(EntityType.SCENE, 2, 4)
    assert _cleanup(engine, fake_remote).find_deleted_candidates(EntityType.SCENE) == {"2", "4"}


def test_cleanup_only_touches_scanned_type(engine, fake_remote) -> None:
    fake_remote.add(EntityType.TAG, item(EntityType.TAG, 1), item(EntityType.TAG, 2))
    fake_remote.add(EntityType.SCENE, scene(1), scene(2), scene(3))
    sync_all(engine, fake_remote)
    fake_remote.remove(EntityType.TAG, 2)
    fake_remote.remove(EntityType.SCENE, 3)

    res = _cleanup(engine, fake_remote).run(EntityType.SCENE)

    assert (res.candidates, res.soft_deleted, res.reconciled) == (1, 1, 0)
    assert res.remote_count == 2
    assert _deleted(engine, EntityType.SCENE) == {"3"}
    assert _deleted(engine, EntityType.TAG) == set()


def test_already_deleted_rows_are_not_candidates(engine, fake_remote) -> None:
    fake_remote.add(EntityType.SCENE, scene(1), scene(2))
    sync_all(engine, fake_remote)
    fake_remote.remove(EntityType.SCENE, 2)
    svc = _cleanup(engine, fake_remote)
    assert svc.run(EntityType.SCENE).soft_deleted == 1
    again = svc.run(EntityType.SCENE)
    assert (again.candidates, again.soft_deleted) == (0, 0)


def test_mass_delete_guard_blocks_and_leaves_rows(engine, fake_remote) -> None:
    fake_remote.add(EntityType.PERFORMER, *(item(EntityType.PERFORMER, i) for i in range(1, 5)))
    sync_all(engine, fake_remote)
    fake_remote.remove(EntityType.PERFORMER, 1, 2, 3)

    res = _cleanup(engine, fake_remote, mass_delete_min_baseline=2).run(EntityType.PERFORMER)
    assert res.blocked is True
    assert res.soft_deleted == 0
    assert _deleted(engine, EntityType.PERFORMER) == set()

    res = _cleanup(engine, fake_remote, mass_delete_min_baseline=2, allow_mass_delete=True).run(EntityType.PERFORMER)
    assert res.blocked is False
    assert _deleted(engine, EntityType.PERFORMER) == {"1", "2", "3"}


def test_mass_delete_rule() -> None:
    kw = dict(allow_mass_delete=False, ratio=0.5, min_baseline=50)
    assert maybe_block_mass_delete(60, 100, **kw) is True
    assert maybe_block_mass_delete(50, 100, **kw) is False
    assert maybe_block_mass_delete(40, 49, **kw) is False
    assert maybe_block_mass_delete(0, 100, **kw) is False
