from __future__ import annotations

import pytest

from sm_platform.entity_types import EntityType
from sm_platform.errors import WindowMismatchError
from sm_platform.orchestrator import SyncMode, SyncResult, SyncStateStore


def _result(et: EntityType, mode: SyncMode, newest: str | None, scanned: int = 1) -> SyncResult:
    return SyncResult(entity_type=et, mode=mode, scanned=scanned, max_updated_at=newest)


def test_get_absent_before_first_sync(engine) -> None:
    store = SyncStateStore(engine)
    assert store.get("default", EntityType.SCENE) is None
    w = store.window("default", EntityType.SCENE)
    assert w.entity_type is EntityType.SCENE
    assert w.since is None


def test_types_are_independent(engine) -> None:
    store = SyncStateStore(engine)
    store.record("default", EntityType.PERFORMER, SyncMode.INCREMENTAL, _result(EntityType.PERFORMER, SyncMode.INCREMENTAL, "2024-01-05T00:00:00Z"))
    store.record("default", EntityType.SCENE, SyncMode.FULL, _result(EntityType.SCENE, SyncMode.FULL, "2024-01-01T00:00:00Z"))

    perf = store.get("default", EntityType.PERFORMER)
    sc = store.get("default", EntityType.SCENE)
    assert perf is not None and sc is not None
    assert perf.last_incremental_sync == "2024-01-05T00:00:00Z"
    assert perf.last_full_sync is None
    assert sc.last_full_sync == "2024-01-01T00:00:00Z"
    assert sc.last_incremental_sync is None
    assert store.get("default", EntityType.TAG) is None
    assert store.window("default", EntityType.SCENE).since == "2024-01-01T00:00:00Z"


def test_instances_are_independent(engine) -> None:
    store = SyncStateStore(engine)
    store.record("a", EntityType.TAG, SyncMode.FULL, _result(EntityType.TAG, SyncMode.FULL, "2024-02-01T00:00:00Z"))
    assert store.get("b", EntityType.TAG) is None
    assert [s.instance_id for s in store.list_states()] == ["a"]


def test_since_is_later_of_full_and_incremental(engine) -> None:
    store = SyncStateStore(engine)
    store.record("default", EntityType.TAG, SyncMode.FULL, _result(EntityType.TAG, SyncMode.FULL, "2024-03-01T00:00:00Z"))
    store.record("default", EntityType.TAG, SyncMode.INCREMENTAL, _result(EntityType.TAG, SyncMode.INCREMENTAL, "2024-02-01T00:00:00Z"))
    assert store.window("default", EntityType.TAG).since == "2024-03-01T00:00:00Z"


def test_record_never_moves_timestamp_backwards(engine) -> None:
    store = SyncStateStore(engine)
    store.record("default", EntityType.TAG, SyncMode.INCREMENTAL, _result(EntityType.TAG, SyncMode.INCREMENTAL, "2024-03-01T00:00:00Z"))
    st = store.record("default", EntityType.TAG, SyncMode.INCREMENTAL, _result(EntityType.TAG, SyncMode.INCREMENTAL, None, scanned=0))
    assert st.last_incremental_sync == "2024-03-01T00:00:00Z"
    assert st.last_sync_count == 0


def test_record_refuses_result_of_other_type(engine) -> None:
    store = SyncStateStore(engine)
    with pytest.raises(WindowMismatchError):
        store.record("default", EntityType.SCENE, SyncMode.FULL, _result(EntityType.PERFORMER, SyncMode.FULL, "2024-01-01T00:00:00Z"))
    assert store.get("default", EntityType.SCENE) is None


def test_reset_one_type_or_all(engine) -> None:
    store = SyncStateStore(engine)
    for et in (EntityType.TAG, EntityType.SCENE):
        store.record("default", et, SyncMode.FULL, _result(et, SyncMode.FULL, "2024-01-01T00:00:00Z"))
    assert store.reset("default", EntityType.TAG) == 1
    assert store.get("default", EntityType.TAG) is None
    assert store.get("default", EntityType.SCENE) is not None
    assert store.reset("default") == 1
    assert store.list_states() == []
