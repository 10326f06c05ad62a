from __future__ import annotations

import pytest

from conftest import FakeRemote, item, mirror_config, scene
from services.statistics import CatalogStats
from sm_platform.entity_types import SYNC_ORDER, EntityType
from sm_platform.errors import ConfigError
from sm_platform.orchestrator import RunState, SyncMode, SyncOrchestrator, SyncResult, SyncStateStore


def _orch(engine, remote: FakeRemote, **sync) -> SyncOrchestrator:
    return SyncOrchestrator(
        config=mirror_config(**sync),
        engine=engine,
        source_factory=lambda _inst: remote,
        sleep=lambda _s: None,
    )


def _catalog(remote: FakeRemote) -> FakeRemote:
    remote.add(EntityType.TAG, item(EntityType.TAG, 1))
    remote.add(EntityType.PERFORMER, item(EntityType.PERFORMER, 1, "2024-01-06T00:00:00Z"))
    remote.add(EntityType.SCENE, scene(1, "2024-01-02T00:00:00Z"), scene(2, "2024-01-03T00:00:00Z"))
    return remote


def test_each_type_uses_its_own_window(engine, fake_remote) -> None:
    _catalog(fake_remote)
    store = SyncStateStore(engine)
    store.record(
        "default", EntityType.PERFORMER, SyncMode.INCREMENTAL,
        SyncResult(EntityType.PERFORMER, SyncMode.INCREMENTAL, max_updated_at="2024-01-05T00:00:00Z"),
    )
    store.record(
        "default", EntityType.SCENE, SyncMode.INCREMENTAL,
        SyncResult(EntityType.SCENE, SyncMode.INCREMENTAL, max_updated_at="2024-01-01T00:00:00Z"),
    )

    [report] = _orch(engine, fake_remote).run_incremental()

    assert report.status is RunState.COMPLETED
    assert fake_remote.since_seen[EntityType.PERFORMER] == ["2024-01-04T23:59:59"]
    assert fake_remote.since_seen[EntityType.SCENE] == ["2023-12-31T23:59:59"]
    assert fake_remote.since_seen[EntityType.TAG] == [None]
    assert report.results[EntityType.TAG].mode is SyncMode.FULL
    assert report.results[EntityType.SCENE].created == 2
    assert store.window("default", EntityType.SCENE).since == "2024-01-03T00:00:00Z"
    assert store.window("default", EntityType.PERFORMER).since == "2024-01-06T00:00:00Z"


def test_second_incremental_changes_nothing(engine, fake_remote) -> None:
    _catalog(fake_remote)
    orch = _orch(engine, fake_remote)
    orch.run_incremental()
    [again] = orch.run_incremental()
    assert again.status is RunState.COMPLETED
    assert all(r.created == 0 and r.updated == 0 for r in again.results.values())
    assert again.results[EntityType.SCENE].mode is SyncMode.INCREMENTAL
    # Types that never saw an item have no window yet.
    assert again.results[EntityType.STUDIO].mode is SyncMode.FULL


def test_concurrent_run_is_rejected(engine, fake_remote) -> None:
    _catalog(fake_remote)
    orch = _orch(engine, fake_remote)
    nested = []

    def _reenter(et, page):
        if et is EntityType.TAG and not nested:
            nested.extend(orch.run_incremental())

    fake_remote.on_page = _reenter
    [outer] = orch.run_full()

    assert outer.status is RunState.COMPLETED
    assert len(nested) == 1
    assert nested[0].accepted is False
    assert nested[0].status is RunState.RUNNING


def test_cancel_stops_before_next_page(engine, fake_remote) -> None:
    _catalog(fake_remote)
    fake_remote.add(EntityType.SCENE, scene(3, "2024-01-04T00:00:00Z"))
    orch = _orch(engine, fake_remote, page_size=2)
    stats = CatalogStats(engine)
    orch.post_sync_hooks.append(stats.on_run_finished)

    def _cancel_on_scene(et, page):
        if et is EntityType.SCENE and page == 1:
            orch.cancel()

    fake_remote.on_page = _cancel_on_scene
    [report] = orch.run_full()

    store = SyncStateStore(engine)
    assert report.status is RunState.CANCELLED
    assert fake_remote.page_calls[EntityType.SCENE] == 1
    assert EntityType.IMAGE not in fake_remote.page_calls
    assert store.get("default", EntityType.TAG) is not None
    assert store.get("default", EntityType.SCENE) is None
    assert stats.overview()["runs"] == []
    assert orch.is_running() is False


def test_failed_type_does_not_stop_the_run(engine, fake_remote) -> None:
    _catalog(fake_remote)
    fake_remote.fail_types.add(EntityType.PERFORMER)
    [report] = _orch(engine, fake_remote).run_full()

    assert report.status is RunState.FAILED
    assert "performer" in report.errors
    assert EntityType.SCENE in report.results
    assert EntityType.PERFORMER not in report.cleanup
    assert EntityType.SCENE in report.cleanup
    assert SyncStateStore(engine).get("default", EntityType.PERFORMER) is None


def test_full_run_cleans_up_vanished_entities(engine, fake_remote) -> None:
    _catalog(fake_remote)
    orch = _orch(engine, fake_remote)
    orch.run_full()
    fake_remote.remove(EntityType.SCENE, 2)
    [report] = orch.run_full()
    assert report.cleanup[EntityType.SCENE].soft_deleted == 1
    assert report.cleanup[EntityType.TAG].candidates == 0


def test_background_start_wait_and_status(engine, fake_remote) -> None:
    _catalog(fake_remote)
    orch = _orch(engine, fake_remote)
    started, rejected = orch.start(SyncMode.FULL)
    orch.wait(timeout=10)

    assert (started, rejected) == (["default"], [])
    st = orch.status()
    assert st["in_progress"] is False
    assert st["instances"]["default"]["last_outcome"] == "completed"
    assert {s["entity_type"] for s in st["sync_state"]} == {et.value for et in SYNC_ORDER}


def test_post_sync_hook_refreshes_stats(engine, fake_remote) -> None:
    _catalog(fake_remote)
    orch = _orch(engine, fake_remote)
    stats = CatalogStats(engine)

    def _boom(_report):
        raise RuntimeError("hook broke")

    orch.post_sync_hooks.extend([_boom, stats.on_run_finished])
    [report] = orch.run_full()

    assert report.status is RunState.COMPLETED
    ov = stats.overview()
    assert ov["counts"]["default"]["scene"] == {"alive": 2, "deleted": 0}
    assert ov["runs"][0]["created"] == 4


def test_unknown_instance_is_a_config_error(engine, fake_remote) -> None:
    with pytest.raises(ConfigError):
        _orch(engine, fake_remote).run_full("nope")


def test_reset_and_refresh_entity(engine, fake_remote) -> None:
    _catalog(fake_remote)
    orch = _orch(engine, fake_remote)
    orch.run_full()
    assert orch.reset_state("default", EntityType.SCENE) == 1
    assert SyncStateStore(engine).get("default", EntityType.SCENE) is None
    assert orch.refresh_entity("default", EntityType.TAG, "1") is True
    assert orch.refresh_entity("default", EntityType.TAG, "99") is False
