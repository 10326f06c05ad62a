from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import item, mirror_config, scene, sync_all
from sm_platform.config_base import load_config
from sm_platform.db import entity_table, soft_delete_rows
from sm_platform.entity_types import EntityType
from stashmirror import create_app

USER = {"X-User-Id": "u1"}
ADMIN = {"X-User-Id": "boss", "X-Admin": "true"}


@pytest.fixture()
def app(config_base, engine, fake_remote):
    fake_remote.add(EntityType.TAG, item(EntityType.TAG, 1))
    fake_remote.add(EntityType.PERFORMER, item(EntityType.PERFORMER, 7))
    fake_remote.add(
        EntityType.SCENE,
        scene(1, "2024-01-01T00:00:00Z", phash="F1", performers=[{"id": "7"}], details="first cut"),
        scene(2, "2024-01-02T00:00:00Z", phash="F1"),
        scene(3, "2024-01-03T00:00:00Z", phash="F2"),
    )
    return create_app(mirror_config(), engine, source_factory=lambda _inst: fake_remote, start_scheduler=False)


@pytest.fixture()
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def svc(app):
    return app.state.mirror


@pytest.fixture()
def synced(svc, engine, fake_remote):
    sync_all(engine, fake_remote)
    return svc


def _soft_delete(engine, *ids: str) -> None:
    with engine.begin() as conn:
        soft_delete_rows(conn, entity_table(EntityType.SCENE), "default", list(ids))


# ── sync ────────────────────────────────────────────────────────────────────


def test_full_sync_runs_in_background(client, svc) -> None:
    r = client.post("/api/sync/full")
    assert r.status_code == 202
    assert r.json()["started"] == ["default"]
    svc.orchestrator.wait(timeout=10)

    st = client.get("/api/sync/status").json()
    assert st["in_progress"] is False
    assert st["instances"]["default"]["last_outcome"] == "completed"
    stats = client.get("/api/sync/stats").json()
    assert stats["counts"]["default"]["scene"]["alive"] == 3


def test_sync_rejected_while_running(client, svc) -> None:
    lock = svc.orchestrator._slot("default").lock
    lock.acquire()
    try:
        r = client.post("/api/sync/incremental")
    finally:
        lock.release()
    assert r.status_code == 409
    assert r.json()["rejected"] == ["default"]


def test_sync_unknown_instance(client) -> None:
    assert client.post("/api/sync/full", params={"instance_id": "nope"}).status_code == 404


def test_reset_state(client, synced) -> None:
    synced.orchestrator.run_full()
    assert client.post("/api/sync/reset", json={"instance_id": "default", "entity_type": "nonsense"}).status_code == 400
    r = client.post("/api/sync/reset", json={"instance_id": "default", "entity_type": "scene"})
    assert r.json() == {"ok": True, "removed": 1}


def test_refresh_single_entity(client, svc) -> None:
    assert client.post("/api/sync/refresh", json={"entity_type": "tag", "entity_id": "1"}).status_code == 200
    assert client.post("/api/sync/refresh", json={"entity_type": "tag", "entity_id": "99"}).status_code == 404
    assert client.post("/api/sync/refresh", json={"entity_type": "blob", "entity_id": "1"}).status_code == 400


# ── library ─────────────────────────────────────────────────────────────────


def test_find_requires_user(client, synced) -> None:
    assert client.post("/api/library/scenes/find", json={}).status_code == 401


def test_find_applies_exclusions_and_flattens_rows(client, synced) -> None:
    synced.user_data.hide("u1", EntityType.PERFORMER, "7")
    r = client.post("/api/library/scenes/find", json={"sort": "id", "direction": "asc"}, headers=USER)
    assert r.status_code == 200
    body = r.json()
    assert [i["id"] for i in body["items"]] == ["2", "3"]
    assert body["total"] == 2
    assert body["seed"] is None
    first = body["items"][0]
    assert "data" not in first and "content_hash" not in first
    assert first["title"] == "scene 2"

    other = client.post("/api/library/scenes/find", json={"sort": "id", "direction": "asc"}, headers={"X-User-Id": "u2"})
    assert other.json()["items"][0]["details"] == "first cut"


def test_find_include_deleted_is_admin_only(client, synced, engine) -> None:
    _soft_delete(engine, "3")
    payload = {"include_deleted": True, "sort": "id", "direction": "asc"}
    assert client.post("/api/library/scene/find", json=payload, headers=USER).status_code == 403
    r = client.post("/api/library/scene/find", json=payload, headers=ADMIN)
    assert [i["id"] for i in r.json()["items"]] == ["1", "2", "3"]


def test_find_accepts_plural_type_names(client, synced) -> None:
    r = client.post("/api/library/galleries/find", json={}, headers=USER)
    assert r.status_code == 200
    assert r.json()["total"] == 0


def test_find_random_sort_returns_seed(client, synced) -> None:
    r = client.post("/api/library/scene/find", json={"sort": "random"}, headers=USER).json()
    assert r["seed"]
    again = client.post("/api/library/scene/find", json={"sort": "random", "seed": r["seed"]}, headers=USER).json()
    assert [i["id"] for i in again["items"]] == [i["id"] for i in r["items"]]


def test_find_rejects_bad_requests(client, synced) -> None:
    assert client.post("/api/library/scene/find", json={"sort": "name"}, headers=USER).status_code == 400
    assert client.post("/api/library/widgets/find", json={}, headers=USER).status_code == 400
    assert client.post("/api/library/scene/find", json={"page": 0}, headers=USER).status_code == 422


# ── exclusions ──────────────────────────────────────────────────────────────


def test_hide_and_counts(client, synced) -> None:
    assert client.post("/api/exclusions/hide", json={"entity_type": "scene", "entity_id": "2"}).status_code == 401
    r = client.post("/api/exclusions/hide", json={"entity_type": "performer", "entity_id": "7"}, headers=USER)
    assert r.json() == {"ok": True, "changed": True}

    counts = client.get("/api/exclusions", headers=USER).json()
    # Tag 1 is linked to nothing, so it is always hidden as empty.
    assert counts["total"] == 3
    assert counts["counts"]["scene"] == 1
    assert counts["counts"]["tag"] == 1

    client.post("/api/exclusions/unhide", json={"entity_type": "performer", "entity_id": "7"}, headers=USER)
    assert client.get("/api/exclusions", headers=USER).json()["total"] == 1


def test_restrictions_are_admin_only(client, synced) -> None:
    rule = {"user_id": "u1", "entity_type": "scene", "mode": "INCLUDE", "entity_ids": ["1"]}
    assert client.put("/api/exclusions/restrictions", json=rule, headers=USER).status_code == 403
    assert client.put("/api/exclusions/restrictions", json=rule, headers=ADMIN).json()["mode"] == "INCLUDE"
    assert client.get("/api/exclusions", headers=USER).json()["counts"]["scene"] == 2

    r = client.delete("/api/exclusions/restrictions", params={"user_id": "u1", "entity_type": "scene"}, headers=ADMIN)
    assert r.json()["changed"] is True


# ── merge reconciliation ────────────────────────────────────────────────────


def test_manual_reconciliation_flow(client, synced, engine) -> None:
    synced.user_data.record_play("u1", "default", "1", duration=30.0)
    _soft_delete(engine, "1")

    orphans = client.get("/api/admin/merge/orphaned-scenes").json()
    assert orphans["total"] == 1 and orphans["items"][0]["id"] == "1"

    matches = client.get("/api/admin/merge/orphaned-scenes/1/matches").json()["matches"]
    assert [m["id"] for m in matches] == ["2"]
    assert matches[0]["recommended"] is True

    r = client.post(
        "/api/admin/merge/orphaned-scenes/1/reconcile",
        json={"target_id": "2"},
        headers={"X-User-Id": "boss"},
    )
    assert r.status_code == 200
    out = r.json()
    assert out["matched"] is True
    assert out["transfers"][0]["reconciled_by"] == "boss"
    assert out["transfers"][0]["automatic"] is False

    recs = client.get("/api/admin/merge/records", params={"source_id": "1"}).json()["items"]
    assert len(recs) == 1 and recs[0]["play_count_transferred"] == 1
    assert client.get("/api/admin/merge/orphaned-scenes").json()["total"] == 0


def test_reconcile_errors(client, synced, engine) -> None:
    _soft_delete(engine, "3")
    r = client.post("/api/admin/merge/orphaned-scenes/1/reconcile", json={"target_id": "3"})
    assert r.status_code == 409
    r = client.post("/api/admin/merge/orphaned-scenes/404/reconcile", json={"target_id": "2"})
    assert r.status_code == 404


def test_discard_orphaned_data(client, synced, engine) -> None:
    synced.user_data.set_rating("u1", "default", EntityType.SCENE, "3", favorite=True)
    assert client.post("/api/admin/merge/orphaned-scenes/3/discard", json={}).status_code == 400
    _soft_delete(engine, "3")
    r = client.post("/api/admin/merge/orphaned-scenes/3/discard", json={})
    assert r.json()["removed"]["ratings"] == 1
    assert client.post("/api/admin/merge/orphaned-scenes/999/discard", json={}).status_code == 404


def test_reconcile_all(client, synced, engine) -> None:
    synced.user_data.record_play("u1", "default", "1")
    synced.user_data.record_play("u1", "default", "3")
    _soft_delete(engine, "1", "3")
    assert client.post("/api/admin/merge/reconcile-all", json={}).json() == {"ok": True, "reconciled": 1, "skipped": 1}


# ── scheduling ──────────────────────────────────────────────────────────────


def test_scheduling_config_roundtrip(client, config_base) -> None:
    assert client.get("/api/scheduling").json()["mode"] == "hourly"
    assert client.post("/api/scheduling", json={"mode": "weekly"}).status_code == 400

    r = client.post("/api/scheduling", json={"enabled": False, "mode": "daily_time", "daily_time": "04:00"})
    assert r.json()["ok"] is True
    assert load_config()["scheduling"]["daily_time"] == "04:00"
    assert client.get("/api/scheduling").json()["mode"] == "daily_time"


def test_scheduling_manual_run(client, svc) -> None:
    r = client.post("/api/scheduling/run", json={"mode": "full"})
    assert r.status_code == 200
    svc.orchestrator.wait(timeout=10)
    st = client.get("/api/scheduling/status").json()
    assert st["last_run_mode"] == "full"
    assert st["runs"] == 1
