# StashMirror test fixtures
from __future__ import annotations

import sys
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from sm_platform.db import create_db_engine, init_db  # noqa: E402
from sm_platform.entity_types import SYNC_ORDER, EntityType  # noqa: E402
from sm_platform.errors import RemoteAPIError, TransientFetchError  # noqa: E402
from sm_platform.orchestrator import EntityFetcher, EntitySyncer, SyncMode  # noqa: E402


@pytest.fixture()
def config_base(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("CONFIG_BASE", str(tmp_path))
    return tmp_path


@pytest.fixture()
def engine():
    eng = create_db_engine("sqlite://")
    init_db(eng)
    yield eng
    eng.dispose()


def _naive(ts: str) -> datetime:
    s = ts[:-1] + "+00:00" if ts.endswith("Z") else ts
    return datetime.fromisoformat(s).replace(tzinfo=None)


def item(et: EntityType | str, id: Any, updated_at: str = "2024-01-01T00:00:00Z", **extra: Any) -> dict[str, Any]:
    et = EntityType.parse(et)
    label = et.kind.label_column
    out: dict[str, Any] = {
        "id": str(id),
        label: extra.pop(label, f"{et.value} {id}"),
        "created_at": extra.pop("created_at", "2023-06-01T00:00:00Z"),
        "updated_at": updated_at,
    }
    out.update(extra)
    return out


def scene(id: Any, updated_at: str = "2024-01-01T00:00:00Z", phash: str | None = None, **extra: Any) -> dict[str, Any]:
    if phash is not None:
        extra["files"] = [{"duration": 60.0, "fingerprints": [{"type": "phash", "value": phash}]}]
    return item(EntityType.SCENE, id, updated_at, **extra)


class FakeRemote:
    """In-process catalog source with the same paging contract as the GraphQL client."""

    def __init__(self) -> None:
        self.items: dict[EntityType, dict[str, dict[str, Any]]] = {et: {} for et in EntityType}
        self.since_seen: dict[EntityType, list[str | None]] = defaultdict(list)
        self.page_calls: dict[EntityType, int] = defaultdict(int)
        self.fail_types: set[EntityType] = set()
        self.transient_failures = 0
        self.on_page: Callable[[EntityType, int], None] | None = None

    def add(self, et: EntityType | str, *items: dict[str, Any]) -> "FakeRemote":
        et = EntityType.parse(et)
        for it in items:
            self.items[et][str(it["id"])] = dict(it)
        return self

    def remove(self, et: EntityType | str, *ids: Any) -> None:
        et = EntityType.parse(et)
        for i in ids:
            self.items[et].pop(str(i), None)

    def _sorted(self, et: EntityType) -> list[dict[str, Any]]:
        return sorted(self.items[et].values(), key=lambda x: int(x["id"]))

    def _maybe_fail(self, et: EntityType) -> None:
        if et in self.fail_types:
            raise RemoteAPIError(f"{et.value} exploded")
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise TransientFetchError("connection reset")

    def find_page(self, et, *, page, per_page, updated_since=None):
        self._maybe_fail(et)
        if page == 1:
            self.since_seen[et].append(updated_since)
        self.page_calls[et] += 1
        rows = self._sorted(et)
        if updated_since:
            floor = datetime.fromisoformat(updated_since)
            rows = [r for r in rows if _naive(r["updated_at"]) > floor]
        start = (page - 1) * per_page
        out = [dict(r) for r in rows[start : start + per_page]]
        if self.on_page is not None:
            self.on_page(et, page)
        return out, len(rows)

    def find_ids(self, et, *, page, per_page):
        self._maybe_fail(et)
        rows = self._sorted(et)
        start = (page - 1) * per_page
        return [r["id"] for r in rows[start : start + per_page]], len(rows)

    def find_one(self, et, entity_id):
        self._maybe_fail(et)
        it = self.items[et].get(str(entity_id))
        return dict(it) if it else None


@pytest.fixture()
def fake_remote() -> FakeRemote:
    return FakeRemote()


def sync_all(engine, remote: FakeRemote, instance_id: str = "default") -> None:
    fetcher = EntityFetcher(remote, page_size=50, sleep=lambda _s: None)
    syncer = EntitySyncer(engine, fetcher, instance_id)
    for et in SYNC_ORDER:
        syncer.sync(et, SyncMode.FULL)


def mirror_config(**sync: Any) -> dict[str, Any]:
    return {
        "instances": [{"id": "default", "url": "http://stash.local:9999", "name": "Main"}],
        "sync": {"page_size": 50, "page_retries": 2, "retry_backoff_sec": 0, **sync},
        "query": {"exclusion_chunk_size": 500, "max_bound_params": 900, "max_per_page": 500},
        "scheduling": {"enabled": False},
    }
