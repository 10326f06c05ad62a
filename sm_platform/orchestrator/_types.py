# sm_platform/orchestrator/_types.py
# Value types shared by the sync engine.
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

import threading
from collections.abc import Collection
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from ..entity_types import EntityType
from ..errors import SyncCancelled


class SyncMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class SyncWindow:
    """The incremental lower bound of one entity type on one instance.

    Only SyncStateStore.window() builds these from stored state, so a window
    always carries the type it was read for and EntitySyncer can refuse a
    window that belongs to a different type.
    """

    instance_id: str
    entity_type: EntityType
    since: str | None = None


@dataclass(frozen=True)
class Page:
    items: list[Any]
    next_token: int | None
    total: int | None = None

    @property
    def done(self) -> bool:
        return self.next_token is None


@dataclass
class SyncResult:
    entity_type: EntityType
    mode: SyncMode
    created: int = 0
    updated: int = 0
    scanned: int = 0
    duration_ms: int = 0
    max_updated_at: str | None = None

    @property
    def unchanged(self) -> int:
        return max(0, self.scanned - self.created - self.updated)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["entity_type"] = self.entity_type.value
        d["mode"] = self.mode.value
        return d


@dataclass
class CleanupResult:
    entity_type: EntityType
    remote_count: int = 0
    candidates: int = 0
    reconciled: int = 0
    soft_deleted: int = 0
    blocked: bool = False

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["entity_type"] = self.entity_type.value
        return d


@dataclass
class RunReport:
    instance_id: str
    mode: SyncMode
    status: RunState
    accepted: bool = True
    started_at: datetime | None = None
    finished_at: datetime | None = None
    results: dict[EntityType, SyncResult] = field(default_factory=dict)
    cleanup: dict[EntityType, CleanupResult] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.accepted and self.status is RunState.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "mode": self.mode.value,
            "status": self.status.value,
            "accepted": self.accepted,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "results": {k.value: v.to_dict() for k, v in self.results.items()},
            "cleanup": {k.value: v.to_dict() for k, v in self.cleanup.items()},
            "errors": dict(self.errors),
        }


class CancelToken:
    def __init__(self) -> None:
        self._ev = threading.Event()

    def cancel(self) -> None:
        self._ev.set()

    @property
    def cancelled(self) -> bool:
        return self._ev.is_set()

    def check(self, where: str = "") -> None:
        if self._ev.is_set():
            raise SyncCancelled(where or "cancelled")


NEVER_CANCELLED = CancelToken()


class CatalogSource(Protocol):
    def find_page(
        self,
        et: EntityType,
        *,
        page: int,
        per_page: int,
        updated_since: str | None = None,
    ) -> tuple[list[dict[str, Any]], int | None]: ...
    def find_ids(self, et: EntityType, *, page: int, per_page: int) -> tuple[list[str], int | None]: ...
    def find_one(self, et: EntityType, entity_id: str) -> dict[str, Any] | None: ...


@dataclass(frozen=True)
class FetchFilter:
    updated_since: str | None = None

    @classmethod
    def from_window(cls, window: SyncWindow | None) -> "FetchFilter":
        return cls(updated_since=window.since if window else None)


class ReconcileOutcomeLike(Protocol):
    matched: bool


class Reconciler(Protocol):
    def attempt(
        self, entity_type: EntityType, source_id: str, instance_id: str, *, exclude: Collection[str] = ()
    ) -> ReconcileOutcomeLike: ...
