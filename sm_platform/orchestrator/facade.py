# sm_platform/orchestrator/facade.py
# Sync orchestrator: per-instance single-flight runs over all entity types.
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.engine import Engine

from ..db import utcnow
from ..entity_types import SYNC_ORDER, EntityType
from ..errors import SyncCancelled
from ..instances import RemoteInstance, get_instance, list_instances, normalize_instance_id
from ._cleanup import CleanupService
from ._fetcher import DEFAULT_ID_PAGE_SIZE, DEFAULT_PAGE_SIZE, EntityFetcher
from ._logging import Emitter
from ._state_store import SyncStateStore
from ._syncer import EntitySyncer
from ._types import CancelToken, CatalogSource, Reconciler, RunReport, RunState, SyncMode

__all__ = ["SyncOrchestrator"]

SourceFactory = Callable[[RemoteInstance], CatalogSource]
PostSyncHook = Callable[[RunReport], None]


@dataclass
class _Slot:
    lock: threading.Lock = field(default_factory=threading.Lock)
    state: RunState = RunState.IDLE
    last_outcome: RunState | None = None
    mode: SyncMode | None = None
    current_type: EntityType | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    cancel: CancelToken | None = None
    thread: threading.Thread | None = None
    last_report: RunReport | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "last_outcome": self.last_outcome.value if self.last_outcome else None,
            "mode": self.mode.value if self.mode else None,
            "current_type": self.current_type.value if self.current_type else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "last_report": self.last_report.to_dict() if self.last_report else None,
        }


def _default_source_factory(sync_cfg: Mapping[str, Any]) -> SourceFactory:
    from providers.sync._mod_STASH import StashClient, StashConfig

    def _make(inst: RemoteInstance) -> CatalogSource:
        return StashClient(StashConfig.from_instance(inst, sync_cfg))

    return _make


@dataclass
class SyncOrchestrator:
    config: Mapping[str, Any]
    engine: Engine
    source_factory: SourceFactory | None = None
    reconciler: Reconciler | None = None
    on_progress: Callable[[str], None] | None = None
    sleep: Callable[[float], None] = time.sleep
    post_sync_hooks: list[PostSyncHook] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.cfg: dict[str, Any] = dict(self.config or {})
        self.sync_cfg: dict[str, Any] = dict(self.cfg.get("sync") or {})
        self.emitter = Emitter(self.on_progress)
        self.emit = self.emitter.emit
        self.state_store = SyncStateStore(self.engine)
        if self.source_factory is None:
            self.source_factory = _default_source_factory(self.sync_cfg)
        if self.reconciler is None:
            from services.reconciliation import MergeReconciliationService

            self.reconciler = MergeReconciliationService(self.engine)
        self._slots: dict[str, _Slot] = {}
        self._slots_lock = threading.Lock()

    # ── instances / slots ──────────────────────────────────────────────────

    def instances(self, instance_id: str | None = None) -> list[RemoteInstance]:
        if instance_id is None:
            return list_instances(self.cfg)
        return [get_instance(self.cfg, instance_id)]

    def _slot(self, instance_id: str) -> _Slot:
        with self._slots_lock:
            slot = self._slots.get(instance_id)
            if slot is None:
                slot = self._slots[instance_id] = _Slot()
            return slot

    def _try_acquire(self, instance_id: str, mode: SyncMode) -> CancelToken | None:
        slot = self._slot(instance_id)
        if not slot.lock.acquire(blocking=False):
            return None
        slot.state = RunState.RUNNING
        slot.mode = mode
        slot.current_type = None
        slot.started_at = utcnow()
        slot.finished_at = None
        slot.cancel = CancelToken()
        return slot.cancel

    def _release(self, instance_id: str, report: RunReport) -> None:
        slot = self._slot(instance_id)
        slot.last_outcome = report.status
        slot.last_report = report
        slot.finished_at = report.finished_at
        slot.current_type = None
        slot.cancel = None
        slot.state = RunState.IDLE
        slot.lock.release()

    def _rejected(self, instance_id: str, mode: SyncMode) -> RunReport:
        self.emit("run:rejected", instance=instance_id, mode=mode.value, reason="already running")
        return RunReport(instance_id=instance_id, mode=mode, status=RunState.RUNNING, accepted=False)

    # ── public API ─────────────────────────────────────────────────────────

    def run_incremental(self, instance_id: str | None = None) -> list[RunReport]:
        return self.run(SyncMode.INCREMENTAL, instance_id)

    def run_full(self, instance_id: str | None = None) -> list[RunReport]:
        return self.run(SyncMode.FULL, instance_id)

    def run(self, mode: SyncMode, instance_id: str | None = None) -> list[RunReport]:
        mode = SyncMode(mode)
        reports: list[RunReport] = []
        for inst in self.instances(instance_id):
            token = self._try_acquire(inst.id, mode)
            if token is None:
                reports.append(self._rejected(inst.id, mode))
                continue
            reports.append(self._run_locked(inst, mode, token))
        return reports

    def start(self, mode: SyncMode, instance_id: str | None = None) -> tuple[list[str], list[str]]:
        """Start runs in background threads. Returns (started, rejected) instance ids."""
        mode = SyncMode(mode)
        started: list[str] = []
        rejected: list[str] = []
        for inst in self.instances(instance_id):
            token = self._try_acquire(inst.id, mode)
            if token is None:
                self._rejected(inst.id, mode)
                rejected.append(inst.id)
                continue
            th = threading.Thread(
                target=self._run_locked,
                args=(inst, mode, token),
                name=f"sync-{inst.id}",
                daemon=True,
            )
            self._slot(inst.id).thread = th
            th.start()
            started.append(inst.id)
        return started, rejected

    def wait(self, instance_id: str | None = None, timeout: float | None = None) -> None:
        with self._slots_lock:
            items = list(self._slots.items())
        for iid, slot in items:
            if instance_id is not None and iid != normalize_instance_id(instance_id):
                continue
            th = slot.thread
            if th is not None and th is not threading.current_thread():
                th.join(timeout)

    def cancel(self, instance_id: str | None = None) -> list[str]:
        out: list[str] = []
        with self._slots_lock:
            items = list(self._slots.items())
        for iid, slot in items:
            if instance_id is not None and iid != normalize_instance_id(instance_id):
                continue
            token = slot.cancel
            if slot.state is RunState.RUNNING and token is not None:
                token.cancel()
                out.append(iid)
        if out:
            self.emit("run:cancel_requested", instances=out)
        return out

    def is_running(self, instance_id: str | None = None) -> bool:
        with self._slots_lock:
            items = list(self._slots.items())
        return any(
            s.state is RunState.RUNNING
            for iid, s in items
            if instance_id is None or iid == normalize_instance_id(instance_id)
        )

    def status(self, instance_id: str | None = None) -> dict[str, Any]:
        ids = [i.id for i in self.instances(instance_id)] if instance_id else None
        with self._slots_lock:
            slots = {k: v.to_dict() for k, v in self._slots.items() if ids is None or k in ids}
        for iid in ids or [i.id for i in list_instances(self.cfg)]:
            slots.setdefault(iid, _Slot().to_dict())
        states = self.state_store.list_states(instance_id)
        return {
            "in_progress": any(s["state"] == RunState.RUNNING.value for s in slots.values()),
            "instances": slots,
            "sync_state": [s.to_dict() for s in states],
        }

    def reset_state(self, instance_id: str, entity_type: EntityType | None = None) -> int:
        return self.state_store.reset(instance_id, entity_type)

    def refresh_entity(self, instance_id: str, entity_type: EntityType, entity_id: str) -> bool:
        inst = get_instance(self.cfg, instance_id)
        _, syncer, _ = self._build(inst)
        return syncer.sync_one(entity_type, entity_id)

    # ── run ────────────────────────────────────────────────────────────────

    def _build(self, inst: RemoteInstance) -> tuple[EntityFetcher, EntitySyncer, CleanupService]:
        assert self.source_factory is not None and self.reconciler is not None
        s = self.sync_cfg
        fetcher = EntityFetcher(
            self.source_factory(inst),
            page_size=s.get("page_size", DEFAULT_PAGE_SIZE),
            id_page_size=s.get("cleanup_page_size", DEFAULT_ID_PAGE_SIZE),
            page_retries=int(s.get("page_retries", 3)),
            retry_backoff=float(s.get("retry_backoff_sec", 1.0)),
            sleep=self.sleep,
        )
        syncer = EntitySyncer(self.engine, fetcher, inst.id, emitter=self.emitter)
        cleanup = CleanupService(
            self.engine,
            fetcher,
            inst.id,
            self.reconciler,
            allow_mass_delete=bool(s.get("allow_mass_delete", False)),
            mass_delete_ratio=float(s.get("mass_delete_ratio", 0.5)),
            mass_delete_min_baseline=int(s.get("mass_delete_min_baseline", 50)),
            emitter=self.emitter,
        )
        return fetcher, syncer, cleanup

    def _run_locked(self, inst: RemoteInstance, mode: SyncMode, token: CancelToken) -> RunReport:
        slot = self._slot(inst.id)
        report = RunReport(instance_id=inst.id, mode=mode, status=RunState.RUNNING, started_at=slot.started_at)
        self.emit("run:start", instance=inst.id, mode=mode.value)
        try:
            _, syncer, cleanup = self._build(inst)

            for et in SYNC_ORDER:
                token.check(f"{et.value}:start")
                slot.current_type = et
                self.emit("type:start", instance=inst.id, type=et.value, mode=mode.value)
                try:
                    window = self.state_store.window(inst.id, et) if mode is SyncMode.INCREMENTAL else None
                    res = syncer.sync(et, mode, window, token)
                    # Last step for the type: the stored timestamp marks the window done.
                    self.state_store.record(inst.id, et, res.mode, res)
                except SyncCancelled:
                    raise
                except Exception as e:
                    report.errors[et.value] = f"{type(e).__name__}: {e}"
                    self.emit("type:error", instance=inst.id, type=et.value, error=report.errors[et.value])
                    continue
                report.results[et] = res
                self.emit("type:done", instance=inst.id, **res.to_dict())

            for et in SYNC_ORDER:
                if et.value in report.errors:
                    continue
                token.check(f"cleanup:{et.value}")
                slot.current_type = et
                try:
                    report.cleanup[et] = cleanup.run(et, token)
                except SyncCancelled:
                    raise
                except Exception as e:
                    key = f"cleanup:{et.value}"
                    report.errors[key] = f"{type(e).__name__}: {e}"
                    self.emit("type:error", instance=inst.id, type=et.value, phase="cleanup", error=report.errors[key])
                    continue
                self.emit("cleanup:done", instance=inst.id, **report.cleanup[et].to_dict())

            report.status = RunState.FAILED if report.errors else RunState.COMPLETED
        except SyncCancelled as e:
            report.status = RunState.CANCELLED
            self.emit("run:cancelled", instance=inst.id, at=str(e))
        except Exception as e:
            report.status = RunState.FAILED
            report.errors["run"] = f"{type(e).__name__}: {e}"
            self.emit("run:error", instance=inst.id, error=report.errors["run"])
        finally:
            report.finished_at = utcnow()
            self._release(inst.id, report)

        if report.status is not RunState.CANCELLED:
            self._run_hooks(report)
        self.emit(
            "run:done",
            instance=inst.id,
            mode=mode.value,
            status=report.status.value,
            errors=len(report.errors),
        )
        return report

    def _run_hooks(self, report: RunReport) -> None:
        for hook in self.post_sync_hooks:
            try:
                hook(report)
            except Exception as e:
                self.emitter.log.error("post-sync hook failed", hook=getattr(hook, "__name__", repr(hook)), error=str(e))
