# services/scheduling.py
# StashMirror - Scheduler that triggers incremental (and periodic full) sync runs
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

import random
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from _logging import log as _root_log

_log = _root_log.child("SCHED")

# safety config defaults due to autostart and potential for misconfiguration
DEFAULT_SCHEDULING: dict[str, Any] = {
    "enabled": False,
    "mode": "hourly",
    "every_n_hours": 2,
    "daily_time": "03:30",
    "timezone": "",
    "jitter_seconds": 0,
    "full_every_n_runs": 0,
    "instance_id": None,
}

MODES = ("disabled", "hourly", "every_n_hours", "daily_time")


def _now_ts() -> int:
    return int(time.time())


def _now_local_naive() -> datetime:
    return datetime.now()


def _tz_from_cfg(sch: dict[str, Any]) -> Any | None:
    name = (sch.get("timezone") or "").strip()
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        _log.warn("unknown timezone in scheduling config", timezone=name)
        return None


def _as_now_in_tz(tz: Any | None) -> datetime:
    if tz is None:
        return _now_local_naive()
    return datetime.now(tz).replace(tzinfo=None)


def _apply_jitter(dt_local: datetime, sch: dict[str, Any]) -> datetime:
    try:
        js = int(sch.get("jitter_seconds") or 0)
    except (TypeError, ValueError):
        js = 0
    if js <= 0:
        return dt_local
    return dt_local + timedelta(seconds=random.randint(0, js))


def _parse_hhmm(val: str) -> tuple[int, int] | None:
    try:
        hh, mm = map(int, (val or "").strip().split(":"))
    except ValueError:
        return None
    if 0 <= hh <= 23 and 0 <= mm <= 59:
        return hh, mm
    return None


def merge_defaults(s: dict[str, Any] | None) -> dict[str, Any]:
    out = dict(DEFAULT_SCHEDULING)
    if isinstance(s, dict):
        for k, v in s.items():
            if v is None and k != "instance_id":
                continue
            out[k] = v
    return out


def validate(s: dict[str, Any]) -> dict[str, Any]:
    out = merge_defaults(s)
    mode = str(out.get("mode") or "disabled").lower()
    if mode not in MODES:
        raise ValueError(f"mode must be one of {MODES}")
    out["mode"] = mode
    try:
        out["every_n_hours"] = max(1, int(out.get("every_n_hours") or 2))
        out["full_every_n_runs"] = max(0, int(out.get("full_every_n_runs") or 0))
        out["jitter_seconds"] = max(0, int(out.get("jitter_seconds") or 0))
    except (TypeError, ValueError) as e:
        raise ValueError(f"invalid scheduling value: {e}") from None
    if mode == "daily_time" and _parse_hhmm(str(out.get("daily_time") or "")) is None:
        raise ValueError("daily_time must be HH:MM")
    out["enabled"] = bool(out.get("enabled"))
    return out


def _align_next_hour_in_tz(now_tz: datetime) -> datetime:
    base = now_tz.replace(minute=0, second=0, microsecond=0)
    return base + timedelta(hours=1)


def _to_local_naive(dt_tzaware: datetime) -> datetime:
    return dt_tzaware.astimezone().replace(tzinfo=None)


def compute_next_run(now: datetime, sch: dict[str, Any]) -> datetime:
    mode = (sch.get("mode") or "disabled").lower()
    if not sch.get("enabled") or mode == "disabled":
        return _now_local_naive() + timedelta(days=365 * 100)

    tz = _tz_from_cfg(sch)

    if mode == "hourly":
        if tz is not None:
            nxt_tz = _align_next_hour_in_tz(datetime.now(tz))
            return _apply_jitter(_to_local_naive(nxt_tz), sch)
        base = now.replace(minute=0, second=0, microsecond=0)
        return _apply_jitter(base + timedelta(hours=1), sch)

    if mode == "every_n_hours":
        try:
            n = max(1, int(sch.get("every_n_hours") or 2))
        except (TypeError, ValueError):
            n = 2
        anchor = now.replace(second=0, microsecond=0)
        return _apply_jitter(anchor + timedelta(hours=n), sch)

    if mode == "daily_time":
        hh, mm = _parse_hhmm((sch.get("daily_time") or "").strip()) or (3, 30)
        if tz is not None:
            base_tz = datetime.now(tz)
            today = base_tz.replace(hour=hh, minute=mm, second=0, microsecond=0)
            nxt_tz = today if today > base_tz else today + timedelta(days=1)
            return _apply_jitter(_to_local_naive(nxt_tz), sch)
        today = now.replace(hour=hh, minute=mm, second=0, microsecond=0)
        nxt = today if today > now else today + timedelta(days=1)
        return _apply_jitter(nxt, sch)

    return _now_local_naive() + timedelta(days=365 * 100)


class SyncScheduler:
    """Background thread that fires the sync trigger on the configured cadence.

    ``run_sync_fn(mode, instance_id)`` must return True when a run was accepted.
    """

    def __init__(
        self,
        load_config: Callable[[], dict[str, Any]],
        save_config: Callable[[dict[str, Any]], None],
        run_sync_fn: Callable[[str, str | None], bool],
        is_sync_running_fn: Callable[[], bool] | None = None,
    ) -> None:
        self.load_config_cb = load_config
        self.save_config_cb = save_config
        self.run_sync_fn = run_sync_fn
        self.is_sync_running_fn = is_sync_running_fn or (lambda: False)

        self._thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._poke = threading.Event()
        self._lock = threading.Lock()

        self._status: dict[str, Any] = {
            "running": False,
            "last_tick": 0,
            "last_run_ok": None,
            "last_run_at": 0,
            "last_run_mode": "",
            "next_run_at": 0,
            "next_run_iso": "",
            "last_error": "",
            "runs": 0,
        }
        self._last_logged_next: int = 0
        self._next_ts: int = 0
        self._cfg_key: str = ""

    def _get_sched_cfg(self) -> dict[str, Any]:
        cfg = self.load_config_cb() or {}
        return merge_defaults(cfg.get("scheduling") or {})

    def save(self, s: dict[str, Any]) -> dict[str, Any]:
        sch = validate(s or {})
        cfg = self.load_config_cb() or {}
        cfg["scheduling"] = sch
        self.save_config_cb(cfg)
        if sch["enabled"] and sch["mode"] != "disabled":
            self.refresh()
        else:
            self.stop()
        return sch

    def status(self) -> dict[str, Any]:
        with self._lock:
            st = dict(self._status)
        st["config"] = self._get_sched_cfg()
        return st

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._poke.clear()
        self._thread = threading.Thread(target=self._loop, name="SyncScheduler", daemon=True)
        self._thread.start()
        _log.info("scheduler thread started")

    def stop(self) -> None:
        self._stop.set()
        self._poke.set()
        t = self._thread
        if t and t.is_alive():
            t.join(timeout=3.0)
        self._thread = None
        _log.info("scheduler thread stopped")

    def refresh(self) -> None:
        with self._lock:
            self._next_ts = 0
        self._poke.set()
        if not self._thread or not self._thread.is_alive():
            self.start()

    def next_mode(self, sch: dict[str, Any]) -> str:
        try:
            every = int(sch.get("full_every_n_runs") or 0)
        except (TypeError, ValueError):
            every = 0
        with self._lock:
            runs = int(self._status["runs"])
        if every > 0 and (runs + 1) % every == 0:
            return "full"
        return "incremental"

    def trigger(self, mode: str | None = None) -> bool:
        sch = self._get_sched_cfg()
        mode = mode or self.next_mode(sch)
        if self.is_sync_running_fn():
            _log.info("trigger skipped: sync already running", mode=mode)
            return False
        ok, err = False, ""
        try:
            ok = bool(self.run_sync_fn(mode, sch.get("instance_id")))
            if not ok:
                err = "run rejected"
        except Exception as e:
            ok, err = False, str(e)
            _log.error("scheduled run failed", mode=mode, error=err)
        with self._lock:
            self._status["last_run_ok"] = ok
            self._status["last_run_at"] = _now_ts()
            self._status["last_run_mode"] = mode
            self._status["last_error"] = err
            if ok:
                self._status["runs"] += 1
        return ok

    def _update_next(self, nxt: datetime | None) -> None:
        with self._lock:
            if nxt is None:
                self._status["next_run_at"] = 0
                self._status["next_run_iso"] = ""
                return
            self._status["next_run_at"] = int(nxt.timestamp())
            self._status["next_run_iso"] = datetime.fromtimestamp(
                self._status["next_run_at"], tz=timezone.utc
            ).strftime("%Y-%m-%dT%H:%M:%SZ")
            iso = self._status["next_run_iso"]

        nxt_ts = int(nxt.timestamp())
        if abs(nxt_ts - self._last_logged_next) >= 60:
            self._last_logged_next = nxt_ts
            _log.info("next run scheduled", at=iso)

    def _loop(self) -> None:
        with self._lock:
            self._status["running"] = True
        try:
            while not self._stop.is_set():
                with self._lock:
                    self._status["last_tick"] = _now_ts()

                sch = self._get_sched_cfg()
                tz = _tz_from_cfg(sch)
                if not sch.get("enabled") or str(sch.get("mode") or "").lower() == "disabled":
                    self._update_next(None)
                    with self._lock:
                        self._next_ts = 0
                        self._cfg_key = ""
                    self._sleep_or_poke(1.0)
                    continue

                key = "|".join(
                    str(sch.get(k) or "")
                    for k in ("enabled", "mode", "every_n_hours", "daily_time", "timezone", "jitter_seconds")
                )
                now_local = _as_now_in_tz(tz)
                with self._lock:
                    cached_key, cached_next = self._cfg_key, int(self._next_ts or 0)

                if cached_next <= 0 or cached_key != key:
                    nxt = compute_next_run(now_local, sch)
                    cached_next = int(nxt.timestamp())
                    with self._lock:
                        self._cfg_key, self._next_ts = key, cached_next
                else:
                    nxt = datetime.fromtimestamp(cached_next)
                self._update_next(nxt)

                if _now_ts() >= cached_next:
                    if self.is_sync_running_fn():
                        _log.info("sync is busy; delaying scheduled run")
                        self._sleep_or_poke(2.0)
                        continue
                    self.trigger()
                    nxt2 = compute_next_run(_as_now_in_tz(tz), sch)
                    with self._lock:
                        self._next_ts = int(nxt2.timestamp())
                    self._update_next(nxt2)
                    self._sleep_or_poke(0.5)
                    continue

                remaining = max(0.0, (nxt - _as_now_in_tz(tz)).total_seconds())
                self._sleep_or_poke(min(30.0, remaining if remaining > 0 else 0.5))
        finally:
            with self._lock:
                self._status["running"] = False

    def _sleep_or_poke(self, seconds: float) -> None:
        if seconds <= 0:
            return
        self._poke.wait(timeout=seconds)
        self._poke.clear()
