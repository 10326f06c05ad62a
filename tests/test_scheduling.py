from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import pytest

from services.scheduling import SyncScheduler, compute_next_run, merge_defaults, validate

NOW = datetime(2024, 6, 1, 10, 15, 30)


def _sched(**kw) -> dict[str, Any]:
    return validate({"enabled": True, **kw})


class Harness:
    def __init__(self, scheduling: dict[str, Any] | None = None, running: bool = False, accept: bool = True):
        self.cfg: dict[str, Any] = {"scheduling": scheduling or {}}
        self.saved: list[dict[str, Any]] = []
        self.calls: list[tuple[str, str | None]] = []
        self.running = running
        self.accept = accept

    def load(self) -> dict[str, Any]:
        return dict(self.cfg)

    def save(self, cfg: dict[str, Any]) -> None:
        self.cfg = dict(cfg)
        self.saved.append(cfg)

    def run(self, mode: str, instance_id: str | None) -> bool:
        self.calls.append((mode, instance_id))
        return self.accept

    def scheduler(self) -> SyncScheduler:
        return SyncScheduler(self.load, self.save, self.run, lambda: self.running)


def test_merge_defaults_keeps_explicit_values() -> None:
    out = merge_defaults({"mode": "daily_time", "every_n_hours": None})
    assert out["mode"] == "daily_time"
    assert out["every_n_hours"] == 2
    assert out["enabled"] is False


@pytest.mark.parametrize(
    "bad",
    [
        {"mode": "weekly"},
        {"mode": "daily_time", "daily_time": "25:00"},
        {"mode": "daily_time", "daily_time": "noon"},
        {"every_n_hours": "often"},
    ],
)
def test_validate_rejects_bad_values(bad) -> None:
    with pytest.raises(ValueError):
        validate(bad)


def test_validate_clamps_numbers() -> None:
    out = validate({"every_n_hours": 0, "full_every_n_runs": -3, "jitter_seconds": -1, "mode": "HOURLY"})
    assert (out["every_n_hours"], out["full_every_n_runs"], out["jitter_seconds"]) == (2, 0, 0)
    assert out["mode"] == "hourly"


def test_next_run_hourly() -> None:
    assert compute_next_run(NOW, _sched(mode="hourly")) == datetime(2024, 6, 1, 11, 0, 0)


def test_next_run_every_n_hours() -> None:
    assert compute_next_run(NOW, _sched(mode="every_n_hours", every_n_hours=3)) == datetime(2024, 6, 1, 13, 15, 0)


def test_next_run_daily_time_today_or_tomorrow() -> None:
    assert compute_next_run(NOW, _sched(mode="daily_time", daily_time="18:45")) == datetime(2024, 6, 1, 18, 45)
    assert compute_next_run(NOW, _sched(mode="daily_time", daily_time="03:30")) == datetime(2024, 6, 2, 3, 30)


def test_next_run_jitter_is_bounded() -> None:
    nxt = compute_next_run(NOW, _sched(mode="hourly", jitter_seconds=120))
    assert datetime(2024, 6, 1, 11, 0) <= nxt <= datetime(2024, 6, 1, 11, 2)


def test_disabled_schedule_never_fires_soon() -> None:
    assert compute_next_run(NOW, validate({"enabled": False})) > datetime.now() + timedelta(days=365)


def test_periodic_full_runs() -> None:
    h = Harness({"full_every_n_runs": 3, "instance_id": "main"})
    s = h.scheduler()
    for _ in range(4):
        assert s.trigger() is True
    assert [m for m, _ in h.calls] == ["incremental", "incremental", "full", "incremental"]
    assert {i for _, i in h.calls} == {"main"}
    st = s.status()
    assert st["runs"] == 4
    assert st["last_run_ok"] is True
    assert st["last_run_mode"] == "incremental"


def test_trigger_skips_while_running() -> None:
    h = Harness(running=True)
    assert h.scheduler().trigger("full") is False
    assert h.calls == []


def test_rejected_and_failing_runs_are_recorded() -> None:
    h = Harness(accept=False)
    s = h.scheduler()
    assert s.trigger() is False
    assert s.status()["last_error"] == "run rejected"

    def _boom(mode, instance_id):
        raise RuntimeError("remote down")

    s.run_sync_fn = _boom
    assert s.trigger("full") is False
    st = s.status()
    assert st["last_error"] == "remote down"
    assert st["last_run_mode"] == "full"
    assert st["runs"] == 0


def test_save_validates_and_persists() -> None:
    h = Harness()
    s = h.scheduler()
    with pytest.raises(ValueError):
        s.save({"mode": "sometimes"})
    assert h.saved == []

    out = s.save({"enabled": False, "mode": "every_n_hours", "every_n_hours": 6})
    assert out["every_n_hours"] == 6
    assert h.cfg["scheduling"]["mode"] == "every_n_hours"
    assert s.status()["config"]["every_n_hours"] == 6
    assert s.status()["running"] is False
