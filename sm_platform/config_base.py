# sm_platform/config_base.py
# Config directory resolution, defaults and atomic config.json IO.
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

import copy
import json
import os
import secrets
import threading
import time
from pathlib import Path
from typing import Any, Dict


def CONFIG_BASE() -> Path:
    """
    Determine the base directory for config and database files.

    Priority:
      1) $CONFIG_BASE if set
      2) /config (when running in a container that mounts /config)
      3) Project root (one level up from this package)
    """
    env = os.getenv("CONFIG_BASE")
    if env:
        return Path(env)

    if Path("/app").exists():
        return Path("/config")

    return Path(__file__).resolve().parents[1]


DEFAULT_CFG: Dict[str, Any] = {
    # --- Remote catalog instances ------------------------------------------
    "instances": [],                                    # [{id, name, url, api_key, enabled}]

    # --- Local store --------------------------------------------------------
    "database": {
        "url": "",                                      # SQLAlchemy URL; empty = sqlite file under CONFIG_BASE
        "echo": False,                                  # Log every SQL statement
    },

    # --- Sync engine --------------------------------------------------------
    "sync": {
        "page_size": 500,                               # Items per remote page (1–1000). Never "all".
        "cleanup_page_size": 5000,                      # IDs per page during deletion scans (1–5000)
        "page_retries": 3,                              # Per-page retries on transient network failures
        "retry_backoff_sec": 1.0,                       # Base for exponential page retry backoff
        "timeout": 30.0,                                # HTTP timeout (seconds)
        "max_retries": 3,                               # HTTP-level retry budget for 429/5xx
        "http_backoff_sec": 0.5,                        # Base for HTTP-level exponential backoff
        "allow_mass_delete": False,                     # Let cleanup soft-delete a large share of a type
        "mass_delete_ratio": 0.5,                       # Share of local rows that counts as "mass"
        "mass_delete_min_baseline": 50,                 # Guard only applies once a type has this many rows
    },

    # --- Query layer --------------------------------------------------------
    "query": {
        "exclusion_chunk_size": 500,                    # IDs per NOT IN predicate
        "max_bound_params": 900,                        # Above this, exclusion chunks are rendered inline
        "max_per_page": 500,                            # Hard cap for browsing pages
        "hide_empty_entities": True,                    # Hide studios/tags/groups/galleries/performers with no visible content
    },

    # --- Scheduling ---------------------------------------------------------
    "scheduling": {
        "enabled": False,                               # Master toggle for periodic runs
        "mode": "hourly",                               # "hourly" | "every_n_hours" | "daily_time"
        "every_n_hours": 2,                             # When mode=every_n_hours (1–24)
        "daily_time": "03:30",                          # When mode=daily_time (HH:MM, 24h)
        "full_every_n_runs": 0,                         # Every Nth scheduled run is a full sync (0 = never)
    },

    # --- Runtime ------------------------------------------------------------
    "runtime": {
        "debug": False,                                 # Verbose logging
        "log_json": "",                                 # Optional JSON log sink file name under CONFIG_BASE
    },
}


def _cfg_file() -> Path:
    return CONFIG_BASE() / "config.json"


def config_path() -> Path:
    return _cfg_file()


def _read_json(p: Path) -> Dict[str, Any]:
    with p.open("r", encoding="utf-8") as f:
        return json.load(f)


def _write_json_atomic(p: Path, data: Dict[str, Any]) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)
    suffix = f".{time.time_ns()}.{os.getpid()}.{threading.get_ident()}.{secrets.token_hex(4)}.tmp"
    tmp = p.with_suffix(suffix)

    with tmp.open("w", encoding="utf-8", newline="\n") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
        f.write("\n")
    tmp.replace(p)


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)  # type: ignore[assignment]
        else:
            out[k] = v
    return out


def database_url(cfg: Dict[str, Any]) -> str:
    url = str(((cfg.get("database") or {}).get("url")) or "").strip()
    if url:
        return url
    return f"sqlite:///{CONFIG_BASE() / 'stashmirror.db'}"


def load_config() -> Dict[str, Any]:
    """Read config.json merged over DEFAULT_CFG. A broken file falls back to defaults."""
    p = _cfg_file()
    user_cfg: Dict[str, Any] = {}
    if p.exists():
        try:
            user_cfg = _read_json(p)
        except (OSError, ValueError):
            user_cfg = {}
    return _deep_merge(DEFAULT_CFG, user_cfg)


def save_config(cfg: Dict[str, Any]) -> None:
    _write_json_atomic(_cfg_file(), dict(cfg or {}))
