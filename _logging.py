# _logging.py
# StashMirror logger: colored console lines, bound module context, optional JSON sink.
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

import datetime
import json
import os
import sys
import threading
import time
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, TextIO

RESET = "\033[0m"
DIM = "\033[90m"
RED = "\033[91m"
GREEN = "\033[92m"
YELLOW = "\033[33m"
BLUE = "\033[94m"

LEVELS = {"silent": 60, "error": 40, "warn": 30, "info": 20, "debug": 10}

# ── runtime debug gate (reads config.json under CONFIG_BASE, cached briefly) ──
_CFG_CACHE: Dict[str, Any] | None = None
_CFG_TS: float = 0.0
_FORCE_DEBUG: bool | None = None


def _config_file() -> Path:
    env = os.getenv("CONFIG_BASE")
    if env:
        return Path(env) / "config.json"
    if Path("/app").exists():
        return Path("/config") / "config.json"
    return Path(__file__).resolve().parent / "config.json"


def set_debug(on: bool | None) -> None:
    global _FORCE_DEBUG
    _FORCE_DEBUG = on


def _debug_enabled() -> bool:
    global _CFG_CACHE, _CFG_TS
    if _FORCE_DEBUG is not None:
        return _FORCE_DEBUG
    now = time.time()
    if _CFG_CACHE is None or (now - _CFG_TS) > 5.0:
        try:
            with _config_file().open("r", encoding="utf-8") as f:
                _CFG_CACHE = json.load(f)
        except (OSError, ValueError):
            _CFG_CACHE = {}
        _CFG_TS = now
    rt = (_CFG_CACHE or {}).get("runtime") or {}
    return bool(rt.get("debug"))


def _fmt_fields(fields: Mapping[str, Any]) -> str:
    parts: list[str] = []
    for k, v in fields.items():
        if v is None:
            continue
        if isinstance(v, (dict, list, tuple)):
            v = json.dumps(v, ensure_ascii=False, default=str, separators=(",", ":"))
        parts.append(f"{k}={v}")
    return " ".join(parts)


class Logger:
    def __init__(
        self,
        stream: TextIO = sys.stdout,
        level: str = "info",
        use_color: bool = True,
        show_time: bool = True,
        time_fmt: str = "%Y-%m-%d %H:%M:%S",
        *,
        _context: Optional[Dict[str, Any]] = None,
        _json_stream: Optional[TextIO] = None,
        _lock: Optional[threading.Lock] = None,
    ):
        self.stream = stream
        self.level_no = LEVELS.get(level, 20)
        self.use_color = use_color and os.getenv("NO_COLOR") is None
        self.show_time = show_time
        self.time_fmt = time_fmt
        self.tag_color_map = {
            "DEBUG": YELLOW,
            "INFO": BLUE,
            "WARN": YELLOW,
            "ERROR": RED,
            "SUCCESS": GREEN,
        }
        self._context: Dict[str, Any] = dict(_context or {})
        self._json_stream: Optional[TextIO] = _json_stream
        self._lock = _lock or threading.Lock()

    def set_level(self, level: str) -> None:
        self.level_no = LEVELS.get(level, self.level_no)

    def enable_json(self, file_path: str | Path) -> None:
        self._json_stream = open(file_path, "a", encoding="utf-8")

    @property
    def level_name(self) -> str:
        for k, v in LEVELS.items():
            if v == self.level_no:
                return k
        return "info"

    def get_context(self) -> Dict[str, Any]:
        return dict(self._context)

    def bind(self, **ctx: Any) -> "Logger":
        new_ctx = dict(self._context)
        new_ctx.update(ctx)
        out = Logger(
            stream=self.stream,
            level=self.level_name,
            use_color=self.use_color,
            show_time=self.show_time,
            time_fmt=self.time_fmt,
            _context=new_ctx,
            _json_stream=self._json_stream,
            _lock=self._lock,
        )
        out.tag_color_map = dict(self.tag_color_map)
        return out

    def child(self, name: str) -> "Logger":
        return self.bind(module=name)

    def _fmt_text(self, label: str, msg: str) -> str:
        mod = str(self._context.get("module") or "").strip()
        col = self.tag_color_map.get(label) if self.use_color else None
        lvl = f"{col}{label}{RESET}" if col else label
        ctx = {k: v for k, v in self._context.items() if k != "module"}
        tail = _fmt_fields(ctx)
        line = f"{'[' + mod + ']' if mod else ''} {lvl} {msg}".strip()
        if tail:
            line = f"{line} {tail}"
        if not self.show_time:
            return line
        ts = datetime.datetime.now().strftime(self.time_fmt)
        prefix = f"{DIM}[{ts}]{RESET}" if self.use_color else f"[{ts}]"
        return f"{prefix} {line}"

    def _emit(self, severity: str, label: str, msg: str, fields: Mapping[str, Any]) -> None:
        if severity == "debug":
            if not _debug_enabled():
                return
        elif self.level_no > LEVELS.get(severity, 20):
            return
        text = msg if not fields else f"{msg} {_fmt_fields(fields)}"
        line = self._fmt_text(label, text)
        with self._lock:
            self.stream.write(line + "\n")
            self.stream.flush()
            if self._json_stream:
                payload: Dict[str, Any] = {
                    "ts": datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="milliseconds"),
                    "level": label,
                    "msg": msg,
                    "ctx": self._context,
                }
                if fields:
                    payload["fields"] = dict(fields)
                self._json_stream.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
                self._json_stream.flush()

    def debug(self, msg: str, **fields: Any) -> None:
        self._emit("debug", "DEBUG", msg, fields)

    def info(self, msg: str, **fields: Any) -> None:
        self._emit("info", "INFO", msg, fields)

    def warn(self, msg: str, **fields: Any) -> None:
        self._emit("warn", "WARN", msg, fields)

    warning = warn

    def error(self, msg: str, **fields: Any) -> None:
        self._emit("error", "ERROR", msg, fields)

    def success(self, msg: str, **fields: Any) -> None:
        self._emit("info", "SUCCESS", msg, fields)

    # Callable adapter: log("text", level="WARN", module="SYNC", key=value)
    def __call__(self, message: str, *, level: str = "INFO", module: Optional[str] = None, **fields: Any) -> None:
        target = self.bind(module=module) if module else self
        lvl = (level or "INFO").lower()
        if lvl == "debug":
            target.debug(message, **fields)
        elif lvl in ("warn", "warning"):
            target.warn(message, **fields)
        elif lvl == "error":
            target.error(message, **fields)
        elif lvl == "success":
            target.success(message, **fields)
        else:
            target.info(message, **fields)


# default instance
log = Logger()

__all__ = ["Logger", "log", "set_debug", "LEVELS"]
