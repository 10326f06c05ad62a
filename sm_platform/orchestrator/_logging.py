# sm_platform/orchestrator/_logging.py
# Progress event emitter for sync runs.
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

import json
from typing import Any, Callable

from _logging import log as _root_log

ProgressCallback = Callable[[str], None]


class Emitter:
    def __init__(self, cb: ProgressCallback | None = None, *, module: str = "ORCH"):
        self.cb = cb
        self.log = _root_log.child(module)

    def emit(self, event: str, **data: Any) -> None:
        level = "warn" if event.endswith((":error", ":blocked")) else "debug"
        getattr(self.log, level)(event, **data)
        if not self.cb:
            return
        payload = {"event": event}
        payload.update(data)
        try:
            self.cb(json.dumps(payload, separators=(",", ":"), default=str))
        except Exception as e:
            # A broken UI listener must never fail the run.
            self.log.debug("progress callback failed", error=str(e))

    def info(self, line: str, **fields: Any) -> None:
        self.log.info(line, **fields)
        if not self.cb:
            return
        try:
            self.cb(line)
        except Exception as e:
            self.log.debug("progress callback failed", error=str(e))

    def dbg(self, msg: str, **fields: Any) -> None:
        self.log.debug(msg, **fields)
