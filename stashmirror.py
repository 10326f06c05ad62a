# /stashmirror.py
# StashMirror - Local mirror of remote media catalogs with sync, reconciliation and filtered browsing
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

import argparse
import socket
import time
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI, Request
from sqlalchemy.engine import Engine

from _logging import log as _root_log
from api import register as register_api
from services import MirrorServices, build_services, register as register_services
from sm_platform.config_base import CONFIG_BASE, database_url, load_config, save_config
from sm_platform.db import create_db_engine, init_db
from sm_platform.instances import list_instances
from sm_platform.orchestrator.facade import SourceFactory

log = _root_log.child("MAIN")
http_log = _root_log.child("HTTP")


def _setup_logging(cfg: dict[str, Any]) -> None:
    rt = cfg.get("runtime") or {}
    sink = str(rt.get("log_json") or "").strip()
    if sink:
        base = CONFIG_BASE()
        base.mkdir(parents=True, exist_ok=True)
        _root_log.enable_json(base / sink)


def create_app(
    cfg: dict[str, Any] | None = None,
    engine: Engine | None = None,
    *,
    source_factory: SourceFactory | None = None,
    start_scheduler: bool = True,
) -> FastAPI:
    cfg = cfg if cfg is not None else load_config()
    if engine is None:
        db = cfg.get("database") or {}
        engine = create_db_engine(database_url(cfg), echo=bool(db.get("echo")))
    init_db(engine)

    services: MirrorServices = build_services(
        cfg,
        engine,
        source_factory=source_factory,
        load_config=load_config,
        save_config=save_config,
        on_progress=lambda line: log.debug("progress", event=line),
    )

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        n = len(list_instances(cfg))
        log.info("starting", instances=n, db=str(engine.url))
        sch = services.scheduler
        if start_scheduler and sch is not None and (cfg.get("scheduling") or {}).get("enabled"):
            sch.start()
            log.info("scheduler started")
        try:
            yield
        finally:
            if sch is not None:
                sch.stop()
            cancelled = services.orchestrator.cancel()
            if cancelled:
                log.warn("cancelling in-flight runs on shutdown", instances=cancelled)
                services.orchestrator.wait(timeout=10.0)

    app = FastAPI(title="StashMirror", lifespan=_lifespan)

    @app.middleware("http")
    async def conditional_access_logger(request: Request, call_next):
        t0 = time.time()
        try:
            response = await call_next(request)
        except Exception as e:
            http_log.error("unhandled", method=request.method, path=request.url.path, error=str(e))
            raise
        status = getattr(response, "status_code", 0) or 0
        if status >= 500:
            http_log.error("request failed", method=request.method, path=request.url.path, status=status)
        elif status >= 400:
            http_log.debug(
                "request rejected",
                method=request.method,
                path=request.url.path,
                status=status,
                ms=int((time.time() - t0) * 1000),
            )
        return response

    register_services(app, services)
    register_api(app)
    return app


def get_primary_ip() -> str:
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        s.connect(("8.8.8.8", 80))
        return s.getsockname()[0]
    except OSError:
        return "127.0.0.1"
    finally:
        s.close()


# Entry point
def main(host: str = "0.0.0.0", port: int = 8788) -> None:
    cfg = load_config()
    _setup_logging(cfg)
    ip = get_primary_ip()
    print("\nStashMirror running:")
    print(f"  Local:   http://127.0.0.1:{port}")
    print(f"  Docker:  http://{ip}:{port}")
    print(f"  Bind:    {host}:{port}")
    print(f"  Config:  {CONFIG_BASE() / 'config.json'} (JSON)")
    print(f"  DB:      {database_url(cfg)}\n")

    debug = bool((cfg.get("runtime") or {}).get("debug"))
    uvicorn.run(
        create_app(cfg),
        host=host,
        port=port,
        log_level=("debug" if debug else "warning"),
        access_log=debug,
    )


if __name__ == "__main__":
    ap = argparse.ArgumentParser(description="StashMirror server")
    ap.add_argument("--host", default="0.0.0.0")
    ap.add_argument("--port", type=int, default=8788)
    args = ap.parse_args()
    main(args.host, args.port)
