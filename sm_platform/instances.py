# sm_platform/instances.py
# Remote catalog instance helpers (multi-server).
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .errors import ConfigError

_DEFAULT_INSTANCE = "default"
_INSTANCES_KEY = "instances"


@dataclass(frozen=True)
class RemoteInstance:
    id: str
    url: str
    name: str = ""
    api_key: str = ""
    enabled: bool = True

    @property
    def graphql_url(self) -> str:
        base = self.url.rstrip("/")
        return base if base.endswith("/graphql") else f"{base}/graphql"


def normalize_instance_id(v: Any) -> str:
    s = str(v or "").strip()
    return _DEFAULT_INSTANCE if not s or s.lower() == _DEFAULT_INSTANCE else s


def _from_block(blk: Mapping[str, Any]) -> RemoteInstance:
    iid = normalize_instance_id(blk.get("id"))
    url = str(blk.get("url") or "").strip()
    if not url:
        raise ConfigError(f"instance '{iid}' has no url")
    return RemoteInstance(
        id=iid,
        url=url,
        name=str(blk.get("name") or iid),
        api_key=str(blk.get("api_key") or ""),
        enabled=bool(blk.get("enabled", True)),
    )


def list_instances(cfg: Mapping[str, Any], *, enabled_only: bool = True) -> list[RemoteInstance]:
    raw = cfg.get(_INSTANCES_KEY) if isinstance(cfg, Mapping) else None
    out: list[RemoteInstance] = []
    seen: set[str] = set()
    for blk in raw or []:
        if not isinstance(blk, Mapping):
            continue
        inst = _from_block(blk)
        if inst.id in seen:
            raise ConfigError(f"duplicate instance id '{inst.id}'")
        seen.add(inst.id)
        if enabled_only and not inst.enabled:
            continue
        out.append(inst)
    return out


def get_instance(cfg: Mapping[str, Any], instance_id: Any) -> RemoteInstance:
    iid = normalize_instance_id(instance_id)
    for inst in list_instances(cfg, enabled_only=False):
        if inst.id == iid:
            return inst
    raise ConfigError(f"unknown instance '{iid}'")
