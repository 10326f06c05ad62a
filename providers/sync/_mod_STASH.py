# /providers/sync/_mod_STASH.py
# StashMirror remote catalog client (GraphQL)
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from _logging import log as _root_log
from sm_platform.entity_types import EntityType
from sm_platform.errors import RemoteAPIError, TransientFetchError
from sm_platform.instances import RemoteInstance

from ._mod_common import EmitFn, build_session, request_with_retries, safe_json
from .stash._queries import QUERIES

__VERSION__ = "0.1.0"
__all__ = ["StashConfig", "StashClient", "label_stash"]

log = _root_log.child("STASH")

_TRANSIENT_STATUS = (429, 500, 502, 503, 504)


def label_stash(method: str, url: str, kw: Mapping[str, Any]) -> str:
    payload = kw.get("json")
    if isinstance(payload, Mapping):
        q = str(payload.get("query") or "").lstrip()
        if q.startswith("query "):
            return q[6:].split("(", 1)[0].split("{", 1)[0].strip() or "graphql"
    return "graphql"


@dataclass
class StashConfig:
    url: str
    api_key: str = ""
    timeout: float = 30.0
    max_retries: int = 3
    backoff_base: float = 0.5

    @classmethod
    def from_instance(cls, inst: RemoteInstance, sync_cfg: Mapping[str, Any] | None = None) -> "StashConfig":
        s = dict(sync_cfg or {})
        return cls(
            url=inst.graphql_url,
            api_key=inst.api_key,
            timeout=float(s.get("timeout") or 30.0),
            max_retries=int(s.get("max_retries") or 3),
            backoff_base=float(s.get("http_backoff_sec", 0.5)),
        )


class StashClient:
    def __init__(self, cfg: StashConfig, *, emit: EmitFn | None = None):
        self.cfg = cfg
        self.session = build_session("STASH", api_key=cfg.api_key, emit=emit, feature_label=label_stash)

    def gql(self, query: str, variables: Mapping[str, Any] | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {"query": query}
        if variables is not None:
            payload["variables"] = dict(variables)

        r = request_with_retries(
            self.session,
            "POST",
            self.cfg.url,
            json=payload,
            timeout=self.cfg.timeout,
            max_retries=self.cfg.max_retries,
            backoff_base=self.cfg.backoff_base,
        )
        j = safe_json(r)

        if r.status_code in (401, 403):
            raise RemoteAPIError("remote catalog unauthorized", status=r.status_code)
        if r.status_code in _TRANSIENT_STATUS:
            raise TransientFetchError(f"remote catalog http:{r.status_code}", status=r.status_code)
        if r.status_code >= 400:
            raise RemoteAPIError(f"remote catalog http:{r.status_code}", status=r.status_code)

        errs = j.get("errors") if isinstance(j, Mapping) else None
        if errs:
            msg = None
            if isinstance(errs, list) and errs and isinstance(errs[0], Mapping):
                msg = errs[0].get("message")
            log.warn("graphql error", message=msg, errors=len(errs) if isinstance(errs, list) else 1)
            raise RemoteAPIError(str(msg or "GraphQL error"))

        data = j.get("data") if isinstance(j, Mapping) else None
        if not isinstance(data, Mapping):
            raise RemoteAPIError("GraphQL response without data")
        return dict(data)

    def _result(self, et: EntityType, data: Mapping[str, Any]) -> tuple[list[dict[str, Any]], int | None]:
        q = QUERIES[et]
        block = data.get(q.result_key)
        if not isinstance(block, Mapping):
            raise RemoteAPIError(f"{q.result_key}: missing result block")
        items = [dict(x) for x in block.get(q.list_key) or [] if isinstance(x, Mapping)]
        count = block.get("count")
        return items, int(count) if count is not None else None

    def find_page(
        self,
        et: EntityType,
        *,
        page: int,
        per_page: int,
        updated_since: str | None = None,
    ) -> tuple[list[dict[str, Any]], int | None]:
        if per_page <= 0:
            raise ValueError("per_page must be positive")
        q = QUERIES[et]
        variables: dict[str, Any] = {
            "filter": {"page": page, "per_page": per_page, "sort": "id", "direction": "ASC"},
        }
        if updated_since:
            variables[q.filter_var] = {"updated_at": {"value": updated_since, "modifier": "GREATER_THAN"}}
        return self._result(et, self.gql(q.find, variables))

    def find_ids(self, et: EntityType, *, page: int, per_page: int) -> tuple[list[str], int | None]:
        if per_page <= 0:
            raise ValueError("per_page must be positive")
        q = QUERIES[et]
        data = self.gql(q.find_ids, {"filter": {"page": page, "per_page": per_page, "sort": "id", "direction": "ASC"}})
        items, count = self._result(et, data)
        return [str(x["id"]) for x in items if x.get("id") is not None], count

    def find_one(self, et: EntityType, entity_id: str) -> dict[str, Any] | None:
        items, _ = self._result(et, self.gql(QUERIES[et].find_one, {"ids": [str(entity_id)]}))
        return items[0] if items else None

    def version(self) -> str | None:
        data = self.gql("query Version { version { version } }")
        v = data.get("version")
        return str(v.get("version")) if isinstance(v, Mapping) and v.get("version") else None
