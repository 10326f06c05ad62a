# api/libraryAPI.py
# StashMirror - Browse the local mirror with per-user exclusions applied
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Body, Depends, Header
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from services import MirrorServices, exclusion_cache, get_services
from services.exclusions import ExclusionCache
from services.query_builder import FilterSpec, RelationCriterion
from sm_platform.entity_types import EntityType

__all__ = ["router"]

router = APIRouter(prefix="/api/library", tags=["library"])


class RelationIn(BaseModel):
    value: list[str] = Field(default_factory=list)
    modifier: Literal["INCLUDES", "INCLUDES_ALL", "EXCLUDES"] = "INCLUDES"


class FilterIn(BaseModel):
    instance_id: str = "default"
    q: str | None = None
    ids: list[str] | None = None
    performers: RelationIn | None = None
    tags: RelationIn | None = None
    studios: RelationIn | None = None
    groups: RelationIn | None = None
    galleries: RelationIn | None = None
    rating_min: int | None = Field(None, ge=0, le=100)
    rating_max: int | None = Field(None, ge=0, le=100)
    favorites_only: bool = False
    date_from: str | None = None
    date_to: str | None = None
    include_deleted: bool = False
    sort: str = "created_at"
    direction: Literal["asc", "desc"] = "desc"
    seed: str | None = None
    page: int = Field(1, ge=1)
    per_page: int = Field(40, ge=1)

    def to_spec(self) -> FilterSpec:
        def _rel(r: RelationIn | None) -> RelationCriterion | None:
            return RelationCriterion.of(r.value, r.modifier) if r is not None else None

        return FilterSpec(
            instance_id=self.instance_id,
            q=self.q,
            ids=self.ids,
            performers=_rel(self.performers),
            tags=_rel(self.tags),
            studios=_rel(self.studios),
            groups=_rel(self.groups),
            galleries=_rel(self.galleries),
            rating_min=self.rating_min,
            rating_max=self.rating_max,
            favorites_only=self.favorites_only,
            date_from=self.date_from,
            date_to=self.date_to,
            include_deleted=self.include_deleted,
            sort=self.sort,
            direction=self.direction,
            seed=self.seed,
            page=self.page,
            per_page=self.per_page,
        )


def _item(row: dict[str, Any]) -> dict[str, Any]:
    data = dict(row.pop("data", None) or {})
    row.pop("content_hash", None)
    return {**data, **row}


@router.post("/{entity_type}/find")
def api_find(
    entity_type: str,
    payload: FilterIn = Body(FilterIn()),
    x_user_id: str | None = Header(None),
    x_admin: bool = Header(False),
    svc: MirrorServices = Depends(get_services),
    cache: ExclusionCache = Depends(exclusion_cache),
) -> JSONResponse:
    if not x_user_id:
        return JSONResponse({"ok": False, "error": "X-User-Id header required"}, status_code=401)
    if payload.include_deleted and not x_admin:
        return JSONResponse({"ok": False, "error": "include_deleted is admin-only"}, status_code=403)
    try:
        et = EntityType.parse(entity_type)
        spec = payload.to_spec()
        excl = None if x_admin and payload.include_deleted else cache.get(x_user_id, spec.instance_id)
        query = svc.query_builder.build(et, spec, excl, user_id=x_user_id)
    except ValueError as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
    with svc.engine.connect() as conn:
        page = query.execute(conn)
    body = page.to_dict()
    body["items"] = [_item(r) for r in page.items]
    return JSONResponse(jsonable_encoder(body))
