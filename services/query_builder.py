# services/query_builder.py
# Filter spec + exclusion set -> bounded, parameterized SELECT over the local mirror.
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

import secrets
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from sqlalchemy import and_, bindparam, exists, func, or_, select
from sqlalchemy.engine import Connection
from sqlalchemy.sql import ColumnElement, Select
from sqlalchemy.sql.schema import Table

from _logging import log as _root_log
from sm_platform.db import entity_links, entity_table, ratings
from sm_platform.entity_types import EntityType
from sm_platform.instances import normalize_instance_id
from sm_platform.orchestrator._chunking import BATCH_SIZE, effective_chunk_size, iter_chunks

from .exclusions import ExclusionSet

log = _root_log.child("QUERY")

DEFAULT_PER_PAGE = 40
MAX_PER_PAGE = 500
# SQLite's historical bound-parameter ceiling is 999.
DEFAULT_MAX_BOUND_PARAMS = 900
RANDOM_SORT = "random"


class RelationModifier(str, Enum):
    INCLUDES = "INCLUDES"
    INCLUDES_ALL = "INCLUDES_ALL"
    EXCLUDES = "EXCLUDES"


@dataclass(frozen=True)
class RelationCriterion:
    value: tuple[str, ...]
    modifier: RelationModifier = RelationModifier.INCLUDES

    @classmethod
    def of(cls, value: Iterable[Any], modifier: Any = RelationModifier.INCLUDES) -> "RelationCriterion":
        if not isinstance(modifier, RelationModifier):
            modifier = RelationModifier(str(modifier).strip().upper())
        return cls(tuple(dict.fromkeys(str(v) for v in value)), modifier)


def _like_escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


# FilterSpec field -> related entity type
RELATION_FIELDS: dict[str, EntityType] = {
    "performers": EntityType.PERFORMER,
    "tags": EntityType.TAG,
    "studios": EntityType.STUDIO,
    "groups": EntityType.GROUP,
    "galleries": EntityType.GALLERY,
}


@dataclass
class FilterSpec:
    instance_id: str = "default"
    q: str | None = None
    ids: list[str] | None = None
    performers: RelationCriterion | None = None
    tags: RelationCriterion | None = None
    studios: RelationCriterion | None = None
    groups: RelationCriterion | None = None
    galleries: RelationCriterion | None = None
    rating_min: int | None = None
    rating_max: int | None = None
    favorites_only: bool = False
    date_from: str | None = None
    date_to: str | None = None
    include_deleted: bool = False
    sort: str = "created_at"
    direction: str = "desc"
    seed: str | None = None
    page: int = 1
    per_page: int = DEFAULT_PER_PAGE

    def relations(self) -> list[tuple[EntityType, RelationCriterion]]:
        out: list[tuple[EntityType, RelationCriterion]] = []
        for name, rt in RELATION_FIELDS.items():
            crit = getattr(self, name)
            if crit is not None and crit.value:
                out.append((rt, crit))
        return out


@dataclass
class QueryPage:
    items: list[dict[str, Any]]
    total: int
    page: int
    per_page: int
    seed: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": self.items,
            "total": self.total,
            "page": self.page,
            "per_page": self.per_page,
            "seed": self.seed,
        }


@dataclass
class ExecutableQuery:
    entity_type: EntityType
    statement: Select
    count_statement: Select
    page: int
    per_page: int
    seed: str | None = None
    exclusion_chunks: int = 0
    literal_exclusions: bool = False

    def execute(self, conn: Connection) -> QueryPage:
        total = int(conn.execute(self.count_statement).scalar() or 0)
        rows = conn.execute(self.statement).mappings().all()
        return QueryPage([dict(r) for r in rows], total, self.page, self.per_page, self.seed)


@dataclass
class QueryBuilder:
    chunk_size: int = BATCH_SIZE
    max_bound_params: int = DEFAULT_MAX_BOUND_PARAMS
    max_per_page: int = MAX_PER_PAGE

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "QueryBuilder":
        q = dict((cfg or {}).get("query") or {})
        return cls(
            chunk_size=effective_chunk_size(q.get("exclusion_chunk_size"), cap=DEFAULT_MAX_BOUND_PARAMS),
            max_bound_params=int(q.get("max_bound_params", DEFAULT_MAX_BOUND_PARAMS)),
            max_per_page=int(q.get("max_per_page", MAX_PER_PAGE)),
        )

    def build(
        self,
        entity_type: EntityType,
        spec: FilterSpec,
        exclusion_set: ExclusionSet | None = None,
        *,
        user_id: str | None = None,
    ) -> ExecutableQuery:
        et = EntityType.parse(entity_type)
        table = entity_table(et)
        iid = normalize_instance_id(spec.instance_id)
        if exclusion_set is not None and exclusion_set.instance_id != iid:
            raise ValueError(
                f"exclusion set for instance {exclusion_set.instance_id!r} used on {iid!r}"
            )
        page, per_page = self._paging(spec)

        conds: list[ColumnElement[bool]] = [table.c.instance_id == iid]
        if not spec.include_deleted:
            conds.append(table.c.deleted_at.is_(None))
        conds.extend(self._filters(et, table, iid, spec, user_id))

        excluded = sorted(exclusion_set.for_type(et)) if exclusion_set is not None else []
        literal = len(excluded) > self.max_bound_params
        chunks = 0
        for n, chunk in enumerate(iter_chunks(excluded, self.chunk_size)):
            conds.append(self._not_in(table, chunk, n, literal))
            chunks += 1

        seed = spec.seed
        sort = (spec.sort or "created_at").lower()
        if sort == RANDOM_SORT and not seed:
            seed = str(secrets.randbelow(10**9))
        order = self._order_by(et, table, sort, spec.direction, seed)

        where = and_(*conds)
        stmt = select(table).where(where).order_by(*order).limit(per_page).offset((page - 1) * per_page)
        count = select(func.count()).select_from(table).where(where)
        log.debug(
            "query built",
            type=et.value,
            instance=iid,
            excluded=len(excluded),
            chunks=chunks,
            literal=literal,
            sort=sort,
            page=page,
        )
        return ExecutableQuery(et, stmt, count, page, per_page, seed if sort == RANDOM_SORT else None, chunks, literal)

    # ── pieces ─────────────────────────────────────────────────────────────

    def _paging(self, spec: FilterSpec) -> tuple[int, int]:
        page = int(spec.page or 1)
        per_page = int(spec.per_page or DEFAULT_PER_PAGE)
        if page < 1:
            raise ValueError("page must be >= 1")
        if per_page < 1:
            raise ValueError("per_page must be >= 1")
        return page, min(per_page, self.max_per_page)

    def _not_in(self, table: Table, chunk: list[str], n: int, literal: bool) -> ColumnElement[bool]:
        if literal:
            # Rendered inline at execution so the statement's bound-parameter count stays fixed.
            return table.c.id.not_in(bindparam(f"excl_{n}", value=chunk, expanding=True, literal_execute=True))
        return table.c.id.not_in(chunk)

    def _filters(
        self,
        et: EntityType,
        table: Table,
        instance_id: str,
        spec: FilterSpec,
        user_id: str | None,
    ) -> list[ColumnElement[bool]]:
        out: list[ColumnElement[bool]] = []
        if spec.ids is not None:
            ids = [str(i) for i in spec.ids]
            out.append(or_(*(table.c.id.in_(c) for c in iter_chunks(ids, self.chunk_size))) if ids else table.c.id.in_([]))

        if spec.q:
            label = table.c[et.kind.label_column]
            out.append(label.ilike(f"%{_like_escape(spec.q)}%", escape="\\"))

        if spec.rating_min is not None or spec.rating_max is not None:
            col = self._column(et, table, "rating100", "rating filter")
            if spec.rating_min is not None:
                out.append(col >= int(spec.rating_min))
            if spec.rating_max is not None:
                out.append(col <= int(spec.rating_max))

        if spec.date_from or spec.date_to:
            col = self._column(et, table, "date", "date filter")
            if spec.date_from:
                out.append(col >= spec.date_from)
            if spec.date_to:
                out.append(col <= spec.date_to)

        for rt, crit in spec.relations():
            if rt is et:
                raise ValueError(f"{et.value} cannot be filtered by its own type")
            if crit.modifier is RelationModifier.INCLUDES:
                out.append(self._related(et, table, instance_id, rt, crit.value))
            elif crit.modifier is RelationModifier.INCLUDES_ALL:
                out.extend(self._related(et, table, instance_id, rt, [v]) for v in crit.value)
            else:
                out.append(~self._related(et, table, instance_id, rt, crit.value))

        if spec.favorites_only:
            if not user_id:
                raise ValueError("favorites_only requires a user context")
            out.append(
                exists().where(
                    ratings.c.user_id == str(user_id),
                    ratings.c.instance_id == instance_id,
                    ratings.c.entity_type == et.value,
                    ratings.c.entity_id == table.c.id,
                    ratings.c.favorite.is_(True),
                )
            )
        return out

    def _column(self, et: EntityType, table: Table, name: str, what: str) -> Any:
        if name not in table.c:
            raise ValueError(f"{what} is not supported for {et.value}")
        return table.c[name]

    def _related(
        self,
        et: EntityType,
        table: Table,
        instance_id: str,
        rt: EntityType,
        values: Iterable[str],
    ) -> ColumnElement[bool]:
        vals = list(values)
        links = entity_links.c
        forward = exists().where(
            links.instance_id == instance_id,
            links.owner_type == et.value,
            links.owner_id == table.c.id,
            links.related_type == rt.value,
            links.related_id.in_(vals),
        )
        backward = exists().where(
            links.instance_id == instance_id,
            links.owner_type == rt.value,
            links.owner_id.in_(vals),
            links.related_type == et.value,
            links.related_id == table.c.id,
        )
        return or_(forward, backward)

    def _order_by(self, et: EntityType, table: Table, sort: str, direction: str, seed: str | None) -> list[Any]:
        desc = str(direction or "desc").lower() == "desc"
        if sort == RANDOM_SORT:
            # Deterministic in (seed, id) only; row count and neighbours do not matter.
            return [func.seeded_rank(seed, table.c.id), table.c.id.asc()]
        if sort not in et.kind.sort_columns:
            raise ValueError(f"unsupported sort for {et.value}: {sort!r}")
        col = table.c[sort]
        primary = col.desc() if desc else col.asc()
        if sort == "id":
            return [primary]
        return [primary, table.c.id.asc()]
