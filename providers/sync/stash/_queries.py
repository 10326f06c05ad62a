# /providers/sync/stash/_queries.py
# GraphQL documents for the remote catalog, one set per entity type.
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

from dataclasses import dataclass

from sm_platform.entity_types import EntityType, ensure_exhaustive

_ID = "id"
_TS = "created_at updated_at"

FIELDS: dict[EntityType, str] = {
    EntityType.TAG: f"""
        {_ID} name description favorite {_TS}
        aliases
        parents {{ id }}
    """,
    EntityType.STUDIO: f"""
        {_ID} name url details rating100 favorite {_TS}
        aliases
        parent_studio {{ id }}
        tags {{ id }}
    """,
    EntityType.PERFORMER: f"""
        {_ID} name disambiguation gender birthdate country rating100 favorite {_TS}
        alias_list
        tags {{ id }}
    """,
    EntityType.GROUP: f"""
        {_ID} name aliases date duration rating100 director synopsis {_TS}
        studio {{ id }}
        tags {{ id }}
    """,
    EntityType.GALLERY: f"""
        {_ID} title code date details rating100 organized {_TS}
        studio {{ id }}
        performers {{ id }}
        tags {{ id }}
        scenes {{ id }}
    """,
    EntityType.SCENE: f"""
        {_ID} title code date details rating100 organized o_counter play_count {_TS}
        studio {{ id }}
        performers {{ id }}
        tags {{ id }}
        groups {{ group {{ id }} }}
        galleries {{ id }}
        files {{ duration fingerprints {{ type value }} }}
    """,
    EntityType.IMAGE: f"""
        {_ID} title code date details rating100 organized o_counter {_TS}
        studio {{ id }}
        performers {{ id }}
        tags {{ id }}
        galleries {{ id }}
    """,
}
ensure_exhaustive(FIELDS, "FIELDS")

_FILTER_TYPES: dict[EntityType, str] = {
    EntityType.TAG: "TagFilterType",
    EntityType.STUDIO: "StudioFilterType",
    EntityType.PERFORMER: "PerformerFilterType",
    EntityType.GROUP: "GroupFilterType",
    EntityType.GALLERY: "GalleryFilterType",
    EntityType.SCENE: "SceneFilterType",
    EntityType.IMAGE: "ImageFilterType",
}
ensure_exhaustive(_FILTER_TYPES, "_FILTER_TYPES")


@dataclass(frozen=True)
class TypeQueries:
    find: str
    find_ids: str
    find_one: str
    result_key: str
    list_key: str
    filter_var: str


def _build(et: EntityType) -> TypeQueries:
    kind = et.kind
    op = kind.find_query
    lst = kind.plural
    fvar = kind.filter_var
    ftype = _FILTER_TYPES[et]
    fields = FIELDS[et]
    find = (
        f"query {op}($filter: FindFilterType, ${fvar}: {ftype}) {{\n"
        f"  {op}(filter: $filter, {fvar}: ${fvar}) {{\n"
        f"    count\n"
        f"    {lst} {{ {fields} }}\n"
        f"  }}\n"
        f"}}"
    )
    find_ids = (
        f"query {op}IDs($filter: FindFilterType) {{\n"
        f"  {op}(filter: $filter) {{ count {lst} {{ id }} }}\n"
        f"}}"
    )
    find_one = (
        f"query {op}ByID($ids: [ID!]) {{\n"
        f"  {op}(ids: $ids) {{ count {lst} {{ {fields} }} }}\n"
        f"}}"
    )
    return TypeQueries(find=find, find_ids=find_ids, find_one=find_one, result_key=op, list_key=lst, filter_var=fvar)


QUERIES: dict[EntityType, TypeQueries] = {et: _build(et) for et in EntityType}
ensure_exhaustive(QUERIES, "QUERIES")
