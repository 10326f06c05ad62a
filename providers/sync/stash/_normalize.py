# /providers/sync/stash/_normalize.py
# Remote payload -> local row shape (promoted columns, links, fingerprints).
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

import hashlib
import json
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from sm_platform.entity_types import EntityType, ensure_exhaustive

FINGERPRINT_ALGO = "phash"

# Relation keys are turned into links and removed from the stored attribute blob.
_RELATION_KEYS = ("parents", "parent_studio", "studio", "performers", "tags", "groups", "galleries", "scenes", "files")


@dataclass
class NormalizedEntity:
    id: str
    created_at: str | None
    updated_at: str | None
    columns: dict[str, Any] = field(default_factory=dict)
    data: dict[str, Any] = field(default_factory=dict)
    links: list[tuple[EntityType, str]] = field(default_factory=list)
    fingerprints: list[tuple[str, str]] = field(default_factory=list)

    @property
    def content_hash(self) -> str:
        blob = json.dumps(
            {
                "c": self.columns,
                "d": self.data,
                "l": sorted((t.value, i) for t, i in self.links),
                "f": sorted(self.fingerprints),
            },
            sort_keys=True,
            default=str,
            separators=(",", ":"),
        )
        return hashlib.sha1(blob.encode("utf-8")).hexdigest()


def _ids(value: Any) -> list[str]:
    out: list[str] = []
    for it in value or []:
        if isinstance(it, Mapping) and it.get("id") is not None:
            out.append(str(it["id"]))
    return out


def _one(value: Any) -> str | None:
    if isinstance(value, Mapping) and value.get("id") is not None:
        return str(value["id"])
    return None


def _int(v: Any) -> int | None:
    try:
        return int(v) if v is not None else None
    except (TypeError, ValueError):
        return None


def _links(et: EntityType, ids: Iterable[str]) -> list[tuple[EntityType, str]]:
    seen: set[str] = set()
    out: list[tuple[EntityType, str]] = []
    for i in ids:
        if i not in seen:
            seen.add(i)
            out.append((et, i))
    return out


def extract_phashes(item: Mapping[str, Any]) -> list[str]:
    out: list[str] = []
    for f in item.get("files") or []:
        if not isinstance(f, Mapping):
            continue
        for fp in f.get("fingerprints") or []:
            if not isinstance(fp, Mapping):
                continue
            if str(fp.get("type") or "").lower() != FINGERPRINT_ALGO:
                continue
            v = str(fp.get("value") or "").strip()
            if v and v not in out:
                out.append(v)
    return out


def _base(item: Mapping[str, Any]) -> NormalizedEntity:
    if item.get("id") is None:
        raise ValueError("remote item without id")
    data = {k: v for k, v in item.items() if k not in _RELATION_KEYS and k not in ("id", "created_at", "updated_at")}
    return NormalizedEntity(
        id=str(item["id"]),
        created_at=item.get("created_at"),
        updated_at=item.get("updated_at"),
        data=data,
    )


def _tag(item: Mapping[str, Any]) -> NormalizedEntity:
    n = _base(item)
    n.columns = {"name": item.get("name"), "favorite": bool(item.get("favorite"))}
    n.links = _links(EntityType.TAG, _ids(item.get("parents")))
    return n


def _studio(item: Mapping[str, Any]) -> NormalizedEntity:
    n = _base(item)
    parent = _one(item.get("parent_studio"))
    n.columns = {
        "name": item.get("name"),
        "favorite": bool(item.get("favorite")),
        "rating100": _int(item.get("rating100")),
        "parent_id": parent,
    }
    n.links = _links(EntityType.STUDIO, [parent] if parent else []) + _links(EntityType.TAG, _ids(item.get("tags")))
    return n


def _performer(item: Mapping[str, Any]) -> NormalizedEntity:
    n = _base(item)
    n.columns = {
        "name": item.get("name"),
        "gender": item.get("gender"),
        "favorite": bool(item.get("favorite")),
        "rating100": _int(item.get("rating100")),
    }
    n.links = _links(EntityType.TAG, _ids(item.get("tags")))
    return n


def _group(item: Mapping[str, Any]) -> NormalizedEntity:
    n = _base(item)
    studio = _one(item.get("studio"))
    n.columns = {
        "name": item.get("name"),
        "date": item.get("date"),
        "rating100": _int(item.get("rating100")),
        "duration": _int(item.get("duration")),
    }
    n.links = _links(EntityType.STUDIO, [studio] if studio else []) + _links(EntityType.TAG, _ids(item.get("tags")))
    return n


def _gallery(item: Mapping[str, Any]) -> NormalizedEntity:
    n = _base(item)
    studio = _one(item.get("studio"))
    n.columns = {
        "title": item.get("title"),
        "date": item.get("date"),
        "rating100": _int(item.get("rating100")),
        "organized": bool(item.get("organized")),
    }
    n.links = (
        _links(EntityType.STUDIO, [studio] if studio else [])
        + _links(EntityType.PERFORMER, _ids(item.get("performers")))
        + _links(EntityType.TAG, _ids(item.get("tags")))
        + _links(EntityType.SCENE, _ids(item.get("scenes")))
    )
    return n


def _scene(item: Mapping[str, Any]) -> NormalizedEntity:
    n = _base(item)
    studio = _one(item.get("studio"))
    files = [f for f in item.get("files") or [] if isinstance(f, Mapping)]
    duration = files[0].get("duration") if files else None
    n.columns = {
        "title": item.get("title"),
        "code": item.get("code"),
        "date": item.get("date"),
        "rating100": _int(item.get("rating100")),
        "organized": bool(item.get("organized")),
        "o_counter": _int(item.get("o_counter")) or 0,
        "play_count": _int(item.get("play_count")) or 0,
        "duration": float(duration) if duration is not None else None,
    }
    group_ids = [
        str(g["group"]["id"])
        for g in item.get("groups") or []
        if isinstance(g, Mapping) and isinstance(g.get("group"), Mapping) and g["group"].get("id") is not None
    ]
    n.links = (
        _links(EntityType.STUDIO, [studio] if studio else [])
        + _links(EntityType.PERFORMER, _ids(item.get("performers")))
        + _links(EntityType.TAG, _ids(item.get("tags")))
        + _links(EntityType.GROUP, group_ids)
        + _links(EntityType.GALLERY, _ids(item.get("galleries")))
    )
    n.fingerprints = [(FINGERPRINT_ALGO, v) for v in extract_phashes(item)]
    return n


def _image(item: Mapping[str, Any]) -> NormalizedEntity:
    n = _base(item)
    studio = _one(item.get("studio"))
    n.columns = {
        "title": item.get("title"),
        "date": item.get("date"),
        "rating100": _int(item.get("rating100")),
        "organized": bool(item.get("organized")),
        "o_counter": _int(item.get("o_counter")) or 0,
    }
    n.links = (
        _links(EntityType.STUDIO, [studio] if studio else [])
        + _links(EntityType.PERFORMER, _ids(item.get("performers")))
        + _links(EntityType.TAG, _ids(item.get("tags")))
        + _links(EntityType.GALLERY, _ids(item.get("galleries")))
    )
    return n


NORMALIZERS: dict[EntityType, Callable[[Mapping[str, Any]], NormalizedEntity]] = {
    EntityType.TAG: _tag,
    EntityType.STUDIO: _studio,
    EntityType.PERFORMER: _performer,
    EntityType.GROUP: _group,
    EntityType.GALLERY: _gallery,
    EntityType.SCENE: _scene,
    EntityType.IMAGE: _image,
}
ensure_exhaustive(NORMALIZERS, "NORMALIZERS")


def normalize(et: EntityType, item: Mapping[str, Any]) -> NormalizedEntity:
    return NORMALIZERS[et](item)
