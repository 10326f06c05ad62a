# sm_platform/entity_types.py
# Closed set of catalog entity types and their per-type capabilities.
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar


class EntityType(str, Enum):
    TAG = "tag"
    STUDIO = "studio"
    PERFORMER = "performer"
    GROUP = "group"
    GALLERY = "gallery"
    SCENE = "scene"
    IMAGE = "image"

    @classmethod
    def parse(cls, value: Any) -> "EntityType":
        if isinstance(value, cls):
            return value
        s = str(value or "").strip().lower()
        for kind in KINDS.values():
            if s == kind.plural:
                return kind.type
        try:
            return cls(s)
        except ValueError:
            raise ValueError(f"unknown entity type: {value!r}") from None

    @property
    def kind(self) -> "EntityKind":
        return KINDS[self]


# Later types denormalize references to earlier ones.
SYNC_ORDER: tuple[EntityType, ...] = (
    EntityType.TAG,
    EntityType.STUDIO,
    EntityType.PERFORMER,
    EntityType.GROUP,
    EntityType.GALLERY,
    EntityType.SCENE,
    EntityType.IMAGE,
)


@dataclass(frozen=True)
class EntityKind:
    type: EntityType
    plural: str
    find_query: str
    filter_var: str
    label_column: str
    sort_columns: tuple[str, ...]
    fingerprinted: bool = False
    # Relation to itself that forms a parent -> child tree (tag parents, studio parent).
    hierarchical: bool = False


_COMMON_SORTS = ("created_at", "updated_at", "id")

KINDS: dict[EntityType, EntityKind] = {
    EntityType.TAG: EntityKind(
        EntityType.TAG, "tags", "findTags", "tag_filter", "name",
        _COMMON_SORTS + ("name",), hierarchical=True,
    ),
    EntityType.STUDIO: EntityKind(
        EntityType.STUDIO, "studios", "findStudios", "studio_filter", "name",
        _COMMON_SORTS + ("name", "rating100"), hierarchical=True,
    ),
    EntityType.PERFORMER: EntityKind(
        EntityType.PERFORMER, "performers", "findPerformers", "performer_filter", "name",
        _COMMON_SORTS + ("name", "rating100"),
    ),
    EntityType.GROUP: EntityKind(
        EntityType.GROUP, "groups", "findGroups", "group_filter", "name",
        _COMMON_SORTS + ("name", "date", "rating100", "duration"),
    ),
    EntityType.GALLERY: EntityKind(
        EntityType.GALLERY, "galleries", "findGalleries", "gallery_filter", "title",
        _COMMON_SORTS + ("title", "date", "rating100"),
    ),
    EntityType.SCENE: EntityKind(
        EntityType.SCENE, "scenes", "findScenes", "scene_filter", "title",
        _COMMON_SORTS + ("title", "date", "rating100", "o_counter", "play_count", "duration"),
        fingerprinted=True,
    ),
    EntityType.IMAGE: EntityKind(
        EntityType.IMAGE, "images", "findImages", "image_filter", "title",
        _COMMON_SORTS + ("title", "date", "rating100", "o_counter"),
    ),
}

V = TypeVar("V")


def ensure_exhaustive(mapping: Mapping[EntityType, V], what: str) -> Mapping[EntityType, V]:
    missing = [t.value for t in EntityType if t not in mapping]
    if missing:
        raise RuntimeError(f"{what}: missing entity types {missing}")
    return mapping


ensure_exhaustive(KINDS, "KINDS")
