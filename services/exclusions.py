# services/exclusions.py
# Per-user exclusion sets: restriction rules, hides, cascades, soft-deleted rows.
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.engine import Connection, Engine

from _logging import log as _root_log
from sm_platform.db import content_restrictions, entity_links, entity_table, hidden_entities
from sm_platform.entity_types import SYNC_ORDER, EntityType, ensure_exhaustive
from sm_platform.instances import normalize_instance_id
from sm_platform.orchestrator._chunking import BATCH_SIZE, iter_chunks

log = _root_log.child("EXCL")

# Excluding an entity of the key type hides the linked entities of these types.
CASCADES: dict[EntityType, tuple[EntityType, ...]] = {
    EntityType.TAG: (
        EntityType.STUDIO,
        EntityType.PERFORMER,
        EntityType.GROUP,
        EntityType.GALLERY,
        EntityType.SCENE,
        EntityType.IMAGE,
    ),
    EntityType.STUDIO: (EntityType.GROUP, EntityType.GALLERY, EntityType.SCENE, EntityType.IMAGE),
    EntityType.PERFORMER: (EntityType.SCENE, EntityType.IMAGE),
    EntityType.GROUP: (EntityType.SCENE,),
    EntityType.GALLERY: (EntityType.SCENE, EntityType.IMAGE),
    EntityType.SCENE: (),
    EntityType.IMAGE: (),
}
ensure_exhaustive(CASCADES, "CASCADES")

# Organizing types are hidden when none of their linked content of these types is visible.
EMPTY_RULES: dict[EntityType, tuple[EntityType, ...]] = {
    EntityType.GALLERY: (EntityType.IMAGE,),
    EntityType.PERFORMER: (EntityType.SCENE, EntityType.IMAGE),
    EntityType.STUDIO: (EntityType.SCENE, EntityType.IMAGE),
    EntityType.GROUP: (EntityType.SCENE,),
    EntityType.TAG: (EntityType.SCENE, EntityType.PERFORMER, EntityType.STUDIO, EntityType.GROUP),
}


@dataclass(frozen=True)
class ExclusionSet:
    user_id: str
    instance_id: str
    by_type: Mapping[EntityType, frozenset[str]] = field(default_factory=dict)

    def for_type(self, entity_type: EntityType) -> frozenset[str]:
        return self.by_type.get(EntityType.parse(entity_type), frozenset())

    def total(self) -> int:
        return sum(len(v) for v in self.by_type.values())

    def counts(self) -> dict[str, int]:
        return {et.value: len(self.for_type(et)) for et in SYNC_ORDER}


class ExclusionComputationService:
    """Builds a user's exclusion set in three phases.

    Direct rules and hides (widened by the tag/studio hierarchy) cascade one
    level onto linked content. Soft-deleted rows are added. When ``hide_empty``
    is set, organizing entities left with no visible content are hidden last.
    """

    def __init__(self, engine: Engine, hide_empty: bool = True):
        self.engine = engine
        self.hide_empty = hide_empty

    def compute_for_user(self, user_id: str, instance_id: str) -> ExclusionSet:
        uid = str(user_id)
        iid = normalize_instance_id(instance_id)
        t0 = time.monotonic()
        with self.engine.connect() as conn:
            direct = self._direct(conn, uid, iid)
            for et in SYNC_ORDER:
                if et.kind.hierarchical and direct[et]:
                    direct[et] = self._descendants(conn, iid, et, direct[et])

            excluded = {et: set(ids) for et, ids in direct.items()}
            for et in SYNC_ORDER:
                if not direct[et]:
                    continue
                for child in CASCADES[et]:
                    excluded[child] |= self._linked(conn, iid, et, direct[et], child)

            for et in SYNC_ORDER:
                excluded[et] |= self._soft_deleted(conn, iid, et)

            empty: dict[EntityType, set[str]] = {}
            if self.hide_empty:
                visible = {et: self._all_alive(conn, iid, et) - excluded[et] for et in SYNC_ORDER}
                empty = self._empty(conn, iid, visible)
                for et, ids in empty.items():
                    excluded[et] |= ids

        out = ExclusionSet(uid, iid, {et: frozenset(ids) for et, ids in excluded.items()})
        log.debug(
            "computed",
            user=uid,
            instance=iid,
            total=out.total(),
            empty=sum(len(v) for v in empty.values()),
            ms=int((time.monotonic() - t0) * 1000),
        )
        return out

    # ── sources ────────────────────────────────────────────────────────────

    def _direct(self, conn: Connection, user_id: str, instance_id: str) -> dict[EntityType, set[str]]:
        excluded: dict[EntityType, set[str]] = {et: set() for et in EntityType}
        scope = (content_restrictions.c.instance_id == "", content_restrictions.c.instance_id == instance_id)
        rules = conn.execute(
            select(content_restrictions).where(content_restrictions.c.user_id == user_id, or_(*scope))
        ).mappings()
        for rule in rules:
            try:
                et = EntityType.parse(rule["entity_type"])
            except ValueError:
                log.warn("unknown entity type in restriction", user=user_id, type=rule["entity_type"])
                continue
            ids = {str(i) for i in rule["entity_ids"] or []}
            if rule["mode"] == "INCLUDE":
                excluded[et] |= self._all_alive(conn, instance_id, et) - ids
            else:
                excluded[et] |= ids

        hidden = conn.execute(
            select(hidden_entities.c.entity_type, hidden_entities.c.entity_id).where(
                hidden_entities.c.user_id == user_id,
                or_(hidden_entities.c.instance_id == "", hidden_entities.c.instance_id == instance_id),
            )
        )
        for type_value, entity_id in hidden:
            try:
                excluded[EntityType.parse(type_value)].add(str(entity_id))
            except ValueError:
                log.warn("unknown entity type in hidden entities", user=user_id, type=type_value)
        return excluded

    def _all_alive(self, conn: Connection, instance_id: str, et: EntityType) -> set[str]:
        t = entity_table(et)
        stmt = select(t.c.id).where(t.c.instance_id == instance_id, t.c.deleted_at.is_(None))
        return {r[0] for r in conn.execute(stmt)}

    def _soft_deleted(self, conn: Connection, instance_id: str, et: EntityType) -> set[str]:
        t = entity_table(et)
        stmt = select(t.c.id).where(t.c.instance_id == instance_id, t.c.deleted_at.is_not(None))
        return {r[0] for r in conn.execute(stmt)}

    def _descendants(self, conn: Connection, instance_id: str, et: EntityType, roots: Iterable[str]) -> set[str]:
        """Roots plus every transitive child. Cycles in the parent graph are tolerated."""
        seen: set[str] = set(roots)
        frontier = list(seen)
        links = entity_links.c
        while frontier:
            nxt: list[str] = []
            for chunk in iter_chunks(frontier, BATCH_SIZE):
                rows = conn.execute(
                    select(links.owner_id).where(
                        links.instance_id == instance_id,
                        links.owner_type == et.value,
                        links.related_type == et.value,
                        links.related_id.in_(chunk),
                    )
                )
                for (child,) in rows:
                    if child not in seen:
                        seen.add(child)
                        nxt.append(child)
            frontier = nxt
        return seen

    def _empty(
        self,
        conn: Connection,
        instance_id: str,
        visible: Mapping[EntityType, set[str]],
    ) -> dict[EntityType, set[str]]:
        # Judged against direct + cascade + soft-deleted only; empties found here
        # do not make other organizers empty in the same pass.
        out: dict[EntityType, set[str]] = {}
        for et, content_types in EMPTY_RULES.items():
            candidates = set(visible[et])
            if not candidates:
                continue
            for content in content_types:
                candidates -= self._with_visible(conn, instance_id, et, content, visible[content])
                if not candidates:
                    break
            if candidates and et.kind.hierarchical:
                candidates -= self._with_alive_children(conn, instance_id, et)
            if candidates:
                out[et] = candidates
        return out

    def _with_visible(
        self,
        conn: Connection,
        instance_id: str,
        et: EntityType,
        content: EntityType,
        visible_content: set[str],
    ) -> set[str]:
        """Ids of ``et`` linked (either direction) to at least one visible ``content`` row."""
        if not visible_content:
            return set()
        links = entity_links.c
        out: set[str] = set()
        rows = conn.execute(
            select(links.related_id, links.owner_id).where(
                links.instance_id == instance_id,
                links.owner_type == content.value,
                links.related_type == et.value,
            )
        )
        out.update(org for org, item_id in rows if item_id in visible_content)
        rows = conn.execute(
            select(links.owner_id, links.related_id).where(
                links.instance_id == instance_id,
                links.owner_type == et.value,
                links.related_type == content.value,
            )
        )
        out.update(org for org, item_id in rows if item_id in visible_content)
        return out

    def _with_alive_children(self, conn: Connection, instance_id: str, et: EntityType) -> set[str]:
        # Parent tags and studios organize the hierarchy and are never empty.
        t = entity_table(et)
        links = entity_links.c
        stmt = (
            select(links.related_id)
            .join(t, (t.c.instance_id == links.instance_id) & (t.c.id == links.owner_id))
            .where(
                links.instance_id == instance_id,
                links.owner_type == et.value,
                links.related_type == et.value,
                t.c.deleted_at.is_(None),
            )
        )
        return {r[0] for r in conn.execute(stmt)}

    def _linked(
        self,
        conn: Connection,
        instance_id: str,
        parent: EntityType,
        parent_ids: Iterable[str],
        child: EntityType,
    ) -> set[str]:
        # Relations are stored on whichever side the remote payload carries them,
        # so both directions are checked.
        links = entity_links.c
        out: set[str] = set()
        for chunk in iter_chunks(sorted(parent_ids), BATCH_SIZE):
            out.update(
                r[0]
                for r in conn.execute(
                    select(links.owner_id).where(
                        links.instance_id == instance_id,
                        links.owner_type == child.value,
                        links.related_type == parent.value,
                        links.related_id.in_(chunk),
                    )
                )
            )
            out.update(
                r[0]
                for r in conn.execute(
                    select(links.related_id).where(
                        links.instance_id == instance_id,
                        links.owner_type == parent.value,
                        links.owner_id.in_(chunk),
                        links.related_type == child.value,
                    )
                )
            )
        return out


class ExclusionCache:
    """Memo for one logical request. Create a new one per request; never share it."""

    def __init__(self, service: ExclusionComputationService):
        self.service = service
        self._memo: dict[tuple[str, str], ExclusionSet] = {}
        self.computed = 0

    def get(self, user_id: str, instance_id: str) -> ExclusionSet:
        key = (str(user_id), normalize_instance_id(instance_id))
        hit = self._memo.get(key)
        if hit is None:
            hit = self._memo[key] = self.service.compute_for_user(*key)
            self.computed += 1
        return hit

    def summary(self) -> dict[str, Any]:
        return {"entries": len(self._memo), "computed": self.computed}
