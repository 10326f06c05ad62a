# services/user_data.py
# Per-user data on catalog entities: watch history, ratings, playlists, hides, restrictions.
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, delete, insert, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine

from _logging import log as _root_log
from sm_platform.db import (
    content_restrictions,
    hidden_entities,
    playlist_items,
    playlists,
    ratings,
    utcnow,
    watch_history,
)
from sm_platform.entity_types import EntityType
from sm_platform.instances import normalize_instance_id
from sm_platform.timestamps import parse_ts

log = _root_log.child("USERDATA")

RESTRICTION_MODES = ("EXCLUDE", "INCLUDE")
_UNSET: Any = object()


def _event_time(ev: Any) -> Any:
    if isinstance(ev, Mapping):
        return ev.get("time") or ev.get("startTime") or ev.get("timestamp")
    return ev


def _event_key(ev: Any) -> str:
    raw = _event_time(ev)
    dt = parse_ts(raw)
    return dt.astimezone(timezone.utc).isoformat() if dt else str(raw)


def _sort_key(ev: Any) -> tuple[datetime, str]:
    dt = parse_ts(_event_time(ev)) or datetime.min.replace(tzinfo=timezone.utc)
    return dt, _event_key(ev)


@dataclass(frozen=True)
class EventHistory:
    """Ordered, append-only list of timestamped events (plays, O-events).

    Merging is union + sort by event time + de-duplicate by event time, so
    merge is commutative and idempotent.
    """

    events: tuple[Any, ...] = ()

    @classmethod
    def of(cls, events: Iterable[Any]) -> "EventHistory":
        seen: set[str] = set()
        out: list[Any] = []
        for ev in sorted((e for e in events if _event_time(e)), key=_sort_key):
            k = _event_key(ev)
            if k in seen:
                continue
            seen.add(k)
            out.append(ev)
        return cls(tuple(out))

    @classmethod
    def from_json(cls, raw: Any) -> "EventHistory":
        if raw is None or raw == "":
            return cls()
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except ValueError:
                return cls()
        if not isinstance(raw, list):
            return cls()
        return cls.of(raw)

    def merge(self, other: "EventHistory") -> "EventHistory":
        return EventHistory.of(self.events + other.events)

    def append(self, event: Any) -> "EventHistory":
        return EventHistory.of(self.events + (event,))

    def to_json(self) -> list[Any]:
        return [dict(e) if isinstance(e, Mapping) else e for e in self.events]

    def __len__(self) -> int:
        return len(self.events)


def _naive_utc(dt: datetime | None) -> datetime:
    if dt is None:
        return utcnow()
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


class UserDataStore:
    def __init__(self, engine: Engine):
        self.engine = engine

    # ── watch history ───────────────────────────────────────────────────────

    def get_watch(self, user_id: str, instance_id: str, scene_id: str) -> dict[str, Any] | None:
        stmt = select(watch_history).where(
            watch_history.c.user_id == str(user_id),
            watch_history.c.instance_id == normalize_instance_id(instance_id),
            watch_history.c.scene_id == str(scene_id),
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).mappings().first()
        return dict(row) if row else None

    def _bump_watch(
        self,
        user_id: str,
        instance_id: str,
        scene_id: str,
        *,
        plays: int = 0,
        duration: float = 0.0,
        o_events: int = 0,
        at: datetime | None = None,
        resume_time: float | None = None,
    ) -> dict[str, Any]:
        iid = normalize_instance_id(instance_id)
        at = _naive_utc(at)
        stamp = at.isoformat()
        with self.engine.begin() as conn:
            row = conn.execute(
                select(watch_history).where(
                    watch_history.c.user_id == str(user_id),
                    watch_history.c.instance_id == iid,
                    watch_history.c.scene_id == str(scene_id),
                )
            ).mappings().first()
            plays_h = EventHistory.from_json(row["play_history"] if row else None)
            o_h = EventHistory.from_json(row["o_history"] if row else None)
            if plays:
                plays_h = plays_h.append(stamp)
            if o_events:
                o_h = o_h.append(stamp)
            last = row["last_played_at"] if row else None
            if plays and (last is None or at > last):
                last = at
            values = {
                "play_count": (row["play_count"] if row else 0) + plays,
                "play_duration": (row["play_duration"] if row else 0.0) + float(duration or 0.0),
                "o_count": (row["o_count"] if row else 0) + o_events,
                "resume_time": resume_time if resume_time is not None else (row["resume_time"] if row else 0.0),
                "last_played_at": last,
                "play_history": plays_h.to_json(),
                "o_history": o_h.to_json(),
            }
            if row:
                conn.execute(update(watch_history).where(watch_history.c.id == row["id"]).values(**values))
            else:
                conn.execute(
                    insert(watch_history).values(
                        user_id=str(user_id), instance_id=iid, scene_id=str(scene_id), **values
                    )
                )
        out = self.get_watch(user_id, iid, scene_id)
        assert out is not None
        return out

    def record_play(
        self,
        user_id: str,
        instance_id: str,
        scene_id: str,
        *,
        duration: float = 0.0,
        at: datetime | None = None,
        resume_time: float | None = None,
    ) -> dict[str, Any]:
        return self._bump_watch(
            user_id, instance_id, scene_id, plays=1, duration=duration, at=at, resume_time=resume_time
        )

    def record_o(self, user_id: str, instance_id: str, scene_id: str, *, at: datetime | None = None) -> dict[str, Any]:
        return self._bump_watch(user_id, instance_id, scene_id, o_events=1, at=at)

    # ── ratings / favorites ────────────────────────────────────────────────

    def set_rating(
        self,
        user_id: str,
        instance_id: str,
        entity_type: EntityType,
        entity_id: str,
        *,
        rating: int | None = _UNSET,
        favorite: bool = _UNSET,
    ) -> dict[str, Any]:
        et = EntityType.parse(entity_type)
        if rating is not _UNSET and rating is not None and not (0 <= int(rating) <= 100):
            raise ValueError("rating must be within 0..100")
        values: dict[str, Any] = {"updated_at": utcnow()}
        if rating is not _UNSET:
            values["rating"] = None if rating is None else int(rating)
        if favorite is not _UNSET:
            values["favorite"] = bool(favorite)
        stmt = sqlite_insert(ratings).values(
            user_id=str(user_id),
            instance_id=normalize_instance_id(instance_id),
            entity_type=et.value,
            entity_id=str(entity_id),
            **values,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "instance_id", "entity_type", "entity_id"],
            set_=values,
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)
        out = self.get_rating(user_id, instance_id, et, entity_id)
        assert out is not None
        return out

    def get_rating(
        self, user_id: str, instance_id: str, entity_type: EntityType, entity_id: str
    ) -> dict[str, Any] | None:
        stmt = select(ratings).where(
            ratings.c.user_id == str(user_id),
            ratings.c.instance_id == normalize_instance_id(instance_id),
            ratings.c.entity_type == EntityType.parse(entity_type).value,
            ratings.c.entity_id == str(entity_id),
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).mappings().first()
        return dict(row) if row else None

    # ── playlists ──────────────────────────────────────────────────────────

    def create_playlist(self, user_id: str, name: str) -> int:
        with self.engine.begin() as conn:
            res = conn.execute(insert(playlists).values(user_id=str(user_id), name=name, created_at=utcnow()))
            return int(res.inserted_primary_key[0])

    def add_to_playlist(self, playlist_id: int, instance_id: str, scene_id: str) -> bool:
        iid = normalize_instance_id(instance_id)
        with self.engine.begin() as conn:
            pos = conn.execute(
                select(playlist_items.c.position)
                .where(playlist_items.c.playlist_id == playlist_id)
                .order_by(playlist_items.c.position.desc())
                .limit(1)
            ).scalar()
            stmt = (
                sqlite_insert(playlist_items)
                .values(
                    playlist_id=playlist_id,
                    instance_id=iid,
                    scene_id=str(scene_id),
                    position=(pos or 0) + 1,
                    added_at=utcnow(),
                )
                .on_conflict_do_nothing(index_elements=["playlist_id", "instance_id", "scene_id"])
            )
            return bool(conn.execute(stmt).rowcount)

    def playlist_scene_ids(self, playlist_id: int) -> list[str]:
        stmt = (
            select(playlist_items.c.scene_id)
            .where(playlist_items.c.playlist_id == playlist_id)
            .order_by(playlist_items.c.position, playlist_items.c.id)
        )
        with self.engine.connect() as conn:
            return [r[0] for r in conn.execute(stmt)]

    # ── hidden entities ────────────────────────────────────────────────────

    def hide(self, user_id: str, entity_type: EntityType, entity_id: str, instance_id: str = "") -> bool:
        et = EntityType.parse(entity_type)
        stmt = (
            sqlite_insert(hidden_entities)
            .values(
                user_id=str(user_id),
                instance_id=str(instance_id or ""),
                entity_type=et.value,
                entity_id=str(entity_id),
                hidden_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["user_id", "instance_id", "entity_type", "entity_id"])
        )
        with self.engine.begin() as conn:
            return bool(conn.execute(stmt).rowcount)

    def unhide(self, user_id: str, entity_type: EntityType, entity_id: str, instance_id: str = "") -> bool:
        stmt = delete(hidden_entities).where(
            and_(
                hidden_entities.c.user_id == str(user_id),
                hidden_entities.c.instance_id == str(instance_id or ""),
                hidden_entities.c.entity_type == EntityType.parse(entity_type).value,
                hidden_entities.c.entity_id == str(entity_id),
            )
        )
        with self.engine.begin() as conn:
            return bool(conn.execute(stmt).rowcount)

    # ── restriction rules ──────────────────────────────────────────────────

    def set_restriction(
        self,
        user_id: str,
        entity_type: EntityType,
        mode: str,
        entity_ids: Iterable[str],
        instance_id: str = "",
    ) -> dict[str, Any]:
        et = EntityType.parse(entity_type)
        m = str(mode or "").upper()
        if m not in RESTRICTION_MODES:
            raise ValueError(f"mode must be one of {RESTRICTION_MODES}")
        ids = sorted({str(i) for i in entity_ids})
        values = {"mode": m, "entity_ids": ids, "updated_at": utcnow()}
        stmt = sqlite_insert(content_restrictions).values(
            user_id=str(user_id), instance_id=str(instance_id or ""), entity_type=et.value, **values
        )
        stmt = stmt.on_conflict_do_update(index_elements=["user_id", "instance_id", "entity_type"], set_=values)
        with self.engine.begin() as conn:
            conn.execute(stmt)
        log.info("restriction set", user=user_id, type=et.value, mode=m, ids=len(ids))
        return {"user_id": str(user_id), "entity_type": et.value, "mode": m, "entity_ids": ids}

    def clear_restriction(self, user_id: str, entity_type: EntityType, instance_id: str = "") -> bool:
        stmt = delete(content_restrictions).where(
            content_restrictions.c.user_id == str(user_id),
            content_restrictions.c.instance_id == str(instance_id or ""),
            content_restrictions.c.entity_type == EntityType.parse(entity_type).value,
        )
        with self.engine.begin() as conn:
            return bool(conn.execute(stmt).rowcount)
