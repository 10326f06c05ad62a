# services/reconciliation.py
# Moves user data from a vanished entity to its fingerprint-matched survivor.
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from collections.abc import Collection
from typing import Any

from sqlalchemy import and_, case, delete, distinct, exists, func, insert, or_, select, update
from sqlalchemy.engine import Connection, Engine

from _logging import log as _root_log
from sm_platform.db import (
    entity_fingerprints,
    entity_table,
    merge_records,
    playlist_items,
    playlists,
    ratings,
    soft_delete_rows,
    utcnow,
    watch_history,
)
from sm_platform.entity_types import EntityType
from sm_platform.errors import ReconciliationConflict
from sm_platform.instances import normalize_instance_id
from sm_platform.timestamps import parse_ts

from .user_data import EventHistory

log = _root_log.child("MERGE")


@dataclass(frozen=True)
class MergeRecord:
    id: str
    instance_id: str
    entity_type: str
    source_id: str
    target_id: str
    matched_fingerprint: str | None
    user_id: str
    play_count_transferred: int
    play_duration_transferred: float
    o_count_transferred: int
    rating_transferred: int | None
    favorite_transferred: bool
    playlist_entries_transferred: int
    reconciled_by: str | None
    automatic: bool
    created_at: datetime

    @classmethod
    def from_row(cls, row: Any) -> "MergeRecord":
        m = dict(row._mapping) if hasattr(row, "_mapping") else dict(row)
        return cls(**{k: m[k] for k in cls.__dataclass_fields__})

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["created_at"] = self.created_at.isoformat() if self.created_at else None
        return d


@dataclass
class ReconciliationOutcome:
    source_id: str
    matched: bool
    target_id: str | None = None
    fingerprint: str | None = None
    transfers: list[MergeRecord] = field(default_factory=list)
    soft_deleted: bool = False
    anomaly: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "matched": self.matched,
            "target_id": self.target_id,
            "fingerprint": self.fingerprint,
            "transfers": [t.to_dict() for t in self.transfers],
            "soft_deleted": self.soft_deleted,
            "anomaly": self.anomaly,
        }


@dataclass(frozen=True)
class FingerprintMatch:
    id: str
    label: str | None
    updated_at: str | None
    matched_fingerprint: str
    recommended: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _newest_first(updated_at: str | None) -> float:
    dt = parse_ts(updated_at)
    return -(dt.timestamp() if dt else float("-inf"))


def _later(a: datetime | None, b: datetime | None) -> datetime | None:
    if a is None:
        return b
    if b is None:
        return a
    return b if b > a else a


class MergeReconciliationService:
    def __init__(self, engine: Engine):
        self.engine = engine

    # ── matching ───────────────────────────────────────────────────────────

    def _fingerprints(self, conn: Connection, et: EntityType, instance_id: str, entity_id: str) -> list[str]:
        stmt = select(entity_fingerprints.c.value).where(
            entity_fingerprints.c.instance_id == instance_id,
            entity_fingerprints.c.entity_type == et.value,
            entity_fingerprints.c.entity_id == entity_id,
        )
        return [r[0] for r in conn.execute(stmt)]

    def _matches(
        self,
        conn: Connection,
        et: EntityType,
        instance_id: str,
        source_id: str,
        exclude: Collection[str] = (),
    ) -> list[FingerprintMatch]:
        fps = self._fingerprints(conn, et, instance_id, source_id)
        if not fps:
            return []
        t = entity_table(et)
        fp = entity_fingerprints
        label = t.c[et.kind.label_column]
        stmt = (
            select(t.c.id, label.label("label"), t.c.updated_at, fp.c.value)
            .select_from(
                t.join(
                    fp,
                    and_(
                        fp.c.instance_id == t.c.instance_id,
                        fp.c.entity_type == et.value,
                        fp.c.entity_id == t.c.id,
                    ),
                )
            )
            .where(
                t.c.instance_id == instance_id,
                t.c.deleted_at.is_(None),
                t.c.id != source_id,
                fp.c.value.in_(fps),
            )
        )
        seen: dict[str, FingerprintMatch] = {}
        for r in conn.execute(stmt):
            if r.id not in seen and r.id not in exclude:
                seen[r.id] = FingerprintMatch(r.id, r.label, r.updated_at, r.value)
        ordered = sorted(seen.values(), key=lambda m: (_newest_first(m.updated_at), m.id))
        return [
            FingerprintMatch(m.id, m.label, m.updated_at, m.matched_fingerprint, recommended=(i == 0))
            for i, m in enumerate(ordered)
        ]

    def find_matches(
        self, entity_type: EntityType, source_id: str, instance_id: str, *, exclude: Collection[str] = ()
    ) -> list[FingerprintMatch]:
        et = EntityType.parse(entity_type)
        if not et.kind.fingerprinted:
            return []
        with self.engine.connect() as conn:
            iid = normalize_instance_id(instance_id)
            return self._matches(conn, et, iid, str(source_id), frozenset(map(str, exclude)))

    # ── automatic path (cleanup) ───────────────────────────────────────────

    def attempt(
        self, entity_type: EntityType, source_id: str, instance_id: str, *, exclude: Collection[str] = ()
    ) -> ReconciliationOutcome:
        """Reconcile a vanished entity onto its best surviving match.

        ``exclude`` holds ids that are vanishing in the same batch; they are never chosen as survivors.
        """
        et = EntityType.parse(entity_type)
        iid = normalize_instance_id(instance_id)
        sid = str(source_id)
        if not et.kind.fingerprinted:
            return ReconciliationOutcome(source_id=sid, matched=False)

        matches = self.find_matches(et, sid, iid, exclude=exclude)
        if not matches:
            return ReconciliationOutcome(source_id=sid, matched=False)

        best = matches[0]
        try:
            return self._reconcile(
                et, iid, sid, best.id, fingerprint=best.matched_fingerprint, reconciled_by=None, automatic=True
            )
        except ReconciliationConflict as e:
            log.warn("reconciliation skipped", instance=iid, type=et.value, source=sid, target=best.id, reason=str(e))
            return ReconciliationOutcome(source_id=sid, matched=False, anomaly=str(e))

    # ── manual path (admin) ────────────────────────────────────────────────

    def reconcile(
        self,
        source_id: str,
        target_id: str,
        instance_id: str,
        *,
        entity_type: EntityType = EntityType.SCENE,
        reconciled_by: str | None = None,
        fingerprint: str | None = None,
    ) -> ReconciliationOutcome:
        et = EntityType.parse(entity_type)
        iid = normalize_instance_id(instance_id)
        if fingerprint is None:
            for m in self.find_matches(et, source_id, iid):
                if m.id == str(target_id):
                    fingerprint = m.matched_fingerprint
                    break
        return self._reconcile(
            et, iid, str(source_id), str(target_id),
            fingerprint=fingerprint, reconciled_by=reconciled_by, automatic=False,
        )

    def _reconcile(
        self,
        et: EntityType,
        instance_id: str,
        source_id: str,
        target_id: str,
        *,
        fingerprint: str | None,
        reconciled_by: str | None,
        automatic: bool,
    ) -> ReconciliationOutcome:
        if source_id == target_id:
            raise ValueError("source and target are the same entity")
        t = entity_table(et)
        with self.engine.begin() as conn:
            rows = {
                r.id: r
                for r in conn.execute(
                    select(t.c.id, t.c.deleted_at).where(t.c.instance_id == instance_id, t.c.id.in_([source_id, target_id]))
                )
            }
            if source_id not in rows:
                raise LookupError(f"{et.value} {source_id} not found")
            target = rows.get(target_id)
            if target is None or target.deleted_at is not None:
                raise ReconciliationConflict(f"target {et.value} {target_id} is missing or deleted")

            users = self._users_with_data(conn, et, instance_id, source_id)
            transfers: list[MergeRecord] = []
            for user_id in users:
                rec = self._transfer_user(
                    conn, et, instance_id, source_id, target_id, user_id,
                    fingerprint=fingerprint, reconciled_by=reconciled_by, automatic=automatic,
                )
                if rec is not None:
                    transfers.append(rec)
            soft_delete_rows(conn, t, instance_id, [source_id])

        log.info(
            "reconciled",
            instance=instance_id,
            type=et.value,
            source=source_id,
            target=target_id,
            fingerprint=fingerprint,
            users=len(users),
            transfers=len(transfers),
            automatic=automatic,
        )
        return ReconciliationOutcome(
            source_id=source_id,
            matched=True,
            target_id=target_id,
            fingerprint=fingerprint,
            transfers=transfers,
            soft_deleted=True,
        )

    # ── transfer ───────────────────────────────────────────────────────────

    def _users_with_data(self, conn: Connection, et: EntityType, instance_id: str, entity_id: str) -> list[str]:
        users: set[str] = set()
        users.update(
            r[0]
            for r in conn.execute(
                select(distinct(ratings.c.user_id)).where(
                    ratings.c.instance_id == instance_id,
                    ratings.c.entity_type == et.value,
                    ratings.c.entity_id == entity_id,
                )
            )
        )
        if et is EntityType.SCENE:
            users.update(
                r[0]
                for r in conn.execute(
                    select(distinct(watch_history.c.user_id)).where(
                        watch_history.c.instance_id == instance_id,
                        watch_history.c.scene_id == entity_id,
                    )
                )
            )
            users.update(
                r[0]
                for r in conn.execute(
                    select(distinct(playlists.c.user_id))
                    .select_from(playlists.join(playlist_items, playlist_items.c.playlist_id == playlists.c.id))
                    .where(playlist_items.c.instance_id == instance_id, playlist_items.c.scene_id == entity_id)
                )
            )
        return sorted(users)

    def _transfer_user(
        self,
        conn: Connection,
        et: EntityType,
        instance_id: str,
        source_id: str,
        target_id: str,
        user_id: str,
        *,
        fingerprint: str | None,
        reconciled_by: str | None,
        automatic: bool,
    ) -> MergeRecord | None:
        done = conn.execute(
            select(merge_records.c.id).where(
                merge_records.c.instance_id == instance_id,
                merge_records.c.source_id == source_id,
                merge_records.c.target_id == target_id,
                merge_records.c.user_id == user_id,
            )
        ).first()
        if done is not None:
            log.debug("already transferred", source=source_id, target=target_id, user=user_id)
            return None

        snap: dict[str, Any] = {
            "play_count_transferred": 0,
            "play_duration_transferred": 0.0,
            "o_count_transferred": 0,
            "rating_transferred": None,
            "favorite_transferred": False,
            "playlist_entries_transferred": 0,
        }
        if et is EntityType.SCENE:
            snap.update(self._move_watch(conn, instance_id, source_id, target_id, user_id))
            snap["playlist_entries_transferred"] = self._move_playlist_entries(
                conn, instance_id, source_id, target_id, user_id
            )
        snap.update(self._move_rating(conn, et, instance_id, source_id, target_id, user_id))

        rec = MergeRecord(
            id=uuid.uuid4().hex,
            instance_id=instance_id,
            entity_type=et.value,
            source_id=source_id,
            target_id=target_id,
            matched_fingerprint=fingerprint,
            user_id=user_id,
            reconciled_by=reconciled_by,
            automatic=automatic,
            created_at=utcnow(),
            **snap,
        )
        conn.execute(insert(merge_records).values(**asdict(rec)))
        return rec

    def _watch_row(self, conn: Connection, instance_id: str, scene_id: str, user_id: str) -> Any:
        return conn.execute(
            select(watch_history).where(
                watch_history.c.user_id == user_id,
                watch_history.c.instance_id == instance_id,
                watch_history.c.scene_id == scene_id,
            )
        ).mappings().first()

    def _move_watch(
        self, conn: Connection, instance_id: str, source_id: str, target_id: str, user_id: str
    ) -> dict[str, Any]:
        src = self._watch_row(conn, instance_id, source_id, user_id)
        if src is None:
            return {}
        tgt = self._watch_row(conn, instance_id, target_id, user_id)
        src_plays = EventHistory.from_json(src["play_history"])
        src_os = EventHistory.from_json(src["o_history"])
        if tgt is None:
            conn.execute(
                insert(watch_history).values(
                    user_id=user_id,
                    instance_id=instance_id,
                    scene_id=target_id,
                    play_count=src["play_count"],
                    play_duration=src["play_duration"],
                    o_count=src["o_count"],
                    resume_time=src["resume_time"],
                    last_played_at=src["last_played_at"],
                    play_history=src_plays.to_json(),
                    o_history=src_os.to_json(),
                )
            )
        else:
            conn.execute(
                update(watch_history)
                .where(watch_history.c.id == tgt["id"])
                .values(
                    play_count=(tgt["play_count"] or 0) + (src["play_count"] or 0),
                    play_duration=(tgt["play_duration"] or 0.0) + (src["play_duration"] or 0.0),
                    o_count=(tgt["o_count"] or 0) + (src["o_count"] or 0),
                    last_played_at=_later(tgt["last_played_at"], src["last_played_at"]),
                    play_history=EventHistory.from_json(tgt["play_history"]).merge(src_plays).to_json(),
                    o_history=EventHistory.from_json(tgt["o_history"]).merge(src_os).to_json(),
                )
            )
        conn.execute(delete(watch_history).where(watch_history.c.id == src["id"]))
        return {
            "play_count_transferred": int(src["play_count"] or 0),
            "play_duration_transferred": float(src["play_duration"] or 0.0),
            "o_count_transferred": int(src["o_count"] or 0),
        }

    def _move_rating(
        self, conn: Connection, et: EntityType, instance_id: str, source_id: str, target_id: str, user_id: str
    ) -> dict[str, Any]:
        def _row(entity_id: str) -> Any:
            return conn.execute(
                select(ratings).where(
                    ratings.c.user_id == user_id,
                    ratings.c.instance_id == instance_id,
                    ratings.c.entity_type == et.value,
                    ratings.c.entity_id == entity_id,
                )
            ).mappings().first()

        src = _row(source_id)
        if src is None:
            return {}
        tgt = _row(target_id)
        now = utcnow()
        if tgt is None:
            conn.execute(
                insert(ratings).values(
                    user_id=user_id,
                    instance_id=instance_id,
                    entity_type=et.value,
                    entity_id=target_id,
                    rating=src["rating"],
                    favorite=bool(src["favorite"]),
                    updated_at=now,
                )
            )
        else:
            conn.execute(
                update(ratings)
                .where(ratings.c.id == tgt["id"])
                .values(
                    rating=tgt["rating"] if tgt["rating"] is not None else src["rating"],
                    favorite=bool(tgt["favorite"]) or bool(src["favorite"]),
                    updated_at=now,
                )
            )
        conn.execute(delete(ratings).where(ratings.c.id == src["id"]))
        return {"rating_transferred": src["rating"], "favorite_transferred": bool(src["favorite"])}

    def _move_playlist_entries(
        self, conn: Connection, instance_id: str, source_id: str, target_id: str, user_id: str
    ) -> int:
        entries = conn.execute(
            select(playlist_items.c.id, playlist_items.c.playlist_id)
            .select_from(playlist_items.join(playlists, playlists.c.id == playlist_items.c.playlist_id))
            .where(
                playlists.c.user_id == user_id,
                playlist_items.c.instance_id == instance_id,
                playlist_items.c.scene_id == source_id,
            )
        ).all()
        for item_id, playlist_id in entries:
            already = conn.execute(
                select(playlist_items.c.id).where(
                    playlist_items.c.playlist_id == playlist_id,
                    playlist_items.c.instance_id == instance_id,
                    playlist_items.c.scene_id == target_id,
                )
            ).first()
            if already is not None:
                conn.execute(delete(playlist_items).where(playlist_items.c.id == item_id))
            else:
                conn.execute(update(playlist_items).where(playlist_items.c.id == item_id).values(scene_id=target_id))
        return len(entries)

    # ── admin helpers ──────────────────────────────────────────────────────

    def find_orphans_with_activity(self, instance_id: str | None = None) -> list[dict[str, Any]]:
        s = entity_table(EntityType.SCENE)
        has_watch = exists().where(watch_history.c.instance_id == s.c.instance_id, watch_history.c.scene_id == s.c.id)
        has_rating = exists().where(
            ratings.c.instance_id == s.c.instance_id,
            ratings.c.entity_type == EntityType.SCENE.value,
            ratings.c.entity_id == s.c.id,
        )
        has_entry = exists().where(playlist_items.c.instance_id == s.c.instance_id, playlist_items.c.scene_id == s.c.id)
        stmt = (
            select(s.c.instance_id, s.c.id, s.c.title, s.c.deleted_at)
            .where(s.c.deleted_at.is_not(None), or_(has_watch, has_rating, has_entry))
            .order_by(s.c.deleted_at.desc(), s.c.id)
        )
        if instance_id is not None:
            stmt = stmt.where(s.c.instance_id == normalize_instance_id(instance_id))

        out: list[dict[str, Any]] = []
        with self.engine.connect() as conn:
            for r in conn.execute(stmt).all():
                users = set(self._users_with_data(conn, EntityType.SCENE, r.instance_id, r.id))
                plays = conn.execute(
                    select(func.coalesce(func.sum(watch_history.c.play_count), 0)).where(
                        watch_history.c.instance_id == r.instance_id, watch_history.c.scene_id == r.id
                    )
                ).scalar()
                rated, faved = conn.execute(
                    select(
                        func.count(ratings.c.rating),
                        func.coalesce(func.sum(case((ratings.c.favorite.is_(True), 1), else_=0)), 0),
                    ).where(
                        ratings.c.instance_id == r.instance_id,
                        ratings.c.entity_type == EntityType.SCENE.value,
                        ratings.c.entity_id == r.id,
                    )
                ).one()
                entries = conn.execute(
                    select(func.count()).select_from(playlist_items).where(
                        playlist_items.c.instance_id == r.instance_id, playlist_items.c.scene_id == r.id
                    )
                ).scalar()
                out.append(
                    {
                        "instance_id": r.instance_id,
                        "id": r.id,
                        "title": r.title,
                        "deleted_at": r.deleted_at.replace(tzinfo=timezone.utc).isoformat() if r.deleted_at else None,
                        "user_count": len(users),
                        "total_play_count": int(plays or 0),
                        "has_ratings": int(rated or 0) > 0,
                        "has_favorites": int(faved or 0) > 0,
                        "has_playlist_entries": int(entries or 0) > 0,
                    }
                )
        return out

    def discard_orphaned_data(self, source_id: str, instance_id: str) -> dict[str, int]:
        iid = normalize_instance_id(instance_id)
        sid = str(source_id)
        s = entity_table(EntityType.SCENE)
        with self.engine.begin() as conn:
            row = conn.execute(select(s.c.deleted_at).where(s.c.instance_id == iid, s.c.id == sid)).first()
            if row is None:
                raise LookupError(f"scene {sid} not found")
            if row.deleted_at is None:
                raise ValueError(f"scene {sid} is not deleted")
            wh = conn.execute(
                delete(watch_history).where(watch_history.c.instance_id == iid, watch_history.c.scene_id == sid)
            ).rowcount
            rt = conn.execute(
                delete(ratings).where(
                    ratings.c.instance_id == iid,
                    ratings.c.entity_type == EntityType.SCENE.value,
                    ratings.c.entity_id == sid,
                )
            ).rowcount
            pl = conn.execute(
                delete(playlist_items).where(playlist_items.c.instance_id == iid, playlist_items.c.scene_id == sid)
            ).rowcount
        log.info("orphaned data discarded", instance=iid, scene=sid, watch=wh, ratings=rt, playlist_entries=pl)
        return {"watch_history": wh or 0, "ratings": rt or 0, "playlist_entries": pl or 0}

    def reconcile_all(self, instance_id: str | None = None, reconciled_by: str | None = None) -> dict[str, int]:
        reconciled = skipped = 0
        for orphan in self.find_orphans_with_activity(instance_id):
            matches = self.find_matches(EntityType.SCENE, orphan["id"], orphan["instance_id"])
            if not matches:
                skipped += 1
                continue
            best = matches[0]
            try:
                self.reconcile(
                    orphan["id"],
                    best.id,
                    orphan["instance_id"],
                    reconciled_by=reconciled_by,
                    fingerprint=best.matched_fingerprint,
                )
                reconciled += 1
            except ReconciliationConflict as e:
                log.warn("reconcile-all skipped", scene=orphan["id"], reason=str(e))
                skipped += 1
        log.info("reconcile-all finished", reconciled=reconciled, skipped=skipped)
        return {"reconciled": reconciled, "skipped": skipped}

    def list_merge_records(
        self,
        instance_id: str | None = None,
        *,
        source_id: str | None = None,
        user_id: str | None = None,
        limit: int = 100,
    ) -> list[MergeRecord]:
        stmt = select(merge_records).order_by(merge_records.c.created_at.desc(), merge_records.c.id).limit(max(1, int(limit)))
        if instance_id is not None:
            stmt = stmt.where(merge_records.c.instance_id == normalize_instance_id(instance_id))
        if source_id is not None:
            stmt = stmt.where(merge_records.c.source_id == str(source_id))
        if user_id is not None:
            stmt = stmt.where(merge_records.c.user_id == str(user_id))
        with self.engine.connect() as conn:
            return [MergeRecord.from_row(r) for r in conn.execute(stmt)]
