# sm_platform/db.py
# Local mirror schema (SQLAlchemy Core) and engine factory.
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from collections.abc import Iterable
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import StaticPool

from .entity_types import EntityType, ensure_exhaustive

metadata = MetaData()


def utcnow() -> datetime:
    # SQLite stores naive values; everything local is UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def seeded_rank(seed: Any, key: Any) -> int:
    h = hashlib.blake2b(f"{seed}:{key}".encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(h, "big") >> 1


def _entity_table(et: EntityType, *extra: Any) -> Table:
    name = et.kind.plural
    return Table(
        name,
        metadata,
        Column("instance_id", String(64), primary_key=True),
        Column("id", String(64), primary_key=True),
        Column("created_at", String(40)),
        Column("updated_at", String(40)),
        Column("content_hash", String(40), nullable=False),
        Column("data", JSON, nullable=False),
        Column("deleted_at", DateTime),
        Column("synced_at", DateTime, nullable=False),
        *extra,
        Index(f"ix_{name}_alive", "instance_id", "deleted_at"),
    )


ENTITY_TABLES: dict[EntityType, Table] = {
    EntityType.TAG: _entity_table(
        EntityType.TAG,
        Column("name", Text),
        Column("favorite", Boolean, nullable=False, default=False),
    ),
    EntityType.STUDIO: _entity_table(
        EntityType.STUDIO,
        Column("name", Text),
        Column("favorite", Boolean, nullable=False, default=False),
        Column("rating100", Integer),
        Column("parent_id", String(64)),
    ),
    EntityType.PERFORMER: _entity_table(
        EntityType.PERFORMER,
        Column("name", Text),
        Column("gender", String(32)),
        Column("favorite", Boolean, nullable=False, default=False),
        Column("rating100", Integer),
    ),
    EntityType.GROUP: _entity_table(
        EntityType.GROUP,
        Column("name", Text),
        Column("date", String(10)),
        Column("rating100", Integer),
        Column("duration", Integer),
    ),
    EntityType.GALLERY: _entity_table(
        EntityType.GALLERY,
        Column("title", Text),
        Column("date", String(10)),
        Column("rating100", Integer),
        Column("organized", Boolean, nullable=False, default=False),
    ),
    EntityType.SCENE: _entity_table(
        EntityType.SCENE,
        Column("title", Text),
        Column("code", String(64)),
        Column("date", String(10)),
        Column("rating100", Integer),
        Column("organized", Boolean, nullable=False, default=False),
        Column("o_counter", Integer, nullable=False, default=0),
        Column("play_count", Integer, nullable=False, default=0),
        Column("duration", Float),
    ),
    EntityType.IMAGE: _entity_table(
        EntityType.IMAGE,
        Column("title", Text),
        Column("date", String(10)),
        Column("rating100", Integer),
        Column("organized", Boolean, nullable=False, default=False),
        Column("o_counter", Integer, nullable=False, default=0),
    ),
}
ensure_exhaustive(ENTITY_TABLES, "ENTITY_TABLES")


def entity_table(et: EntityType) -> Table:
    return ENTITY_TABLES[EntityType.parse(et)]


# owner -> related, e.g. (scene 12) -> (performer 7); (tag 3) -> (tag 1) means tag 1 is a parent of tag 3
entity_links = Table(
    "entity_links",
    metadata,
    Column("instance_id", String(64), primary_key=True),
    Column("owner_type", String(16), primary_key=True),
    Column("owner_id", String(64), primary_key=True),
    Column("related_type", String(16), primary_key=True),
    Column("related_id", String(64), primary_key=True),
    Index("ix_entity_links_related", "instance_id", "related_type", "related_id", "owner_type"),
)

entity_fingerprints = Table(
    "entity_fingerprints",
    metadata,
    Column("instance_id", String(64), primary_key=True),
    Column("entity_type", String(16), primary_key=True),
    Column("entity_id", String(64), primary_key=True),
    Column("algorithm", String(16), primary_key=True),
    Column("value", String(128), primary_key=True),
    Index("ix_entity_fingerprints_value", "entity_type", "algorithm", "value"),
)

sync_state = Table(
    "sync_state",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("instance_id", String(64), nullable=False),
    Column("entity_type", String(16), nullable=False),
    Column("last_full_sync", String(40)),
    Column("last_incremental_sync", String(40)),
    Column("last_sync_count", Integer, nullable=False, default=0),
    Column("last_sync_duration_ms", Integer, nullable=False, default=0),
    Column("updated_at", DateTime, nullable=False),
    UniqueConstraint("instance_id", "entity_type", name="uq_sync_state_instance_type"),
)

# ── user-generated data: references entities by remote id, no FK cascade ──

watch_history = Table(
    "watch_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), nullable=False),
    Column("instance_id", String(64), nullable=False),
    Column("scene_id", String(64), nullable=False),
    Column("play_count", Integer, nullable=False, default=0),
    Column("play_duration", Float, nullable=False, default=0.0),
    Column("o_count", Integer, nullable=False, default=0),
    Column("resume_time", Float, nullable=False, default=0.0),
    Column("last_played_at", DateTime),
    Column("play_history", JSON, nullable=False, default=list),
    Column("o_history", JSON, nullable=False, default=list),
    UniqueConstraint("user_id", "instance_id", "scene_id", name="uq_watch_history_user_scene"),
    Index("ix_watch_history_scene", "instance_id", "scene_id"),
)

ratings = Table(
    "ratings",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), nullable=False),
    Column("instance_id", String(64), nullable=False),
    Column("entity_type", String(16), nullable=False),
    Column("entity_id", String(64), nullable=False),
    Column("rating", Integer),
    Column("favorite", Boolean, nullable=False, default=False),
    Column("updated_at", DateTime, nullable=False),
    UniqueConstraint("user_id", "instance_id", "entity_type", "entity_id", name="uq_ratings_user_entity"),
    Index("ix_ratings_entity", "instance_id", "entity_type", "entity_id"),
)

playlists = Table(
    "playlists",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), nullable=False),
    Column("name", Text, nullable=False),
    Column("created_at", DateTime, nullable=False),
)

playlist_items = Table(
    "playlist_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("playlist_id", Integer, ForeignKey("playlists.id", ondelete="CASCADE"), nullable=False),
    Column("instance_id", String(64), nullable=False),
    Column("scene_id", String(64), nullable=False),
    Column("position", Integer, nullable=False, default=0),
    Column("added_at", DateTime, nullable=False),
    UniqueConstraint("playlist_id", "instance_id", "scene_id", name="uq_playlist_items_scene"),
    Index("ix_playlist_items_scene", "instance_id", "scene_id"),
)

hidden_entities = Table(
    "hidden_entities",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), nullable=False),
    Column("instance_id", String(64), nullable=False, default=""),
    Column("entity_type", String(16), nullable=False),
    Column("entity_id", String(64), nullable=False),
    Column("hidden_at", DateTime, nullable=False),
    UniqueConstraint("user_id", "instance_id", "entity_type", "entity_id", name="uq_hidden_entities"),
)

content_restrictions = Table(
    "content_restrictions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), nullable=False),
    Column("instance_id", String(64), nullable=False, default=""),
    Column("entity_type", String(16), nullable=False),
    Column("mode", String(8), nullable=False),
    Column("entity_ids", JSON, nullable=False, default=list),
    Column("updated_at", DateTime, nullable=False),
    UniqueConstraint("user_id", "instance_id", "entity_type", name="uq_content_restrictions"),
)

merge_records = Table(
    "merge_records",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("instance_id", String(64), nullable=False),
    Column("entity_type", String(16), nullable=False),
    Column("source_id", String(64), nullable=False),
    Column("target_id", String(64), nullable=False),
    Column("matched_fingerprint", String(128)),
    Column("user_id", String(64), nullable=False),
    Column("play_count_transferred", Integer, nullable=False, default=0),
    Column("play_duration_transferred", Float, nullable=False, default=0.0),
    Column("o_count_transferred", Integer, nullable=False, default=0),
    Column("rating_transferred", Integer),
    Column("favorite_transferred", Boolean, nullable=False, default=False),
    Column("playlist_entries_transferred", Integer, nullable=False, default=0),
    Column("reconciled_by", String(64)),
    Column("automatic", Boolean, nullable=False),
    Column("created_at", DateTime, nullable=False),
    UniqueConstraint("instance_id", "source_id", "target_id", "user_id", name="uq_merge_records_triple"),
)


def create_db_engine(url: str, *, echo: bool = False) -> Engine:
    kwargs: dict[str, Any] = {"echo": echo}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)

    if engine.dialect.name == "sqlite":
        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_conn, _record) -> None:
            dbapi_conn.create_function("seeded_rank", 2, seeded_rank, deterministic=True)
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.close()

    return engine


def init_db(engine: Engine) -> None:
    metadata.create_all(engine)


def soft_delete_rows(conn: Connection, table: Table, instance_id: str, ids: Iterable[str], at: datetime | None = None) -> int:
    """Mark rows deleted. Rows that already carry a deletion stamp keep it."""
    at = at or utcnow()
    keys = list(ids)
    n = 0
    for i in range(0, len(keys), 500):
        chunk = keys[i : i + 500]
        res = conn.execute(
            update(table)
            .where(table.c.instance_id == instance_id, table.c.id.in_(chunk), table.c.deleted_at.is_(None))
            .values(deleted_at=at)
        )
        n += res.rowcount or 0
    return n
