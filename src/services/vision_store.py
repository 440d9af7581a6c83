"""Durable storage for vision classifications and cost records.

Two tables, accessed through SQLAlchemy Core so any SQLAlchemy URL works
(SQLite by default):

- ``ai_vision_cache``: one row per cache key with its JSON payload and expiry
- ``cost_records``: append-only ledger of provider operations

The API is synchronous. Async callers run it through ``asyncio.to_thread``.
"""

import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import structlog
from sqlalchemy import (
    Boolean,
    Column,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.pool import StaticPool

logger = structlog.get_logger()

metadata = MetaData()

vision_cache_table = Table(
    "ai_vision_cache",
    metadata,
    Column("key", String(512), primary_key=True),
    Column("provider", String(64), nullable=False),
    Column("model", String(128), nullable=False),
    Column("fingerprint_a", String(128), nullable=False),
    Column("fingerprint_b", String(128), nullable=False),
    Column("payload", Text, nullable=False),
    Column("created_at", Float, nullable=False),
    Column("expires_at", Float, nullable=False, index=True),
    Column("hits", Integer, nullable=False, default=0),
)

cost_records_table = Table(
    "cost_records",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("timestamp", Float, nullable=False, index=True),
    Column("provider", String(64), nullable=False),
    Column("model", String(128), nullable=False),
    Column("operation", String(64), nullable=False, default="classify"),
    Column("cost", Float, nullable=False),
    Column("cached", Boolean, nullable=False, default=False),
)


@dataclass
class StoredEntry:
    """A row from the durable cache tier."""

    key: str
    provider: str
    model: str
    payload: dict[str, Any]
    created_at: float
    expires_at: float
    hits: int = 0

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at


def split_cache_key(key: str) -> tuple[str, str]:
    """Return (fingerprint_a, fingerprint_b) from a provider:model:a:b key."""
    parts = key.rsplit(":", 2)
    if len(parts) == 3:
        return parts[1], parts[2]
    return "", ""


class VisionStore:
    """SQLAlchemy-backed store for the cache and cost ledger."""

    def __init__(self, database_url: str = "sqlite:///:memory:", engine: Optional[Engine] = None):
        self.database_url = database_url
        self.engine = engine or self._create_engine(database_url)
        metadata.create_all(self.engine)
        self.log = logger.bind(component="vision_store")

    @staticmethod
    def _create_engine(database_url: str) -> Engine:
        url = make_url(database_url)
        if url.get_backend_name() == "sqlite":
            if url.database in (None, "", ":memory:"):
                # One shared connection so every thread sees the same in-memory database
                return create_engine(
                    database_url,
                    connect_args={"check_same_thread": False},
                    poolclass=StaticPool,
                )
            Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
            return create_engine(database_url, connect_args={"check_same_thread": False})
        return create_engine(database_url, pool_pre_ping=True)

    # Cache entries

    def get_entry(self, key: str) -> Optional[StoredEntry]:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(vision_cache_table).where(vision_cache_table.c.key == key)
            ).mappings().first()
        if row is None:
            return None
        return StoredEntry(
            key=row["key"],
            provider=row["provider"],
            model=row["model"],
            payload=json.loads(row["payload"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            hits=row["hits"] or 0,
        )

    def put_entry(
        self,
        key: str,
        payload: dict[str, Any],
        provider: str,
        model: str,
        ttl_seconds: float,
        now: Optional[float] = None,
    ) -> None:
        created = now if now is not None else time.time()
        fingerprint_a, fingerprint_b = split_cache_key(key)
        values = {
            "provider": provider,
            "model": model,
            "fingerprint_a": fingerprint_a,
            "fingerprint_b": fingerprint_b,
            "payload": json.dumps(payload),
            "created_at": created,
            "expires_at": created + ttl_seconds,
            "hits": 0,
        }
        with self.engine.begin() as conn:
            updated = conn.execute(
                update(vision_cache_table).where(vision_cache_table.c.key == key).values(**values)
            )
            if updated.rowcount == 0:
                conn.execute(insert(vision_cache_table).values(key=key, **values))

    def touch_entry(self, key: str) -> None:
        """Increment the hit counter of an entry."""
        with self.engine.begin() as conn:
            conn.execute(
                update(vision_cache_table)
                .where(vision_cache_table.c.key == key)
                .values(hits=vision_cache_table.c.hits + 1)
            )

    def delete_entry(self, key: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(delete(vision_cache_table).where(vision_cache_table.c.key == key))
        return result.rowcount > 0

    def count_entries(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(vision_cache_table)).scalar_one()

    def prune_expired(self, now: Optional[float] = None) -> int:
        cutoff = now if now is not None else time.time()
        with self.engine.begin() as conn:
            result = conn.execute(
                delete(vision_cache_table).where(vision_cache_table.c.expires_at <= cutoff)
            )
        return result.rowcount

    def clear_entries(self) -> None:
        with self.engine.begin() as conn:
            conn.execute(delete(vision_cache_table))

    # Cost ledger

    def add_cost_record(
        self,
        provider: str,
        model: str,
        cost: Any,
        cached: bool,
        timestamp: Optional[float] = None,
        operation: str = "classify",
    ) -> None:
        with self.engine.begin() as conn:
            conn.execute(insert(cost_records_table).values(
                timestamp=timestamp if timestamp is not None else time.time(),
                provider=provider,
                model=model,
                operation=operation,
                cost=float(cost),
                cached=cached,
            ))

    def sum_costs_since(self, since: float) -> float:
        """Total non-cached spend recorded at or after ``since``."""
        with self.engine.connect() as conn:
            total = conn.execute(
                select(func.coalesce(func.sum(cost_records_table.c.cost), 0))
                .where(cost_records_table.c.timestamp >= since)
                .where(cost_records_table.c.cached.is_(False))
            ).scalar_one()
        return float(total)

    def count_cost_records(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(cost_records_table)).scalar_one()

    def clear_cost_records(self) -> None:
        with self.engine.begin() as conn:
            conn.execute(delete(cost_records_table))

    def close(self) -> None:
        self.engine.dispose()
        self.log.debug("Vision store closed")
