# === MODULE PURPOSE ===
# Persistence for ledger positions.
# Every write is a single-row atomic update guarded by a version check.

# === DEPENDENCIES ===
# - asyncpg: Async PostgreSQL client
# - models: Position and its JSON-friendly dict form

# === KEY CONCEPTS ===
# - Schema isolation: table lives in the 'ledger' schema
# - Optimistic locking: UPDATE ... WHERE version = <read version>, else ConcurrentUpdateError
# - Exchange linkage: partial unique index on (user_id, exchange, exchange_position_id)
# - MemoryPositionStore: same contract without a database (local runs, tests)

from __future__ import annotations

import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any

import asyncpg

from src.ledger.errors import ConcurrentUpdateError, NotFoundError, StateConflictError
from src.ledger.models import (
    MANUAL_SOURCE,
    Close,
    Entry,
    Position,
    PositionSide,
    PositionStatus,
    ProductType,
    utc_now,
)

logger = logging.getLogger(__name__)


class UpsertResult(Enum):
    """Outcome of an exchange-linked upsert."""

    CREATED = "created"
    UPDATED = "updated"


class PositionStore(ABC):
    """
    Storage contract for positions.

    Implementations must make update() atomic per position and reject writes
    whose version does not match the stored one.
    """

    @abstractmethod
    async def create(self, position: Position) -> Position:
        """Insert a new position. Returns the stored copy."""

    @abstractmethod
    async def get(self, user_id: str, position_id: str) -> Position | None:
        """Fetch a position owned by user_id."""

    @abstractmethod
    async def list_positions(self, user_id: str, status: PositionStatus | None = None) -> list[Position]:
        """List a user's positions, newest first."""

    @abstractmethod
    async def update(self, position: Position) -> Position:
        """
        Write back a position read earlier.

        Raises:
            ConcurrentUpdateError: If the stored version moved on.
            NotFoundError: If the position no longer exists.
        """

    @abstractmethod
    async def delete(self, user_id: str, position_id: str) -> bool:
        """Hard delete. Returns False when nothing was deleted."""

    @abstractmethod
    async def upsert_external(self, position: Position) -> UpsertResult:
        """
        Replace or create the position keyed by its exchange linkage.

        An existing row keeps its id and creation time; side, coin, entries,
        account, product type and sync time are overwritten, closes cleared
        and status reset to active.
        """

    async def close(self) -> None:
        """Release resources."""


# ==================== In-memory store ====================


class MemoryPositionStore(PositionStore):
    """
    In-memory position store.

    Stores deep copies so callers mutating a returned Position never change
    stored state without going through update().
    """

    def __init__(self):
        self._positions: dict[str, Position] = {}
        self._lock = asyncio.Lock()

    def _link_key(self, position: Position) -> tuple[str, str, str] | None:
        if not position.is_exchange_linked:
            return None
        return (position.user_id, position.exchange, position.exchange_position_id)

    def _find_linked(self, key: tuple[str, str, str]) -> Position | None:
        for stored in self._positions.values():
            if self._link_key(stored) == key:
                return stored
        return None

    async def create(self, position: Position) -> Position:
        async with self._lock:
            if position.id in self._positions:
                raise StateConflictError(f"Position {position.id} already exists")
            key = self._link_key(position)
            if key and self._find_linked(key):
                raise StateConflictError(
                    f"Exchange position {position.exchange}:{position.exchange_position_id} "
                    f"already linked"
                )
            stored = copy.deepcopy(position)
            stored.version = 0
            self._positions[stored.id] = stored
            position.version = 0
            return copy.deepcopy(stored)

    async def get(self, user_id: str, position_id: str) -> Position | None:
        stored = self._positions.get(position_id)
        if stored is None or stored.user_id != user_id:
            return None
        return copy.deepcopy(stored)

    async def list_positions(self, user_id: str, status: PositionStatus | None = None) -> list[Position]:
        result = [
            copy.deepcopy(p)
            for p in self._positions.values()
            if p.user_id == user_id and (status is None or p.status == status)
        ]
        result.sort(key=lambda p: p.created_at, reverse=True)
        return result

    async def update(self, position: Position) -> Position:
        async with self._lock:
            stored = self._positions.get(position.id)
            if stored is None or stored.user_id != position.user_id:
                raise NotFoundError(position.id)
            if stored.version != position.version:
                raise ConcurrentUpdateError(position.id, position.version)

            updated = copy.deepcopy(position)
            updated.version = stored.version + 1
            updated.updated_at = utc_now()
            self._positions[updated.id] = updated

            position.version = updated.version
            position.updated_at = updated.updated_at
            return copy.deepcopy(updated)

    async def delete(self, user_id: str, position_id: str) -> bool:
        async with self._lock:
            stored = self._positions.get(position_id)
            if stored is None or stored.user_id != user_id:
                return False
            del self._positions[position_id]
            return True

    async def upsert_external(self, position: Position) -> UpsertResult:
        key = self._link_key(position)
        if key is None:
            raise ValueError("upsert_external requires exchange and exchange_position_id")

        async with self._lock:
            existing = self._find_linked(key)
            if existing is None:
                stored = copy.deepcopy(position)
                stored.status = PositionStatus.ACTIVE
                stored.closes = []
                stored.version = 0
                self._positions[stored.id] = stored
                return UpsertResult.CREATED

            existing.side = position.side
            existing.status = PositionStatus.ACTIVE
            existing.coin = position.coin
            existing.entries = copy.deepcopy(position.entries)
            existing.closes = []
            existing.source = position.source
            existing.exchange_account_id = position.exchange_account_id
            existing.exchange_product_type = position.exchange_product_type
            existing.last_synced_at = position.last_synced_at
            existing.version += 1
            existing.updated_at = utc_now()
            return UpsertResult.UPDATED


# ==================== PostgreSQL store ====================


@dataclass
class PositionStoreConfig:
    """Configuration for the PostgreSQL position store."""

    host: str = "localhost"
    port: int = 5432
    database: str = "ledger"
    user: str = "ledger"
    password: str = ""
    pool_min_size: int = 2
    pool_max_size: int = 5
    schema: str = "ledger"
    auto_create_schema: bool = True


SCHEMA_SQL = """
CREATE SCHEMA IF NOT EXISTS {schema};
"""

TABLES_SQL = """
CREATE TABLE IF NOT EXISTS {schema}.positions (
    id VARCHAR(50) PRIMARY KEY,
    user_id VARCHAR(100) NOT NULL,
    side VARCHAR(10) NOT NULL,  -- long/short
    status VARCHAR(10) NOT NULL DEFAULT 'active',  -- active/closed
    coin VARCHAR(30) NOT NULL,
    comment TEXT,
    stop_loss_price DOUBLE PRECISION,
    take_profit_price DOUBLE PRECISION,
    entries JSONB NOT NULL DEFAULT '[]'::jsonb,
    closes JSONB NOT NULL DEFAULT '[]'::jsonb,
    source VARCHAR(30) NOT NULL DEFAULT 'manual',
    exchange VARCHAR(30),
    exchange_account_id VARCHAR(100),
    exchange_position_id VARCHAR(100),
    exchange_product_type VARCHAR(20),  -- spot/perpetual
    last_synced_at TIMESTAMPTZ,
    version INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_positions_user_status ON {schema}.positions(user_id, status);
CREATE INDEX IF NOT EXISTS idx_positions_created_at ON {schema}.positions(created_at);
CREATE UNIQUE INDEX IF NOT EXISTS uq_positions_exchange_link
    ON {schema}.positions(user_id, exchange, exchange_position_id)
    WHERE exchange IS NOT NULL AND exchange_position_id IS NOT NULL;
"""

_COLUMNS = """
    id, user_id, side, status, coin, comment, stop_loss_price, take_profit_price,
    entries, closes, source, exchange, exchange_account_id, exchange_position_id,
    exchange_product_type, last_synced_at, version, created_at, updated_at
"""


def _load_json_list(value: Any) -> list[dict[str, Any]]:
    if value is None:
        return []
    if isinstance(value, str):
        return json.loads(value)
    return list(value)


def row_to_position(row: dict[str, Any]) -> Position:
    """Convert a positions row into a Position."""
    product_type = row.get("exchange_product_type")
    return Position(
        id=row["id"],
        user_id=row["user_id"],
        side=PositionSide(row["side"]),
        status=PositionStatus(row["status"]),
        coin=row["coin"],
        comment=row.get("comment"),
        stop_loss_price=row.get("stop_loss_price"),
        take_profit_price=row.get("take_profit_price"),
        entries=[Entry.from_dict(e) for e in _load_json_list(row.get("entries"))],
        closes=[Close.from_dict(c) for c in _load_json_list(row.get("closes"))],
        source=row.get("source") or MANUAL_SOURCE,
        exchange=row.get("exchange"),
        exchange_account_id=row.get("exchange_account_id"),
        exchange_position_id=row.get("exchange_position_id"),
        exchange_product_type=ProductType(product_type) if product_type else None,
        last_synced_at=row.get("last_synced_at"),
        version=row.get("version") or 0,
        created_at=row.get("created_at") or utc_now(),
        updated_at=row.get("updated_at") or utc_now(),
    )


def _entries_json(position: Position) -> str:
    return json.dumps([e.to_dict() for e in position.entries])


def _closes_json(position: Position) -> str:
    return json.dumps([c.to_dict() for c in position.closes])


def _product_type_value(position: Position) -> str | None:
    return position.exchange_product_type.value if position.exchange_product_type else None


class PostgresPositionStore(PositionStore):
    """
    PostgreSQL position store.

    Usage:
        store = PostgresPositionStore(config)
        await store.connect()

        position = await store.create(position)
        position = await store.get(user_id, position.id)
        position = await store.update(position)

        await store.close()
    """

    def __init__(self, config: PositionStoreConfig):
        self._config = config
        self._pool: asyncpg.Pool | None = None
        self._is_connected = False
        self._schema = config.schema

    async def connect(self) -> None:
        """Establish connection pool and initialize schema."""
        if self._is_connected:
            return

        try:
            logger.info(
                f"Connecting to PostgreSQL: {self._config.host}:{self._config.port}"
                f"/{self._config.database} (schema: {self._schema})"
            )

            self._pool = await asyncpg.create_pool(
                host=self._config.host,
                port=self._config.port,
                database=self._config.database,
                user=self._config.user,
                password=self._config.password,
                min_size=self._config.pool_min_size,
                max_size=self._config.pool_max_size,
            )

            if self._config.auto_create_schema:
                await self._init_schema()

            self._is_connected = True
            logger.info("PostgresPositionStore connected to PostgreSQL")

        except (OSError, asyncpg.PostgresError) as e:
            logger.error(f"Failed to connect to PostgreSQL: {e}")
            raise ConnectionError(f"Cannot connect to ledger database: {e}") from e

    async def close(self) -> None:
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            self._is_connected = False
            logger.info("PostgresPositionStore disconnected")

    async def _init_schema(self) -> None:
        """Create schema and tables if not exist."""
        assert self._pool is not None
        async with self._pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL.format(schema=self._schema))
            await conn.execute(TABLES_SQL.format(schema=self._schema))
            logger.info(f"Initialized ledger schema: {self._schema}")

    # ==================== Positions ====================

    async def create(self, position: Position) -> Position:
        async with self._db_pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO {self._schema}.positions
                        (id, user_id, side, status, coin, comment, stop_loss_price,
                         take_profit_price, entries, closes, source, exchange,
                         exchange_account_id, exchange_position_id, exchange_product_type,
                         last_synced_at, version, created_at, updated_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10::jsonb, $11, $12,
                            $13, $14, $15, $16, 0, $17, $18)
                    RETURNING {_COLUMNS}
                    """,
                    position.id,
                    position.user_id,
                    position.side.value,
                    position.status.value,
                    position.coin,
                    position.comment,
                    position.stop_loss_price,
                    position.take_profit_price,
                    _entries_json(position),
                    _closes_json(position),
                    position.source,
                    position.exchange,
                    position.exchange_account_id,
                    position.exchange_position_id,
                    _product_type_value(position),
                    position.last_synced_at,
                    position.created_at,
                    position.updated_at,
                )
            except asyncpg.UniqueViolationError as e:
                raise StateConflictError(f"Position already exists: {e}") from e

        logger.debug(f"Created position {position.id} ({position.coin} {position.side.value})")
        return row_to_position(dict(row))

    async def get(self, user_id: str, position_id: str) -> Position | None:
        async with self._db_pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_COLUMNS} FROM {self._schema}.positions
                WHERE id = $1 AND user_id = $2
                """,
                position_id,
                user_id,
            )

        return row_to_position(dict(row)) if row else None

    async def list_positions(self, user_id: str, status: PositionStatus | None = None) -> list[Position]:
        async with self._db_pool.acquire() as conn:
            if status is not None:
                rows = await conn.fetch(
                    f"""
                    SELECT {_COLUMNS} FROM {self._schema}.positions
                    WHERE user_id = $1 AND status = $2
                    ORDER BY created_at DESC
                    """,
                    user_id,
                    status.value,
                )
            else:
                rows = await conn.fetch(
                    f"""
                    SELECT {_COLUMNS} FROM {self._schema}.positions
                    WHERE user_id = $1
                    ORDER BY created_at DESC
                    """,
                    user_id,
                )

        return [row_to_position(dict(row)) for row in rows]

    async def update(self, position: Position) -> Position:
        async with self._db_pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE {self._schema}.positions SET
                    side = $4,
                    status = $5,
                    coin = $6,
                    comment = $7,
                    stop_loss_price = $8,
                    take_profit_price = $9,
                    entries = $10::jsonb,
                    closes = $11::jsonb,
                    version = version + 1,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = $1 AND user_id = $2 AND version = $3
                RETURNING {_COLUMNS}
                """,
                position.id,
                position.user_id,
                position.version,
                position.side.value,
                position.status.value,
                position.coin,
                position.comment,
                position.stop_loss_price,
                position.take_profit_price,
                _entries_json(position),
                _closes_json(position),
            )

            if row is None:
                exists = await conn.fetchval(
                    f"SELECT 1 FROM {self._schema}.positions WHERE id = $1 AND user_id = $2",
                    position.id,
                    position.user_id,
                )
                if not exists:
                    raise NotFoundError(position.id)
                raise ConcurrentUpdateError(position.id, position.version)

        updated = row_to_position(dict(row))
        position.version = updated.version
        position.updated_at = updated.updated_at
        return updated

    async def delete(self, user_id: str, position_id: str) -> bool:
        async with self._db_pool.acquire() as conn:
            result = await conn.execute(
                f"DELETE FROM {self._schema}.positions WHERE id = $1 AND user_id = $2",
                position_id,
                user_id,
            )

        # asyncpg returns the command tag, e.g. "DELETE 1"
        return result.split()[-1] != "0"

    async def upsert_external(self, position: Position) -> UpsertResult:
        if not position.is_exchange_linked:
            raise ValueError("upsert_external requires exchange and exchange_position_id")

        async with self._db_pool.acquire() as conn:
            inserted = await conn.fetchval(
                f"""
                INSERT INTO {self._schema}.positions AS p
                    (id, user_id, side, status, coin, entries, closes, source, exchange,
                     exchange_account_id, exchange_position_id, exchange_product_type,
                     last_synced_at, version)
                VALUES ($1, $2, $3, 'active', $4, $5::jsonb, '[]'::jsonb, $6, $7,
                        $8, $9, $10, $11, 0)
                ON CONFLICT (user_id, exchange, exchange_position_id)
                    WHERE exchange IS NOT NULL AND exchange_position_id IS NOT NULL
                DO UPDATE SET
                    side = EXCLUDED.side,
                    status = 'active',
                    coin = EXCLUDED.coin,
                    entries = EXCLUDED.entries,
                    closes = '[]'::jsonb,
                    source = EXCLUDED.source,
                    exchange_account_id = EXCLUDED.exchange_account_id,
                    exchange_product_type = EXCLUDED.exchange_product_type,
                    last_synced_at = EXCLUDED.last_synced_at,
                    version = p.version + 1,
                    updated_at = CURRENT_TIMESTAMP
                RETURNING (xmax = 0) AS inserted
                """,
                position.id,
                position.user_id,
                position.side.value,
                position.coin,
                _entries_json(position),
                position.source,
                position.exchange,
                position.exchange_account_id,
                position.exchange_position_id,
                _product_type_value(position),
                position.last_synced_at,
            )

        return UpsertResult.CREATED if inserted else UpsertResult.UPDATED

    # ==================== Utilities ====================

    def _ensure_connected(self) -> None:
        """Ensure store is connected."""
        if not self._is_connected or not self._pool:
            raise RuntimeError("PostgresPositionStore is not connected. Call connect() first.")

    @property
    def _db_pool(self) -> asyncpg.Pool:
        """Get the database pool, raising if not connected."""
        self._ensure_connected()
        assert self._pool is not None
        return self._pool

    @property
    def is_connected(self) -> bool:
        """Check if connected."""
        return self._is_connected


def create_position_store_from_config(
    config_path: str = "config/ledger-config.yaml",
) -> PositionStore:
    """
    Create a PositionStore from the configuration file.

    Uses the memory backend when database.ledger.backend is "memory".
    The PostgreSQL store still needs connect() before use.
    """
    from src.common.config import load_config, resolve_env

    config = load_config(config_path)
    db_config = config.get_dict("database.ledger", {})

    if not db_config:
        raise ValueError("Ledger database configuration not found")

    backend = resolve_env(db_config.get("backend", "postgres"))
    if backend == "memory":
        logger.warning("Using in-memory position store; data is lost on restart")
        return MemoryPositionStore()

    store_config = PositionStoreConfig(
        host=resolve_env(db_config.get("host", "localhost")),
        port=int(resolve_env(db_config.get("port", 5432))),
        database=resolve_env(db_config.get("database", "ledger")),
        user=resolve_env(db_config.get("user", "ledger")),
        password=resolve_env(db_config.get("password", "")),
        pool_min_size=db_config.get("pool_min_size", 2),
        pool_max_size=db_config.get("pool_max_size", 5),
        schema=db_config.get("schema", "ledger"),
        auto_create_schema=db_config.get("auto_create_schema", True),
    )

    return PostgresPositionStore(store_config)
