# === MODULE PURPOSE ===
# Position ledger: entries, closes, derived metrics and portfolio summary.
# Handles manual trades and exchange-synced positions in the same model.

# === KEY CONCEPTS ===
# - aggregate(): pure metrics over a position's entries and closes
# - operations: open / add size / sell / edit, validated before mutation
# - PositionService: atomic read-modify-write through a PositionStore
# - summarize(): realized performance across closed positions

# === PERSISTENCE ===
# PostgreSQL ('ledger' schema) in production, in-memory store otherwise.
# Table: positions (entries and closes stored as JSONB)

from src.ledger.aggregation import PositionMetrics, aggregate
from src.ledger.errors import (
    ConcurrentUpdateError,
    LedgerError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from src.ledger.models import (
    EPSILON,
    Close,
    Entry,
    Position,
    PositionSide,
    PositionStatus,
    ProductType,
)
from src.ledger.operations import (
    UNSET,
    AddSizeRequest,
    EditRequest,
    OpenPositionRequest,
    SellAmount,
    SellByCoin,
    SellByPercentage,
    SellByUsd,
    SellRequest,
    sell_amount_from_fields,
)
from src.ledger.repository import (
    MemoryPositionStore,
    PositionStore,
    PositionStoreConfig,
    PostgresPositionStore,
    UpsertResult,
    create_position_store_from_config,
)
from src.ledger.service import PositionService, position_view
from src.ledger.summary import PortfolioSummary, summarize

__all__ = [
    # Models
    "Entry",
    "Close",
    "Position",
    "PositionSide",
    "PositionStatus",
    "ProductType",
    "EPSILON",
    # Metrics
    "PositionMetrics",
    "aggregate",
    "PortfolioSummary",
    "summarize",
    # Operations
    "OpenPositionRequest",
    "AddSizeRequest",
    "SellRequest",
    "SellAmount",
    "SellByCoin",
    "SellByUsd",
    "SellByPercentage",
    "sell_amount_from_fields",
    "EditRequest",
    "UNSET",
    # Service
    "PositionService",
    "position_view",
    # Storage
    "PositionStore",
    "MemoryPositionStore",
    "PostgresPositionStore",
    "PositionStoreConfig",
    "UpsertResult",
    "create_position_store_from_config",
    # Errors
    "LedgerError",
    "ValidationError",
    "StateConflictError",
    "ConcurrentUpdateError",
    "NotFoundError",
]
