# === MODULE PURPOSE ===
# Exchange reconciliation: keeps exchange-held positions mirrored in the ledger.

# === KEY CONCEPTS ===
# - ExchangeFeedClient: reads the open-position snapshot over HTTP
# - ReconciliationEngine: single-flight periodic upsert into the ledger
# - SyncStats: per-run counters (created/updated/skipped, concurrent, failed)

from src.sync.feed import (
    ExchangeFeedClient,
    ExternalPosition,
    FeedError,
    PositionFeed,
    parse_futures_position,
)
from src.sync.reconciler import (
    MappedPosition,
    ReconciliationEngine,
    SyncStats,
    map_external_position,
)

__all__ = [
    # Feed
    "PositionFeed",
    "ExchangeFeedClient",
    "ExternalPosition",
    "FeedError",
    "parse_futures_position",
    # Reconciliation
    "ReconciliationEngine",
    "SyncStats",
    "MappedPosition",
    "map_external_position",
]
