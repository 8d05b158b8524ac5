# === MODULE PURPOSE ===
# Periodic reconciliation of exchange positions into the ledger.
# Each run fetches the open-position snapshot and upserts one position per row.

# === DEPENDENCIES ===
# - feed: PositionFeed / ExternalPosition / FeedError
# - ledger.repository: PositionStore.upsert_external (atomic create-or-replace)

# === KEY CONCEPTS ===
# - Single-flight: one run at a time per engine; overlapping calls return
#   SyncStats(concurrent=True) without fetching or writing
# - State replace: the exchange reports current state, not history, so an
#   existing linked position gets one synthetic entry and no closes
# - Skipped rows only bump a counter; a feed failure aborts the run

from __future__ import annotations

import asyncio
import logging
import math
import re
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from src.ledger.models import (
    Entry,
    Position,
    PositionSide,
    PositionStatus,
    ProductType,
    utc_now,
)
from src.ledger.repository import PositionStore, UpsertResult
from src.sync.feed import ExternalPosition, FeedError, PositionFeed

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 60.0

_MARKET_SEPARATORS = re.compile(r"[-_/:]")


@dataclass(frozen=True)
class SyncStats:
    """Outcome of one reconciliation run."""

    total_positions: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    concurrent: bool = False
    failed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class MappedPosition:
    """Ledger-side representation of one external snapshot."""

    external_id: str
    coin: str
    side: PositionSide
    entry: Entry
    product_type: ProductType
    account_id: str | None = None


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def resolve_coin(snapshot: ExternalPosition) -> str | None:
    """Base asset symbol, falling back to the first part of the market name."""
    base = snapshot.base_asset
    if not base and snapshot.market:
        base = _MARKET_SEPARATORS.split(snapshot.market)[0]
    coin = (base or "").strip().upper()
    return coin or None


def map_external_position(
    snapshot: ExternalPosition,
    now: datetime | None = None,
) -> MappedPosition | None:
    """
    Map an exchange snapshot to a single synthetic ledger entry.

    Returns:
        MappedPosition, or None when the snapshot must be skipped: missing id,
        zero/invalid size, non-positive entry price, unknown base asset, or a
        non-positive margin.
    """
    if not snapshot.external_id:
        return None
    if not _is_number(snapshot.signed_size) or snapshot.signed_size == 0:
        return None
    if not _is_number(snapshot.entry_price) or snapshot.entry_price <= 0:
        return None

    coin = resolve_coin(snapshot)
    if not coin:
        return None

    notional = (
        snapshot.notional_usd
        if _is_number(snapshot.notional_usd)
        else abs(snapshot.signed_size) * snapshot.entry_price
    )
    collateral = snapshot.collateral_usd if _is_number(snapshot.collateral_usd) else None

    derived_leverage = snapshot.leverage if _is_number(snapshot.leverage) else None
    if derived_leverage is None and collateral is not None and collateral > 0:
        derived_leverage = notional / collateral

    leverage = derived_leverage if derived_leverage is not None and derived_leverage > 1 else 1.0
    product_type = ProductType.PERPETUAL if leverage > 1 else ProductType.SPOT

    if product_type == ProductType.PERPETUAL:
        invested = collateral if collateral is not None else notional / leverage
    else:
        invested = notional

    if not invested > 0:
        return None

    entry = Entry(
        entry_price=snapshot.entry_price,
        amount_invested_usd=invested,
        leverage=leverage if product_type == ProductType.PERPETUAL else 1.0,
        entry_date=snapshot.opened_at or now or utc_now(),
    )
    return MappedPosition(
        external_id=snapshot.external_id,
        coin=coin,
        side=PositionSide.LONG if snapshot.signed_size > 0 else PositionSide.SHORT,
        entry=entry,
        product_type=product_type,
        account_id=snapshot.account_id,
    )


class ReconciliationEngine:
    """
    Syncs one user's exchange positions into the ledger.

    Periodic ticks (start/stop) and manual sync_once() calls share the same
    single-flight guard, which belongs to this instance.

    Usage:
        engine = ReconciliationEngine(feed, store, user_id="u1", poll_interval=60)
        engine.start()                   # periodic, first run immediately
        stats = await engine.sync_once() # manual trigger
        await engine.stop()
    """

    def __init__(
        self,
        feed: PositionFeed,
        store: PositionStore,
        user_id: str,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        if not user_id:
            raise ValueError("ReconciliationEngine requires a target user_id")
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")

        self._feed = feed
        self._store = store
        self._user_id = user_id
        self._poll_interval = poll_interval
        self._sync_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._last_stats: SyncStats | None = None
        self._last_run_at: datetime | None = None

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def exchange(self) -> str:
        return self._feed.exchange_name

    @property
    def is_syncing(self) -> bool:
        return self._sync_lock.locked()

    @property
    def last_stats(self) -> SyncStats | None:
        return self._last_stats

    # ==================== Scheduler ====================

    def start(self) -> None:
        """Start the periodic sync loop. No-op when already running."""
        if self.is_running():
            return
        logger.info(f"{self.exchange} sync: starting scheduler (interval {self._poll_interval}s)")
        self._task = asyncio.create_task(self._sync_loop())

    async def stop(self) -> None:
        """Stop the periodic loop. An in-flight run is allowed to finish."""
        task = self._task
        self._task = None
        if task is None or task.done():
            return

        if self.is_syncing:
            # Wait for the current run rather than cancelling it mid-upsert
            async with self._sync_lock:
                task.cancel()
        else:
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info(f"{self.exchange} sync: scheduler stopped")

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _sync_loop(self) -> None:
        while True:
            try:
                await self.sync_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"{self.exchange} sync tick failed: {e}", exc_info=True)
            await asyncio.sleep(self._poll_interval)

    # ==================== Sync ====================

    async def sync_once(self) -> SyncStats:
        """
        Run one reconciliation pass.

        Returns:
            SyncStats. concurrent=True when another run was in flight,
            failed=True when the feed could not be read.
        """
        if self._sync_lock.locked():
            logger.warning(f"{self.exchange} sync already running; skipping new request")
            return SyncStats(concurrent=True)

        async with self._sync_lock:
            logger.debug(f"{self.exchange} sync started")
            try:
                snapshots = await self._feed.fetch_open_positions()
            except FeedError as e:
                logger.error(f"{self.exchange} sync failed (retryable={e.retryable}): {e}")
                stats = SyncStats(failed=True)
            else:
                logger.debug(f"Fetched {len(snapshots)} positions from {self.exchange}")
                stats = await self._sync_positions(snapshots)
                logger.info(
                    f"{self.exchange} sync completed: {stats.total_positions} positions, "
                    f"{stats.created} created, {stats.updated} updated, {stats.skipped} skipped"
                )

            self._last_stats = stats
            self._last_run_at = utc_now()
            return stats

    async def _sync_positions(self, snapshots: list[ExternalPosition]) -> SyncStats:
        now = utc_now()
        created = 0
        updated = 0
        skipped = 0

        for snapshot in snapshots:
            mapped = map_external_position(snapshot, now)
            if mapped is None:
                logger.warning(
                    f"Skipping {self.exchange} position {snapshot.external_id!r} "
                    f"({snapshot.market}) due to missing data"
                )
                skipped += 1
                continue

            try:
                result = await self._store.upsert_external(self._to_position(mapped, now))
            except Exception as e:
                # Earlier upserts stay committed; only this row is lost for this run
                logger.error(f"Failed to upsert {self.exchange} position {mapped.external_id}: {e}")
                skipped += 1
                continue

            logger.debug(
                f"Processed {self.exchange} position {mapped.external_id}: {result.value} "
                f"({mapped.coin} {mapped.side.value}, {mapped.product_type.value})"
            )
            if result == UpsertResult.CREATED:
                created += 1
            else:
                updated += 1

        return SyncStats(
            total_positions=len(snapshots),
            created=created,
            updated=updated,
            skipped=skipped,
        )

    def _to_position(self, mapped: MappedPosition, synced_at: datetime) -> Position:
        return Position(
            user_id=self._user_id,
            side=mapped.side,
            coin=mapped.coin,
            status=PositionStatus.ACTIVE,
            entries=[mapped.entry],
            closes=[],
            source=self.exchange,
            exchange=self.exchange,
            exchange_account_id=mapped.account_id,
            exchange_position_id=mapped.external_id,
            exchange_product_type=mapped.product_type,
            last_synced_at=synced_at,
        )

    def to_dict(self) -> dict[str, Any]:
        """Engine state for the status endpoint."""
        return {
            "exchange": self.exchange,
            "user_id": self._user_id,
            "is_running": self.is_running(),
            "is_syncing": self.is_syncing,
            "poll_interval": self._poll_interval,
            "last_run_at": self._last_run_at.isoformat() if self._last_run_at else None,
            "last_stats": self._last_stats.to_dict() if self._last_stats else None,
        }
