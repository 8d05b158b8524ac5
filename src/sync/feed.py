# === MODULE PURPOSE ===
# External position feed: the snapshot of currently open exchange positions.
# The exchange client only reads; request signing is supplied by the caller.

# === DEPENDENCIES ===
# - httpx: Async HTTP client

# === KEY CONCEPTS ===
# - ExternalPosition: one normalized snapshot row (signed size, entry price, ...)
# - PositionFeed: interface consumed by the reconciliation engine
# - FeedError: transport/auth failure or unusable response, aborts a sync run
# - HTTP 404 from the positions endpoint means "no open positions"

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

import httpx

logger = logging.getLogger(__name__)

DEFAULT_POSITIONS_PATH = "/fapi/v3/position"
DEFAULT_TIMEOUT = 15.0

# Quote currencies stripped from futures symbols to get the base asset
QUOTE_SUFFIXES = ("USDT", "USDC", "BUSD", "FDUSD", "USD")


class FeedError(Exception):
    """External feed unreachable or returned unusable data."""

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)


@dataclass
class ExternalPosition:
    """One open position as reported by the exchange."""

    external_id: str
    signed_size: float  # >0 long, <0 short
    entry_price: float
    base_asset: str | None = None
    market: str | None = None
    leverage: float | None = None
    notional_usd: float | None = None
    collateral_usd: float | None = None
    opened_at: datetime | None = None
    account_id: str | None = None


class PositionFeed(ABC):
    """Source of open-position snapshots."""

    @property
    @abstractmethod
    def exchange_name(self) -> str:
        """Name stored as the position's exchange and source."""

    @abstractmethod
    async def fetch_open_positions(self) -> list[ExternalPosition]:
        """
        Fetch every currently open position.

        Returns:
            Snapshot list; empty means nothing is open.

        Raises:
            FeedError: On transport/auth failure or malformed response.
        """


def _to_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _from_epoch_ms(value: Any) -> datetime | None:
    """Epoch milliseconds to an aware UTC datetime; None when missing or malformed."""
    if not value:
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def base_asset_from_symbol(symbol: str) -> str:
    """BTCUSDT -> BTC. Symbols without a known quote suffix are returned as-is."""
    symbol = symbol.strip().upper()
    for suffix in QUOTE_SUFFIXES:
        if symbol.endswith(suffix) and len(symbol) > len(suffix):
            return symbol[: -len(suffix)]
    return symbol


def parse_futures_position(raw: dict[str, Any]) -> ExternalPosition | None:
    """
    Normalize one raw futures position row.

    Returns:
        ExternalPosition, or None for flat rows (zero size) and rows with an
        invalid size or entry price.
    """
    symbol = raw.get("symbol")
    if not symbol:
        return None

    size = _to_float(raw.get("positionAmt"))
    if size is None or size == 0:
        return None

    entry_price = _to_float(raw.get("entryPrice"))
    if entry_price is None or entry_price <= 0:
        return None

    notional = _to_float(raw.get("notionalValue") or raw.get("notional"))
    if notional is not None:
        notional = abs(notional)
    else:
        notional = abs(size) * entry_price

    opened_at = _from_epoch_ms(raw.get("updateTime"))

    position_side = raw.get("positionSide") or "BOTH"
    return ExternalPosition(
        external_id=f"{symbol}:{position_side}",
        signed_size=size,
        entry_price=entry_price,
        base_asset=base_asset_from_symbol(symbol),
        market=symbol,
        leverage=_to_float(raw.get("leverage")),
        notional_usd=notional,
        collateral_usd=_to_float(raw.get("isolatedMargin")),
        opened_at=opened_at,
        account_id=raw.get("accountId"),
    )


def _extract_rows(data: Any) -> list[dict[str, Any]]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        if isinstance(data.get("positions"), list):
            return data["positions"]
        nested = data.get("data")
        if isinstance(nested, dict) and isinstance(nested.get("positions"), list):
            return nested["positions"]
    raise FeedError(f"Unexpected positions response shape: {type(data).__name__}", retryable=False)


class ExchangeFeedClient(PositionFeed):
    """
    Async client for an exchange's open-positions endpoint.

    Usage:
        client = ExchangeFeedClient(base_url="https://fapi.example.com", exchange="asterdex")
        await client.start()
        positions = await client.fetch_open_positions()
        await client.stop()

    Signing:
        sign_params receives the query parameters and returns the signed set.
        Without it, requests are sent unsigned (only an API key header if set).
    """

    def __init__(
        self,
        base_url: str,
        exchange: str = "asterdex",
        positions_path: str = DEFAULT_POSITIONS_PATH,
        api_key: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        sign_params: Callable[[dict[str, Any]], dict[str, Any]] | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._exchange = exchange
        self._positions_path = positions_path
        self._api_key = api_key
        self._timeout = timeout
        self._sign_params = sign_params
        self._client: httpx.AsyncClient | None = None

    @property
    def exchange_name(self) -> str:
        return self._exchange

    async def start(self) -> None:
        headers = {"X-API-KEY": self._api_key} if self._api_key else {}
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(self._timeout),
            headers=headers,
        )
        logger.info(f"{self._exchange} feed client started ({self._base_url})")

    async def stop(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info(f"{self._exchange} feed client stopped")

    async def fetch_open_positions(self) -> list[ExternalPosition]:
        if not self._client:
            raise RuntimeError("ExchangeFeedClient not started. Call start() first.")

        params: dict[str, Any] = {}
        if self._sign_params:
            params = self._sign_params(params)

        try:
            resp = await self._client.get(self._positions_path, params=params)
            if resp.status_code == 404:
                # Endpoint answers 404 when the account has no positions
                return []
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise FeedError(
                f"{self._exchange} positions request failed with HTTP {status}",
                retryable=status >= 500 or status in (401, 403, 429),
            ) from e
        except httpx.HTTPError as e:
            raise FeedError(f"{self._exchange} positions request failed: {e}") from e
        except ValueError as e:
            raise FeedError(f"{self._exchange} returned invalid JSON: {e}", retryable=False) from e

        rows = _extract_rows(data)
        positions = []
        for raw in rows:
            try:
                position = parse_futures_position(raw) if isinstance(raw, dict) else None
            except (TypeError, ValueError, KeyError, AttributeError) as e:
                raise FeedError(
                    f"{self._exchange} returned an unparseable position row: {e}",
                    retryable=False,
                ) from e
            if position is not None:
                positions.append(position)

        logger.debug(f"Fetched {len(positions)} open positions from {self._exchange}")
        return positions
