from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select

from bridge_tracker.sources.bridge_pipeline.pricing.coingecko import CoinGeckoClient, PriceApiError
from bridge_tracker.storage.db_utils import dialect_insert, as_utc
from bridge_tracker.storage.models.historical_price import HistoricalPrice
from bridge_tracker.utils.constants import COINGECKO_IDS, PRICING_SOURCE_EXTERNAL
from bridge_tracker.utils.types import PricePoint

log = logging.getLogger(__name__)

# market_chart/range only returns hourly points for windows up to 90 days
HOURLY_WINDOW_DAYS = 90


def hour_bucket(ts: datetime | int | float) -> datetime:
    """Truncate a datetime / unix timestamp to the top of its UTC hour."""
    if isinstance(ts, (int, float)):
        ts = datetime.fromtimestamp(ts, tz=timezone.utc)
    ts = as_utc(ts)
    return ts.replace(minute=0, second=0, microsecond=0)


class PriceResolver:
    """Hour-bucketed USD price cache backed by CoinGecko.

    Lookup order for a (symbol, time): the exact hour row, then the newest
    cached hour before it, then one external fetch whose result is cached.
    Cached rows are never overwritten.
    """

    def __init__(self, session_factory, client: CoinGeckoClient, coin_ids: dict | None = None):
        self.session_factory = session_factory
        self.client = client
        self.coin_ids = coin_ids if coin_ids is not None else COINGECKO_IDS

    # ── cache ──────────────────────────────────────────────────────────────
    def get_cached_price(self, symbol: str, hour: datetime) -> Decimal | None:
        with self.session_factory() as db:
            return db.execute(
                select(HistoricalPrice.price_usd)
                .where(HistoricalPrice.token_symbol == symbol, HistoricalPrice.timestamp == hour)
            ).scalar_one_or_none()

    def get_latest_cached_before(self, symbol: str, hour: datetime) -> Decimal | None:
        with self.session_factory() as db:
            return db.execute(
                select(HistoricalPrice.price_usd)
                .where(HistoricalPrice.token_symbol == symbol, HistoricalPrice.timestamp <= hour)
                .order_by(HistoricalPrice.timestamp.desc())
                .limit(1)
            ).scalar_one_or_none()

    def cache_prices(self, symbol: str, points: list[PricePoint], source: str = PRICING_SOURCE_EXTERNAL) -> int:
        """Insert hour rows; existing (symbol, hour) rows are left untouched."""
        if not points:
            return 0
        rows = [
            {"token_symbol": symbol, "timestamp": p.bucket_start, "price_usd": p.usd_price, "source": source}
            for p in points
        ]
        with self.session_factory() as db:
            stmt = (
                dialect_insert(db, HistoricalPrice)
                .values(rows)
                .on_conflict_do_nothing(index_elements=["token_symbol", "timestamp"])
            )
            result = db.execute(stmt)
            db.commit()
        return max(result.rowcount or 0, 0)

    # ── lookups ────────────────────────────────────────────────────────────
    async def get_price_at_timestamp(self, symbol: str, timestamp: datetime | int | float) -> Decimal | None:
        symbol = symbol.upper()
        hour = hour_bucket(timestamp)

        price = self.get_cached_price(symbol, hour)
        if price is not None:
            return Decimal(price)

        price = self.get_latest_cached_before(symbol, hour)
        if price is not None:
            return Decimal(price)

        return await self.fetch_historical_price(symbol, hour)

    async def fetch_historical_price(self, symbol: str, timestamp: datetime | int | float) -> Decimal | None:
        """One external call for the day containing ``timestamp``; cached at its hour bucket."""
        symbol = symbol.upper()
        coin_id = self.coin_ids.get(symbol)
        if coin_id is None:
            log.info(f"[{symbol}] no CoinGecko mapping, cannot fetch price")
            return None

        hour = hour_bucket(timestamp)
        price = await self.client.history(coin_id, hour.date())
        if price is None:
            log.warning(f"[{symbol}] no CoinGecko price for {hour.date()}")
            return None

        self.cache_prices(symbol, [PricePoint(hour, price)])
        log.info(f"[{symbol}] cached ${price} for {hour.isoformat()}")
        return price

    async def fetch_range_hourly(self, symbol: str, start: datetime, end: datetime) -> list[PricePoint]:
        """Fetch a range, keep the first point of each hour, cache and return them."""
        symbol = symbol.upper()
        coin_id = self.coin_ids.get(symbol)
        if coin_id is None:
            raise ValueError(f"No CoinGecko mapping for {symbol}")

        raw = await self.client.market_chart_range(
            coin_id, int(as_utc(start).timestamp()), int(as_utc(end).timestamp())
        )
        by_hour: dict[datetime, Decimal] = {}
        for ms, price in sorted(raw):
            by_hour.setdefault(hour_bucket(ms / 1000), price)

        points = [PricePoint(h, p) for h, p in sorted(by_hour.items())]
        inserted = self.cache_prices(symbol, points)
        log.info(f"[{symbol}] {len(raw)} raw points → {len(points)} hours, {inserted} new rows")
        return points

    async def backfill_prices(self, symbol: str, days: int = 365) -> int:
        """Hourly history for the last ``days`` days, in 90-day windows."""
        end = datetime.now(timezone.utc)
        cursor = end - timedelta(days=days)
        total = 0
        while cursor < end:
            window_end = min(cursor + timedelta(days=HOURLY_WINDOW_DAYS), end)
            points = await self.fetch_range_hourly(symbol, cursor, window_end)
            total += len(points)
            cursor = window_end
        return total

    async def backfill_all_tokens(self, days: int = 365) -> dict[str, int | None]:
        results: dict[str, int | None] = {}
        for symbol in self.coin_ids:
            try:
                results[symbol] = await self.backfill_prices(symbol, days)
            except (PriceApiError, ValueError) as e:
                log.error(f"[{symbol}] backfill failed: {e}")
                results[symbol] = None
        return results

    async def fetch_current_prices(self, symbols=None) -> dict[str, Decimal]:
        symbols = [s.upper() for s in (symbols or self.coin_ids)]
        ids = {self.coin_ids[s]: s for s in symbols if s in self.coin_ids}
        if not ids:
            return {}
        by_id = await self.client.simple_price(sorted(ids))
        return {ids[cid]: price for cid, price in by_id.items() if cid in ids}
