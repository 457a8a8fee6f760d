from datetime import date
from decimal import Decimal
import httpx
import backoff
import logging

from bridge_tracker.sources.bridge_pipeline.config.settings import (
    COINGECKO_API_KEY,
    COINGECKO_BASE_URL,
    COINGECKO_MIN_INTERVAL,
    COINGECKO_RATE_LIMIT_SLEEP,
)
from bridge_tracker.utils.rate_limit import TokenBucket

log = logging.getLogger(__name__)


class PriceApiError(RuntimeError):
    """Transport failure, non-429 error or unusable payload from the price API."""


class RateLimitedError(PriceApiError):
    """Still rate limited after the single backoff retry."""


_shared_limiter: TokenBucket | None = None


def shared_limiter() -> TokenBucket:
    """The process-wide CoinGecko limiter (~1 request per COINGECKO_MIN_INTERVAL)."""
    global _shared_limiter
    if _shared_limiter is None:
        _shared_limiter = TokenBucket.per_interval(COINGECKO_MIN_INTERVAL)
    return _shared_limiter


class CoinGeckoClient:
    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        base_url: str = COINGECKO_BASE_URL,
        api_key: str | None = COINGECKO_API_KEY,
        limiter: TokenBucket | None = None,
        rate_limit_sleep: float = COINGECKO_RATE_LIMIT_SLEEP,
    ):
        headers = {"accept": "application/json"}
        if api_key:
            headers["x-cg-demo-api-key"] = api_key
        self._owns_client = http_client is None
        self.http = http_client or httpx.AsyncClient(timeout=30)
        self.base_url = base_url.rstrip("/")
        self.headers = headers
        self.limiter = limiter or shared_limiter()
        self.rate_limit_sleep = rate_limit_sleep
        self.requests_made = 0

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http.aclose()

    @backoff.on_exception(backoff.expo, httpx.RequestError, max_tries=3, jitter=None)
    async def _send(self, path: str, params: dict) -> httpx.Response:
        self.requests_made += 1
        return await self.http.get(f"{self.base_url}{path}", params=params, headers=self.headers)

    async def _get(self, path: str, params: dict):
        for attempt in (1, 2):
            await self.limiter.acquire()
            try:
                resp = await self._send(path, params)
            except httpx.RequestError as e:
                raise PriceApiError(f"CoinGecko {path} unreachable: {e}") from e
            if resp.status_code == 429:
                if attempt == 1:
                    log.warning(f"429 from CoinGecko {path}; backing off {self.rate_limit_sleep}s")
                    self.limiter.penalize(self.rate_limit_sleep)
                    continue
                raise RateLimitedError(f"CoinGecko still rate limited on {path}")
            if resp.status_code >= 400:
                raise PriceApiError(f"CoinGecko {path} returned HTTP {resp.status_code}")
            try:
                return resp.json(parse_float=Decimal)
            except ValueError as e:
                raise PriceApiError(f"CoinGecko {path} returned invalid JSON") from e

    async def history(self, coin_id: str, day: date) -> Decimal | None:
        """Daily USD price for ``day`` (None when CoinGecko has no market data)."""
        data = await self._get(
            f"/coins/{coin_id}/history",
            {"date": day.strftime("%d-%m-%Y"), "localization": "false"},
        )
        usd = (data or {}).get("market_data", {}).get("current_price", {}).get("usd")
        return Decimal(str(usd)) if usd is not None else None

    async def market_chart_range(self, coin_id: str, from_ts: int, to_ts: int) -> list[tuple[int, Decimal]]:
        """[(ms, usd)] between two unix timestamps; hourly granularity for spans up to 90 days."""
        data = await self._get(
            f"/coins/{coin_id}/market_chart/range",
            {"vs_currency": "usd", "from": from_ts, "to": to_ts},
        )
        prices = (data or {}).get("prices")
        if prices is None:
            raise PriceApiError(f"No 'prices' in market_chart response for {coin_id}")
        return [(int(ms), Decimal(str(p))) for ms, p in prices if p is not None]

    async def simple_price(self, coin_ids: list[str]) -> dict[str, Decimal]:
        data = await self._get("/simple/price", {"ids": ",".join(coin_ids), "vs_currencies": "usd"})
        return {
            cid: Decimal(str(entry["usd"]))
            for cid, entry in (data or {}).items()
            if isinstance(entry, dict) and entry.get("usd") is not None
        }
