from datetime import datetime
from typing import NamedTuple
import logging

from sqlalchemy import select, func

from bridge_tracker.sources.bridge_pipeline.pricing.coingecko import PriceApiError
from bridge_tracker.sources.bridge_pipeline.pricing.dex import DexPoolInspector, LpPair
from bridge_tracker.sources.bridge_pipeline.pricing.price_resolver import PriceResolver
from bridge_tracker.storage.db_utils import dialect_insert, as_utc, utcnow
from bridge_tracker.storage.models.bridge_event import BridgeEvent
from bridge_tracker.storage.models.unpriced_token import UnpricedToken

log = logging.getLogger(__name__)


class UnpricedCandidate(NamedTuple):
    token_address: str
    token_symbol: str | None
    first_seen: datetime
    last_seen: datetime
    event_count: int


def discover_unpriced_tokens(session_factory) -> list[UnpricedCandidate]:
    """Token events with a null usd_value, grouped by token address."""
    address = func.lower(BridgeEvent.token_address)
    with session_factory() as db:
        rows = db.execute(
            select(
                address,
                func.max(BridgeEvent.token_symbol),
                func.min(BridgeEvent.block_timestamp),
                func.max(BridgeEvent.block_timestamp),
                func.count(),
            )
            .where(
                BridgeEvent.usd_value.is_(None),
                BridgeEvent.bridge_type == "token",
                BridgeEvent.token_address.is_not(None),
            )
            .group_by(address)
            .order_by(func.count().desc())
        ).all()
    return [
        UnpricedCandidate(addr, symbol, as_utc(first), as_utc(last), count)
        for addr, symbol, first, last, count in rows
    ]


def classify_token(has_external_price: bool | None, has_dex_liquidity: bool | None) -> str:
    """None for either input means the check itself failed; such tokens stay ``unknown``."""
    if has_external_price:
        return "priced"
    if has_external_price is None:
        return "unknown"
    if has_dex_liquidity:
        return "dex_derivable"
    if has_dex_liquidity is None:
        return "unknown"
    return "deprecated"


class UnpricedTokenAnalyzer:
    """Discover and classify tokens whose events could not be priced."""

    def __init__(self, session_factory, resolver: PriceResolver, dex: DexPoolInspector | None = None):
        self.session_factory = session_factory
        self.resolver = resolver
        self.dex = dex
        self.lp_pairs: dict[str, LpPair] = {}

    def load_lp_pairs(self) -> dict[str, LpPair] | None:
        """Deepest pool per token, or None when the factory scan failed."""
        if self.dex is None:
            self.lp_pairs = {}
            return self.lp_pairs
        try:
            self.lp_pairs = self.dex.discover_lp_pairs()
        except Exception as e:
            log.error(f"LP pair discovery failed, liquidity unknown for this pass: {e}")
            self.lp_pairs = {}
            return None
        return self.lp_pairs

    async def has_external_price(self, candidate: UnpricedCandidate) -> bool | None:
        """True/False once the price feed answered; None if it could not be reached."""
        symbol = (candidate.token_symbol or "").upper()
        if symbol not in self.resolver.coin_ids:
            return False
        try:
            price = await self.resolver.get_price_at_timestamp(symbol, candidate.first_seen)
        except PriceApiError as e:
            log.warning(f"[{symbol}] external price check failed, retry next pass: {e}")
            return None
        return price is not None and price > 0

    def upsert(self, candidate: UnpricedCandidate, status: str, has_external: bool | None,
               pair: LpPair | None) -> None:
        values = {
            "token_address": candidate.token_address,
            "token_symbol": candidate.token_symbol,
            "first_seen": candidate.first_seen,
            "last_seen": candidate.last_seen,
            "event_count": candidate.event_count,
            "has_dex_liquidity": pair is not None,
            "has_external_price": bool(has_external),
            "pricing_status": status,
            "lp_pair_address": pair.pair_address if pair else None,
            "updated_at": utcnow(),
        }
        with self.session_factory() as db:
            stmt = dialect_insert(db, UnpricedToken).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["token_address"],
                set_={k: stmt.excluded[k] for k in values if k != "token_address"},
            )
            db.execute(stmt)
            db.commit()

    async def analyze(self, candidates: list[UnpricedCandidate] | None = None) -> dict[str, int]:
        """Classify every candidate; returns counts per status."""
        if candidates is None:
            candidates = discover_unpriced_tokens(self.session_factory)
        pairs = self.load_lp_pairs()

        counts: dict[str, int] = {}
        for c in candidates:
            has_external = await self.has_external_price(c)
            pair = pairs.get(c.token_address) if pairs is not None else None
            if pair is not None and pair.token_reserve == 0:
                pair = None
            has_liquidity = pair is not None if pairs is not None else None
            status = classify_token(has_external, has_liquidity)
            self.upsert(c, status, has_external, pair)
            counts[status] = counts.get(status, 0) + 1
            log.info(f"[{c.token_symbol}] {c.token_address}: {c.event_count} events → {status}")
        return counts
