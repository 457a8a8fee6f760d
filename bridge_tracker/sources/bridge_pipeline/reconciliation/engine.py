"""
Pricing reconciliation for bridge events, in five re-runnable phases:

1. discover: null-priced token events grouped by token
2. classify: priced / dex_derivable / deprecated, or unknown when a check failed
3. deprecated: zero-value every still-null event of deprecated tokens
4. dex: current-reserve price for dex_derivable tokens, then
   needs_manual_review (never applied to historical events)
5. verify: remaining unpriced events + USD totals per direction / source
"""
import logging
from decimal import Decimal

from sqlalchemy import select, update, func

from bridge_tracker.sources.bridge_pipeline.pricing.coingecko import PriceApiError
from bridge_tracker.sources.bridge_pipeline.pricing.dex import DexPoolInspector
from bridge_tracker.sources.bridge_pipeline.pricing.price_resolver import PriceResolver
from bridge_tracker.sources.bridge_pipeline.reconciliation.unpriced_analyzer import (
    UnpricedTokenAnalyzer,
    discover_unpriced_tokens,
)
from bridge_tracker.storage.db_utils import utcnow
from bridge_tracker.storage.models.bridge_event import BridgeEvent
from bridge_tracker.storage.models.unpriced_token import UnpricedToken
from bridge_tracker.utils.amounts import format_price, sum_usd
from bridge_tracker.utils.constants import (
    PRICING_SOURCE_DEPRECATED,
    STABLECOINS,
    TOKEN_REGISTRY,
)

log = logging.getLogger(__name__)


class ReconciliationEngine:
    def __init__(self, session_factory, resolver: PriceResolver, dex: DexPoolInspector | None = None):
        self.session_factory = session_factory
        self.resolver = resolver
        self.dex = dex
        self.analyzer = UnpricedTokenAnalyzer(session_factory, resolver, dex)

    # ── phase 1 + 2 ───────────────────────────────────────────────────────
    def discover(self):
        return discover_unpriced_tokens(self.session_factory)

    async def classify(self, candidates=None) -> dict[str, int]:
        return await self.analyzer.analyze(candidates)

    def tokens_with_status(self, status: str) -> list[UnpricedToken]:
        with self.session_factory() as db:
            return list(db.execute(
                select(UnpricedToken).where(UnpricedToken.pricing_status == status)
            ).scalars())

    # ── phase 3 ───────────────────────────────────────────────────────────
    def backfill_deprecated(self) -> int:
        addresses = [t.token_address for t in self.tokens_with_status("deprecated")]
        if not addresses:
            return 0
        with self.session_factory() as db:
            result = db.execute(
                update(BridgeEvent)
                .where(
                    BridgeEvent.usd_value.is_(None),
                    func.lower(BridgeEvent.token_address).in_(addresses),
                )
                .values(
                    usd_value="0.00",
                    token_price_usd="0.000000",
                    pricing_source=PRICING_SOURCE_DEPRECATED,
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
        log.info(f"Zero-valued {result.rowcount} events of {len(addresses)} deprecated tokens")
        return result.rowcount

    # ── phase 4 ───────────────────────────────────────────────────────────
    async def known_prices(self) -> dict[str, Decimal]:
        """USD prices by token address: stables at $1, others from the current price feed."""
        known: dict[str, Decimal] = {}
        by_symbol: dict[str, str] = {}
        for address, (symbol, _) in TOKEN_REGISTRY.items():
            if symbol.upper() in STABLECOINS:
                known[address] = Decimal("1")
            else:
                by_symbol[symbol.upper()] = address
        try:
            current = await self.resolver.fetch_current_prices(list(by_symbol))
        except PriceApiError as e:
            log.warning(f"Current price feed unavailable, using stables only: {e}")
            current = {}
        for symbol, price in current.items():
            if symbol in by_symbol:
                known[by_symbol[symbol]] = price
        return known

    async def derive_dex_prices(self) -> list[dict]:
        tokens = self.tokens_with_status("dex_derivable")
        if not tokens:
            return []

        pairs = self.analyzer.lp_pairs or self.analyzer.load_lp_pairs() or {}
        known = await self.known_prices() if self.dex is not None else {}

        flagged = []
        with self.session_factory() as db:
            for token in tokens:
                price = None
                if self.dex is not None:
                    price = self.dex.derive_price(token.token_address, pairs, known)
                price_str = format_price(price) if price is not None else None
                db.execute(
                    update(UnpricedToken)
                    .where(
                        UnpricedToken.token_address == token.token_address,
                        UnpricedToken.pricing_status == "dex_derivable",
                    )
                    .values(
                        pricing_status="needs_manual_review",
                        dex_price_usd=price_str,
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                flagged.append({
                    "token_address": token.token_address,
                    "token_symbol": token.token_symbol,
                    "current_dex_price_usd": price_str,
                    "event_count": token.event_count,
                })
                log.info(
                    f"[{token.token_symbol}] current DEX price {price}; "
                    f"historical events left for manual review"
                )
            db.commit()
        return flagged

    # ── phase 5 ───────────────────────────────────────────────────────────
    def verify_pricing_complete(self, top: int = 10) -> dict:
        with self.session_factory() as db:
            rows = db.execute(
                select(BridgeEvent.token_symbol, func.lower(BridgeEvent.token_address), func.count())
                .where(BridgeEvent.usd_value.is_(None), BridgeEvent.bridge_type == "token")
                .group_by(BridgeEvent.token_symbol, func.lower(BridgeEvent.token_address))
                .order_by(func.count().desc())
            ).all()
        remaining = sum(count for _, _, count in rows)
        breakdown = [
            {"token_symbol": symbol, "token_address": address, "events": count}
            for symbol, address, count in rows[:top]
        ]
        if remaining:
            log.warning(f"{remaining} token events still unpriced")
        return {"complete": remaining == 0, "unpriced_remaining": remaining, "breakdown": breakdown}

    def summary(self) -> dict:
        with self.session_factory() as db:
            rows = db.execute(
                select(BridgeEvent.direction, BridgeEvent.pricing_source, BridgeEvent.usd_value)
                .where(BridgeEvent.usd_value.is_not(None))
            ).all()

        by_direction: dict[str, list] = {"in": [], "out": []}
        by_source: dict[str, list] = {}
        for direction, source, value in rows:
            by_direction.setdefault(direction, []).append(value)
            by_source.setdefault(source or "unknown", []).append(value)

        total_in = sum_usd(by_direction["in"])
        total_out = sum_usd(by_direction["out"])
        return {
            "total_in_usd": str(total_in.quantize(Decimal("0.01"))),
            "total_out_usd": str(total_out.quantize(Decimal("0.01"))),
            "net_flow_usd": str((total_in - total_out).quantize(Decimal("0.01"))),
            "by_pricing_source": {
                source: {"events": len(values), "usd": str(sum_usd(values).quantize(Decimal("0.01")))}
                for source, values in sorted(by_source.items())
            },
        }

    # ── all phases ────────────────────────────────────────────────────────
    async def run(self) -> dict:
        candidates = self.discover()
        log.info(f"[reconcile] {len(candidates)} unpriced tokens discovered")
        classified = await self.classify(candidates)
        deprecated_updated = self.backfill_deprecated()
        manual_review = await self.derive_dex_prices()
        verification = self.verify_pricing_complete()
        return {
            "tokens_discovered": len(candidates),
            "classified": classified,
            "deprecated_updated": deprecated_updated,
            "dex_updated": 0,
            "manual_review": manual_review,
            "pricing_complete": verification["complete"],
            "unpriced_remaining": verification["unpriced_remaining"],
            "breakdown": verification["breakdown"],
            "summary": self.summary(),
        }
