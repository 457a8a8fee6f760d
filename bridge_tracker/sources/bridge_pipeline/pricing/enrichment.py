import asyncio
import logging
from datetime import date, datetime, time as dtime, timedelta, timezone

from sqlalchemy import select, update, func

from bridge_tracker.scheduler.state import SchedulerState
from bridge_tracker.sources.bridge_pipeline.config.settings import ENRICHMENT_WORKERS
from bridge_tracker.sources.bridge_pipeline.pricing.coingecko import PriceApiError
from bridge_tracker.sources.bridge_pipeline.pricing.price_resolver import PriceResolver
from bridge_tracker.storage.db_utils import as_utc
from bridge_tracker.storage.models.bridge_event import BridgeEvent
from bridge_tracker.utils.amounts import parse_amount, usd_value, format_price
from bridge_tracker.utils.constants import NFT_SYMBOLS, PRICING_SOURCE_EXTERNAL

log = logging.getLogger(__name__)


def _unpriced_token_filter():
    return (
        BridgeEvent.usd_value.is_(None),
        BridgeEvent.bridge_type == "token",
        BridgeEvent.token_symbol.is_not(None),
        func.upper(BridgeEvent.token_symbol).not_in(sorted(NFT_SYMBOLS)),
    )


class PriceEnrichment:
    """Fill usd_value for token events, one (day, symbol) group at a time.

    Every write is guarded by ``usd_value IS NULL``, so a value is set once
    and concurrent or repeated passes cannot overwrite it.
    """

    def __init__(self, session_factory, resolver: PriceResolver):
        self.session_factory = session_factory
        self.resolver = resolver
        self.state = SchedulerState("price_enrichment")
        self.worker_status: dict[int, dict] = {}

    def get_unpriced_groups(self) -> list[tuple[date, str]]:
        with self.session_factory() as db:
            rows = db.execute(
                select(BridgeEvent.block_timestamp, BridgeEvent.token_symbol)
                .where(*_unpriced_token_filter())
            ).all()
        groups = {(as_utc(ts).date(), symbol) for ts, symbol in rows}
        return sorted(groups)

    async def enrich_group(self, day: date, symbol: str) -> int:
        """Price every still-null event of ``symbol`` on ``day``; returns rows updated."""
        day_start = datetime.combine(day, dtime.min, tzinfo=timezone.utc)
        try:
            price = await self.resolver.get_price_at_timestamp(symbol, day_start)
        except PriceApiError as e:
            log.warning(f"[{symbol}] {day}: price lookup failed: {e}")
            return 0
        if price is None or price <= 0:
            log.debug(f"[{symbol}] {day}: no price available")
            return 0

        price_str = format_price(price)
        updated = 0
        with self.session_factory() as db:
            events = db.execute(
                select(BridgeEvent.id, BridgeEvent.amount)
                .where(
                    *_unpriced_token_filter(),
                    BridgeEvent.token_symbol == symbol,
                    BridgeEvent.block_timestamp >= day_start,
                    BridgeEvent.block_timestamp < day_start + timedelta(days=1),
                )
            ).all()
            for event_id, amount in events:
                parsed = parse_amount(amount)
                if parsed is None:
                    log.warning(f"Skipping event {event_id}: invalid amount {amount!r}")
                    continue
                result = db.execute(
                    update(BridgeEvent)
                    .where(BridgeEvent.id == event_id, BridgeEvent.usd_value.is_(None))
                    .values(
                        usd_value=usd_value(parsed, price),
                        token_price_usd=price_str,
                        pricing_source=PRICING_SOURCE_EXTERNAL,
                    )
                    .execution_options(synchronize_session=False)
                )
                updated += result.rowcount
            db.commit()

        if updated:
            log.info(f"[{symbol}] {day}: priced {updated} events at ${price_str}")
        return updated

    async def run(self, max_groups: int | None = None) -> dict:
        if not self.state.try_start():
            return {"status": "already_running"}
        try:
            groups = self.get_unpriced_groups()
            if max_groups is not None:
                groups = groups[:max_groups]
            processed = updated = 0
            for day, symbol in groups:
                if self.state.should_stop:
                    break
                updated += await self.enrich_group(day, symbol)
                processed += 1
            status = "aborted" if processed < len(groups) else "complete"
            return {"status": status, "groups": len(groups), "processed": processed, "updated": updated}
        finally:
            self.state.finish()

    async def run_parallel(self, workers: int = ENRICHMENT_WORKERS) -> dict:
        """Deal groups round-robin into disjoint slices, one async task per slice."""
        if workers < 1:
            raise ValueError("workers must be >= 1")
        if not self.state.try_start():
            return {"status": "already_running"}

        try:
            groups = self.get_unpriced_groups()
            slices = [groups[i::workers] for i in range(workers)]
            slices = [s for s in slices if s]
            self.worker_status = {
                wid: {"state": "pending", "groups": len(s), "processed": 0, "updated": 0}
                for wid, s in enumerate(slices)
            }

            async def worker(wid: int, my_groups: list[tuple[date, str]]) -> int:
                status = self.worker_status[wid]
                status["state"] = "running"
                try:
                    for day, symbol in my_groups:
                        if self.state.should_stop:
                            status["state"] = "aborted"
                            return status["updated"]
                        status["updated"] += await self.enrich_group(day, symbol)
                        status["processed"] += 1
                    status["state"] = "complete"
                except Exception as e:
                    status["state"] = "error"
                    status["error"] = str(e)
                    log.error(f"[enrichment w{wid}] failed: {e}", exc_info=True)
                return status["updated"]

            totals = await asyncio.gather(*(worker(wid, s) for wid, s in enumerate(slices)))
            log.info(f"Parallel enrichment: {len(groups)} groups over {len(slices)} workers, {sum(totals)} events priced")
            return {
                "status": "complete",
                "groups": len(groups),
                "workers": len(slices),
                "updated": sum(totals),
                "worker_status": dict(self.worker_status),
            }
        finally:
            self.state.finish()

    def stop(self) -> bool:
        return self.state.request_stop()

    def status(self) -> dict:
        return {"state": self.state.state.value, "workers": dict(self.worker_status)}
