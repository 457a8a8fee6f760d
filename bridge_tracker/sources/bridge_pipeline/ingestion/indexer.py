from typing import NamedTuple
import logging
import time

from bridge_tracker.sources.bridge_pipeline.decoders.registry import (
    EventDecoder,
    LogQuery,
    MissingContextError,
    log_identity,
)
from bridge_tracker.storage.persistence import save_bridge_events
from bridge_tracker.utils.types import BlockRange, BridgeEvent

log = logging.getLogger(__name__)


class IndexResult(NamedTuple):
    events_found: int
    inserted: int
    skipped: int
    failed_ranges: list[BlockRange]
    unresolved: int
    failed: int = 0

    @property
    def complete(self) -> bool:
        """False when some sub-range, log or row must be handled again."""
        return not self.failed_ranges and not self.unresolved and not self.failed


class BridgeIndexer:
    """fetch -> decode -> persist for a block range."""

    def __init__(self, fetcher, decoder: EventDecoder, session_factory):
        self.fetcher = fetcher
        self.decoder = decoder
        self.session_factory = session_factory

    def collect(self, queries: list[LogQuery], from_block: int, to_block: int):
        """Decode every matching log in [from_block, to_block].

        Returns (events, failed_ranges, unresolved_count).
        """
        raw_logs = {}
        failed: list[BlockRange] = []
        for query in queries:
            batch = self.fetcher.query(query.address, query.topics, from_block, to_block)
            failed.extend(batch.failed_ranges)
            for raw in batch.logs:
                ident = log_identity(raw)
                raw_logs[(ident["tx_hash"], ident["log_index"])] = raw

        if not raw_logs:
            return [], failed, 0

        logs = list(raw_logs.values())
        timestamps = self.fetcher.get_block_timestamps({int(l["blockNumber"]) for l in logs})
        need_sender = [log_identity(l)["tx_hash"] for l in logs if self.decoder.needs_tx_sender(l)]
        senders = self.fetcher.get_transaction_senders(need_sender) if need_sender else {}
        ctx = self.decoder.context(block_timestamps=timestamps, tx_senders=senders)

        events: list[BridgeEvent] = []
        unresolved = 0
        for raw in logs:
            try:
                event = self.decoder.decode(raw, ctx)
            except MissingContextError as e:
                log.warning(f"Deferring log: {e}")
                unresolved += 1
                continue
            except ValueError as e:
                ident = log_identity(raw)
                log.error(f"Skipping malformed log {ident['tx_hash']}:{ident['log_index']}: {e}")
                continue
            if event is not None:
                events.append(event)

        events.sort(key=lambda e: (e.block_number, e.log_index))
        return events, failed, unresolved

    def _index(self, queries, from_block: int, to_block: int) -> IndexResult:
        started = time.time()
        events, failed, unresolved = self.collect(queries, from_block, to_block)
        saved = save_bridge_events(self.session_factory, events) if events else {"inserted": 0, "skipped": 0, "failed": 0}
        log.info(
            f"Indexed blocks {from_block}-{to_block}: {len(events)} events, "
            f"{saved['inserted']} new, {saved['failed']} not saved, {len(failed)} failed ranges "
            f"({time.time() - started:.2f}s)"
        )
        return IndexResult(
            events_found=len(events),
            inserted=saved["inserted"],
            skipped=saved["skipped"],
            failed_ranges=failed,
            unresolved=unresolved,
            failed=saved["failed"],
        )

    def index_range(self, from_block: int, to_block: int) -> IndexResult:
        return self._index(self.decoder.sources(), from_block, to_block)

    def index_wallet(self, wallet: str, from_block: int, to_block: int) -> IndexResult:
        """Index only logs whose indexed topics reference ``wallet``."""
        queries = self.decoder.wallet_sources(wallet)
        if not queries:
            log.info(f"No wallet-filterable sources enabled for {wallet}")
            return IndexResult(0, 0, 0, [], 0)
        return self._index(queries, from_block, to_block)
