import asyncio
import json
import signal
import logging

import typer
from dotenv import load_dotenv

from bridge_tracker.scheduler.controllers import (
    HistoricalSyncController,
    IncrementalBatchController,
    MaintenanceScheduler,
    PartitionedSync,
)
from bridge_tracker.sources.bridge_pipeline.config.settings import (
    DFK_CHAIN_GENESIS,
    ENRICHMENT_WORKERS,
    HISTORICAL_BATCH_SIZE,
    HISTORICAL_RETRY_DELAY,
    INCREMENTAL_BATCH_SIZE,
    MAIN_INDEXER_NAME,
    MAINTENANCE_INTERVAL_SECONDS,
    MAINTENANCE_LOOKBACK_BLOCKS,
)
from bridge_tracker.sources.bridge_pipeline.ingestion.runner import (
    build_enrichment,
    build_indexer,
    build_price_resolver,
    build_progress,
    build_reconciliation_engine,
    session_factory,
)
from bridge_tracker.storage.db import check_db_connection, init_db
from bridge_tracker.storage.persistence import bridge_event_stats, get_wallet_events
from bridge_tracker.utils.shortname import configure_logging

load_dotenv()
configure_logging()
log = logging.getLogger(__name__)

app = typer.Typer(help="Index DFK Chain bridge transfers and price them in USD")

FAMILIES_OPTION = typer.Option(
    "synapse,nft", "--families", help="Comma separated: synapse, nft, erc20 (erc20 excludes synapse)",
)


def _families(raw: str) -> tuple[str, ...]:
    return tuple(f.strip().lower() for f in raw.split(",") if f.strip())


def _echo(result) -> None:
    typer.echo(json.dumps(result, indent=2, default=str))


def _stop_on_signals(*controllers) -> None:
    loop = asyncio.get_running_loop()

    def _handler():
        log.info("[cli] stop requested, finishing current step")
        for c in controllers:
            c.stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handler)


@app.command("init-db")
def init_db_cmd():
    """Create the bridge tables."""
    if not check_db_connection():
        raise typer.Exit(code=1)
    init_db()


@app.command("incremental")
def incremental(
    batch_size: int = typer.Option(INCREMENTAL_BATCH_SIZE, help="Blocks per batch"),
    families: str = FAMILIES_OPTION,
):
    """Run a single bounded batch from the checkpoint."""
    controller = IncrementalBatchController(build_indexer(_families(families)), build_progress())
    result = asyncio.run(controller.run_batch(batch_size))
    _echo(result)
    if result["status"] == "error":
        raise typer.Exit(code=1)


@app.command("sync")
def sync(
    batch_size: int = typer.Option(INCREMENTAL_BATCH_SIZE, help="Blocks per batch"),
    delay: float = typer.Option(2.0, help="Seconds between batches"),
    max_batches: int = typer.Option(None, help="Stop after this many batches"),
    families: str = FAMILIES_OPTION,
):
    """Keep the index at the chain tip until interrupted."""
    controller = IncrementalBatchController(build_indexer(_families(families)), build_progress())

    async def _run():
        _stop_on_signals(controller)
        return await controller.run_forever(batch_size=batch_size, delay=delay, max_batches=max_batches)

    _echo(asyncio.run(_run()))


@app.command("historical")
def historical(
    batch_size: int = typer.Option(HISTORICAL_BATCH_SIZE, help="Blocks per window"),
    retry_delay: float = typer.Option(HISTORICAL_RETRY_DELAY, help="Seconds before retrying a failed window"),
    target_block: int = typer.Option(None, help="Stop at this block instead of the tip"),
    max_retries: int = typer.Option(None, help="Give up after this many consecutive failures"),
    families: str = FAMILIES_OPTION,
):
    """Catch up from the checkpoint to the tip (or --target-block)."""
    controller = HistoricalSyncController(build_indexer(_families(families)), build_progress())

    async def _run():
        _stop_on_signals(controller)
        return await controller.run(
            batch_size=batch_size, retry_delay=retry_delay, target_block=target_block, max_retries=max_retries,
        )

    _echo(asyncio.run(_run()))


@app.command("partition")
def partition(
    workers: int = typer.Option(4, help="Number of partitions"),
    batch_size: int = typer.Option(HISTORICAL_BATCH_SIZE, help="Blocks per window"),
    genesis: int = typer.Option(DFK_CHAIN_GENESIS, help="First block of partition 0"),
    tip: int = typer.Option(None, help="Last block to cover (default: chain tip)"),
    dispatch: bool = typer.Option(False, "--dispatch", help="Enqueue one Celery task per partition instead"),
    families: str = FAMILIES_OPTION,
):
    """Historical sync split into disjoint block ranges."""
    if dispatch:
        from bridge_tracker.scheduler.dispatcher import dispatch_partitioned_sync
        task = dispatch_partitioned_sync.apply_async(
            kwargs={
                "workers": workers,
                "batch_size": batch_size,
                "tip": tip,
                "genesis": genesis,
                "families": list(_families(families)),
            },
            queue="dispatch",
        )
        typer.echo(f"Dispatched partition plan as task {task.id}")
        return

    sync_all = PartitionedSync(build_indexer(_families(families)), build_progress(), genesis_block=genesis)

    async def _run():
        _stop_on_signals(sync_all)
        return await sync_all.run_all(workers, tip=tip, batch_size=batch_size)

    _echo(asyncio.run(_run()))


@app.command("maintenance")
def maintenance(
    lookback: int = typer.Option(MAINTENANCE_LOOKBACK_BLOCKS, help="Recent blocks to re-scan"),
    interval: int = typer.Option(MAINTENANCE_INTERVAL_SECONDS, help="Seconds between runs with --loop"),
    loop: bool = typer.Option(False, "--loop", help="Keep running until interrupted"),
    families: str = FAMILIES_OPTION,
):
    """Re-scan the most recent blocks for late or missed events."""
    scheduler = MaintenanceScheduler(build_indexer(_families(families)), lookback=lookback, interval=interval)

    async def _run():
        if not loop:
            return await scheduler.run_once()
        _stop_on_signals(scheduler)
        scheduler.start()
        await scheduler.wait_stopped()
        return scheduler.status()

    _echo(asyncio.run(_run()))


@app.command("index-wallet")
def index_wallet(
    wallet: str = typer.Argument(..., help="0x... address"),
    from_block: int = typer.Option(None, help="Default: tip - lookback"),
    to_block: int = typer.Option(None, help="Default: chain tip"),
    lookback: int = typer.Option(100_000, help="Blocks to scan when --from-block is omitted"),
    families: str = FAMILIES_OPTION,
):
    """Index only the bridge events that reference one wallet."""
    indexer = build_indexer(_families(families))
    if to_block is None:
        to_block = indexer.fetcher.get_latest_block()
    if from_block is None:
        from_block = max(0, to_block - lookback)
    result = indexer.index_wallet(wallet, from_block, to_block)
    _echo(result._asdict() | {"complete": result.complete})


@app.command("wallet-events")
def wallet_events(
    wallet: str = typer.Argument(..., help="0x... address"),
    limit: int = typer.Option(100),
):
    """Stored bridge events for a wallet, newest first."""
    rows = get_wallet_events(session_factory(), wallet, limit=limit)
    _echo([
        {
            "block_number": r.block_number,
            "tx_hash": r.tx_hash,
            "bridge_type": r.bridge_type,
            "direction": r.direction,
            "token_symbol": r.token_symbol,
            "amount": r.amount,
            "asset_id": r.asset_id,
            "usd_value": r.usd_value,
        }
        for r in rows
    ])


@app.command("enrich")
def enrich(
    workers: int = typer.Option(ENRICHMENT_WORKERS, help="Parallel workers (1 runs sequentially)"),
    max_groups: int = typer.Option(None, help="Sequential mode only: stop after this many (day, symbol) groups"),
):
    """Fill usd_value for events that do not have one yet."""
    async def _run():
        resolver = build_price_resolver()
        enrichment = build_enrichment(resolver)
        _stop_on_signals(enrichment)
        try:
            if workers <= 1:
                return await enrichment.run(max_groups=max_groups)
            return await enrichment.run_parallel(workers)
        finally:
            await resolver.client.aclose()

    _echo(asyncio.run(_run()))


@app.command("backfill-prices")
def backfill_prices(
    symbol: str = typer.Option(None, help="One symbol; default is every mapped token"),
    days: int = typer.Option(365, help="Days of hourly history"),
):
    """Load hourly price history into the cache."""
    async def _run():
        resolver = build_price_resolver()
        try:
            if symbol:
                return {symbol.upper(): await resolver.backfill_prices(symbol, days)}
            return await resolver.backfill_all_tokens(days)
        finally:
            await resolver.client.aclose()

    _echo(asyncio.run(_run()))


@app.command("reconcile")
def reconcile(
    no_dex: bool = typer.Option(False, "--no-dex", help="Skip LP pool discovery"),
):
    """Classify unpriced tokens, zero out deprecated ones and report coverage."""
    async def _run():
        resolver = build_price_resolver()
        try:
            engine = build_reconciliation_engine(resolver, with_dex=not no_dex)
            return await engine.run()
        finally:
            await resolver.client.aclose()

    result = asyncio.run(_run())
    _echo(result)
    if not result["pricing_complete"]:
        log.warning(f"[cli] {result['unpriced_remaining']} events still unpriced")


@app.command("stats")
def stats():
    """Event counts and indexer progress."""
    result = bridge_event_stats(session_factory())
    row = build_progress().get(MAIN_INDEXER_NAME)
    if row is not None:
        result["progress"] = {
            "indexer_name": row.indexer_name,
            "status": row.status,
            "last_indexed_block": row.last_indexed_block,
            "target_block": row.target_block,
            "total_events_indexed": row.total_events_indexed,
            "last_error": row.last_error,
        }
    _echo(result)


def main():
    app()

if __name__ == "__main__":
    main()
