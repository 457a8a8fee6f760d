"""
Celery-side wrappers around the scheduler controllers and pricing jobs.

Every task builds its objects with the pool-less worker session and runs
the async controller to completion with ``asyncio.run``.
"""
import asyncio
import logging

from celery import shared_task

from bridge_tracker.scheduler.controllers import (
    IncrementalBatchController,
    MaintenanceScheduler,
    PartitionWorker,
)
from bridge_tracker.sources.bridge_pipeline.config.settings import (
    ENRICHMENT_WORKERS,
    HISTORICAL_BATCH_SIZE,
    INCREMENTAL_BATCH_SIZE,
    MAIN_INDEXER_NAME,
    MAINTENANCE_LOOKBACK_BLOCKS,
)
from bridge_tracker.sources.bridge_pipeline.decoders.factory import DEFAULT_FAMILIES
from bridge_tracker.sources.bridge_pipeline.ingestion.runner import (
    build_enrichment,
    build_indexer,
    build_price_resolver,
    build_progress,
    build_reconciliation_engine,
)
from bridge_tracker.utils.types import Partition

log = logging.getLogger(__name__)


@shared_task(name="bridge_incremental_batch", queue="orchestrate")
def incremental_batch(batch_size: int = INCREMENTAL_BATCH_SIZE) -> dict:
    controller = IncrementalBatchController(build_indexer(worker=True), build_progress(worker=True))
    return asyncio.run(controller.run_batch(batch_size))


@shared_task(name="bridge_sync_partition", queue="orchestrate", bind=True)
def sync_partition(
    self,
    *,
    worker_id: int,
    start_block: int,
    end_block: int,
    base_name: str = MAIN_INDEXER_NAME,
    batch_size: int = HISTORICAL_BATCH_SIZE,
    families: list[str] | None = None,
) -> dict:
    """Sync one worker partition [start_block, end_block] under ``{base_name}_w{worker_id}``."""
    log.info(f"🔄  Partition w{worker_id}: blocks {start_block}-{end_block}")
    worker = PartitionWorker(
        build_indexer(families=tuple(families) if families else DEFAULT_FAMILIES, worker=True),
        build_progress(worker=True),
        Partition(worker_id, start_block, end_block),
        base_name=base_name,
    )
    return asyncio.run(worker.run(batch_size=batch_size))


@shared_task(name="bridge_maintenance_rescan", queue="orchestrate")
def maintenance_rescan(lookback: int = MAINTENANCE_LOOKBACK_BLOCKS) -> dict:
    scheduler = MaintenanceScheduler(build_indexer(worker=True), lookback=lookback)
    return asyncio.run(scheduler.run_once())


@shared_task(name="bridge_price_enrichment", queue="enrich")
def enrich_prices(workers: int = ENRICHMENT_WORKERS) -> dict:
    async def _run():
        resolver = build_price_resolver(worker=True)
        try:
            return await build_enrichment(resolver, worker=True).run_parallel(workers)
        finally:
            await resolver.client.aclose()

    return asyncio.run(_run())


@shared_task(name="bridge_reconciliation", queue="enrich")
def reconcile() -> dict:
    async def _run():
        resolver = build_price_resolver(worker=True)
        try:
            return await build_reconciliation_engine(resolver, worker=True).run()
        finally:
            await resolver.client.aclose()

    return asyncio.run(_run())
