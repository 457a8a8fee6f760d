from celery import shared_task
import time
import logging

from bridge_tracker.scheduler.controllers import partition_ranges
from bridge_tracker.sources.bridge_pipeline.config.settings import (
    DFK_CHAIN_GENESIS,
    HISTORICAL_BATCH_SIZE,
    MAIN_INDEXER_NAME,
    PARTITION_STAGGER_SECS,
)
from bridge_tracker.sources.bridge_pipeline.ingestion.runner import build_fetcher
from bridge_tracker.sources.bridge_pipeline.ingestion.schedule_ingest import sync_partition

log = logging.getLogger(__name__)


@shared_task(name="dispatch_partitioned_sync", queue="dispatch")
def dispatch_partitioned_sync(
    workers: int = 4,
    batch_size: int = HISTORICAL_BATCH_SIZE,
    base_name: str = MAIN_INDEXER_NAME,
    tip: int | None = None,
    genesis: int | None = None,
    families: list[str] | None = None,
) -> list[dict]:
    """Split [genesis, tip] into ``workers`` partitions and enqueue one sync task each.

    ``families`` is forwarded to every partition task; None keeps the
    default decoder set.
    """
    if genesis is None:
        genesis = DFK_CHAIN_GENESIS
    if tip is None:
        tip = build_fetcher().get_latest_block()
    partitions = partition_ranges(genesis, tip, workers)
    log.info(f"🔄  Dispatching {len(partitions)} partitions up to block {tip}")

    for p in partitions:
        log.info(f"🚀 Launching w{p.worker_id}: {p.start_block}-{p.end_block}")
        sync_partition.apply_async(
            kwargs={
                "worker_id": p.worker_id,
                "start_block": p.start_block,
                "end_block": p.end_block,
                "base_name": base_name,
                "batch_size": batch_size,
                "families": list(families) if families else None,
            },
            queue="orchestrate",
        )
        time.sleep(PARTITION_STAGGER_SECS)
    return [p._asdict() for p in partitions]
