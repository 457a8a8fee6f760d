from sqlalchemy import select
import logging

from bridge_tracker.storage.models.indexer_progress import IndexerProgress
from bridge_tracker.storage.db_utils import utcnow
from bridge_tracker.sources.bridge_pipeline.config.settings import MAIN_INDEXER_NAME, DFK_CHAIN_GENESIS

log = logging.getLogger(__name__)

_MUTABLE_FIELDS = {
    "last_indexed_block", "range_end", "target_block", "status",
    "total_events_indexed", "events_needing_prices", "last_batch_runtime_ms",
    "total_batch_count", "total_batch_runtime_ms", "last_error",
    "started_at", "completed_at",
}


class ProgressTracker:
    """Persisted checkpoint per named indexer.

    One writer per indexer name is assumed. Nothing here takes a database
    lock, so two processes driving the same name will race on the row.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def get(self, name: str = MAIN_INDEXER_NAME) -> IndexerProgress | None:
        with self.session_factory() as db:
            return db.execute(
                select(IndexerProgress).where(IndexerProgress.indexer_name == name)
            ).scalar_one_or_none()

    def init(self, name: str = MAIN_INDEXER_NAME, genesis_block: int = DFK_CHAIN_GENESIS,
             range_end: int | None = None) -> IndexerProgress:
        """Create the checkpoint row if missing; an existing row is returned untouched.

        The checkpoint is the last fully scanned block, so a fresh row starts
        one block before ``genesis_block``.
        """
        existing = self.get(name)
        if existing is not None:
            return existing

        now = utcnow()
        row = IndexerProgress(
            indexer_name=name,
            last_indexed_block=genesis_block - 1,
            genesis_block=genesis_block,
            range_end=range_end,
            status="idle",
            total_events_indexed=0,
            events_needing_prices=0,
            total_batch_count=0,
            total_batch_runtime_ms=0,
            created_at=now,
            updated_at=now,
        )
        with self.session_factory() as db:
            db.add(row)
            db.commit()
        log.info(f"Initialized indexer {name} at block {genesis_block}")
        return row

    def update(self, name: str, **fields) -> IndexerProgress:
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown progress fields: {sorted(unknown)}")

        with self.session_factory() as db:
            row = db.execute(
                select(IndexerProgress).where(IndexerProgress.indexer_name == name)
            ).scalar_one_or_none()
            if row is None:
                raise LookupError(f"Indexer {name} has not been initialized")

            new_block = fields.get("last_indexed_block")
            if new_block is not None and new_block < row.last_indexed_block:
                log.warning(
                    f"[{name}] refusing to move checkpoint back from "
                    f"{row.last_indexed_block} to {new_block}"
                )
                fields.pop("last_indexed_block")

            for key, value in fields.items():
                setattr(row, key, value)
            row.updated_at = utcnow()
            db.commit()
            return row
