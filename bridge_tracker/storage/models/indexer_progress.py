from sqlalchemy import Column, Integer, BigInteger, String, Text, TIMESTAMP, func
from bridge_tracker.storage.models.base import Base

class IndexerProgress(Base):
    __tablename__ = "indexer_progress"

    id                     = Column(Integer, primary_key=True)
    indexer_name           = Column(String(64), nullable=False, unique=True)   # synapse_main, synapse_main_w3 …
    last_indexed_block     = Column(BigInteger, nullable=False)
    genesis_block          = Column(BigInteger, nullable=False, default=0)
    range_end              = Column(BigInteger, nullable=True)                 # only set for worker partitions
    target_block           = Column(BigInteger, nullable=True)
    status                 = Column(String(16), nullable=False, default="idle")

    total_events_indexed   = Column(BigInteger, nullable=False, default=0)
    events_needing_prices  = Column(BigInteger, nullable=False, default=0)
    last_batch_runtime_ms  = Column(BigInteger, nullable=True)
    total_batch_count      = Column(BigInteger, nullable=False, default=0)
    total_batch_runtime_ms = Column(BigInteger, nullable=False, default=0)
    last_error             = Column(Text, nullable=True)

    started_at             = Column(TIMESTAMP(timezone=True), nullable=True)
    completed_at           = Column(TIMESTAMP(timezone=True), nullable=True)
    created_at             = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at             = Column(TIMESTAMP(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<IndexerProgress {self.indexer_name} @{self.last_indexed_block} {self.status}>"
