# models/bridge_event.py
from sqlalchemy import Column, Integer, BigInteger, String, Text, TIMESTAMP, UniqueConstraint, Index, func
from bridge_tracker.storage.models.base import Base

class BridgeEvent(Base):
    __tablename__ = "bridge_events"

    id              = Column(Integer, primary_key=True)
    wallet          = Column(String(42),  nullable=False)      # lowercase 0x address
    bridge_type     = Column(String(16),  nullable=False)      # token / hero / item / equipment / pet
    direction       = Column(String(3),   nullable=False)      # in / out
    token_address   = Column(String(42),  nullable=True)
    token_symbol    = Column(String(32),  nullable=True)
    amount          = Column(Text,        nullable=False)      # decimal string, never float
    asset_id        = Column(Text,        nullable=True)       # NFT id (uint256)
    src_chain_id    = Column(BigInteger,  nullable=False)
    dst_chain_id    = Column(BigInteger,  nullable=False)

    tx_hash         = Column(String(66),  nullable=False)
    log_index       = Column(Integer,     nullable=False)
    block_number    = Column(BigInteger,  nullable=False)
    block_timestamp = Column(TIMESTAMP(timezone=True), nullable=False)

    # enrichment, written once under usd_value IS NULL
    usd_value       = Column(Text,        nullable=True)
    token_price_usd = Column(Text,        nullable=True)
    pricing_source  = Column(String(32),  nullable=True)

    created_at      = Column(TIMESTAMP(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("tx_hash", "log_index", name="uq_bridge_events_tx_log"),
        Index("ix_bridge_events_wallet", "wallet"),
        Index("ix_bridge_events_block", "block_number"),
        Index("ix_bridge_events_symbol", "token_symbol"),
    )

    def __repr__(self) -> str:
        return f"<BridgeEvent {self.bridge_type}/{self.direction} {self.token_symbol} {self.amount} {self.tx_hash}:{self.log_index}>"
