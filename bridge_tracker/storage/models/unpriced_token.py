from sqlalchemy import Column, Integer, String, Boolean, TIMESTAMP
from bridge_tracker.storage.models.base import Base

class UnpricedToken(Base):
    __tablename__ = "unpriced_tokens"

    token_address      = Column(String(42), primary_key=True)          # lowercase
    token_symbol       = Column(String(32), nullable=True)
    first_seen         = Column(TIMESTAMP(timezone=True), nullable=True)
    last_seen          = Column(TIMESTAMP(timezone=True), nullable=True)
    event_count        = Column(Integer, nullable=False, default=0)
    has_dex_liquidity  = Column(Boolean, nullable=False, default=False)
    has_external_price = Column(Boolean, nullable=False, default=False)
    pricing_status     = Column(String(24), nullable=False, default="unknown")
    lp_pair_address    = Column(String(42), nullable=True)
    dex_price_usd      = Column(String(40), nullable=True)             # current-reserve estimate, informational
    updated_at         = Column(TIMESTAMP(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<UnpricedToken {self.token_symbol} {self.token_address} {self.pricing_status}>"
