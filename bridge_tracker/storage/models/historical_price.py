from sqlalchemy import Column, Integer, String, Numeric, TIMESTAMP, UniqueConstraint, func
from bridge_tracker.storage.models.base import Base

class HistoricalPrice(Base):
    __tablename__ = "historical_prices"

    id           = Column(Integer, primary_key=True)
    token_symbol = Column(String(32), nullable=False)
    timestamp    = Column(TIMESTAMP(timezone=True), nullable=False)   # truncated to the hour
    price_usd    = Column(Numeric(38, 18), nullable=False)
    source       = Column(String(32), nullable=False, default="coingecko")
    created_at   = Column(TIMESTAMP(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("token_symbol", "timestamp", name="uq_historical_prices_symbol_hour"),
    )
