from dataclasses import dataclass, asdict
from typing import NamedTuple, Literal
from datetime import datetime
from decimal import Decimal

BridgeType = Literal["token", "hero", "item", "equipment", "pet"]
Direction = Literal["in", "out"]


class PricePoint(NamedTuple):
    bucket_start: datetime
    usd_price: Decimal


class BlockRange(NamedTuple):
    from_block: int
    to_block: int


class Partition(NamedTuple):
    worker_id: int
    start_block: int
    end_block: int


class LogBatch(NamedTuple):
    """Logs returned by a chunked query plus the sub-ranges that failed."""
    logs: list
    failed_ranges: list[BlockRange]


@dataclass
class BridgeEvent:
    """Canonical decoded bridge movement, one per (tx_hash, log_index)."""
    wallet: str
    bridge_type: BridgeType
    direction: Direction
    amount: str
    src_chain_id: int
    dst_chain_id: int
    tx_hash: str
    log_index: int
    block_number: int
    block_timestamp: datetime
    token_address: str | None = None
    token_symbol: str | None = None
    asset_id: int | None = None
    usd_value: str | None = None
    token_price_usd: str | None = None
    pricing_source: str | None = None

    def to_row(self) -> dict:
        row = asdict(self)
        row["wallet"] = self.wallet.lower()
        if self.token_address:
            row["token_address"] = self.token_address.lower()
        if self.asset_id is not None:
            row["asset_id"] = str(self.asset_id)
        return row
