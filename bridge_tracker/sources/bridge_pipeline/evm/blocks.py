from typing import Iterator
from web3 import Web3
import logging
import requests

from bridge_tracker.sources.bridge_pipeline.config.settings import RPC_BATCH_SIZE

logger = logging.getLogger(__name__)


def walk_block_ranges(start: int, end: int, step: int) -> Iterator[tuple[int, int]]:
    """Inclusive [from, to] windows of at most ``step`` blocks covering [start, end]."""
    if step <= 0:
        raise ValueError("step must be positive")
    for i in range(start, end + 1, step):
        yield i, min(i + step - 1, end)


class BlockTimestampResolver:
    """Exact block timestamps, cached across batches.

    Uses one JSON-RPC batch per ``RPC_BATCH_SIZE`` blocks when an RPC URL is
    known, and falls back to single ``eth_getBlock`` calls through Web3 for
    anything the batch did not answer.
    """

    def __init__(self, w3: Web3, rpc_url: str | None = None, cache_size: int = 50_000):
        self.w3 = w3
        self.rpc_url = rpc_url
        self.cache_size = cache_size
        self._cache: dict[int, int] = {}

    def _get_single_block_ts(self, block: int) -> int | None:
        try:
            blk = self.w3.eth.get_block(block, full_transactions=False)
            return int(blk["timestamp"])
        except Exception as exc:
            logger.warning(f"Web3 rescue call failed for block {block}: {exc}")
            return None

    def _batch_fetch(self, blocks: list[int]) -> dict[int, int]:
        ts_map: dict[int, int] = {}
        for i in range(0, len(blocks), RPC_BATCH_SIZE):
            chunk = blocks[i : i + RPC_BATCH_SIZE]
            payload = [
                {"jsonrpc": "2.0", "method": "eth_getBlockByNumber",
                 "params": [hex(b), False], "id": j}
                for j, b in enumerate(chunk)
            ]
            try:
                r = requests.post(self.rpc_url, json=payload, timeout=10)
                r.raise_for_status()
                batch_res = r.json()
            except (requests.RequestException, ValueError) as exc:
                logger.error(f"batch RPC ({len(chunk)} blocks) failed: {exc}")
                continue

            for item in batch_res:
                if (res := item.get("result")):
                    ts_map[int(res["number"], 16)] = int(res["timestamp"], 16)
        return ts_map

    def get_timestamps(self, block_numbers) -> dict[int, int]:
        """Map every requested block to its unix timestamp; raises ValueError for unresolvable blocks."""
        wanted = sorted({int(b) for b in block_numbers})
        missing = [b for b in wanted if b not in self._cache]

        if missing and self.rpc_url:
            self._cache.update(self._batch_fetch(missing))
            missing = [b for b in missing if b not in self._cache]

        for b in missing:
            ts = self._get_single_block_ts(b)
            if ts is None:
                raise ValueError(f"Cannot resolve timestamp for block {b}")
            self._cache[b] = ts

        result = {b: self._cache[b] for b in wanted}
        if len(self._cache) > self.cache_size:
            self._cache.clear()
        return result
