from typing import List
from web3 import Web3
from web3.types import LogReceipt
import backoff
import logging
import time

from bridge_tracker.sources.bridge_pipeline.config.settings import BLOCKS_PER_QUERY, RPC_MAX_TRIES
from bridge_tracker.sources.bridge_pipeline.evm.blocks import walk_block_ranges, BlockTimestampResolver
from bridge_tracker.sources.bridge_pipeline.evm.tx_senders import resolve_tx_senders
from bridge_tracker.utils.types import BlockRange, LogBatch

log = logging.getLogger(__name__)


class ChainLogFetcher:
    """Chunked eth_getLogs / block / transaction access for one EVM node.

    Any range wider than ``max_block_span`` is split into sequential
    sub-queries. A sub-query that still fails after its retries is logged
    and reported back in ``LogBatch.failed_ranges``; the remaining
    sub-queries carry on.
    """

    def __init__(
        self,
        w3: Web3,
        rpc_url: str | None = None,
        max_block_span: int = BLOCKS_PER_QUERY,
        max_tries: int = RPC_MAX_TRIES,
        request_delay: float = 0.0,
    ):
        self.w3 = w3
        self.rpc_url = rpc_url
        self.max_block_span = max_block_span
        self.request_delay = request_delay
        self.timestamps = BlockTimestampResolver(w3, rpc_url)
        self._get_logs = backoff.on_exception(
            backoff.expo, Exception, max_tries=max_tries, jitter=None
        )(self._raw_get_logs)

    def _raw_get_logs(self, address, topics, from_block: int, to_block: int) -> List[LogReceipt]:
        params = {"fromBlock": from_block, "toBlock": to_block, "topics": topics}
        if address is not None:
            params["address"] = Web3.to_checksum_address(address)
        return self.w3.eth.get_logs(params)

    def get_latest_block(self) -> int:
        return self.w3.eth.block_number

    def query(self, address, topics: list, from_block: int, to_block: int) -> LogBatch:
        logs: list = []
        failed: list[BlockRange] = []
        if to_block < from_block:
            return LogBatch(logs, failed)

        for sub_from, sub_to in walk_block_ranges(from_block, to_block, self.max_block_span):
            try:
                chunk = self._get_logs(address, topics, sub_from, sub_to)
            except Exception as e:
                log.error(f"--[!] getLogs {address} blocks {sub_from}-{sub_to} failed: {e}")
                failed.append(BlockRange(sub_from, sub_to))
                continue
            logs.extend(chunk)
            if self.request_delay:
                time.sleep(self.request_delay)

        return LogBatch(logs, failed)

    def get_block_timestamps(self, block_numbers) -> dict[int, int]:
        return self.timestamps.get_timestamps(block_numbers)

    def get_transaction_senders(self, tx_hashes) -> dict[str, str]:
        return resolve_tx_senders(self.w3, tx_hashes, self.rpc_url)
