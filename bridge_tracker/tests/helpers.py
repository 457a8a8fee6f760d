from datetime import datetime, timezone
from eth_abi import encode
from eth_utils import event_abi_to_log_topic
from hexbytes import HexBytes
from sqlalchemy.exc import OperationalError
from sqlalchemy.sql.dml import Insert
from web3 import Web3
import httpx

from bridge_tracker.utils.types import BlockRange, LogBatch, BridgeEvent

BRIDGE = "0xe05c976d3f045d0e6e7a6f61083d98a15603cf6a"
JEWEL = "0xccb93dabd71c8dad03fc4ce5559dc3d89f67a260"
USDC = "0x3ad9dfe640e1a9cc1d9b0948620820d975c3803a"
WALLET = "0x1111111111111111111111111111111111111111"
OTHER_WALLET = "0x2222222222222222222222222222222222222222"

BASE_TS = 1_700_000_000


def tx_hash(n: int) -> str:
    return "0x" + f"{n:064x}"


def refuse_connection(request: httpx.Request) -> httpx.Response:
    """MockTransport handler for an unreachable price API."""
    raise httpx.ConnectError("down", request=request)


def make_log(abi: dict, args: dict, address: str, block_number: int, tx: str, log_index: int = 0) -> dict:
    """Encode a log the way a node returns it from eth_getLogs."""
    indexed = [i for i in abi["inputs"] if i["indexed"]]
    plain = [i for i in abi["inputs"] if not i["indexed"]]
    topics = [HexBytes(event_abi_to_log_topic(abi))]
    for inp in indexed:
        topics.append(HexBytes(encode([inp["type"]], [args[inp["name"]]])))
    data = encode([i["type"] for i in plain], [args[i["name"]] for i in plain])
    return {
        "address": Web3.to_checksum_address(address),
        "topics": topics,
        "data": HexBytes(data),
        "blockNumber": block_number,
        "transactionHash": HexBytes(tx),
        "transactionIndex": 0,
        "blockHash": HexBytes(b"\x00" * 32),
        "logIndex": log_index,
    }


def make_event(n: int, **overrides) -> BridgeEvent:
    fields = dict(
        wallet=WALLET,
        bridge_type="token",
        direction="out",
        token_address=JEWEL,
        token_symbol="JEWEL",
        amount="1.5",
        src_chain_id=53935,
        dst_chain_id=8217,
        tx_hash=tx_hash(n),
        log_index=0,
        block_number=1000 + n,
        block_timestamp=datetime.fromtimestamp(BASE_TS + n, tz=timezone.utc),
    )
    fields.update(overrides)
    return BridgeEvent(**fields)


class FakeFetcher:
    """In-memory stand-in for ChainLogFetcher."""

    def __init__(self, logs=None, latest_block=0, senders=None, failing=None, block_time=None, on_query=None):
        self.on_query = on_query
        self.logs = list(logs or [])
        self.latest_block = latest_block
        self.senders = dict(senders or {})
        self.failing = set(failing or ())          # (from, to) ranges that fail once
        self.block_time = block_time or (lambda b: BASE_TS + b)
        self.queries = []

    def get_latest_block(self) -> int:
        return self.latest_block

    def query(self, address, topics, from_block, to_block) -> LogBatch:
        self.queries.append((address, topics, from_block, to_block))
        if self.on_query is not None:
            self.on_query(from_block, to_block)
        if (from_block, to_block) in self.failing:
            self.failing.discard((from_block, to_block))
            return LogBatch([], [BlockRange(from_block, to_block)])

        wanted0 = topics[0] if topics else None
        wanted1 = topics[1] if len(topics) > 1 else None
        out = []
        for raw in self.logs:
            if str(raw["address"]).lower() != str(address).lower():
                continue
            if not from_block <= raw["blockNumber"] <= to_block:
                continue
            t0 = Web3.to_hex(raw["topics"][0])
            if wanted0 is not None and t0 not in (wanted0 if isinstance(wanted0, list) else [wanted0]):
                continue
            if wanted1 is not None and (len(raw["topics"]) < 2 or Web3.to_hex(raw["topics"][1]) != wanted1):
                continue
            out.append(raw)
        return LogBatch(out, [])

    def get_block_timestamps(self, block_numbers):
        return {b: self.block_time(b) for b in block_numbers}

    def get_transaction_senders(self, tx_hashes):
        return {h: self.senders[h] for h in tx_hashes if h in self.senders}


def deposit_log(n: int, block: int, wallet: str = WALLET, amount: int = 10**18, log_index: int = 0) -> dict:
    from bridge_tracker.sources.bridge_pipeline.evm.contracts import TOKEN_DEPOSIT_ABI
    return make_log(TOKEN_DEPOSIT_ABI, {
        "to": wallet, "chainId": 8217, "token": JEWEL, "amount": amount,
    }, BRIDGE, block, tx_hash(n), log_index)


def three_deposits() -> list[dict]:
    """Three TokenDeposit logs inside blocks [1000, 2999]."""
    return [
        deposit_log(1, 1000),
        deposit_log(2, 1999, wallet=OTHER_WALLET),
        deposit_log(3, 2999),
    ]


def synapse_indexer(fetcher, session_factory):
    from bridge_tracker.sources.bridge_pipeline.decoders.registry import EventDecoder
    from bridge_tracker.sources.bridge_pipeline.decoders.synapse import SynapseBridgeFamily
    from bridge_tracker.sources.bridge_pipeline.evm.token_meta import TokenRegistry
    from bridge_tracker.sources.bridge_pipeline.ingestion.indexer import BridgeIndexer
    decoder = EventDecoder([SynapseBridgeFamily(BRIDGE)], tokens=TokenRegistry())
    return BridgeIndexer(fetcher, decoder, session_factory)


def failing_first_insert(session_factory):
    """Session factory whose first INSERT dies with a database error."""
    state = {"failed": False}

    def factory():
        db = session_factory()
        execute = db.execute

        def flaky_execute(stmt, *args, **kwargs):
            if isinstance(stmt, Insert) and not state["failed"]:
                state["failed"] = True
                raise OperationalError("INSERT INTO bridge_events", {}, Exception("database is locked"))
            return execute(stmt, *args, **kwargs)

        db.execute = flaky_execute
        return db

    return factory
