from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import NamedTuple, Protocol
from web3 import Web3
from web3._utils.events import get_event_data
from hexbytes import HexBytes
import logging

from bridge_tracker.sources.bridge_pipeline.evm.contracts import topic_hex
from bridge_tracker.sources.bridge_pipeline.evm.token_meta import TokenMetadataError, TokenRegistry
from bridge_tracker.utils.constants import DFK_CHAIN_ID
from bridge_tracker.utils.types import BridgeEvent

log = logging.getLogger(__name__)

_CODEC = Web3().codec


class MissingContextError(LookupError):
    """A log could not be decoded yet because its block time, tx sender or token metadata is unknown."""


class LogQuery(NamedTuple):
    address: str
    topics: list


@dataclass
class DecodeContext:
    tokens: TokenRegistry
    chain_id: int = DFK_CHAIN_ID
    block_timestamps: dict[int, int] = field(default_factory=dict)
    tx_senders: dict[str, str] = field(default_factory=dict)

    def block_time(self, block_number: int) -> datetime:
        ts = self.block_timestamps.get(block_number)
        if ts is None:
            raise MissingContextError(f"No timestamp for block {block_number}")
        return datetime.fromtimestamp(ts, tz=timezone.utc)

    def sender_of(self, tx_hash: str) -> str:
        sender = self.tx_senders.get(tx_hash)
        if sender is None:
            raise MissingContextError(f"No sender for tx {tx_hash}")
        return sender

    def token(self, token_addr: str) -> tuple[str, int]:
        try:
            return self.tokens.lookup(token_addr)
        except TokenMetadataError as e:
            raise MissingContextError(str(e)) from e


class EventFamily(Protocol):
    name: str

    def subscriptions(self) -> list[tuple[str, dict]]: ...

    def wallet_queries(self, wallet_topic: str) -> list[LogQuery]: ...

    def needs_tx_sender(self, event_name: str) -> bool: ...

    def decode(self, evt, raw_log, ctx: DecodeContext) -> BridgeEvent | None: ...


def normalize_hex(value) -> str:
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(value).lower()
    value = str(value).lower()
    return value if value.startswith("0x") else "0x" + value


def wallet_topic(wallet: str) -> str:
    """32-byte left-padded address, as it appears in an indexed topic."""
    return "0x" + "0" * 24 + wallet.lower().removeprefix("0x")


def log_identity(raw_log) -> dict:
    return {
        "tx_hash": normalize_hex(raw_log["transactionHash"]),
        "log_index": int(raw_log["logIndex"]),
        "block_number": int(raw_log["blockNumber"]),
    }


def _as_bytes_log(raw_log) -> dict:
    """get_event_data needs topics/data as bytes; sanitized logs carry hex strings."""
    entry = dict(raw_log)
    entry["topics"] = [HexBytes(t) for t in raw_log["topics"]]
    entry["data"] = HexBytes(raw_log["data"])
    return entry


class EventDecoder:
    """Routes raw logs to their event family by (contract address, topic0)."""

    def __init__(self, families: list[EventFamily], tokens: TokenRegistry | None = None,
                 chain_id: int = DFK_CHAIN_ID):
        self.families = list(families)
        self.tokens = tokens or TokenRegistry()
        self.chain_id = chain_id
        self._routes: dict[tuple[str, str], tuple[EventFamily, dict]] = {}
        for family in self.families:
            for address, abi in family.subscriptions():
                self._routes[(address.lower(), topic_hex(abi))] = (family, abi)

    def sources(self) -> list[LogQuery]:
        """One query per contract, OR-ing every topic0 registered for it."""
        by_address: dict[str, list[str]] = {}
        for address, topic in self._routes:
            by_address.setdefault(address, []).append(topic)
        return [LogQuery(address, [sorted(topics)]) for address, topics in sorted(by_address.items())]

    def wallet_sources(self, wallet: str) -> list[LogQuery]:
        topic = wallet_topic(wallet)
        queries: list[LogQuery] = []
        for family in self.families:
            queries.extend(family.wallet_queries(topic))
        return queries

    def _route(self, raw_log):
        topics = raw_log["topics"]
        if not topics:
            return None
        key = (str(raw_log["address"]).lower(), normalize_hex(topics[0]))
        return self._routes.get(key)

    def needs_tx_sender(self, raw_log) -> bool:
        route = self._route(raw_log)
        if route is None:
            return False
        family, abi = route
        return family.needs_tx_sender(abi["name"])

    def context(self, block_timestamps=None, tx_senders=None) -> DecodeContext:
        return DecodeContext(
            tokens=self.tokens,
            chain_id=self.chain_id,
            block_timestamps=block_timestamps or {},
            tx_senders=tx_senders or {},
        )

    def decode(self, raw_log, ctx: DecodeContext) -> BridgeEvent | None:
        """Decode one log; ``None`` means the log is not bridge-relevant.

        Raises MissingContextError when the context lacks the block time, tx
        sender or token metadata for this log, and ValueError for malformed payloads.
        """
        route = self._route(raw_log)
        if route is None:
            return None
        family, abi = route
        try:
            evt = get_event_data(_CODEC, abi, _as_bytes_log(raw_log))
        except Exception as e:
            raise ValueError(f"Cannot decode {abi['name']} log: {e}") from e
        return family.decode(evt, raw_log, ctx)
