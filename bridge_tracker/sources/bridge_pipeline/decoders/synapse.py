from bridge_tracker.sources.bridge_pipeline.decoders.registry import DecodeContext, LogQuery, log_identity
from bridge_tracker.sources.bridge_pipeline.evm.contracts import (
    SYNAPSE_OUTBOUND_ABIS,
    SYNAPSE_INBOUND_ABIS,
    topic_hex,
)
from bridge_tracker.utils.amounts import normalize_amount
from bridge_tracker.utils.types import BridgeEvent

# inbound Synapse events do not carry the origin chain
UNKNOWN_SOURCE_CHAIN = 0

OUTBOUND_EVENTS = {abi["name"] for abi in SYNAPSE_OUTBOUND_ABIS}
INBOUND_EVENTS = {abi["name"] for abi in SYNAPSE_INBOUND_ABIS}


class SynapseBridgeFamily:
    """Deposit/redeem (outbound) and mint/withdraw (inbound) events of the Synapse bridge."""

    name = "synapse"

    def __init__(self, bridge_address: str):
        self.bridge_address = bridge_address.lower()

    def subscriptions(self):
        return [(self.bridge_address, abi) for abi in SYNAPSE_OUTBOUND_ABIS + SYNAPSE_INBOUND_ABIS]

    def wallet_queries(self, wallet_topic: str) -> list[LogQuery]:
        topics = sorted(topic_hex(abi) for abi in SYNAPSE_OUTBOUND_ABIS + SYNAPSE_INBOUND_ABIS)
        return [LogQuery(self.bridge_address, [topics, wallet_topic])]

    def needs_tx_sender(self, event_name: str) -> bool:
        return False

    def decode(self, evt, raw_log, ctx: DecodeContext) -> BridgeEvent | None:
        name = evt["event"]
        args = evt["args"]
        ident = log_identity(raw_log)

        token = args["token"].lower()
        symbol, decimals = ctx.token(token)

        if name in OUTBOUND_EVENTS:
            direction = "out"
            src_chain, dst_chain = ctx.chain_id, int(args["chainId"])
        elif name in INBOUND_EVENTS:
            direction = "in"
            src_chain, dst_chain = UNKNOWN_SOURCE_CHAIN, ctx.chain_id
        else:
            return None

        return BridgeEvent(
            wallet=args["to"].lower(),
            bridge_type="token",
            direction=direction,
            token_address=token,
            token_symbol=symbol,
            amount=normalize_amount(args["amount"], decimals),
            src_chain_id=src_chain,
            dst_chain_id=dst_chain,
            block_timestamp=ctx.block_time(ident["block_number"]),
            **ident,
        )
