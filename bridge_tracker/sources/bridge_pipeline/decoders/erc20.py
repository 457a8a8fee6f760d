from bridge_tracker.sources.bridge_pipeline.decoders.registry import DecodeContext, LogQuery, log_identity
from bridge_tracker.sources.bridge_pipeline.evm.contracts import TRANSFER_ABI, TRANSFER_TOPIC
from bridge_tracker.utils.amounts import normalize_amount
from bridge_tracker.utils.constants import KNOWN_BRIDGE_ADDRESSES, TOKEN_REGISTRY
from bridge_tracker.utils.types import BridgeEvent


class Erc20TransferFamily:
    """Token Transfers into or out of a known bridge contract.

    Only one side may be a bridge: bridge->wallet is inbound, wallet->bridge
    is outbound, anything else is not a bridge movement.
    """

    name = "erc20"

    def __init__(self, token_addresses=None, bridge_addresses=None):
        self.token_addresses = sorted(a.lower() for a in (token_addresses or TOKEN_REGISTRY))
        self.bridge_addresses = {a.lower() for a in (bridge_addresses or KNOWN_BRIDGE_ADDRESSES)}

    def subscriptions(self):
        return [(token, TRANSFER_ABI) for token in self.token_addresses]

    def wallet_queries(self, wallet_topic: str) -> list[LogQuery]:
        queries = []
        for token in self.token_addresses:
            queries.append(LogQuery(token, [TRANSFER_TOPIC, wallet_topic]))
            queries.append(LogQuery(token, [TRANSFER_TOPIC, None, wallet_topic]))
        return queries

    def needs_tx_sender(self, event_name: str) -> bool:
        return False

    def classify(self, sender: str, receiver: str) -> tuple[str, str] | None:
        """Return (direction, wallet) or None when the transfer is not bridge-relevant."""
        from_bridge = sender in self.bridge_addresses
        to_bridge = receiver in self.bridge_addresses
        if from_bridge and not to_bridge:
            return "in", receiver
        if to_bridge and not from_bridge:
            return "out", sender
        return None

    def decode(self, evt, raw_log, ctx: DecodeContext) -> BridgeEvent | None:
        args = evt["args"]
        hit = self.classify(args["from"].lower(), args["to"].lower())
        if hit is None:
            return None
        direction, wallet = hit

        ident = log_identity(raw_log)
        token = str(raw_log["address"]).lower()
        symbol, decimals = ctx.token(token)

        if direction == "in":
            src_chain, dst_chain = 0, ctx.chain_id
        else:
            src_chain, dst_chain = ctx.chain_id, 0

        return BridgeEvent(
            wallet=wallet,
            bridge_type="token",
            direction=direction,
            token_address=token,
            token_symbol=symbol,
            amount=normalize_amount(args["value"], decimals),
            src_chain_id=src_chain,
            dst_chain_id=dst_chain,
            block_timestamp=ctx.block_time(ident["block_number"]),
            **ident,
        )
