from bridge_tracker.sources.bridge_pipeline.decoders.registry import DecodeContext, LogQuery, log_identity
from bridge_tracker.sources.bridge_pipeline.evm.contracts import (
    HERO_SENT_ABI,
    HERO_ARRIVED_ABI,
    HERO_LZ_SENT_ABI,
    HERO_LZ_RECEIVED_ABI,
    EQUIPMENT_SENT_ABI,
    EQUIPMENT_ARRIVED_ABI,
    PET_SENT_ABI,
    PET_ARRIVED_ABI,
)
from bridge_tracker.utils.constants import EQUIPMENT_TYPES, LZ_ENDPOINT_CHAINS
from bridge_tracker.utils.types import BridgeEvent

# event name -> (direction, asset id arg, how the remote chain is encoded)
_EVENT_SHAPES = {
    "HeroSent":             ("out", "heroId",      "arrival"),
    "HeroArrived":          ("in",  "heroId",      "arrival"),
    "HeroLZBridgeSent":     ("out", "heroId",      "lz"),
    "HeroLZBridgeReceived": ("in",  "heroId",      "lz"),
    "EquipmentSent":        ("out", "equipmentId", "arrival"),
    "EquipmentArrived":     ("in",  "equipmentId", "arrival"),
    "PetSent":              ("out", "petId",       "arrival"),
    "PetArrived":           ("in",  "petId",       "arrival"),
}


class NftBridgeFamily:
    """Hero / equipment / pet bridge "sent" and "arrived" events for one contract."""

    def __init__(self, bridge_type: str, address: str, abis: list[dict], symbol: str):
        self.name = f"nft:{bridge_type}"
        self.bridge_type = bridge_type
        self.address = address.lower()
        self.abis = abis
        self.symbol = symbol

    def subscriptions(self):
        return [(self.address, abi) for abi in self.abis]

    def wallet_queries(self, wallet_topic: str) -> list[LogQuery]:
        # no NFT bridge event indexes the wallet
        return []

    def needs_tx_sender(self, event_name: str) -> bool:
        return _EVENT_SHAPES[event_name][2] != "lz"

    def _symbol_for(self, args) -> str:
        if self.bridge_type == "equipment":
            return EQUIPMENT_TYPES.get(int(args["equipmentType"]), self.symbol)
        return self.symbol

    def decode(self, evt, raw_log, ctx: DecodeContext) -> BridgeEvent | None:
        name = evt["event"]
        shape = _EVENT_SHAPES.get(name)
        if shape is None:
            return None
        direction, id_arg, chain_encoding = shape
        args = evt["args"]
        ident = log_identity(raw_log)

        if chain_encoding == "lz":
            eid = int(args["srcEid"])
            remote_chain = LZ_ENDPOINT_CHAINS.get(eid, eid)
            wallet = args["sender"] if direction == "out" else args["receiver"]
        else:
            remote_chain = int(args["arrivalChainId"])
            wallet = ctx.sender_of(ident["tx_hash"])

        if direction == "out":
            src_chain, dst_chain = ctx.chain_id, remote_chain
        else:
            src_chain, dst_chain = remote_chain, ctx.chain_id

        return BridgeEvent(
            wallet=wallet.lower(),
            bridge_type=self.bridge_type,
            direction=direction,
            token_symbol=self._symbol_for(args),
            amount="1",
            asset_id=int(args[id_arg]),
            src_chain_id=src_chain,
            dst_chain_id=dst_chain,
            block_timestamp=ctx.block_time(ident["block_number"]),
            **ident,
        )


def hero_bridge(address: str) -> NftBridgeFamily:
    return NftBridgeFamily(
        "hero", address,
        [HERO_SENT_ABI, HERO_ARRIVED_ABI, HERO_LZ_SENT_ABI, HERO_LZ_RECEIVED_ABI],
        "HERO",
    )


def equipment_bridge(address: str) -> NftBridgeFamily:
    return NftBridgeFamily("equipment", address, [EQUIPMENT_SENT_ABI, EQUIPMENT_ARRIVED_ABI], "EQUIPMENT")


def pet_bridge(address: str) -> NftBridgeFamily:
    return NftBridgeFamily("pet", address, [PET_SENT_ABI, PET_ARRIVED_ABI], "PET")
