import logging

from bridge_tracker.sources.bridge_pipeline.config.settings import (
    SYNAPSE_BRIDGE_ADDRESS,
    HERO_BRIDGE_ADDRESS,
    EQUIPMENT_BRIDGE_ADDRESS,
    PET_BRIDGE_ADDRESS,
    DFK_CHAIN_ID,
)
from bridge_tracker.sources.bridge_pipeline.decoders.registry import EventDecoder
from bridge_tracker.sources.bridge_pipeline.decoders.synapse import SynapseBridgeFamily
from bridge_tracker.sources.bridge_pipeline.decoders.erc20 import Erc20TransferFamily
from bridge_tracker.sources.bridge_pipeline.decoders.nft import hero_bridge, equipment_bridge, pet_bridge
from bridge_tracker.sources.bridge_pipeline.evm.token_meta import TokenRegistry

log = logging.getLogger(__name__)

DEFAULT_FAMILIES = ("synapse", "nft")


def build_decoder(families=DEFAULT_FAMILIES, tokens: TokenRegistry | None = None,
                  chain_id: int = DFK_CHAIN_ID) -> EventDecoder:
    """
    Assemble the decoder from configured contracts.

    ``erc20`` (raw token Transfers against the bridge allowlist) sees the
    same movements as the Synapse events, so enabling both double counts.
    """
    families = set(families)
    if {"synapse", "erc20"} <= families:
        raise ValueError("synapse and erc20 families index the same transfers; pick one")

    enabled = []
    if "synapse" in families:
        enabled.append(SynapseBridgeFamily(SYNAPSE_BRIDGE_ADDRESS))
    if "erc20" in families:
        enabled.append(Erc20TransferFamily())
    if "nft" in families:
        for address, build in (
            (HERO_BRIDGE_ADDRESS, hero_bridge),
            (EQUIPMENT_BRIDGE_ADDRESS, equipment_bridge),
            (PET_BRIDGE_ADDRESS, pet_bridge),
        ):
            if address:
                enabled.append(build(address))
            else:
                log.debug(f"Skipping {build.__name__}: no contract address configured")

    log.info(f"Decoder families: {[f.name for f in enabled]}")
    return EventDecoder(enabled, tokens=tokens, chain_id=chain_id)
