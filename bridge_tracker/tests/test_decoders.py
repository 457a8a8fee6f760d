from datetime import datetime, timezone
from hexbytes import HexBytes
from unittest.mock import MagicMock
from web3.exceptions import BadFunctionCallOutput
import pytest

from bridge_tracker.sources.bridge_pipeline.decoders import factory
from bridge_tracker.sources.bridge_pipeline.decoders.erc20 import Erc20TransferFamily
from bridge_tracker.sources.bridge_pipeline.decoders.nft import hero_bridge, equipment_bridge
from bridge_tracker.sources.bridge_pipeline.decoders.registry import (
    EventDecoder,
    MissingContextError,
    wallet_topic,
)
from bridge_tracker.sources.bridge_pipeline.decoders.synapse import SynapseBridgeFamily
from bridge_tracker.sources.bridge_pipeline.evm.contracts import (
    EQUIPMENT_ARRIVED_ABI,
    HERO_LZ_RECEIVED_ABI,
    HERO_SENT_ABI,
    SYNAPSE_INBOUND_ABIS,
    SYNAPSE_OUTBOUND_ABIS,
    TOKEN_DEPOSIT_ABI,
    TOKEN_MINT_ABI,
    TRANSFER_ABI,
    topic_hex,
)
from bridge_tracker.sources.bridge_pipeline.evm.token_meta import TokenMetadataError, TokenRegistry
from bridge_tracker.tests.helpers import BASE_TS, BRIDGE, JEWEL, OTHER_WALLET, USDC, WALLET, make_log, tx_hash

HERO_BRIDGE = "0x5555555555555555555555555555555555555555"
EQUIPMENT_BRIDGE = "0x6666666666666666666666666666666666666666"
GOLD = "0x" + "a1" * 20


def synapse_decoder():
    return EventDecoder([SynapseBridgeFamily(BRIDGE)], tokens=TokenRegistry())


def test_token_deposit_is_outbound():
    decoder = synapse_decoder()
    raw = make_log(TOKEN_DEPOSIT_ABI, {
        "to": WALLET, "chainId": 8217, "token": JEWEL, "amount": 1_500_000_000_000_000_000,
    }, BRIDGE, 1200, tx_hash(1), 4)
    ctx = decoder.context(block_timestamps={1200: BASE_TS})

    event = decoder.decode(raw, ctx)

    assert event.direction == "out"
    assert event.bridge_type == "token"
    assert event.wallet == WALLET
    assert event.token_symbol == "JEWEL"
    assert event.token_address == JEWEL
    assert event.amount == "1.5"
    assert (event.src_chain_id, event.dst_chain_id) == (53935, 8217)
    assert event.tx_hash == tx_hash(1)
    assert event.log_index == 4
    assert event.block_number == 1200
    assert event.block_timestamp == datetime.fromtimestamp(BASE_TS, tz=timezone.utc)


def test_token_mint_is_inbound_with_unknown_source():
    decoder = synapse_decoder()
    raw = make_log(TOKEN_MINT_ABI, {
        "to": WALLET, "token": USDC, "amount": 2_500_000, "fee": 0, "kappa": b"\x01" * 32,
    }, BRIDGE, 1300, tx_hash(2))

    event = decoder.decode(raw, decoder.context(block_timestamps={1300: BASE_TS}))

    assert event.direction == "in"
    assert event.token_symbol == "USDC"
    assert event.amount == "2.5"
    assert (event.src_chain_id, event.dst_chain_id) == (0, 53935)


def test_unrelated_log_is_ignored():
    decoder = synapse_decoder()
    raw = make_log(TRANSFER_ABI, {"from": WALLET, "to": BRIDGE, "value": 1}, JEWEL, 10, tx_hash(3))
    assert decoder.decode(raw, decoder.context(block_timestamps={10: BASE_TS})) is None


def test_missing_block_time_defers_the_log():
    decoder = synapse_decoder()
    raw = make_log(TOKEN_DEPOSIT_ABI, {
        "to": WALLET, "chainId": 8217, "token": JEWEL, "amount": 1,
    }, BRIDGE, 1200, tx_hash(1))
    with pytest.raises(MissingContextError):
        decoder.decode(raw, decoder.context())


def test_malformed_payload_raises_value_error():
    decoder = synapse_decoder()
    raw = make_log(TOKEN_DEPOSIT_ABI, {
        "to": WALLET, "chainId": 8217, "token": JEWEL, "amount": 1,
    }, BRIDGE, 1200, tx_hash(1))
    raw["data"] = HexBytes(b"")
    with pytest.raises(ValueError):
        decoder.decode(raw, decoder.context(block_timestamps={1200: BASE_TS}))


def test_sources_group_topics_per_contract():
    decoder = synapse_decoder()
    (query,) = decoder.sources()
    assert query.address == BRIDGE
    assert len(query.topics) == 1
    assert set(query.topics[0]) == {topic_hex(a) for a in SYNAPSE_OUTBOUND_ABIS + SYNAPSE_INBOUND_ABIS}


def test_wallet_sources_filter_on_indexed_recipient():
    decoder = synapse_decoder()
    (query,) = decoder.wallet_sources(WALLET)
    assert query.topics[1] == wallet_topic(WALLET)
    assert len(query.topics[0]) == 8


def test_hero_sent_uses_tx_sender():
    decoder = EventDecoder([hero_bridge(HERO_BRIDGE)], tokens=TokenRegistry())
    raw = make_log(HERO_SENT_ABI, {"heroId": 42, "arrivalChainId": 8217}, HERO_BRIDGE, 500, tx_hash(9))

    assert decoder.needs_tx_sender(raw)
    with pytest.raises(MissingContextError):
        decoder.decode(raw, decoder.context(block_timestamps={500: BASE_TS}))

    event = decoder.decode(raw, decoder.context(
        block_timestamps={500: BASE_TS}, tx_senders={tx_hash(9): WALLET},
    ))
    assert event.bridge_type == "hero"
    assert event.direction == "out"
    assert event.wallet == WALLET
    assert event.asset_id == 42
    assert event.amount == "1"
    assert event.token_symbol == "HERO"
    assert (event.src_chain_id, event.dst_chain_id) == (53935, 8217)


def test_hero_lz_received_maps_endpoint_to_chain():
    decoder = EventDecoder([hero_bridge(HERO_BRIDGE)], tokens=TokenRegistry())
    raw = make_log(HERO_LZ_RECEIVED_ABI, {
        "srcEid": 30150, "sender": OTHER_WALLET, "receiver": WALLET, "heroId": 7,
    }, HERO_BRIDGE, 600, tx_hash(10))

    assert not decoder.needs_tx_sender(raw)
    event = decoder.decode(raw, decoder.context(block_timestamps={600: BASE_TS}))
    assert event.direction == "in"
    assert event.wallet == WALLET
    assert (event.src_chain_id, event.dst_chain_id) == (8217, 53935)


def test_hero_lz_unmapped_endpoint_keeps_raw_eid():
    decoder = EventDecoder([hero_bridge(HERO_BRIDGE)], tokens=TokenRegistry())
    raw = make_log(HERO_LZ_RECEIVED_ABI, {
        "srcEid": 30999, "sender": OTHER_WALLET, "receiver": WALLET, "heroId": 8,
    }, HERO_BRIDGE, 601, tx_hash(11))

    event = decoder.decode(raw, decoder.context(block_timestamps={601: BASE_TS}))
    assert (event.src_chain_id, event.dst_chain_id) == (30999, 53935)


def test_equipment_symbol_is_type_name():
    decoder = EventDecoder([equipment_bridge(EQUIPMENT_BRIDGE)], tokens=TokenRegistry())
    raw = make_log(EQUIPMENT_ARRIVED_ABI, {
        "equipmentId": 5, "equipmentType": 3, "arrivalChainId": 8217,
    }, EQUIPMENT_BRIDGE, 700, tx_hash(11))

    event = decoder.decode(raw, decoder.context(
        block_timestamps={700: BASE_TS}, tx_senders={tx_hash(11): WALLET},
    ))
    assert event.bridge_type == "equipment"
    assert event.token_symbol == "Armor"
    assert event.direction == "in"
    assert event.src_chain_id == 8217


def test_erc20_classification():
    family = Erc20TransferFamily(token_addresses=[JEWEL], bridge_addresses=[BRIDGE])
    assert family.classify(BRIDGE, WALLET) == ("in", WALLET)
    assert family.classify(WALLET, BRIDGE) == ("out", WALLET)
    assert family.classify(WALLET, OTHER_WALLET) is None
    assert family.classify(BRIDGE, BRIDGE) is None


def test_erc20_transfer_from_bridge_is_inbound():
    decoder = EventDecoder(
        [Erc20TransferFamily(token_addresses=[JEWEL], bridge_addresses=[BRIDGE])], tokens=TokenRegistry(),
    )
    raw = make_log(TRANSFER_ABI, {"from": BRIDGE, "to": WALLET, "value": 3 * 10**18}, JEWEL, 20, tx_hash(12))

    event = decoder.decode(raw, decoder.context(block_timestamps={20: BASE_TS}))
    assert event.direction == "in"
    assert event.wallet == WALLET
    assert event.amount == "3"
    assert (event.src_chain_id, event.dst_chain_id) == (0, 53935)


def test_build_decoder_rejects_double_counting():
    with pytest.raises(ValueError):
        factory.build_decoder(("synapse", "erc20"), tokens=TokenRegistry())


def test_build_decoder_skips_unconfigured_nft_contracts(monkeypatch):
    monkeypatch.setattr(factory, "HERO_BRIDGE_ADDRESS", HERO_BRIDGE)
    monkeypatch.setattr(factory, "EQUIPMENT_BRIDGE_ADDRESS", None)
    monkeypatch.setattr(factory, "PET_BRIDGE_ADDRESS", "")

    decoder = factory.build_decoder(tokens=TokenRegistry())

    assert [f.name for f in decoder.families] == ["synapse", "nft:hero"]


def flaky_token_chain():
    """First contract() call hits a dead RPC, the next one reads GOLD/6."""
    token = MagicMock()
    token.functions.decimals.return_value.call.return_value = 6
    token.functions.symbol.return_value.call.return_value = "gold"
    w3 = MagicMock()
    w3.eth.contract.side_effect = [ConnectionError("rpc down"), token]
    return w3


def test_token_metadata_failure_is_not_cached():
    w3 = flaky_token_chain()
    tokens = TokenRegistry(w3)

    with pytest.raises(TokenMetadataError):
        tokens.lookup(GOLD)
    assert tokens.lookup(GOLD) == ("GOLD", 6)
    assert tokens.lookup(GOLD.upper().replace("0X", "0x")) == ("GOLD", 6)
    assert w3.eth.contract.call_count == 2


def test_non_erc20_token_is_cached_as_unknown():
    token = MagicMock()
    token.functions.decimals.return_value.call.side_effect = BadFunctionCallOutput("no decimals()")
    w3 = MagicMock()
    w3.eth.contract.return_value = token
    tokens = TokenRegistry(w3)

    assert tokens.lookup(GOLD) == ("UNKNOWN", 18)
    assert tokens.lookup(GOLD) == ("UNKNOWN", 18)
    assert w3.eth.contract.call_count == 1


def test_deposit_of_unreadable_token_is_deferred():
    decoder = EventDecoder([SynapseBridgeFamily(BRIDGE)], tokens=TokenRegistry(flaky_token_chain()))
    raw = make_log(TOKEN_DEPOSIT_ABI, {
        "to": WALLET, "chainId": 8217, "token": GOLD, "amount": 2_500_000,
    }, BRIDGE, 1200, tx_hash(9))
    ctx = decoder.context(block_timestamps={1200: BASE_TS})

    with pytest.raises(MissingContextError):
        decoder.decode(raw, ctx)

    event = decoder.decode(raw, ctx)
    assert (event.token_symbol, event.amount) == ("GOLD", "2.5")
