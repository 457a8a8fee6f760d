from decimal import Decimal
from unittest.mock import MagicMock
import pytest
from sqlalchemy import select

from bridge_tracker.sources.bridge_pipeline.config.settings import UNISWAP_V2_FACTORY_ABI
from bridge_tracker.sources.bridge_pipeline.evm.token_meta import TokenRegistry
from bridge_tracker.sources.bridge_pipeline.pricing.coingecko import RateLimitedError
from bridge_tracker.sources.bridge_pipeline.pricing.dex import DexPoolInspector, LpPair
from bridge_tracker.sources.bridge_pipeline.reconciliation.engine import ReconciliationEngine
from bridge_tracker.sources.bridge_pipeline.reconciliation.unpriced_analyzer import (
    classify_token,
    discover_unpriced_tokens,
)
from bridge_tracker.storage.models.bridge_event import BridgeEvent
from bridge_tracker.storage.models.unpriced_token import UnpricedToken
from bridge_tracker.storage.persistence import save_bridge_events
from bridge_tracker.utils.constants import TOKEN_REGISTRY
from bridge_tracker.tests.helpers import JEWEL, USDC, make_event, tx_hash

OLD_TOKEN = "0x" + "de" * 20
GOLD_TOKEN = "0x" + "a1" * 20
GOLD_PAIR = "0x" + "b2" * 20


class FakeResolver:
    coin_ids = {"JEWEL": "defi-kingdoms"}

    async def get_price_at_timestamp(self, symbol, timestamp):
        return Decimal("0.02") if symbol == "JEWEL" else None

    async def fetch_current_prices(self, symbols=None):
        return {"JEWEL": Decimal("0.02")}


class UnreachableResolver(FakeResolver):
    async def get_price_at_timestamp(self, symbol, timestamp):
        raise RateLimitedError("still rate limited")


class FakeDex(DexPoolInspector):
    def __init__(self, pairs):
        super().__init__(MagicMock(), tokens=TokenRegistry(known={**TOKEN_REGISTRY, GOLD_TOKEN: ("GOLD", 18)}))
        self.pairs = pairs

    def discover_lp_pairs(self, max_pairs=None):
        return dict(self.pairs)


class BrokenFactoryDex(FakeDex):
    def discover_lp_pairs(self, max_pairs=None):
        raise ConnectionError("rpc down")


def seed(session_factory):
    save_bridge_events(session_factory, [
        make_event(1, token_address=OLD_TOKEN, token_symbol="OLD", amount="5"),
        make_event(2, token_address=OLD_TOKEN.upper().replace("0X", "0x"), token_symbol="OLD", amount="7"),
        make_event(3, token_address=GOLD_TOKEN, token_symbol="GOLD", amount="10"),
        make_event(4, token_address=JEWEL, token_symbol="JEWEL", amount="1"),
        make_event(5, token_address=USDC, token_symbol="USDC", amount="3", usd_value="3.00",
                   pricing_source="coingecko", direction="in"),
    ])


def gold_pool():
    return {GOLD_TOKEN: LpPair(GOLD_PAIR, GOLD_TOKEN, USDC, 1000 * 10**18, 500 * 10**6)}


def test_classify_token():
    assert classify_token(True, True) == "priced"
    assert classify_token(False, True) == "dex_derivable"
    assert classify_token(False, False) == "deprecated"
    assert classify_token(None, True) == "unknown"
    assert classify_token(False, None) == "unknown"


def test_discover_groups_by_lowercase_address(session_factory):
    seed(session_factory)
    candidates = {c.token_address: c for c in discover_unpriced_tokens(session_factory)}

    assert set(candidates) == {OLD_TOKEN, GOLD_TOKEN, JEWEL}
    assert candidates[OLD_TOKEN].event_count == 2
    assert candidates[OLD_TOKEN].first_seen <= candidates[OLD_TOKEN].last_seen


@pytest.mark.asyncio
async def test_full_reconciliation(session_factory):
    seed(session_factory)
    engine = ReconciliationEngine(session_factory, FakeResolver(), FakeDex(gold_pool()))

    result = await engine.run()

    assert result["tokens_discovered"] == 3
    assert result["classified"] == {"deprecated": 1, "dex_derivable": 1, "priced": 1}
    assert result["deprecated_updated"] == 2
    assert result["dex_updated"] == 0
    assert result["manual_review"] == [{
        "token_address": GOLD_TOKEN,
        "token_symbol": "GOLD",
        "current_dex_price_usd": "0.500000",
        "event_count": 1,
    }]
    assert result["pricing_complete"] is False
    assert result["unpriced_remaining"] == 2
    assert {b["token_symbol"] for b in result["breakdown"]} == {"GOLD", "JEWEL"}

    with session_factory() as db:
        tokens = {t.token_address: t for t in db.execute(select(UnpricedToken)).scalars()}
        old_events = db.execute(
            select(BridgeEvent).where(BridgeEvent.token_symbol == "OLD")
        ).scalars().all()
        gold_event = db.execute(
            select(BridgeEvent).where(BridgeEvent.token_symbol == "GOLD")
        ).scalar_one()

    assert tokens[OLD_TOKEN].pricing_status == "deprecated"
    assert tokens[GOLD_TOKEN].pricing_status == "needs_manual_review"
    assert tokens[GOLD_TOKEN].dex_price_usd == "0.500000"
    assert tokens[GOLD_TOKEN].lp_pair_address == GOLD_PAIR
    assert tokens[JEWEL].pricing_status == "priced"
    assert tokens[JEWEL].has_external_price

    assert {(e.usd_value, e.pricing_source) for e in old_events} == {("0.00", "DEPRECATED_TOKEN")}
    # current DEX prices are never applied to historical events
    assert gold_event.usd_value is None

    summary = result["summary"]
    assert summary["total_in_usd"] == "3.00"
    assert summary["total_out_usd"] == "0.00"
    assert summary["net_flow_usd"] == "3.00"
    assert summary["by_pricing_source"]["DEPRECATED_TOKEN"] == {"events": 2, "usd": "0.00"}


@pytest.mark.asyncio
async def test_reconciliation_is_rerunnable(session_factory):
    seed(session_factory)
    engine = ReconciliationEngine(session_factory, FakeResolver(), FakeDex(gold_pool()))

    await engine.run()
    second = await engine.run()

    assert second["tokens_discovered"] == 2
    assert second["deprecated_updated"] == 0
    with session_factory() as db:
        count = db.execute(select(UnpricedToken)).scalars().all()
    assert len(count) == 3


@pytest.mark.asyncio
async def test_without_dex_every_unknown_token_is_deprecated(session_factory):
    seed(session_factory)
    engine = ReconciliationEngine(session_factory, FakeResolver(), dex=None)

    result = await engine.run()

    assert result["classified"] == {"deprecated": 2, "priced": 1}
    assert result["manual_review"] == []
    assert result["unpriced_remaining"] == 1


@pytest.mark.asyncio
async def test_priced_events_of_deprecated_token_are_untouched(session_factory):
    seed(session_factory)
    save_bridge_events(session_factory, [
        make_event(6, token_address=OLD_TOKEN, token_symbol="OLD", amount="1",
                   usd_value="4.20", token_price_usd="4.200000", pricing_source="coingecko"),
    ])
    engine = ReconciliationEngine(session_factory, FakeResolver(), FakeDex(gold_pool()))

    result = await engine.run()

    assert result["deprecated_updated"] == 2
    with session_factory() as db:
        priced = db.execute(select(BridgeEvent).where(BridgeEvent.tx_hash == tx_hash(6))).scalar_one()
    assert (priced.usd_value, priced.token_price_usd, priced.pricing_source) == ("4.20", "4.200000", "coingecko")


@pytest.mark.asyncio
async def test_price_feed_outage_leaves_token_unknown(session_factory):
    save_bridge_events(session_factory, [make_event(1, amount="1")])
    engine = ReconciliationEngine(session_factory, UnreachableResolver(), FakeDex({}))

    result = await engine.run()

    assert result["classified"] == {"unknown": 1}
    assert result["deprecated_updated"] == 0
    with session_factory() as db:
        token = db.execute(select(UnpricedToken)).scalar_one()
        event = db.execute(select(BridgeEvent)).scalar_one()
    assert token.pricing_status == "unknown"
    assert event.usd_value is None
    assert event.pricing_source is None


@pytest.mark.asyncio
async def test_failed_pool_scan_leaves_illiquid_tokens_unknown(session_factory):
    seed(session_factory)
    engine = ReconciliationEngine(session_factory, FakeResolver(), BrokenFactoryDex({}))

    result = await engine.run()

    assert result["classified"] == {"priced": 1, "unknown": 2}
    assert result["deprecated_updated"] == 0
    assert result["manual_review"] == []
    assert result["unpriced_remaining"] == 4


def test_verify_reports_complete_when_nothing_left(session_factory):
    save_bridge_events(session_factory, [make_event(1, usd_value="1.00")])
    engine = ReconciliationEngine(session_factory, FakeResolver())

    assert engine.verify_pricing_complete() == {"complete": True, "unpriced_remaining": 0, "breakdown": []}


def test_derive_price_through_intermediate_pool():
    tokens = TokenRegistry(known={**TOKEN_REGISTRY, GOLD_TOKEN: ("GOLD", 18)})
    dex = DexPoolInspector(MagicMock(), tokens=tokens)
    pairs = {
        GOLD_TOKEN: LpPair(GOLD_PAIR, GOLD_TOKEN, JEWEL, 100 * 10**18, 50 * 10**18),
        JEWEL: LpPair("0x" + "c3" * 20, JEWEL, USDC, 1000 * 10**18, 20 * 10**6),
    }

    # GOLD -> JEWEL (0.5 JEWEL) -> USDC (0.02 USD per JEWEL)
    price = dex.derive_price(GOLD_TOKEN, pairs, {USDC: Decimal("1")})

    assert price == Decimal("0.01")
    assert dex.derive_price(GOLD_TOKEN, pairs, {USDC: Decimal("1")}, depth=0) is None


def test_discover_lp_pairs_keeps_deepest_pool():
    pair_a = "0x" + "0a" * 20
    pair_b = "0x" + "0b" * 20
    reserves = {
        pair_a: (GOLD_TOKEN, USDC, 100, 1_000),
        pair_b: (JEWEL, GOLD_TOKEN, 5_000, 300),
    }
    addresses = [pair_a, "0xbroken", pair_b]

    factory = MagicMock()
    factory.functions.allPairsLength.return_value.call.return_value = 3
    factory.functions.allPairs.side_effect = lambda i: MagicMock(call=MagicMock(return_value=addresses[i]))

    def contract(address, abi):
        if abi is UNISWAP_V2_FACTORY_ABI:
            return factory
        if address not in reserves:
            raise ValueError("not a pair")
        t0, t1, r0, r1 = reserves[address]
        pair = MagicMock()
        pair.functions.token0.return_value.call.return_value = t0
        pair.functions.token1.return_value.call.return_value = t1
        pair.functions.getReserves.return_value.call.return_value = (r0, r1, 0)
        return pair

    w3 = MagicMock()
    w3.eth.contract.side_effect = contract
    dex = DexPoolInspector(w3, tokens=TokenRegistry())

    best = dex.discover_lp_pairs()

    assert best[GOLD_TOKEN].pair_address == pair_b
    assert best[GOLD_TOKEN].token_reserve == 300
    assert best[GOLD_TOKEN].paired_token == JEWEL
    assert best[USDC].pair_address == pair_a
    assert best[JEWEL].token_reserve == 5_000
