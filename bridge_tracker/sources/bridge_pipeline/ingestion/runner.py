"""Wire the pipeline objects against the configured RPC node and database."""
from bridge_tracker.sources.bridge_pipeline.config.settings import (
    DFK_CHAIN_ID,
    DFK_RPC_URL,
    DEX_FACTORY_ADDRESS,
)
from bridge_tracker.sources.bridge_pipeline.decoders.factory import DEFAULT_FAMILIES, build_decoder
from bridge_tracker.sources.bridge_pipeline.evm.client import get_web3_client
from bridge_tracker.sources.bridge_pipeline.evm.events import ChainLogFetcher
from bridge_tracker.sources.bridge_pipeline.evm.token_meta import TokenRegistry
from bridge_tracker.sources.bridge_pipeline.ingestion.indexer import BridgeIndexer
from bridge_tracker.sources.bridge_pipeline.pricing.coingecko import CoinGeckoClient
from bridge_tracker.sources.bridge_pipeline.pricing.dex import DexPoolInspector
from bridge_tracker.sources.bridge_pipeline.pricing.enrichment import PriceEnrichment
from bridge_tracker.sources.bridge_pipeline.pricing.price_resolver import PriceResolver
from bridge_tracker.sources.bridge_pipeline.reconciliation.engine import ReconciliationEngine
from bridge_tracker.storage.db import SessionLocal, WorkerSessionLocal
from bridge_tracker.storage.progress import ProgressTracker


def session_factory(worker: bool = False):
    return WorkerSessionLocal if worker else SessionLocal


def build_web3():
    return get_web3_client(DFK_RPC_URL, expected_chain_id=DFK_CHAIN_ID)


def build_fetcher() -> ChainLogFetcher:
    return ChainLogFetcher(build_web3(), rpc_url=DFK_RPC_URL)


def build_indexer(families=DEFAULT_FAMILIES, worker: bool = False) -> BridgeIndexer:
    fetcher = build_fetcher()
    decoder = build_decoder(families, tokens=TokenRegistry(fetcher.w3), chain_id=DFK_CHAIN_ID)
    return BridgeIndexer(fetcher, decoder, session_factory(worker))


def build_progress(worker: bool = False) -> ProgressTracker:
    return ProgressTracker(session_factory(worker))


def build_price_resolver(worker: bool = False) -> PriceResolver:
    """Creates its own httpx client; close it with ``await resolver.client.aclose()``."""
    return PriceResolver(session_factory(worker), CoinGeckoClient())


def build_enrichment(resolver: PriceResolver, worker: bool = False) -> PriceEnrichment:
    return PriceEnrichment(session_factory(worker), resolver)


def build_reconciliation_engine(resolver: PriceResolver, with_dex: bool = True,
                                worker: bool = False) -> ReconciliationEngine:
    dex = None
    if with_dex:
        w3 = build_web3()
        dex = DexPoolInspector(w3, DEX_FACTORY_ADDRESS, tokens=TokenRegistry(w3))
    return ReconciliationEngine(session_factory(worker), resolver, dex)
