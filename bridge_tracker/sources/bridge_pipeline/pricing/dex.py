from decimal import Decimal, localcontext
from typing import NamedTuple
from web3 import Web3
import logging

from bridge_tracker.sources.bridge_pipeline.config.settings import (
    DEX_FACTORY_ADDRESS,
    UNISWAP_V2_FACTORY_ABI,
    UNISWAP_V2_PAIR_ABI,
)
from bridge_tracker.sources.bridge_pipeline.evm.token_meta import TokenMetadataError, TokenRegistry

log = logging.getLogger(__name__)


class LpPair(NamedTuple):
    pair_address: str
    token: str
    paired_token: str
    token_reserve: int
    paired_reserve: int


class DexPoolInspector:
    """Reads a Uniswap-V2-style factory to find each token's deepest pool.

    Prices derived here use *current* reserves only.
    """

    def __init__(self, w3: Web3, factory_address: str = DEX_FACTORY_ADDRESS,
                 tokens: TokenRegistry | None = None):
        self.w3 = w3
        self.factory_address = Web3.to_checksum_address(factory_address)
        self.tokens = tokens or TokenRegistry(w3)

    def _pair_info(self, pair_address: str):
        pair = self.w3.eth.contract(address=pair_address, abi=UNISWAP_V2_PAIR_ABI)
        token0 = pair.functions.token0().call().lower()
        token1 = pair.functions.token1().call().lower()
        reserve0, reserve1, _ = pair.functions.getReserves().call()
        return token0, token1, int(reserve0), int(reserve1)

    def discover_lp_pairs(self, max_pairs: int | None = None) -> dict[str, LpPair]:
        """token address (lowercase) -> the pool holding the largest reserve of it."""
        factory = self.w3.eth.contract(address=self.factory_address, abi=UNISWAP_V2_FACTORY_ABI)
        count = int(factory.functions.allPairsLength().call())
        if max_pairs is not None:
            count = min(count, max_pairs)
        log.info(f"Scanning {count} LP pairs on factory {self.factory_address}")

        best: dict[str, LpPair] = {}
        for i in range(count):
            try:
                pair_address = factory.functions.allPairs(i).call()
                token0, token1, reserve0, reserve1 = self._pair_info(pair_address)
            except Exception as e:
                log.warning(f"Skipping pair #{i}: {e}")
                continue

            for candidate in (
                LpPair(pair_address.lower(), token0, token1, reserve0, reserve1),
                LpPair(pair_address.lower(), token1, token0, reserve1, reserve0),
            ):
                current = best.get(candidate.token)
                if current is None or candidate.token_reserve > current.token_reserve:
                    best[candidate.token] = candidate
        return best

    def derive_price(self, token: str, pairs: dict[str, LpPair], known_prices: dict[str, Decimal],
                     depth: int = 2, _seen: frozenset = frozenset()) -> Decimal | None:
        """
        Current mid-price in USD from the token's deepest pool.

        ``known_prices`` maps lowercase address -> USD for stables / externally
        priced tokens. An unknown paired token is priced through its own
        deepest pool, up to ``depth`` hops; otherwise None.
        """
        token = token.lower()
        if token in known_prices:
            return known_prices[token]
        pair = pairs.get(token)
        if pair is None or pair.token_reserve == 0 or token in _seen:
            return None

        paired_usd = known_prices.get(pair.paired_token)
        if paired_usd is None and depth > 0:
            paired_usd = self.derive_price(pair.paired_token, pairs, known_prices, depth - 1, _seen | {token})
        if paired_usd is None:
            return None

        try:
            token_decimals = self.tokens.decimals(token)
            paired_decimals = self.tokens.decimals(pair.paired_token)
        except TokenMetadataError as e:
            log.warning(f"Cannot price {token} from its pool: {e}")
            return None

        with localcontext() as ctx:
            ctx.prec = 78
            token_amount = Decimal(pair.token_reserve).scaleb(-token_decimals)
            paired_amount = Decimal(pair.paired_reserve).scaleb(-paired_decimals)
            return paired_amount / token_amount * paired_usd
