from web3 import Web3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError
import logging

from bridge_tracker.sources.bridge_pipeline.config.settings import ERC20_META_ABI
from bridge_tracker.utils.constants import TOKEN_REGISTRY

log = logging.getLogger(__name__)

UNKNOWN_TOKEN = ("UNKNOWN", 18)


class TokenMetadataError(LookupError):
    """symbol()/decimals() could not be read from chain; nothing is cached."""


class TokenRegistry:
    """Symbol/decimals lookup: static registry first, then ERC-20 calls (cached on success)."""

    def __init__(self, w3: Web3 | None = None, known: dict | None = None):
        self.w3 = w3
        self._meta: dict[str, tuple[str, int]] = dict(known if known is not None else TOKEN_REGISTRY)

    def lookup(self, token_addr: str | None) -> tuple[str, int]:
        if not token_addr:
            return UNKNOWN_TOKEN
        key = token_addr.lower()
        if key not in self._meta:
            if self.w3 is None:
                return UNKNOWN_TOKEN
            self._meta[key] = self._fetch_on_chain(key)
        return self._meta[key]

    def symbol(self, token_addr: str | None) -> str:
        return self.lookup(token_addr)[0]

    def decimals(self, token_addr: str | None) -> int:
        return self.lookup(token_addr)[1]

    def _fetch_on_chain(self, token_addr: str) -> tuple[str, int]:
        try:
            token = self.w3.eth.contract(address=Web3.to_checksum_address(token_addr), abi=ERC20_META_ABI)
            decimals = int(token.functions.decimals().call())
            symbol = str(token.functions.symbol().call()).strip() or UNKNOWN_TOKEN[0]
        except (BadFunctionCallOutput, ContractLogicError) as e:
            # not an ERC-20 contract; cached like a successful read
            log.warning(f"Token {token_addr} does not expose ERC-20 metadata: {e}")
            return UNKNOWN_TOKEN
        except Exception as e:
            log.warning(f"Token metadata lookup failed for {token_addr}: {e}")
            raise TokenMetadataError(f"No metadata for token {token_addr}: {e}") from e
        log.info(f"Resolved token {token_addr}: {symbol} ({decimals} decimals)")
        return symbol.upper(), decimals
