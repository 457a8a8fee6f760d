from web3 import Web3, HTTPProvider
import backoff
import logging

log = logging.getLogger(__name__)


class ChainAccessError(ConnectionError):
    """The RPC endpoint is unreachable or serves a different chain."""


_clients: dict[tuple[str, int | None], Web3] = {}


@backoff.on_exception(backoff.expo, ChainAccessError, max_tries=5, jitter=None)
def _connect(rpc_url: str, expected_chain_id: int | None) -> Web3:
    log.info(f"Connecting to RPC: {rpc_url}")
    w3 = Web3(HTTPProvider(rpc_url, request_kwargs={"timeout": 30}))

    if not w3.is_connected():
        raise ChainAccessError(f"Failed to connect to RPC: {rpc_url}")

    if expected_chain_id is not None:
        chain_id = w3.eth.chain_id
        if chain_id != expected_chain_id:
            raise ChainAccessError(
                f"RPC {rpc_url} serves chain {chain_id}, expected {expected_chain_id}"
            )

    log.info(f"Connected to {rpc_url} ✅")
    return w3


def get_web3_client(rpc_url: str, expected_chain_id: int | None = None) -> Web3:
    """Cached Web3 client per (RPC URL, chain id); raises ChainAccessError after retries."""
    key = (rpc_url, expected_chain_id)
    if key not in _clients:
        _clients[key] = _connect(rpc_url, expected_chain_id)
    return _clients[key]
