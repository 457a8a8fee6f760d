from web3 import Web3
import logging
import requests

from bridge_tracker.sources.bridge_pipeline.config.settings import RPC_BATCH_SIZE

log = logging.getLogger(__name__)


def _norm_hash(h) -> str:
    if isinstance(h, (bytes, bytearray)):
        return Web3.to_hex(h).lower()
    h = str(h).lower()
    return h if h.startswith("0x") else "0x" + h


def resolve_tx_senders(w3: Web3, tx_hashes, rpc_url: str | None = None) -> dict[str, str]:
    """
    Map tx hash (lowercase 0x) -> `from` address (lowercase) of the EOA
    that sent it. Needed for NFT bridge events that carry no wallet arg.

    Batched eth_getTransactionByHash over plain JSON-RPC when ``rpc_url``
    is given; any hash the batch missed is retried through Web3. Hashes
    that cannot be resolved are left out of the result.
    """
    hashes = sorted({_norm_hash(h) for h in tx_hashes})
    from_map: dict[str, str] = {}

    if rpc_url:
        for i in range(0, len(hashes), RPC_BATCH_SIZE):
            batch = hashes[i : i + RPC_BATCH_SIZE]
            payload = [
                {"jsonrpc": "2.0", "id": j, "method": "eth_getTransactionByHash", "params": [h]}
                for j, h in enumerate(batch)
            ]
            try:
                resp = requests.post(rpc_url, json=payload, timeout=10)
                resp.raise_for_status()
                results = resp.json()
            except (requests.RequestException, ValueError) as exc:
                log.warning(f"tx batch ({len(batch)} hashes) failed: {exc}")
                continue
            for item in results:
                if (res := item.get("result")):
                    from_map[res["hash"].lower()] = res["from"].lower()

    for h in hashes:
        if h in from_map:
            continue
        try:
            tx = w3.eth.get_transaction(h)
            from_map[h] = str(tx["from"]).lower()
        except Exception as exc:
            log.warning(f"Could not resolve sender for {h}: {exc}")

    return from_map
