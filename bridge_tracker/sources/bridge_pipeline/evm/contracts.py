from eth_utils import event_abi_to_log_topic
from web3 import Web3


def _event(name: str, inputs: list[tuple[str, str, bool]]) -> dict:
    """Build an event ABI entry from (name, type, indexed) triples."""
    return {
        "anonymous": False,
        "inputs": [
            {"indexed": indexed, "internalType": typ, "name": arg, "type": typ}
            for arg, typ, indexed in inputs
        ],
        "name": name,
        "type": "event",
    }


def topic_hex(abi: dict) -> str:
    return Web3.to_hex(event_abi_to_log_topic(abi))


# ── ERC-20 ────────────────────────────────────────────────────────────────
TRANSFER_ABI = _event("Transfer", [
    ("from", "address", True),
    ("to", "address", True),
    ("value", "uint256", False),
])

# ── Synapse bridge: outbound (local chain -> chainId) ─────────────────────
TOKEN_DEPOSIT_ABI = _event("TokenDeposit", [
    ("to", "address", True),
    ("chainId", "uint256", False),
    ("token", "address", False),
    ("amount", "uint256", False),
])

TOKEN_DEPOSIT_AND_SWAP_ABI = _event("TokenDepositAndSwap", [
    ("to", "address", True),
    ("chainId", "uint256", False),
    ("token", "address", False),
    ("amount", "uint256", False),
    ("tokenIndexFrom", "uint8", False),
    ("tokenIndexTo", "uint8", False),
    ("minDy", "uint256", False),
    ("deadline", "uint256", False),
])

TOKEN_REDEEM_ABI = _event("TokenRedeem", [
    ("to", "address", True),
    ("chainId", "uint256", False),
    ("token", "address", False),
    ("amount", "uint256", False),
])

TOKEN_REDEEM_AND_SWAP_ABI = _event("TokenRedeemAndSwap", [
    ("to", "address", True),
    ("chainId", "uint256", False),
    ("token", "address", False),
    ("amount", "uint256", False),
    ("tokenIndexFrom", "uint8", False),
    ("tokenIndexTo", "uint8", False),
    ("minDy", "uint256", False),
    ("deadline", "uint256", False),
])

# ── Synapse bridge: inbound (no source chain in payload) ──────────────────
TOKEN_MINT_ABI = _event("TokenMint", [
    ("to", "address", True),
    ("token", "address", False),
    ("amount", "uint256", False),
    ("fee", "uint256", False),
    ("kappa", "bytes32", True),
])

TOKEN_MINT_AND_SWAP_ABI = _event("TokenMintAndSwap", [
    ("to", "address", True),
    ("token", "address", False),
    ("amount", "uint256", False),
    ("fee", "uint256", False),
    ("tokenIndexFrom", "uint8", False),
    ("tokenIndexTo", "uint8", False),
    ("minDy", "uint256", False),
    ("deadline", "uint256", False),
    ("swapSuccess", "bool", False),
    ("kappa", "bytes32", True),
])

TOKEN_WITHDRAW_ABI = _event("TokenWithdraw", [
    ("to", "address", True),
    ("token", "address", False),
    ("amount", "uint256", False),
    ("fee", "uint256", False),
    ("kappa", "bytes32", True),
])

TOKEN_WITHDRAW_AND_REMOVE_ABI = _event("TokenWithdrawAndRemove", [
    ("to", "address", True),
    ("token", "address", False),
    ("amount", "uint256", False),
    ("fee", "uint256", False),
    ("swapTokenIndex", "uint8", False),
    ("swapMinAmount", "uint256", False),
    ("swapDeadline", "uint256", False),
    ("swapSuccess", "bool", False),
    ("kappa", "bytes32", True),
])

SYNAPSE_OUTBOUND_ABIS = [
    TOKEN_DEPOSIT_ABI,
    TOKEN_DEPOSIT_AND_SWAP_ABI,
    TOKEN_REDEEM_ABI,
    TOKEN_REDEEM_AND_SWAP_ABI,
]
SYNAPSE_INBOUND_ABIS = [
    TOKEN_MINT_ABI,
    TOKEN_MINT_AND_SWAP_ABI,
    TOKEN_WITHDRAW_ABI,
    TOKEN_WITHDRAW_AND_REMOVE_ABI,
]

# ── NFT bridges ───────────────────────────────────────────────────────────
HERO_SENT_ABI = _event("HeroSent", [
    ("heroId", "uint256", True),
    ("arrivalChainId", "uint256", False),
])

HERO_ARRIVED_ABI = _event("HeroArrived", [
    ("heroId", "uint256", True),
    ("arrivalChainId", "uint256", False),
])

HERO_LZ_SENT_ABI = _event("HeroLZBridgeSent", [
    ("srcEid", "uint32", False),
    ("sender", "address", False),
    ("receiver", "address", False),
    ("heroId", "uint256", False),
])

HERO_LZ_RECEIVED_ABI = _event("HeroLZBridgeReceived", [
    ("srcEid", "uint32", False),
    ("sender", "address", False),
    ("receiver", "address", False),
    ("heroId", "uint256", False),
])

EQUIPMENT_SENT_ABI = _event("EquipmentSent", [
    ("equipmentId", "uint256", True),
    ("equipmentType", "uint16", True),
    ("arrivalChainId", "uint256", False),
])

EQUIPMENT_ARRIVED_ABI = _event("EquipmentArrived", [
    ("equipmentId", "uint256", True),
    ("equipmentType", "uint16", True),
    ("arrivalChainId", "uint256", False),
])

PET_SENT_ABI = _event("PetSent", [
    ("petId", "uint256", True),
    ("arrivalChainId", "uint256", False),
])

PET_ARRIVED_ABI = _event("PetArrived", [
    ("petId", "uint256", True),
    ("arrivalChainId", "uint256", False),
])

TRANSFER_TOPIC = topic_hex(TRANSFER_ABI)
