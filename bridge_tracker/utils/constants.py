DFK_CHAIN_ID = 53935

# address (lowercase) -> (symbol, decimals)
TOKEN_REGISTRY = {
    "0x04b9da42306b023f3572e106b11d82aad9d32ebb": ("CRYSTAL", 18),
    "0xccb93dabd71c8dad03fc4ce5559dc3d89f67a260": ("JEWEL", 18),
    "0x3ad9dfe640e1a9cc1d9b0948620820d975c3803a": ("USDC", 6),
    "0xfbdf0e31808d0aa7b9509aa6abc9754e48c58852": ("ETH", 18),
    "0xb57b60debdb0b8172bb6316a9164bd3c695f133a": ("AVAX", 18),
    "0x7516eb8b8edfa420f540a162335eacf3ea05a247": ("BTC", 8),
    "0x97855ba65aa7ed2f65ed832a776537268158b78a": ("KAIA", 18),
}

KNOWN_BRIDGE_ADDRESSES = {
    "0xe05c976d3f045d0e6e7a6f61083d98a15603cf6a",
    "0x230a1ac45690b9ae1176389434610b9526d2f21b",
    "0x7e7a0e201fd38d3adaa9523da6c109a07118c96a",
}

CHAIN_NAMES = {
    53935: "DFK Chain",
    8217: "Kaia",
    1666600000: "Harmony",
    1088: "Metis",
    43114: "Avalanche",
}

COINGECKO_IDS = {
    "JEWEL": "defi-kingdoms",
    "CRYSTAL": "defi-kingdoms-crystal",
    "USDC": "usd-coin",
    "ETH": "ethereum",
    "AVAX": "avalanche-2",
    "BTC": "bitcoin",
    "KAIA": "klaytn",
    "FTM": "fantom",
    "MATIC": "matic-network",
}

# LayerZero v2 endpoint id -> chain id; unmapped ids are stored as-is
LZ_ENDPOINT_CHAINS = {
    30106: 53935,
    30145: 1088,
    30150: 8217,
}

EQUIPMENT_TYPES = {
    1: "Weapon",
    2: "Accessory",
    3: "Armor",
    4: "Pet",
}

STABLECOINS = {"USDC", "USDT", "DAI", "BUSD", "USDC.E"}

NFT_SYMBOLS = {"HERO", "PET", "EQUIPMENT"}

BRIDGE_TYPES = ("token", "hero", "item", "equipment", "pet")
DIRECTIONS = ("in", "out")

INDEXER_STATUSES = ("idle", "running", "error", "complete")
PRICING_STATUSES = ("unknown", "priced", "dex_derivable", "deprecated", "needs_manual_review")

PRICING_SOURCE_EXTERNAL = "coingecko"
PRICING_SOURCE_DEPRECATED = "DEPRECATED_TOKEN"
