"""Contract addresses for the supported Uniswap V2 style exchanges."""
from typing import Dict, List, Optional

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Wrapped native asset and the intermediate asset used for two-hop valuation
WETH_ADDRESS = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"
USDC_ADDRESS = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"

# Uniswap V2 style exchanges: router, factory and pair init code hash
SUPPORTED_DEXES = {
    "uniswap_v2": {
        "name": "Uniswap V2",
        "router": "0x7a250d5630B4cF539739dF2C5dAcb4c659F2488D",
        "factory": "0x5C69bEe701ef814a2B6a3EDD4B1652CB9cc5aA6f",
        "init_code_hash": "0x96e8ac4277198ff8b6f785478aa9a39f403cb768dd02cbee326c3e7da348845f",
    },
    "sushiswap": {
        "name": "Sushiswap",
        "router": "0xd9e1cE17f2641f24aE83637ab66a2cca9C378B9F",
        "factory": "0xC0AEe478e3658e2610c5F7A4A2E1777cE9e4f2Ac",
        "init_code_hash": "0xe18a34eb0e04b04f7a0ac29a6e80748dca96319b42c54d679cb821dca90c6303",
    },
}

# Tokens that are never sandwiched (fee mechanics, rebases or heavy MEV competition)
BLACKLISTED_TOKENS = frozenset({
    "0x6b3595068778dd592e39a122f4f5a5cf09c90fe2",  # SUSHI
    "0x2b591e99afe9f32eaa6214f7b7629768c40eeb39",  # HEX
    "0x798d1be841a82a273720ce31c822c61a67a601c3",  # DIGG
    "0x67c597624b17b16fb77959217360b7cd18284253",  # MARK
    "0x7fc66500c84a76ad7e9c93437bfc5ac33e2ddae9",  # AAVE
    "0x9f8f72aa9304c8b593d555f12ef6589cc3a579a2",  # MKR
    "0xa693b19d2931d498c5b318df961919bb4aee87a5",  # UST
    "0x6123b0049f904d730db3c36a31167d9d4121fa6b",  # RBN
    "0x1f9840a85d5af5bf1d1762f925bdaddc4201f984",  # UNI
    "0xc0d4ceb216b3ba9c3701b291766fdcba977cec3a",  # BUIDL
    "0xd533a949740bb3306d119cc777fa900ba034cd52",  # CRV
    "0x0391d2021f89dc339f60fff84546ea23e337750f",  # BOND
    "0x9d65ff81a3c488d585bbfb0bfe3c7707c7917f54",  # SSV
})


def get_dex_by_router(router_address: str) -> Optional[Dict[str, str]]:
    """Get the exchange entry whose router matches the address."""
    router = router_address.lower()
    for dex in SUPPORTED_DEXES.values():
        if dex["router"].lower() == router:
            return dex
    return None


def get_router_addresses() -> List[str]:
    """Get all known router addresses (lowercase)."""
    return [dex["router"].lower() for dex in SUPPORTED_DEXES.values()]


def get_factories() -> List[Dict[str, str]]:
    """Get factory entries for all supported exchanges."""
    return [
        {"name": dex["name"], "factory": dex["factory"], "init_code_hash": dex["init_code_hash"]}
        for dex in SUPPORTED_DEXES.values()
    ]


def is_static_blacklisted(token_address: str) -> bool:
    return token_address.lower() in BLACKLISTED_TOKENS
