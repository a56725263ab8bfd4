"""Shared fixtures: an in-memory chain that answers the provider calls the pipeline makes."""
from collections import Counter
from typing import Any, Dict, Tuple

import pytest
from eth_utils import to_checksum_address

from mev_sandwich.protocols.contracts import SUPPORTED_DEXES, USDC_ADDRESS, WETH_ADDRESS, ZERO_ADDRESS
from mev_sandwich.protocols.token_registry import compute_pair_address, sort_tokens

WEI = 10 ** 18
GWEI = 10 ** 9

DAI_ADDRESS = "0x6B175474E89094C44Da98b954EedeAC495271d0F"
PEPE_ADDRESS = "0x6982508145454Ce325dDbE47a25d4ec3d2311933"


class FakeChainProvider:
    """Stand-in for BlockchainProvider backed by plain dicts."""
    
    def __init__(self):
        self.pairs: Dict[Tuple[str, frozenset], str] = {}
        self.pools: Dict[str, Dict[str, Any]] = {}
        self.tokens: Dict[str, Dict[str, Any]] = {}
        self.code: Dict[str, bytes] = {}
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.gas_price = 30 * GWEI
        self.block_number = 19_000_000
        self.nonce = 0
        self.calls: Counter = Counter()
    
    def add_token(self, address: str, symbol: str, decimals: int = 18, name: str = None):
        self.tokens[address.lower()] = {"symbol": symbol, "name": name or symbol, "decimals": decimals}
    
    def add_pool(self, dex: Dict[str, str], token_a: str, token_b: str, reserve_a: int, reserve_b: int) -> str:
        """Register a pair at its CREATE2 address so getPair and computed lookups agree."""
        token0, token1 = sort_tokens(token_a, token_b)
        reserve0, reserve1 = (reserve_a, reserve_b) if token0.lower() == token_a.lower() else (reserve_b, reserve_a)
        pair = compute_pair_address(dex["factory"], dex["init_code_hash"], token_a, token_b)
        self.pairs[(dex["factory"].lower(), frozenset((token_a.lower(), token_b.lower())))] = pair
        self.pools[pair.lower()] = {"token0": token0, "token1": token1, "reserves": [reserve0, reserve1]}
        return pair
    
    def set_reserves(self, pair: str, reserve0: int, reserve1: int):
        self.pools[pair.lower()]["reserves"] = [reserve0, reserve1]
    
    async def call_function(self, address: str, abi, fn_name: str, *args):
        self.calls[fn_name] += 1
        if fn_name == "getPair":
            key = (address.lower(), frozenset(arg.lower() for arg in args))
            return self.pairs.get(key, ZERO_ADDRESS)
        if fn_name in ("token0", "token1"):
            return self.pools[address.lower()][fn_name]
        if fn_name == "getReserves":
            reserve0, reserve1 = self.pools[address.lower()]["reserves"]
            return [reserve0, reserve1, 1_700_000_000]
        if fn_name in ("symbol", "name", "decimals"):
            meta = self.tokens.get(address.lower())
            if meta is None:
                raise ValueError("execution reverted")
            return meta[fn_name]
        raise ValueError(f"Unexpected call {fn_name}")
    
    async def get_code(self, address: str) -> bytes:
        self.calls["get_code"] += 1
        return self.code.get(address.lower(), bytes.fromhex("6080604052"))
    
    async def get_gas_price(self):
        return self.gas_price
    
    async def get_block_number(self):
        return self.block_number
    
    async def get_transaction_count(self, address: str, block_identifier: str = "pending"):
        self.calls["get_transaction_count"] += 1
        return self.nonce
    
    async def get_transaction(self, tx_hash: str):
        return self.transactions.get(tx_hash)


@pytest.fixture
def uniswap():
    return SUPPORTED_DEXES["uniswap_v2"]


@pytest.fixture
def sushiswap():
    return SUPPORTED_DEXES["sushiswap"]


@pytest.fixture
def chain(uniswap):
    """Chain with liquid WETH/DAI, WETH/USDC and DAI/USDC pools on Uniswap V2."""
    provider = FakeChainProvider()
    provider.add_token(WETH_ADDRESS, "WETH")
    provider.add_token(DAI_ADDRESS, "DAI")
    provider.add_token(USDC_ADDRESS, "USDC", decimals=6)
    provider.add_pool(uniswap, WETH_ADDRESS, DAI_ADDRESS, 500 * WEI, 1_000_000 * WEI)
    provider.add_pool(uniswap, USDC_ADDRESS, WETH_ADDRESS, 2_000_000 * 10 ** 6, 1_000 * WEI)
    return provider


@pytest.fixture
def weth():
    return to_checksum_address(WETH_ADDRESS)


@pytest.fixture
def dai():
    return to_checksum_address(DAI_ADDRESS)
