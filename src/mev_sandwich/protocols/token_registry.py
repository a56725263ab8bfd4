"""
Token Registry.

Resolves token metadata, pool reserves, liquidity depth and a risk
classification for token addresses, with TTL caches in front of every
chain lookup.
"""
import asyncio
import dataclasses
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar

from eth_utils import function_signature_to_4byte_selector, keccak, to_bytes, to_checksum_address

from ..config.settings import settings
from .abi_manager import abi_manager
from .contracts import (
    USDC_ADDRESS,
    WETH_ADDRESS,
    ZERO_ADDRESS,
    get_factories,
    is_static_blacklisted
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

TOKEN_CACHE_TTL_SECONDS = 600
POOL_CACHE_TTL_SECONDS = 30
MAX_CACHED_ENTRIES = 10_000

# Public functions that only show up in fee-on-transfer / reflection tokens
FEE_ON_TRANSFER_SIGNATURES = [
    "setTaxFeePercent(uint256)",
    "setLiquidityFeePercent(uint256)",
    "excludeFromFee(address)",
    "reflectionFromToken(uint256,bool)",
    "deliver(uint256)",
    "setFee(uint256)",
]

REBASING_SIGNATURES = [
    "rebase(uint256,int256)",
    "rebase(uint256,uint256)",
    "rebase()",
    "gonsForBalance(uint256)",
]

PUSH4 = b"\x63"


class TokenRisk(str, Enum):
    """Risk classification of a token."""
    CLEAN = "clean"
    BLACKLISTED = "blacklisted"
    FEE_ON_TRANSFER = "fee_on_transfer"
    REBASING = "rebasing"
    UNKNOWN = "unknown"
    
    @property
    def severity(self) -> int:
        return _RISK_SEVERITY[self]
    
    @property
    def is_unsafe(self) -> bool:
        return self in (TokenRisk.BLACKLISTED, TokenRisk.FEE_ON_TRANSFER, TokenRisk.REBASING)


_RISK_SEVERITY = {
    TokenRisk.UNKNOWN: 0,
    TokenRisk.CLEAN: 1,
    TokenRisk.FEE_ON_TRANSFER: 2,
    TokenRisk.REBASING: 2,
    TokenRisk.BLACKLISTED: 3,
}


@dataclass(frozen=True)
class TokenInfo:
    """Resolved token metadata."""
    address: str
    symbol: str = "UNKNOWN"
    name: str = "Unknown Token"
    decimals: int = 18
    risk: TokenRisk = TokenRisk.UNKNOWN
    
    def with_risk(self, risk: TokenRisk) -> "TokenInfo":
        return dataclasses.replace(self, risk=risk)


@dataclass(frozen=True)
class PoolSnapshot:
    """Reserves of a constant product pair at a point in time."""
    address: str
    token0: str
    token1: str
    reserve0: int
    reserve1: int
    fetched_at: float
    
    def __post_init__(self):
        if self.token0.lower() >= self.token1.lower():
            raise ValueError(f"Pool tokens not in canonical order: {self.token0}, {self.token1}")
        if self.reserve0 < 0 or self.reserve1 < 0:
            raise ValueError("Pool reserves cannot be negative")
    
    def contains(self, token: str) -> bool:
        return token.lower() in (self.token0.lower(), self.token1.lower())
    
    def reserve_of(self, token: str) -> int:
        if token.lower() == self.token0.lower():
            return self.reserve0
        if token.lower() == self.token1.lower():
            return self.reserve1
        raise ValueError(f"Token {token} is not in pool {self.address}")
    
    def reserves_for(self, token_in: str) -> Tuple[int, int]:
        """(reserve_in, reserve_out) for a swap that sells ``token_in``."""
        if token_in.lower() == self.token0.lower():
            return self.reserve0, self.reserve1
        if token_in.lower() == self.token1.lower():
            return self.reserve1, self.reserve0
        raise ValueError(f"Token {token_in} is not in pool {self.address}")
    
    def is_stale(self, max_age: float, now: float) -> bool:
        return now - self.fetched_at > max_age


@dataclass(frozen=True)
class LiquidityReport:
    """Depth of the best pool for a token pair, valued in the reference asset."""
    is_liquid: bool
    is_too_deep: bool
    value_in_reference_asset: int
    best_pool: Optional[PoolSnapshot] = None


class TTLCache(Generic[T]):
    """
    Map of immutable entries that expire a fixed time after being written.
    
    With ``max_entries`` set, writes past the bound first drop expired
    entries and then the least recently written ones.
    """
    
    def __init__(self,
                 ttl_seconds: float,
                 clock: Callable[[], float] = time.monotonic,
                 max_entries: Optional[int] = None):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[T, float]]" = OrderedDict()
        self.evictions = 0
    
    def get(self, key: str) -> Optional[T]:
        entry = self._entries.get(key.lower())
        if entry is None:
            return None
        value, stored_at = entry
        if self._clock() - stored_at > self.ttl_seconds:
            return None
        return value
    
    def set(self, key: str, value: T) -> None:
        key = key.lower()
        self._entries.pop(key, None)
        self._entries[key] = (value, self._clock())
        if self.max_entries is not None and len(self._entries) > self.max_entries:
            self.clear_expired()
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
                self.evictions += 1
    
    def is_expired(self, key: str) -> bool:
        return self.get(key) is None
    
    def clear_expired(self) -> int:
        """Remove expired entries and return how many were dropped."""
        now = self._clock()
        expired = [k for k, (_, stored_at) in self._entries.items() if now - stored_at > self.ttl_seconds]
        for key in expired:
            del self._entries[key]
        return len(expired)
    
    def clear(self) -> None:
        self._entries.clear()
    
    def __len__(self) -> int:
        return len(self._entries)


def sort_tokens(token_a: str, token_b: str) -> Tuple[str, str]:
    """Order two token addresses the way Uniswap V2 pairs do."""
    a, b = to_checksum_address(token_a), to_checksum_address(token_b)
    if a.lower() == b.lower():
        raise ValueError(f"Identical token addresses: {a}")
    return (a, b) if a.lower() < b.lower() else (b, a)


def compute_pair_address(factory: str, init_code_hash: str, token_a: str, token_b: str) -> str:
    """Deterministic CREATE2 address of a Uniswap V2 style pair."""
    token0, token1 = sort_tokens(token_a, token_b)
    salt = keccak(to_bytes(hexstr=token0) + to_bytes(hexstr=token1))
    raw = keccak(b"\xff" + to_bytes(hexstr=factory) + salt + to_bytes(hexstr=init_code_hash))
    return to_checksum_address(raw[12:])


def _selectors(signatures: List[str]) -> List[bytes]:
    return [function_signature_to_4byte_selector(sig) for sig in signatures]


FEE_ON_TRANSFER_SELECTORS = _selectors(FEE_ON_TRANSFER_SIGNATURES)
REBASING_SELECTORS = _selectors(REBASING_SIGNATURES)


def classify_bytecode(code: bytes) -> TokenRisk:
    """Best-effort risk classification from the selectors a contract dispatches on."""
    if not code:
        # No code: not a token contract we can reason about
        return TokenRisk.UNKNOWN
    if any(PUSH4 + selector in code for selector in REBASING_SELECTORS):
        return TokenRisk.REBASING
    if any(PUSH4 + selector in code for selector in FEE_ON_TRANSFER_SELECTORS):
        return TokenRisk.FEE_ON_TRANSFER
    return TokenRisk.CLEAN


class TokenRegistry:
    """
    Token metadata, risk and liquidity lookups for the sandwich pipeline.
    
    Token metadata is cached for 10 minutes and pool reserves for 30 seconds.
    Risk reclassification is kept for the life of the registry and can only
    raise severity.
    """
    
    def __init__(self,
                 provider: Any,
                 weth_address: str = WETH_ADDRESS,
                 intermediate_address: str = USDC_ADDRESS,
                 factories: Optional[List[Dict[str, str]]] = None,
                 min_liquidity: Optional[int] = None,
                 max_liquidity: Optional[int] = None,
                 token_ttl: float = TOKEN_CACHE_TTL_SECONDS,
                 pool_ttl: float = POOL_CACHE_TTL_SECONDS,
                 max_entries: int = MAX_CACHED_ENTRIES,
                 clock: Callable[[], float] = time.monotonic):
        self.provider = provider
        self.weth_address = to_checksum_address(weth_address)
        self.intermediate_address = to_checksum_address(intermediate_address)
        self.factories = factories if factories is not None else get_factories()
        self.min_liquidity = settings.min_pair_liquidity_wei if min_liquidity is None else min_liquidity
        self.max_liquidity = settings.max_pair_liquidity_wei if max_liquidity is None else max_liquidity
        self._clock = clock
        
        self.max_entries = max_entries
        self._tokens: TTLCache[TokenInfo] = TTLCache(token_ttl, clock, max_entries)
        self._pools: TTLCache[PoolSnapshot] = TTLCache(pool_ttl, clock, max_entries)
        # A pair's tokens never change, so these only leave when the bound is hit
        self._pair_tokens: TTLCache[Tuple[str, str]] = TTLCache(float("inf"), clock, max_entries)
        self._risk: "OrderedDict[str, TokenRisk]" = OrderedDict()
        
        self.stats = {
            "tokens_resolved": 0,
            "token_cache_hits": 0,
            "metadata_failures": 0,
            "heuristic_failures": 0,
            "tokens_flagged": 0,
            "pools_fetched": 0,
            "pool_cache_hits": 0,
            "pool_fetch_failures": 0,
            "expired_entries_pruned": 0,
            "risk_evictions": 0,
        }
    
    def _is_weth(self, token: str) -> bool:
        return token.lower() == self.weth_address.lower()
    
    # Token metadata and risk
    
    async def resolve(self, address: str) -> TokenInfo:
        """
        Get token metadata, fetching it on a cache miss.
        
        Never raises for RPC failures: missing metadata falls back to the
        ERC20 defaults (18 decimals, UNKNOWN symbol).
        """
        cached = self._tokens.get(address)
        if cached is not None:
            self.stats["token_cache_hits"] += 1
            return cached
        
        checksum = to_checksum_address(address)
        erc20_abi = abi_manager.get_erc20_abi()
        symbol, name, decimals = await asyncio.gather(
            self.provider.call_function(checksum, erc20_abi, "symbol"),
            self.provider.call_function(checksum, erc20_abi, "name"),
            self.provider.call_function(checksum, erc20_abi, "decimals"),
            return_exceptions=True
        )
        
        defaults = TokenInfo(address=checksum)
        if any(isinstance(r, Exception) for r in (symbol, name, decimals)):
            self.stats["metadata_failures"] += 1
            logger.warning(f"Incomplete metadata for {checksum}, using defaults where missing")
        
        if isinstance(decimals, Exception) or not isinstance(decimals, int) or not 0 <= decimals <= 255:
            decimals = defaults.decimals
        
        risk = await self._classify_for_resolve(checksum)
        
        info = TokenInfo(
            address=checksum,
            symbol=symbol if isinstance(symbol, str) else defaults.symbol,
            name=name if isinstance(name, str) else defaults.name,
            decimals=decimals,
            risk=risk
        )
        self._tokens.set(checksum, info)
        self.stats["tokens_resolved"] += 1
        return info
    
    async def _classify_for_resolve(self, address: str) -> TokenRisk:
        try:
            return await self._current_risk(address)
        except Exception as e:
            self.stats["heuristic_failures"] += 1
            logger.warning(f"Risk classification failed for {address}: {e}")
            return self._risk.get(address.lower(), TokenRisk.UNKNOWN)
    
    async def _current_risk(self, address: str) -> TokenRisk:
        """Known risk, or a fresh bytecode classification when none is known."""
        if is_static_blacklisted(address):
            return self.reclassify(address, TokenRisk.BLACKLISTED)
        
        known = self._risk.get(address.lower())
        if known is not None and known != TokenRisk.UNKNOWN:
            return known
        
        code = await self.provider.get_code(to_checksum_address(address))
        return self.reclassify(address, classify_bytecode(bytes(code)))
    
    def reclassify(self, address: str, risk: TokenRisk) -> TokenRisk:
        """
        Record a risk classification for a token; severity only ever goes up.
        
        Returns the classification in force afterwards.
        """
        key = address.lower()
        current = self._risk.get(key)
        if current is not None and risk.severity <= current.severity:
            return current
        
        self._remember_risk(key, risk)
        if risk.is_unsafe:
            self.stats["tokens_flagged"] += 1
            logger.info(f"Token {address} classified as {risk.value}")
        
        cached = self._tokens.get(key)
        if cached is not None:
            self._tokens.set(key, cached.with_risk(risk))
        return risk
    
    def _remember_risk(self, key: str, risk: TokenRisk) -> None:
        self._risk[key] = risk
        self._risk.move_to_end(key)
        if len(self._risk) <= self.max_entries:
            return
        # Clean and unknown verdicts can be re-derived from bytecode; flagged ones cannot
        evict = next((k for k, r in self._risk.items() if not r.is_unsafe), None)
        if evict is None:
            evict = next(iter(self._risk))
        del self._risk[evict]
        self.stats["risk_evictions"] += 1
    
    async def is_blacklisted(self, address: str) -> bool:
        """
        True for deny-listed tokens and tokens whose bytecode looks like a
        fee-on-transfer or rebasing token.
        
        Fails closed: if the heuristic cannot be evaluated the token is
        treated as blacklisted.
        """
        try:
            risk = await self._current_risk(address)
        except Exception as e:
            self.stats["heuristic_failures"] += 1
            logger.warning(f"Blacklist heuristic failed for {address}, treating as blacklisted: {e}")
            return True
        return risk.is_unsafe
    
    # Pools
    
    async def get_pool_snapshot(self, pair_address: str, force_refresh: bool = False) -> Optional[PoolSnapshot]:
        """Fetch reserves of a pair, from cache unless stale or ``force_refresh`` is set."""
        if not force_refresh:
            cached = self._pools.get(pair_address)
            if cached is not None:
                self.stats["pool_cache_hits"] += 1
                return cached
        
        checksum = to_checksum_address(pair_address)
        pair_abi = abi_manager.get_pair_abi()
        try:
            tokens = self._pair_tokens.get(checksum.lower())
            if tokens is None:
                token0, token1 = await asyncio.gather(
                    self.provider.call_function(checksum, pair_abi, "token0"),
                    self.provider.call_function(checksum, pair_abi, "token1")
                )
                tokens = (to_checksum_address(token0), to_checksum_address(token1))
                self._pair_tokens.set(checksum, tokens)
            
            reserves = await self.provider.call_function(checksum, pair_abi, "getReserves")
        except Exception as e:
            self.stats["pool_fetch_failures"] += 1
            logger.warning(f"Failed to fetch reserves for pair {checksum}: {e}")
            return None
        
        snapshot = PoolSnapshot(
            address=checksum,
            token0=tokens[0],
            token1=tokens[1],
            reserve0=int(reserves[0]),
            reserve1=int(reserves[1]),
            fetched_at=self._clock()
        )
        self._pools.set(checksum, snapshot)
        self.stats["pools_fetched"] += 1
        return snapshot
    
    async def get_pair_address(self, factory: Dict[str, str], token_a: str, token_b: str) -> Optional[str]:
        """Pair address for a factory; CREATE2 when the init code hash is known, else ``getPair``."""
        if factory.get("init_code_hash"):
            return compute_pair_address(factory["factory"], factory["init_code_hash"], token_a, token_b)
        
        pair = await self.provider.call_function(
            to_checksum_address(factory["factory"]),
            abi_manager.get_factory_abi(),
            "getPair",
            to_checksum_address(token_a),
            to_checksum_address(token_b)
        )
        if not pair or pair.lower() == ZERO_ADDRESS:
            return None
        return to_checksum_address(pair)
    
    async def get_pair_pool(self,
                            factory: Dict[str, str],
                            token_a: str,
                            token_b: str,
                            force_refresh: bool = False) -> Optional[PoolSnapshot]:
        """Snapshot of the pair for ``token_a``/``token_b`` on one factory."""
        try:
            pair = await self.get_pair_address(factory, token_a, token_b)
        except Exception as e:
            logger.warning(f"Pair lookup failed on {factory.get('name', factory['factory'])}: {e}")
            return None
        if pair is None:
            return None
        return await self.get_pool_snapshot(pair, force_refresh=force_refresh)
    
    async def _best_pool(self, token_a: str, token_b: str) -> Optional[PoolSnapshot]:
        """Deepest pool for a pair across all configured factories, measured in ``token_a``."""
        best: Optional[PoolSnapshot] = None
        best_depth = 0
        
        for factory in self.factories:
            try:
                pair = await self.provider.call_function(
                    to_checksum_address(factory["factory"]),
                    abi_manager.get_factory_abi(),
                    "getPair",
                    to_checksum_address(token_a),
                    to_checksum_address(token_b)
                )
            except Exception as e:
                logger.warning(f"getPair failed on {factory.get('name', factory['factory'])}: {e}")
                continue
            
            if not pair or pair.lower() == ZERO_ADDRESS:
                continue
            
            pool = await self.get_pool_snapshot(pair)
            if pool is None or not pool.contains(token_a):
                continue
            
            depth = pool.reserve_of(token_a)
            if depth > best_depth:
                best, best_depth = pool, depth
        
        return best
    
    async def pool_liquidity(self, token_a: str, token_b: str) -> LiquidityReport:
        """
        Liquidity report for the deepest pool of a pair.
        
        Depth is twice the ``token_a`` reserve; when either side is WETH the
        WETH reserve is used directly for the reference valuation.
        """
        try:
            best = await self._best_pool(token_a, token_b)
            if best is None:
                return LiquidityReport(is_liquid=False, is_too_deep=False, value_in_reference_asset=0)
            
            if best.contains(self.weth_address):
                value = 2 * best.reserve_of(self.weth_address)
            else:
                value = await self.value_in_reference_asset(token_a, 2 * best.reserve_of(token_a))
        except Exception as e:
            logger.warning(f"Liquidity check failed for {token_a}/{token_b}: {e}")
            return LiquidityReport(is_liquid=False, is_too_deep=False, value_in_reference_asset=0)
        
        return LiquidityReport(
            is_liquid=value >= self.min_liquidity,
            is_too_deep=value >= self.max_liquidity,
            value_in_reference_asset=value,
            best_pool=best
        )
    
    async def value_in_reference_asset(self, token: str, amount: int) -> int:
        """
        Convert a token amount to WETH terms. Never raises.
        
        Tries a liquid direct WETH pool, then a two-hop route through the
        intermediate asset (valued with a 10% haircut), then falls back to
        ``amount // 1000``.
        """
        if amount <= 0:
            return 0
        if self._is_weth(token):
            return amount
        
        try:
            direct = await self._best_pool(token, self.weth_address)
            if direct is not None and 2 * direct.reserve_of(self.weth_address) >= self.min_liquidity:
                return amount * direct.reserve_of(self.weth_address) // direct.reserve_of(token)
            
            bridge = await self._best_pool(self.intermediate_address, self.weth_address)
            if bridge is not None and 2 * bridge.reserve_of(self.weth_address) >= self.min_liquidity:
                if token.lower() == self.intermediate_address.lower():
                    intermediate_amount = amount
                else:
                    first_hop = await self._best_pool(token, self.intermediate_address)
                    if first_hop is None or first_hop.reserve_of(token) == 0:
                        return amount // 1000
                    intermediate_amount = (
                        amount * first_hop.reserve_of(self.intermediate_address) // first_hop.reserve_of(token)
                    )
                value = (
                    intermediate_amount * bridge.reserve_of(self.weth_address)
                    // bridge.reserve_of(self.intermediate_address)
                )
                return value * 9 // 10
        except Exception as e:
            logger.warning(f"Valuation of {token} failed, using fallback estimate: {e}")
        
        return amount // 1000
    
    def clear_cache(self) -> None:
        """Drop cached tokens and pools. Risk classifications are kept."""
        self._tokens.clear()
        self._pools.clear()
        logger.info("Token registry cache cleared")
    
    def prune_expired(self) -> int:
        """Drop expired token and pool entries. Returns how many were removed."""
        pruned = self._tokens.clear_expired() + self._pools.clear_expired()
        if pruned:
            self.stats["expired_entries_pruned"] += pruned
            logger.debug(f"Pruned {pruned} expired registry entries")
        return pruned
    
    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "cached_tokens": len(self._tokens),
            "cached_pools": len(self._pools),
            "cached_pairs": len(self._pair_tokens),
            "cache_evictions": self._tokens.evictions + self._pools.evictions + self._pair_tokens.evictions,
            "classified_tokens": len(self._risk),
        }
