"""
Transaction Classifier for sandwich opportunity detection.

Recognizes Uniswap V2 style router swaps in pending transactions, decodes
them into a canonical TradeIntent and runs the registry gates (blacklist,
liquidity, victim size) that decide whether the swap is worth sizing.
"""
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_utils import function_signature_to_4byte_selector, to_checksum_address

from ..config.settings import settings
from ..protocols.contracts import SUPPORTED_DEXES, WETH_ADDRESS
from .opportunity_models import (
    ClassificationResult,
    PendingTransaction,
    RejectionReason,
    SwapVariant,
    TradeIntent
)

logger = logging.getLogger(__name__)

Extractor = Callable[[Tuple[Any, ...], PendingTransaction], Dict[str, Any]]


@dataclass(frozen=True)
class SwapFunction:
    """Layout of one router swap function and how to read it."""
    signature: str
    variant: SwapVariant
    arg_types: Tuple[str, ...]
    extract: Extractor
    native_in: bool = False
    native_out: bool = False
    fee_on_transfer: bool = False
    
    @property
    def selector(self) -> bytes:
        return function_signature_to_4byte_selector(self.signature)


def _exact_tokens_in(args, tx):
    amount_in, amount_out_min, path, _to, deadline = args
    return {"amount_in": amount_in, "amount_out_min": amount_out_min, "path": path, "deadline": deadline}


def _exact_tokens_out(args, tx):
    amount_out, amount_in_max, path, _to, deadline = args
    return {"amount_in": amount_in_max, "amount_out": amount_out, "path": path, "deadline": deadline}


def _exact_eth_in(args, tx):
    amount_out_min, path, _to, deadline = args
    return {"amount_in": tx.value, "amount_out_min": amount_out_min, "path": path, "deadline": deadline}


def _eth_in_exact_out(args, tx):
    amount_out, path, _to, deadline = args
    # value is the most the victim will spend
    return {"amount_in": tx.value, "amount_out": amount_out, "path": path, "deadline": deadline}


_TOKENS_LAYOUT = ("uint256", "uint256", "address[]", "address", "uint256")
_ETH_IN_LAYOUT = ("uint256", "address[]", "address", "uint256")

SWAP_FUNCTIONS: List[SwapFunction] = [
    SwapFunction("swapExactTokensForTokens(uint256,uint256,address[],address,uint256)",
                 SwapVariant.EXACT_TOKENS_FOR_TOKENS, _TOKENS_LAYOUT, _exact_tokens_in),
    SwapFunction("swapTokensForExactTokens(uint256,uint256,address[],address,uint256)",
                 SwapVariant.TOKENS_FOR_EXACT_TOKENS, _TOKENS_LAYOUT, _exact_tokens_out),
    SwapFunction("swapExactETHForTokens(uint256,address[],address,uint256)",
                 SwapVariant.EXACT_ETH_FOR_TOKENS, _ETH_IN_LAYOUT, _exact_eth_in, native_in=True),
    SwapFunction("swapTokensForExactETH(uint256,uint256,address[],address,uint256)",
                 SwapVariant.TOKENS_FOR_EXACT_ETH, _TOKENS_LAYOUT, _exact_tokens_out, native_out=True),
    SwapFunction("swapExactTokensForETH(uint256,uint256,address[],address,uint256)",
                 SwapVariant.EXACT_TOKENS_FOR_ETH, _TOKENS_LAYOUT, _exact_tokens_in, native_out=True),
    SwapFunction("swapETHForExactTokens(uint256,address[],address,uint256)",
                 SwapVariant.ETH_FOR_EXACT_TOKENS, _ETH_IN_LAYOUT, _eth_in_exact_out, native_in=True),
    
    # Fee-on-transfer flavours share the exact-input layouts
    SwapFunction("swapExactTokensForTokensSupportingFeeOnTransferTokens(uint256,uint256,address[],address,uint256)",
                 SwapVariant.EXACT_TOKENS_FOR_TOKENS, _TOKENS_LAYOUT, _exact_tokens_in, fee_on_transfer=True),
    SwapFunction("swapExactETHForTokensSupportingFeeOnTransferTokens(uint256,address[],address,uint256)",
                 SwapVariant.EXACT_ETH_FOR_TOKENS, _ETH_IN_LAYOUT, _exact_eth_in,
                 native_in=True, fee_on_transfer=True),
    SwapFunction("swapExactTokensForETHSupportingFeeOnTransferTokens(uint256,uint256,address[],address,uint256)",
                 SwapVariant.EXACT_TOKENS_FOR_ETH, _TOKENS_LAYOUT, _exact_tokens_in,
                 native_out=True, fee_on_transfer=True),
]

SWAP_FUNCTIONS_BY_SELECTOR: Dict[bytes, SwapFunction] = {fn.selector: fn for fn in SWAP_FUNCTIONS}


class TransactionClassifier:
    """
    Turns pending transactions into TradeIntents.
    
    ``decode`` is pure and synchronous. ``classify``/``evaluate`` add the
    registry gates, which need chain data. No path raises: every rejection
    is reported as a RejectionReason.
    """
    
    def __init__(self,
                 registry: Any,
                 dexes: Optional[Dict[str, Dict[str, str]]] = None,
                 weth_address: str = WETH_ADDRESS,
                 min_victim_size: Optional[int] = None):
        self.registry = registry
        self.weth_address = to_checksum_address(weth_address)
        self.min_victim_size = settings.min_victim_size_wei if min_victim_size is None else min_victim_size
        
        dexes = dexes if dexes is not None else SUPPORTED_DEXES
        self.routers: Dict[str, Dict[str, str]] = {dex["router"].lower(): dex for dex in dexes.values()}
        
        self.stats = {
            "transactions_seen": 0,
            "swaps_decoded": 0,
            "intents_accepted": 0,
        }
        self.rejections: Counter = Counter()
    
    def is_known_router(self, address: Optional[str]) -> bool:
        return bool(address) and address.lower() in self.routers
    
    def dex_for_router(self, router: str) -> Optional[Dict[str, str]]:
        return self.routers.get(router.lower())
    
    def _normalize_path(self, path: Tuple[str, ...], fn: SwapFunction) -> Tuple[str, ...]:
        """Checksum every hop and make native legs explicit WETH hops."""
        normalized = [to_checksum_address(token) for token in path]
        if fn.native_in and (not normalized or normalized[0] != self.weth_address):
            normalized.insert(0, self.weth_address)
        if fn.native_out and normalized[-1] != self.weth_address:
            normalized.append(self.weth_address)
        return tuple(normalized)
    
    def _decode(self, tx: PendingTransaction) -> Tuple[Optional[TradeIntent], Optional[RejectionReason]]:
        if not self.is_known_router(tx.to):
            return None, RejectionReason.NOT_A_ROUTER
        
        fn = SWAP_FUNCTIONS_BY_SELECTOR.get(tx.data[:4]) if len(tx.data) >= 4 else None
        if fn is None:
            return None, RejectionReason.NOT_A_SWAP
        
        try:
            args = decode(list(fn.arg_types), tx.data[4:])
        except (DecodingError, ValueError, OverflowError) as e:
            logger.debug(f"Malformed {fn.variant.value} call in {tx.hash}: {e}")
            return None, RejectionReason.NOT_A_SWAP
        
        fields = fn.extract(args, tx)
        if len(fields["path"]) < 2:
            return None, RejectionReason.SHORT_PATH
        
        try:
            intent = TradeIntent(
                tx_hash=tx.hash,
                router=to_checksum_address(tx.to),
                sender=tx.from_address,
                variant=fn.variant,
                path=self._normalize_path(fields["path"], fn),
                amount_in=fields["amount_in"],
                amount_out_min=fields.get("amount_out_min"),
                amount_out=fields.get("amount_out"),
                deadline=fields["deadline"],
                gas_price=tx.gas_price,
                value=tx.value,
                supports_fee_on_transfer=fn.fee_on_transfer
            )
        except ValueError as e:
            logger.debug(f"Rejected {fn.variant.value} call in {tx.hash}: {e}")
            return None, RejectionReason.NOT_A_SWAP
        
        return intent, None
    
    def decode(self, tx: PendingTransaction) -> Optional[TradeIntent]:
        """Decode a router swap into a TradeIntent, or None if it is not one."""
        intent, _ = self._decode(tx)
        return intent
    
    async def evaluate(self, tx: PendingTransaction) -> ClassificationResult:
        """Decode and gate a transaction, reporting why it was rejected."""
        self.stats["transactions_seen"] += 1
        
        try:
            result = await self._evaluate(tx)
        except Exception as e:
            logger.error(f"Unexpected error classifying {tx.hash}: {e}")
            result = ClassificationResult(rejection=RejectionReason.CLASSIFICATION_ERROR)
        
        if result.accepted:
            self.stats["intents_accepted"] += 1
        else:
            self.rejections[result.rejection.value] += 1
        return result
    
    async def _evaluate(self, tx: PendingTransaction) -> ClassificationResult:
        intent, reason = self._decode(tx)
        if intent is None:
            return ClassificationResult(rejection=reason)
        self.stats["swaps_decoded"] += 1
        
        for token in (intent.token_in, intent.token_out):
            if await self.registry.is_blacklisted(token):
                logger.debug(f"{tx.hash}: {token} is blacklisted")
                return ClassificationResult(intent=intent, rejection=RejectionReason.BLACKLISTED_TOKEN)
        
        liquidity = await self.registry.pool_liquidity(intent.token_in, intent.token_out)
        if not liquidity.is_liquid:
            return ClassificationResult(intent=intent, rejection=RejectionReason.ILLIQUID_POOL, liquidity=liquidity)
        if liquidity.is_too_deep:
            return ClassificationResult(intent=intent, rejection=RejectionReason.POOL_TOO_DEEP, liquidity=liquidity)
        
        victim_value = await self.registry.value_in_reference_asset(intent.token_in, intent.amount_in)
        if victim_value < self.min_victim_size:
            return ClassificationResult(intent=intent, rejection=RejectionReason.VICTIM_TOO_SMALL, liquidity=liquidity)
        
        logger.info(
            f"Sandwichable {intent.variant.value} in {tx.hash}: "
            f"{intent.amount_in} of {intent.token_in} -> {intent.token_out}"
        )
        return ClassificationResult(intent=intent, liquidity=liquidity)
    
    async def classify(self, tx: PendingTransaction) -> Optional[TradeIntent]:
        """TradeIntent for a sandwichable swap, None for anything else."""
        result = await self.evaluate(tx)
        return result.intent if result.accepted else None
    
    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, "rejections": dict(self.rejections)}
