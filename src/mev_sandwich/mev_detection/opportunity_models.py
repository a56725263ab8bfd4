"""
Sandwich Opportunity Data Models.

Defines the trade intent extracted from a pending swap, the opportunity that
tracks it through the coordinator's state machine, and the execution attempt
produced when it is dispatched.
"""
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from eth_utils import to_bytes, to_checksum_address, to_hex
from pydantic import BaseModel, Field, model_validator

from ..protocols.market_optimizer import SandwichParameters
from ..protocols.token_registry import LiquidityReport, PoolSnapshot


class SwapVariant(str, Enum):
    """Router swap functions the classifier understands."""
    EXACT_TOKENS_FOR_TOKENS = "swapExactTokensForTokens"
    TOKENS_FOR_EXACT_TOKENS = "swapTokensForExactTokens"
    EXACT_ETH_FOR_TOKENS = "swapExactETHForTokens"
    TOKENS_FOR_EXACT_ETH = "swapTokensForExactETH"
    EXACT_TOKENS_FOR_ETH = "swapExactTokensForETH"
    ETH_FOR_EXACT_TOKENS = "swapETHForExactTokens"


class OpportunityStatus(str, Enum):
    """Status of a sandwich opportunity lifecycle."""
    DETECTED = "detected"           # Decoded from a pending swap
    VALIDATED = "validated"         # Passed blacklist, liquidity and size gates
    SIZED = "sized"                 # Optimizer produced parameters
    ADMITTED = "admitted"           # Held in the in-flight map
    DISPATCHED = "dispatched"       # Submitted to the chain
    CONFIRMED = "confirmed"         # Sandwich mined successfully
    REVERTED = "reverted"           # Sandwich reverted or was rejected
    TIMED_OUT = "timed_out"         # No receipt before the timeout
    SUPERSEDED = "superseded"       # Discarded before dispatch


TERMINAL_STATUSES = frozenset({
    OpportunityStatus.CONFIRMED,
    OpportunityStatus.REVERTED,
    OpportunityStatus.TIMED_OUT,
    OpportunityStatus.SUPERSEDED,
})

ALLOWED_TRANSITIONS: Dict[OpportunityStatus, frozenset] = {
    OpportunityStatus.DETECTED: frozenset({OpportunityStatus.VALIDATED, OpportunityStatus.SUPERSEDED}),
    OpportunityStatus.VALIDATED: frozenset({OpportunityStatus.SIZED, OpportunityStatus.SUPERSEDED}),
    OpportunityStatus.SIZED: frozenset({OpportunityStatus.ADMITTED, OpportunityStatus.SUPERSEDED}),
    OpportunityStatus.ADMITTED: frozenset({OpportunityStatus.DISPATCHED, OpportunityStatus.SUPERSEDED}),
    OpportunityStatus.DISPATCHED: frozenset({
        OpportunityStatus.CONFIRMED,
        OpportunityStatus.REVERTED,
        OpportunityStatus.TIMED_OUT,
    }),
}


class RejectionReason(str, Enum):
    """Why a transaction or opportunity did not lead to a dispatch."""
    NOT_A_ROUTER = "not_a_router"
    NOT_A_SWAP = "not_a_swap"
    SHORT_PATH = "short_path"
    BLACKLISTED_TOKEN = "blacklisted_token"
    ILLIQUID_POOL = "illiquid_pool"
    POOL_TOO_DEEP = "pool_too_deep"
    VICTIM_TOO_SMALL = "victim_too_small"
    POOL_UNAVAILABLE = "pool_unavailable"
    UNPROFITABLE = "unprofitable"
    LOW_CONFIDENCE = "low_confidence"
    GAS_PRICE_UNEXECUTABLE = "gas_price_unexecutable"
    DEADLINE_PASSED = "deadline_passed"
    EXPIRED = "expired"
    DUPLICATE = "duplicate"
    CAPACITY = "capacity"
    DEGRADED = "degraded"
    PAUSED = "paused"
    NONCE_UNAVAILABLE = "nonce_unavailable"
    SIMULATION_FAILED = "simulation_failed"
    CLASSIFICATION_ERROR = "classification_error"


class AttemptStatus(str, Enum):
    """Resolution state of an execution attempt."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    TIMED_OUT = "timed_out"


class MEVSandwichError(Exception):
    """Base exception for the sandwich pipeline."""
    pass


class InvalidStateTransition(MEVSandwichError):
    """An opportunity was moved along an edge the state machine does not have."""
    
    def __init__(self, opportunity_id: str, current: OpportunityStatus, requested: OpportunityStatus):
        self.opportunity_id = opportunity_id
        self.current = current
        self.requested = requested
        super().__init__(f"{opportunity_id}: cannot move from {current.value} to {requested.value}")


def _hex_str(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return to_hex(value)
    return str(value)


@dataclass(frozen=True)
class PendingTransaction:
    """The parts of a pending transaction the classifier looks at."""
    hash: str
    to: Optional[str]
    from_address: str
    value: int
    gas_price: int
    data: bytes
    gas_limit: int = 0
    nonce: int = 0
    
    @classmethod
    def from_web3(cls, tx: Mapping[str, Any]) -> "PendingTransaction":
        """Build from a web3 transaction dict (HexBytes or hex strings accepted)."""
        raw_input = tx.get("input", tx.get("data", b""))
        if isinstance(raw_input, str):
            data = to_bytes(hexstr=raw_input) if raw_input not in ("", "0x") else b""
        else:
            data = bytes(raw_input or b"")
        
        gas_price = tx.get("gasPrice")
        if gas_price is None:
            gas_price = tx.get("maxFeePerGas", 0)
        
        to = tx.get("to")
        return cls(
            hash=_hex_str(tx.get("hash", "")),
            to=to_checksum_address(to) if to else None,
            from_address=to_checksum_address(tx["from"]) if tx.get("from") else "",
            value=int(tx.get("value", 0)),
            gas_price=int(gas_price),
            data=data,
            gas_limit=int(tx.get("gas", 0)),
            nonce=int(tx.get("nonce", 0))
        )


class TradeIntent(BaseModel):
    """Canonical description of a victim's swap."""
    
    model_config = {"frozen": True}
    
    tx_hash: str = Field(..., description="Hash of the victim transaction")
    router: str = Field(..., description="Router the victim is calling")
    sender: str = Field(..., description="Originating account")
    variant: SwapVariant = Field(..., description="Decoded swap function")
    path: Tuple[str, ...] = Field(..., min_length=2, description="Token path, native legs as WETH")
    amount_in: int = Field(..., ge=0, description="Declared input (maximum input for exact-output swaps)")
    amount_out_min: Optional[int] = Field(None, ge=0, description="Minimum output for exact-input swaps")
    amount_out: Optional[int] = Field(None, ge=0, description="Exact output for exact-output swaps")
    deadline: int = Field(..., description="Unix timestamp deadline")
    gas_price: int = Field(..., ge=0, description="Victim's gas price bid")
    value: int = Field(default=0, ge=0, description="Native value attached to the call")
    supports_fee_on_transfer: bool = Field(default=False, description="Decoded from a fee-on-transfer variant")
    
    @model_validator(mode="after")
    def _one_output_constraint(self) -> "TradeIntent":
        if (self.amount_out_min is None) == (self.amount_out is None):
            raise ValueError("Exactly one of amount_out_min and amount_out must be set")
        return self
    
    @property
    def token_in(self) -> str:
        return self.path[0]
    
    @property
    def token_out(self) -> str:
        return self.path[-1]
    
    @property
    def is_exact_input(self) -> bool:
        return self.amount_out_min is not None
    
    def deadline_passed(self, now: Optional[float] = None) -> bool:
        return (time.time() if now is None else now) > self.deadline


@dataclass(frozen=True)
class ClassificationResult:
    """Outcome of classifying one pending transaction."""
    intent: Optional[TradeIntent] = None
    rejection: Optional[RejectionReason] = None
    liquidity: Optional[LiquidityReport] = None
    
    @property
    def accepted(self) -> bool:
        return self.intent is not None and self.rejection is None


class Opportunity(BaseModel):
    """A trade intent plus pool snapshot plus optimizer output, moving through the state machine."""
    
    opportunity_id: str = Field(..., description="Source transaction hash")
    intent: TradeIntent = Field(..., description="Victim trade")
    dex: str = Field(..., description="Exchange the victim trades on")
    pool: Optional[PoolSnapshot] = Field(None, description="Pool snapshot used for sizing")
    sizing: Optional[SandwichParameters] = Field(None, description="Latest optimizer output")
    status: OpportunityStatus = Field(default=OpportunityStatus.DETECTED, description="Current status")
    rejection_reason: Optional[RejectionReason] = Field(None, description="Why it was superseded")
    detected_at: float = Field(default_factory=time.monotonic, description="Monotonic detection time")
    history: List[Tuple[OpportunityStatus, float]] = Field(default_factory=list)
    
    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
    
    def age(self, now: Optional[float] = None) -> float:
        return (time.monotonic() if now is None else now) - self.detected_at
    
    def transition(self, new_status: OpportunityStatus) -> None:
        """Move to ``new_status``; raises InvalidStateTransition for edges the state machine lacks."""
        if new_status not in ALLOWED_TRANSITIONS.get(self.status, frozenset()):
            raise InvalidStateTransition(self.opportunity_id, self.status, new_status)
        self.history.append((self.status, time.monotonic()))
        self.status = new_status
    
    def supersede(self, reason: RejectionReason) -> None:
        self.transition(OpportunityStatus.SUPERSEDED)
        self.rejection_reason = reason
    
    def summary(self) -> Dict[str, Any]:
        """Plain dict for logs and the stats API."""
        return {
            "opportunity_id": self.opportunity_id,
            "status": self.status.value,
            "dex": self.dex,
            "path": list(self.intent.path),
            "victim_amount": self.intent.amount_in,
            "front_run_amount": self.sizing.front_run_amount if self.sizing else None,
            "net_profit": self.sizing.net_profit if self.sizing else None,
            "confidence": self.sizing.confidence if self.sizing else None,
            "rejection_reason": self.rejection_reason.value if self.rejection_reason else None,
        }


class ExecutionAttempt(BaseModel):
    """One dispatch of an opportunity to the chain."""
    
    opportunity_id: str = Field(..., description="Source transaction hash of the victim")
    nonce: int = Field(..., ge=0, description="Nonce assigned to the sandwich transaction")
    gas_price: int = Field(..., ge=0, description="Gas price bid")
    gas_limit: int = Field(..., ge=0, description="Gas limit")
    submitted_at: float = Field(default_factory=time.time, description="Unix submission time")
    status: AttemptStatus = Field(default=AttemptStatus.PENDING)
    tx_hash: Optional[str] = Field(None, description="Hash of the sandwich transaction")
    profit: Optional[int] = Field(None, description="Profit reported by the SandwichExecuted event")
    gas_cost: Optional[int] = Field(None, description="gasUsed * effectiveGasPrice")
    error: Optional[str] = Field(None, description="Submission or execution error")
    resolved_at: Optional[float] = Field(None)
    
    def resolve(self, status: AttemptStatus, **details: Any) -> None:
        if self.status != AttemptStatus.PENDING:
            raise MEVSandwichError(f"Attempt for {self.opportunity_id} already resolved as {self.status.value}")
        self.status = status
        self.resolved_at = time.time()
        for key, value in details.items():
            setattr(self, key, value)
    
    @property
    def net_profit(self) -> Optional[int]:
        if self.profit is None or self.gas_cost is None:
            return None
        return self.profit - self.gas_cost
