"""
Sandwich Opportunity Detection Module.

Decodes pending router swaps into trade intents and models the opportunity
and execution attempt lifecycle. The mempool feed and the coordinator live in
``mempool_monitor`` and ``opportunity_coordinator``.
"""
from .opportunity_models import (
    AttemptStatus,
    ClassificationResult,
    ExecutionAttempt,
    InvalidStateTransition,
    MEVSandwichError,
    Opportunity,
    OpportunityStatus,
    PendingTransaction,
    RejectionReason,
    SwapVariant,
    TradeIntent
)
from .transaction_classifier import (
    SWAP_FUNCTIONS,
    SwapFunction,
    TransactionClassifier
)

__all__ = [
    # Opportunity Models
    "AttemptStatus",
    "ClassificationResult",
    "ExecutionAttempt",
    "InvalidStateTransition",
    "MEVSandwichError",
    "Opportunity",
    "OpportunityStatus",
    "PendingTransaction",
    "RejectionReason",
    "SwapVariant",
    "TradeIntent",
    
    # Transaction Classifier
    "SWAP_FUNCTIONS",
    "SwapFunction",
    "TransactionClassifier"
]
