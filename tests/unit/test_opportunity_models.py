"""
Unit tests for sandwich opportunity models.

Tests the trade intent, the opportunity state machine and execution attempts.
"""
import pytest
from hexbytes import HexBytes
from pydantic import ValidationError

from mev_sandwich.mev_detection.opportunity_models import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    AttemptStatus,
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
from mev_sandwich.protocols.contracts import WETH_ADDRESS

WEI = 10 ** 18
DAI = "0x6B175474E89094C44Da98b954EedeAC495271d0F"
ROUTER = "0x7a250d5630B4cF539739dF2C5dAcb4c659F2488D"
VICTIM = "0x2222222222222222222222222222222222222222"


def make_intent(**overrides) -> TradeIntent:
    fields = dict(
        tx_hash="0x" + "ab" * 32,
        router=ROUTER,
        sender=VICTIM,
        variant=SwapVariant.EXACT_ETH_FOR_TOKENS,
        path=(WETH_ADDRESS, DAI),
        amount_in=10 * WEI,
        amount_out_min=1,
        deadline=2_000_000_000,
        gas_price=40 * 10 ** 9,
        value=10 * WEI
    )
    fields.update(overrides)
    return TradeIntent(**fields)


class TestTradeIntent:
    """Test TradeIntent validation."""
    
    def test_endpoints(self):
        intent = make_intent(path=(WETH_ADDRESS, DAI, VICTIM))
        assert intent.token_in == WETH_ADDRESS
        assert intent.token_out == VICTIM
        assert intent.is_exact_input
    
    def test_exactly_one_output_constraint(self):
        with pytest.raises(ValidationError):
            make_intent(amount_out=5)
        with pytest.raises(ValidationError):
            make_intent(amount_out_min=None)
        
        exact_out = make_intent(amount_out_min=None, amount_out=5)
        assert not exact_out.is_exact_input
    
    def test_path_needs_two_tokens(self):
        with pytest.raises(ValidationError):
            make_intent(path=(WETH_ADDRESS,))
    
    def test_negative_amounts_rejected(self):
        with pytest.raises(ValidationError):
            make_intent(amount_in=-1)
    
    def test_intent_is_immutable(self):
        intent = make_intent()
        with pytest.raises(ValidationError):
            intent.amount_in = 1
    
    def test_deadline(self):
        intent = make_intent(deadline=1000)
        assert not intent.deadline_passed(now=1000)
        assert intent.deadline_passed(now=1001)


class TestOpportunityStateMachine:
    """Test opportunity lifecycle transitions."""
    
    def make_opportunity(self) -> Opportunity:
        return Opportunity(opportunity_id="0x" + "ab" * 32, intent=make_intent(), dex="Uniswap V2", detected_at=100.0)
    
    def test_happy_path(self):
        opportunity = self.make_opportunity()
        for status in (OpportunityStatus.VALIDATED, OpportunityStatus.SIZED, OpportunityStatus.ADMITTED,
                       OpportunityStatus.DISPATCHED, OpportunityStatus.CONFIRMED):
            opportunity.transition(status)
        
        assert opportunity.status == OpportunityStatus.CONFIRMED
        assert opportunity.is_terminal
        assert [s for s, _ in opportunity.history] == [
            OpportunityStatus.DETECTED, OpportunityStatus.VALIDATED, OpportunityStatus.SIZED,
            OpportunityStatus.ADMITTED, OpportunityStatus.DISPATCHED
        ]
    
    def test_cannot_skip_states(self):
        opportunity = self.make_opportunity()
        with pytest.raises(InvalidStateTransition) as exc_info:
            opportunity.transition(OpportunityStatus.ADMITTED)
        
        assert exc_info.value.current == OpportunityStatus.DETECTED
        assert exc_info.value.requested == OpportunityStatus.ADMITTED
        assert isinstance(exc_info.value, MEVSandwichError)
        assert opportunity.status == OpportunityStatus.DETECTED
    
    def test_dispatched_cannot_be_superseded(self):
        opportunity = self.make_opportunity()
        for status in (OpportunityStatus.VALIDATED, OpportunityStatus.SIZED,
                       OpportunityStatus.ADMITTED, OpportunityStatus.DISPATCHED):
            opportunity.transition(status)
        
        with pytest.raises(InvalidStateTransition):
            opportunity.supersede(RejectionReason.EXPIRED)
    
    def test_supersede_records_reason(self):
        opportunity = self.make_opportunity()
        opportunity.transition(OpportunityStatus.VALIDATED)
        opportunity.supersede(RejectionReason.POOL_UNAVAILABLE)
        
        assert opportunity.status == OpportunityStatus.SUPERSEDED
        assert opportunity.rejection_reason == RejectionReason.POOL_UNAVAILABLE
        assert opportunity.summary()["rejection_reason"] == "pool_unavailable"
    
    def test_terminal_states_have_no_exits(self):
        for status in TERMINAL_STATUSES:
            assert not ALLOWED_TRANSITIONS.get(status)
    
    def test_age(self):
        opportunity = self.make_opportunity()
        assert opportunity.age(now=111.0) == pytest.approx(11.0)


class TestExecutionAttempt:
    """Test execution attempt resolution."""
    
    def test_resolve_once(self):
        attempt = ExecutionAttempt(opportunity_id="0x01", nonce=7, gas_price=1, gas_limit=720_000)
        attempt.resolve(AttemptStatus.CONFIRMED, profit=5 * WEI, gas_cost=WEI)
        
        assert attempt.status == AttemptStatus.CONFIRMED
        assert attempt.net_profit == 4 * WEI
        assert attempt.resolved_at is not None
        
        with pytest.raises(MEVSandwichError):
            attempt.resolve(AttemptStatus.REVERTED)
    
    def test_net_profit_unknown_until_resolved(self):
        attempt = ExecutionAttempt(opportunity_id="0x01", nonce=0, gas_price=1, gas_limit=1)
        assert attempt.net_profit is None
    
    def test_negative_nonce_rejected(self):
        with pytest.raises(ValidationError):
            ExecutionAttempt(opportunity_id="0x01", nonce=-1, gas_price=1, gas_limit=1)


class TestPendingTransaction:
    """Test conversion from web3 transaction dicts."""
    
    def test_from_web3_hexbytes(self):
        tx = PendingTransaction.from_web3({
            "hash": HexBytes("0x" + "cd" * 32),
            "to": ROUTER.lower(),
            "from": VICTIM,
            "value": WEI,
            "gasPrice": 42,
            "input": HexBytes("0x38ed1739"),
            "gas": 200_000,
            "nonce": 3
        })
        
        assert tx.hash == "0x" + "cd" * 32
        assert tx.to == ROUTER
        assert tx.data == bytes.fromhex("38ed1739")
        assert tx.gas_price == 42
        assert tx.gas_limit == 200_000
    
    def test_from_web3_eip1559_and_hex_strings(self):
        tx = PendingTransaction.from_web3({
            "hash": "0x01",
            "to": None,
            "from": VICTIM,
            "value": 0,
            "maxFeePerGas": 99,
            "input": "0x"
        })
        
        assert tx.to is None
        assert tx.gas_price == 99
        assert tx.data == b""
