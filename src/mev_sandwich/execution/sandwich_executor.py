"""
Sandwich executor.

Encodes calls to the on-chain sandwich contract, signs them with the bot's
key, broadcasts them and turns receipts into execution outcomes.
"""
import logging
import time
from typing import Any, Dict, Optional, Tuple

from eth_abi import decode, encode
from eth_account import Account
from eth_utils import function_signature_to_4byte_selector, keccak, to_bytes, to_checksum_address, to_hex

from ..config.settings import WEI_PER_ETH, settings
from ..mev_detection.opportunity_models import (
    AttemptStatus,
    ExecutionAttempt,
    MEVSandwichError,
    Opportunity
)
from ..protocols.abi_manager import abi_manager
from ..protocols.abis import (
    EXECUTE_SANDWICH_SIGNATURE,
    EXECUTE_SANDWICH_WITH_ETH_SIGNATURE,
    SANDWICH_EXECUTED_EVENT_SIGNATURE
)
from ..protocols.market_optimizer import SandwichParameters

logger = logging.getLogger(__name__)

EXECUTE_SANDWICH_SELECTOR = function_signature_to_4byte_selector(EXECUTE_SANDWICH_SIGNATURE)
EXECUTE_SANDWICH_WITH_ETH_SELECTOR = function_signature_to_4byte_selector(EXECUTE_SANDWICH_WITH_ETH_SIGNATURE)
SANDWICH_EXECUTED_TOPIC = keccak(text=SANDWICH_EXECUTED_EVENT_SIGNATURE)

EXECUTE_SANDWICH_TYPES = [
    "address", "address", "uint256", "uint256", "uint256", "uint256", "uint256", "uint256"
]
EXECUTE_SANDWICH_WITH_ETH_TYPES = ["address", "uint256", "uint256", "uint256", "uint256", "uint256"]

VICTIM_MIN_PERCENT = 90
VICTIM_MAX_PERCENT = 110
LOW_BALANCE_WARNING = WEI_PER_ETH // 10


class SubmissionError(MEVSandwichError):
    """The node or the signer rejected a sandwich transaction."""
    pass


class ConfigurationError(MEVSandwichError):
    """Execution was requested without a signing key or contract address."""
    pass


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, str):
        return to_bytes(hexstr=value)
    return bytes(value)


class SandwichExecutor:
    """Signs and submits sandwich transactions for the coordinator."""
    
    def __init__(self,
                 provider: Any,
                 private_key: Optional[str] = None,
                 contract_address: Optional[str] = None,
                 chain_id: Optional[int] = None,
                 max_gas_price: Optional[int] = None,
                 deadline_seconds: Optional[int] = None,
                 clock=time.time):
        private_key = private_key or settings.private_key
        contract_address = contract_address or settings.contract_address
        if not private_key or not contract_address:
            raise ConfigurationError("PRIVATE_KEY and CONTRACT_ADDRESS are required for execution")
        
        self.provider = provider
        self.account = Account.from_key(private_key)
        self.contract_address = to_checksum_address(contract_address)
        self.chain_id = chain_id or settings.chain_id
        self.max_gas_price = max_gas_price or settings.max_gas_price_wei
        self.deadline_seconds = deadline_seconds or settings.tx_deadline_seconds
        self._clock = clock
        
        self.stats = {
            "submitted": 0,
            "submission_failures": 0,
            "confirmed": 0,
            "reverted": 0,
            "timed_out": 0,
            "speed_ups": 0,
            "total_profit": 0,
            "total_gas_cost": 0,
        }
    
    @property
    def address(self) -> str:
        return self.account.address
    
    # Calldata
    
    def build_calldata(self, opportunity: Opportunity, params: SandwichParameters) -> Tuple[bytes, int]:
        """Calldata and ETH value for the sandwich contract call."""
        intent = opportunity.intent
        token_a, token_b = intent.path[0], intent.path[1]
        victim_min = intent.amount_in * VICTIM_MIN_PERCENT // 100
        victim_max = intent.amount_in * VICTIM_MAX_PERCENT // 100
        deadline = int(self._clock()) + self.deadline_seconds
        
        if params.uses_flash_loan:
            args = [
                token_a, token_b, params.flash_loan_amount, params.front_run_amount,
                victim_min, victim_max, params.back_run_amount, deadline
            ]
            return EXECUTE_SANDWICH_SELECTOR + encode(EXECUTE_SANDWICH_TYPES, args), 0
        
        args = [token_b, params.front_run_amount, victim_min, victim_max, params.back_run_amount, deadline]
        calldata = EXECUTE_SANDWICH_WITH_ETH_SELECTOR + encode(EXECUTE_SANDWICH_WITH_ETH_TYPES, args)
        return calldata, params.front_run_amount
    
    def build_transaction(self, opportunity: Opportunity, params: SandwichParameters, nonce: int) -> Dict[str, Any]:
        calldata, value = self.build_calldata(opportunity, params)
        return {
            "to": self.contract_address,
            "data": to_hex(calldata),
            "value": value,
            "gas": params.gas_limit,
            "gasPrice": params.gas_price,
            "nonce": nonce,
            "chainId": self.chain_id,
        }
    
    async def _sign_and_send(self, tx: Dict[str, Any]) -> str:
        try:
            signed = self.account.sign_transaction(tx)
            return await self.provider.send_raw_transaction(signed.raw_transaction)
        except Exception as e:
            self.stats["submission_failures"] += 1
            raise SubmissionError(f"Sandwich submission failed (nonce {tx['nonce']}): {e}") from e
    
    # Submission
    
    async def submit(self, opportunity: Opportunity, params: SandwichParameters, nonce: int) -> str:
        """Sign and broadcast the sandwich; returns its hash or raises SubmissionError."""
        try:
            tx = self.build_transaction(opportunity, params, nonce)
        except Exception as e:
            self.stats["submission_failures"] += 1
            raise SubmissionError(f"Could not encode sandwich (nonce {nonce}): {e}") from e
        tx_hash = await self._sign_and_send(tx)
        self.stats["submitted"] += 1
        
        mode = "flash loan" if params.uses_flash_loan else "direct ETH"
        logger.info(
            f"🚀 Sandwich {tx_hash} submitted for victim {opportunity.opportunity_id} "
            f"({mode}, nonce {nonce}, gas {params.gas_price})"
        )
        return tx_hash
    
    async def simulate(self, opportunity: Opportunity, params: SandwichParameters) -> Tuple[bool, int]:
        """Dry-run the sandwich through the contract's simulateSandwich view."""
        intent = opportunity.intent
        profitable, estimated_profit = await self.provider.call_function(
            self.contract_address,
            abi_manager.get_sandwich_abi(),
            "simulateSandwich",
            intent.path[0],
            intent.path[1],
            params.flash_loan_amount,
            params.front_run_amount,
            intent.amount_in,
            params.back_run_amount
        )
        return bool(profitable), int(estimated_profit)
    
    # Outcomes
    
    @staticmethod
    def extract_profit(receipt: Dict[str, Any]) -> int:
        """Profit reported by the SandwichExecuted event, 0 if the log is missing."""
        for log in receipt.get("logs", []):
            topics = log.get("topics") or []
            if not topics or _as_bytes(topics[0]) != SANDWICH_EXECUTED_TOPIC:
                continue
            _front_run, _back_run, profit = decode(["uint256", "uint256", "uint256"], _as_bytes(log["data"]))
            return profit
        return 0
    
    async def wait_for_outcome(self, attempt: ExecutionAttempt, timeout: Optional[float] = None) -> ExecutionAttempt:
        """Wait for the attempt's receipt and resolve it."""
        timeout = timeout if timeout is not None else settings.tx_receipt_timeout_seconds
        try:
            receipt = await self.provider.wait_for_transaction_receipt(attempt.tx_hash, timeout)
        except Exception as e:
            logger.error(f"Error waiting for receipt of {attempt.tx_hash}: {e}")
            receipt = None
        
        if receipt is None:
            self.stats["timed_out"] += 1
            logger.warning(f"⏰ Sandwich {attempt.tx_hash} not mined after {timeout}s")
            attempt.resolve(AttemptStatus.TIMED_OUT, error="Transaction timeout")
            return attempt
        
        gas_cost = receipt.get("gasUsed", 0) * receipt.get("effectiveGasPrice", attempt.gas_price)
        self.stats["total_gas_cost"] += gas_cost
        
        if receipt.get("status") == 1:
            profit = self.extract_profit(receipt)
            self.stats["confirmed"] += 1
            self.stats["total_profit"] += profit
            logger.info(
                f"✅ Sandwich {attempt.tx_hash} confirmed in block {receipt.get('blockNumber')}: "
                f"profit {profit}, gas cost {gas_cost}"
            )
            attempt.resolve(AttemptStatus.CONFIRMED, profit=profit, gas_cost=gas_cost)
        else:
            self.stats["reverted"] += 1
            logger.warning(f"❌ Sandwich {attempt.tx_hash} reverted")
            attempt.resolve(AttemptStatus.REVERTED, gas_cost=gas_cost, error="Transaction reverted")
        return attempt
    
    # Operator actions
    
    async def speed_up_transaction(self, tx_hash: str, multiplier: float = 1.5) -> Dict[str, Any]:
        """Replace a pending sandwich with the same nonce at a bumped, capped gas price."""
        tx = await self.provider.get_transaction(tx_hash)
        if tx is None:
            raise SubmissionError(f"Transaction {tx_hash} not found")
        if tx.get("blockNumber") is not None:
            raise SubmissionError(f"Transaction {tx_hash} already confirmed")
        
        old_gas_price = tx["gasPrice"]
        new_gas_price = min(old_gas_price * int(multiplier * 100) // 100, self.max_gas_price)
        if new_gas_price <= old_gas_price:
            raise SubmissionError(f"Gas price for {tx_hash} is already at the cap")
        
        replacement = {
            "to": to_checksum_address(tx["to"]),
            "data": to_hex(_as_bytes(tx.get("input", tx.get("data", b"")))),
            "value": tx.get("value", 0),
            "gas": tx["gas"],
            "gasPrice": new_gas_price,
            "nonce": tx["nonce"],
            "chainId": self.chain_id,
        }
        new_hash = await self._sign_and_send(replacement)
        self.stats["speed_ups"] += 1
        logger.info(f"⚡ Replaced {tx_hash} with {new_hash} at gas price {new_gas_price}")
        return {"original_tx_hash": tx_hash, "new_tx_hash": new_hash, "gas_price": new_gas_price}
    
    async def verify_contract_state(self) -> Dict[str, Any]:
        """Read the contract's guard rails and the owner's balance."""
        abi = abi_manager.get_sandwich_abi()
        state = {
            "min_profit_threshold": await self.provider.call_function(self.contract_address, abi, "minProfitThreshold"),
            "max_gas_price": await self.provider.call_function(self.contract_address, abi, "maxGasPrice"),
            "emergency_stop": await self.provider.call_function(self.contract_address, abi, "emergencyStop"),
            "owner_balance": await self.provider.get_balance(self.address),
        }
        
        if state["emergency_stop"]:
            logger.warning("⚠️ Sandwich contract emergency stop is active")
        if state["owner_balance"] is not None and state["owner_balance"] < LOW_BALANCE_WARNING:
            logger.warning(f"⚠️ Owner balance is low: {state['owner_balance']} wei")
        return state
    
    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, "address": self.address, "contract": self.contract_address}
