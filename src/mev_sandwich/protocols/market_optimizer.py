"""
Sandwich Market Optimizer.

Sizes the front-run of a sandwich against a constant product pool, simulates
the three trades with exact integer math, and turns the result into
executable parameters: flash loan, gas price, gas limit and net profit.
"""
import logging
import math
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from ..config.settings import WEI_PER_GWEI, settings
from .contracts import WETH_ADDRESS
from .dex_protocols.uniswap_v2_math import SandwichSimulation, UniswapV2Math
from .token_registry import PoolSnapshot

logger = logging.getLogger(__name__)

BIPS_DIVISOR = 10_000
MAX_FRONT_RUN_SHARE = Decimal('0.3')  # of the victim amount
GAS_LIMIT_BUFFER_NUM, GAS_LIMIT_BUFFER_DEN = 12, 10
VICTIM_GAS_BUMP_PERCENT = 115
NETWORK_GAS_BUMP_PERCENT = 110
FALLBACK_GAS_PRICE = 50 * WEI_PER_GWEI

GOLDEN_RATIO = (math.sqrt(5) - 1) / 2
MAX_SEARCH_ITERATIONS = 200
MAX_SEARCH_RESERVE_MULTIPLE = 100  # bracket cap, in multiples of reserve_in
BOUNDARY_STEP_BACK = 0.999

ReferenceConverter = Callable[[str, int], Awaitable[int]]


class FrontRunSolver(str, Enum):
    """How the unconstrained optimal front-run is found."""
    EXACT = "exact"               # numeric maximum of the simulated profit curve
    CLOSED_FORM = "closed_form"   # (sqrt(x * v * γ) - x) / γ


@dataclass(frozen=True)
class FrontRunSearch:
    """
    Result of the numeric optimum search.
    
    ``at_bound`` means profit was still rising at the bracket cap, so the
    curve has no interior maximum below it and ``amount`` is the cap itself.
    """
    amount: float
    at_bound: bool = False


@dataclass(frozen=True)
class OptimalSizing:
    """Front-run size and the simulated outcome at that size."""
    unconstrained_front_run: float
    front_run_amount: int
    confidence: float
    simulation: SandwichSimulation
    at_search_bound: bool = False
    
    @property
    def gross_profit(self) -> int:
        return self.simulation.gross_profit


@dataclass(frozen=True)
class GasPriceDecision:
    """Gas price to bid and whether it can actually front-run the victim."""
    gas_price: int
    executable: bool


@dataclass(frozen=True)
class SandwichParameters:
    """Everything needed to decide on and submit a sandwich."""
    front_run_amount: int
    back_run_amount: int
    expected_victim_output: int
    expected_back_run_output: int
    gross_profit: int
    flash_loan_amount: int
    flash_loan_fee: int
    gas_price: int
    gas_limit: int
    gas_cost: int
    net_profit: int
    confidence: float
    profitable: bool
    executable: bool
    unconstrained_front_run: float = 0.0
    
    @property
    def uses_flash_loan(self) -> bool:
        return self.flash_loan_amount > 0


@dataclass(frozen=True)
class NetworkConditions:
    gas_price: int
    block_number: Optional[int]


class MarketOptimizer:
    """
    Computes the profit-maximizing front-run for a victim swap.
    
    The optimum search runs in floating point; every amount that leaves this
    class is an integer derived by flooring, and the profit figures come from
    the integer simulation.
    """
    
    def __init__(self,
                 math_engine: Optional[UniswapV2Math] = None,
                 solver: Optional[FrontRunSolver] = None,
                 min_profit_threshold: Optional[int] = None,
                 max_gas_price: Optional[int] = None,
                 estimated_gas_units: Optional[int] = None,
                 flash_loan_fee_bips: Optional[int] = None,
                 flash_loan_buffer_percent: Optional[int] = None,
                 use_direct_eth: Optional[bool] = None,
                 weth_address: str = WETH_ADDRESS):
        self.math = math_engine or UniswapV2Math()
        self.solver = FrontRunSolver(solver or settings.front_run_solver)
        self.min_profit_threshold = (
            settings.min_profit_threshold_wei if min_profit_threshold is None else min_profit_threshold
        )
        self.max_gas_price = settings.max_gas_price_wei if max_gas_price is None else max_gas_price
        self.estimated_gas_units = estimated_gas_units or settings.estimated_gas_units
        self.flash_loan_fee_bips = (
            settings.flash_loan_fee_bips if flash_loan_fee_bips is None else flash_loan_fee_bips
        )
        self.flash_loan_buffer_percent = flash_loan_buffer_percent or settings.flash_loan_buffer_percent
        self.use_direct_eth = settings.use_direct_eth if use_direct_eth is None else use_direct_eth
        self.weth_address = weth_address
    
    # Sizing
    
    def closed_form_front_run(self, reserve_in: float, victim_amount: float) -> float:
        """(sqrt(x * v * γ) - x) / γ; negative when the victim is small relative to the pool."""
        g = self.math.gamma
        return (math.sqrt(reserve_in * victim_amount * g) - reserve_in) / g
    
    def search_front_run(self, reserve_in: float, reserve_out: float, victim_amount: float) -> FrontRunSearch:
        """
        Maximize the real-valued profit curve P(a) over 0 <= a <= cap.
        
        The cap is ``MAX_SEARCH_RESERVE_MULTIPLE * reserve_in``. The bracket
        grows by doubling until profit stops rising, then golden-section
        search narrows it. A victim that is large relative to a low-fee pool
        gives a curve that climbs toward an asymptote with no interior
        maximum; the search then stops at the cap and reports ``at_bound``.
        """
        def profit(a: float) -> float:
            return self.math.sandwich_profit(a, victim_amount, reserve_in, reserve_out)
        
        nudge = reserve_in * 1e-9
        if profit(nudge) <= profit(0.0):
            return FrontRunSearch(0.0)
        
        cap = reserve_in * MAX_SEARCH_RESERVE_MULTIPLE
        hi = min(max(victim_amount, nudge * 2), cap)
        while hi < cap and profit(min(2 * hi, cap)) > profit(hi):
            hi = min(2 * hi, cap)
        
        if hi >= cap:
            if profit(cap) >= profit(cap * BOUNDARY_STEP_BACK):
                logger.debug(f"Sandwich profit still rising at search cap {cap:.6g}")
                return FrontRunSearch(cap, at_bound=True)
        else:
            hi = min(2 * hi, cap)
        
        lo = 0.0
        c = hi - GOLDEN_RATIO * (hi - lo)
        d = lo + GOLDEN_RATIO * (hi - lo)
        pc, pd = profit(c), profit(d)
        for _ in range(MAX_SEARCH_ITERATIONS):
            if hi - lo <= 1e-12 * max(1.0, hi):
                break
            if pc > pd:
                hi, d, pd = d, c, pc
                c = hi - GOLDEN_RATIO * (hi - lo)
                pc = profit(c)
            else:
                lo, c, pc = c, d, pd
                d = lo + GOLDEN_RATIO * (hi - lo)
                pd = profit(d)
        
        return FrontRunSearch((lo + hi) / 2)
    
    def exact_front_run(self, reserve_in: float, reserve_out: float, victim_amount: float) -> float:
        return self.search_front_run(reserve_in, reserve_out, victim_amount).amount
    
    def unconstrained_front_run(self, reserve_in: int, reserve_out: int, victim_amount: int) -> FrontRunSearch:
        if self.solver == FrontRunSolver.CLOSED_FORM:
            return FrontRunSearch(self.closed_form_front_run(float(reserve_in), float(victim_amount)))
        return self.search_front_run(float(reserve_in), float(reserve_out), float(victim_amount))
    
    @staticmethod
    def clamp_front_run(front_run: float, victim_amount: int) -> int:
        """Floor into integers and clamp to [0, 0.3 * victim]."""
        upper = int(Decimal(victim_amount) * MAX_FRONT_RUN_SHARE)
        if front_run <= 0 or math.isnan(front_run):
            return 0
        return min(math.floor(front_run), upper)
    
    @staticmethod
    def confidence(front_run: int, reserve_in: int) -> float:
        """1 - 2 * (a / x), clamped to [0, 1]."""
        if reserve_in <= 0:
            return 0.0
        return max(0.0, min(1.0, 1 - 2 * (front_run / reserve_in)))
    
    def optimize(self, reserve_in: int, reserve_out: int, victim_amount: int) -> OptimalSizing:
        """Optimal clamped front-run for a victim selling ``victim_amount`` into (x, y)."""
        if reserve_in <= 0 or reserve_out <= 0 or victim_amount <= 0:
            search = FrontRunSearch(0.0)
        else:
            search = self.unconstrained_front_run(reserve_in, reserve_out, victim_amount)
        
        front_run = self.clamp_front_run(search.amount, victim_amount)
        simulation = self.math.simulate_sandwich(front_run, victim_amount, reserve_in, reserve_out)
        
        return OptimalSizing(
            unconstrained_front_run=search.amount,
            front_run_amount=simulation.front_run_in,
            confidence=self.confidence(simulation.front_run_in, reserve_in),
            simulation=simulation,
            at_search_bound=search.at_bound
        )
    
    # Costs
    
    def select_gas_price(self, victim_gas_price: int, network_gas_price: int) -> GasPriceDecision:
        """
        Bid max(victim * 1.15, network * 1.10), capped at the configured maximum.
        
        The bid is only executable if it still outbids the victim after the cap.
        """
        candidate = max(
            victim_gas_price * VICTIM_GAS_BUMP_PERCENT // 100,
            network_gas_price * NETWORK_GAS_BUMP_PERCENT // 100
        )
        gas_price = min(candidate, self.max_gas_price)
        return GasPriceDecision(gas_price=gas_price, executable=gas_price > victim_gas_price)
    
    def gas_limit(self) -> int:
        return self.estimated_gas_units * GAS_LIMIT_BUFFER_NUM // GAS_LIMIT_BUFFER_DEN
    
    def uses_flash_loan(self, token_in: str) -> bool:
        return not (self.use_direct_eth and token_in.lower() == self.weth_address.lower())
    
    async def calculate_sandwich_parameters(self,
                                            pool: PoolSnapshot,
                                            token_in: str,
                                            victim_amount: int,
                                            victim_gas_price: int,
                                            network_gas_price: int,
                                            to_reference: Optional[ReferenceConverter] = None) -> SandwichParameters:
        """
        Size the sandwich on ``pool`` and net out flash loan fee and gas.
        
        Profit in a non-WETH input token is converted with ``to_reference``
        before gas is subtracted.
        """
        reserve_in, reserve_out = pool.reserves_for(token_in)
        sizing = self.optimize(reserve_in, reserve_out, victim_amount)
        simulation = sizing.simulation
        
        if self.uses_flash_loan(token_in):
            flash_loan_amount = sizing.front_run_amount * self.flash_loan_buffer_percent // 100
        else:
            flash_loan_amount = 0
        flash_loan_fee = flash_loan_amount * self.flash_loan_fee_bips // BIPS_DIVISOR
        
        net_in_token = simulation.gross_profit - flash_loan_fee
        if to_reference is not None and token_in.lower() != self.weth_address.lower() and net_in_token != 0:
            magnitude = await to_reference(token_in, abs(net_in_token))
            net_in_reference = magnitude if net_in_token > 0 else -magnitude
        else:
            net_in_reference = net_in_token
        
        gas = self.select_gas_price(victim_gas_price, network_gas_price)
        gas_cost = self.estimated_gas_units * network_gas_price
        net_profit = net_in_reference - gas_cost
        
        params = SandwichParameters(
            front_run_amount=sizing.front_run_amount,
            back_run_amount=simulation.front_run_out,
            expected_victim_output=simulation.victim_out,
            expected_back_run_output=simulation.back_run_out,
            gross_profit=simulation.gross_profit,
            flash_loan_amount=flash_loan_amount,
            flash_loan_fee=flash_loan_fee,
            gas_price=gas.gas_price,
            gas_limit=self.gas_limit(),
            gas_cost=gas_cost,
            net_profit=net_profit,
            confidence=sizing.confidence,
            profitable=sizing.front_run_amount > 0 and net_profit > self.min_profit_threshold,
            executable=gas.executable,
            unconstrained_front_run=sizing.unconstrained_front_run
        )
        
        logger.debug(
            f"Sized sandwich on {pool.address}: front-run {params.front_run_amount}, "
            f"gross {params.gross_profit}, net {params.net_profit}, confidence {params.confidence:.3f}"
        )
        return params
    
    async def network_conditions(self, provider: Any) -> NetworkConditions:
        """Current gas price and block number; gas falls back to 50 gwei on RPC failure."""
        try:
            gas_price = await provider.get_gas_price()
        except Exception as e:
            logger.warning(f"Gas price fetch failed: {e}")
            gas_price = None
        
        try:
            block_number = await provider.get_block_number()
        except Exception as e:
            logger.warning(f"Block number fetch failed: {e}")
            block_number = None
        
        if gas_price is None:
            logger.warning("Gas price unavailable, assuming 50 gwei")
            gas_price = FALLBACK_GAS_PRICE
        return NetworkConditions(gas_price=gas_price, block_number=block_number)
