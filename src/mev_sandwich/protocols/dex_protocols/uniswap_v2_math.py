"""
Uniswap V2 Math Implementation.

Implements the constant product formula (x * y = k) used by Uniswap V2 and its
forks with the same integer truncation the pair contracts apply, plus the
three-hop front-run / victim / back-run simulation built on top of it.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Tuple
import logging

logger = logging.getLogger(__name__)

FEE_PRECISION = 10_000


@dataclass(frozen=True)
class SandwichSimulation:
    """Result of simulating front-run, victim and back-run against one pool."""
    front_run_in: int
    front_run_out: int
    victim_in: int
    victim_out: int
    back_run_out: int
    
    # (reserve_in, reserve_out) after each of the three hops
    reserves_after: Tuple[Tuple[int, int], ...]
    
    @property
    def gross_profit(self) -> int:
        """Back-run output minus front-run input, may be negative."""
        return self.back_run_out - self.front_run_in


class UniswapV2Math:
    """
    Integer-exact Uniswap V2 constant product math.
    
    Every amount that can end up in a submitted transaction is computed with
    floor division, matching the on-chain ``getAmountOut``.
    """
    
    def __init__(self, fee_rate: Decimal = Decimal('0.003')):
        """
        Initialize Uniswap V2 math.
        
        Args:
            fee_rate: Trading fee rate (default 0.3%)
        """
        if not Decimal('0') <= fee_rate < Decimal('1'):
            raise ValueError(f"Fee rate must be in [0, 1), got {fee_rate}")
        
        self.fee_rate = fee_rate
        # 9970 for the standard 0.3% fee, i.e. 997/1000
        self.fee_multiplier = int((Decimal('1') - fee_rate) * FEE_PRECISION)
    
    @property
    def gamma(self) -> float:
        """Fee-adjusted multiplier applied to every input (0.997 for 0.3%)."""
        return self.fee_multiplier / FEE_PRECISION
    
    def get_amount_out(self, amount_in: int, reserve_in: int, reserve_out: int) -> int:
        """
        Calculate output amount for a given input.
        
        Formula: amountOut = (amountIn * γ * reserveOut) / (reserveIn + amountIn * γ),
        evaluated in integers and floored.
        """
        if amount_in <= 0 or reserve_in <= 0 or reserve_out <= 0:
            return 0
        
        amount_in_with_fee = amount_in * self.fee_multiplier
        numerator = amount_in_with_fee * reserve_out
        denominator = reserve_in * FEE_PRECISION + amount_in_with_fee
        
        amount_out = numerator // denominator
        
        # Can't drain the pool
        if amount_out >= reserve_out:
            logger.warning(f"Trade would drain pool: {amount_out} >= {reserve_out}")
            return 0
        
        return amount_out
    
    def simulate_sandwich(self,
                          front_run_amount: int,
                          victim_amount: int,
                          reserve_in: int,
                          reserve_out: int) -> SandwichSimulation:
        """
        Simulate the attacker buy, the victim buy and the attacker sell.
        
        After each hop the input reserve grows by the full input amount and the
        output reserve shrinks by the amount paid out, as in the pair contract.
        """
        x, y = reserve_in, reserve_out
        reserves: List[Tuple[int, int]] = []
        
        # Hop 1: attacker buys token_out with token_in
        front_run_out = self.get_amount_out(front_run_amount, x, y)
        if front_run_out > 0:
            x, y = x + front_run_amount, y - front_run_out
        else:
            front_run_amount = 0
        reserves.append((x, y))
        
        # Hop 2: victim's trade against the shifted pool
        victim_out = self.get_amount_out(victim_amount, x, y)
        if victim_out > 0:
            x, y = x + victim_amount, y - victim_out
        reserves.append((x, y))
        
        # Hop 3: attacker sells everything bought in hop 1
        back_run_out = self.get_amount_out(front_run_out, y, x)
        if back_run_out > 0:
            x, y = x - back_run_out, y + front_run_out
        reserves.append((x, y))
        
        return SandwichSimulation(
            front_run_in=front_run_amount,
            front_run_out=front_run_out,
            victim_in=victim_amount,
            victim_out=victim_out,
            back_run_out=back_run_out,
            reserves_after=tuple(reserves)
        )
    
    def sandwich_profit(self, front_run_amount: float, victim_amount: float,
                        reserve_in: float, reserve_out: float) -> float:
        """
        Real-valued attacker profit P(a) for the three-hop sequence.
        
        Used only for optimum seeking; never for submitted amounts.
        """
        g = self.gamma
        a, v, x, y = front_run_amount, victim_amount, reserve_in, reserve_out
        
        bought = y * a * g / (x + a * g)
        x1, y1 = x + a, y - bought
        
        victim_out = y1 * v * g / (x1 + v * g)
        x2, y2 = x1 + v, y1 - victim_out
        
        sold = x2 * bought * g / (y2 + bought * g)
        return sold - a
