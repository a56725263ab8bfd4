"""
Unit tests for the sandwich Market Optimizer.

Covers front-run sizing in both solver modes, the clamp, gas bidding and the
net profit computation.
"""
from decimal import Decimal
from unittest.mock import AsyncMock, Mock

import pytest

from mev_sandwich.protocols.contracts import WETH_ADDRESS
from mev_sandwich.protocols.dex_protocols.uniswap_v2_math import UniswapV2Math
from mev_sandwich.protocols.market_optimizer import (
    BOUNDARY_STEP_BACK,
    FALLBACK_GAS_PRICE,
    MAX_SEARCH_RESERVE_MULTIPLE,
    FrontRunSolver,
    MarketOptimizer
)
from mev_sandwich.protocols.token_registry import PoolSnapshot

WEI = 10 ** 18
GWEI = 10 ** 9
DAI = "0x6B175474E89094C44Da98b954EedeAC495271d0F"


def make_optimizer(**overrides) -> MarketOptimizer:
    params = dict(
        solver=FrontRunSolver.EXACT,
        min_profit_threshold=WEI // 200,
        max_gas_price=100 * GWEI,
        estimated_gas_units=600_000,
        flash_loan_fee_bips=9,
        flash_loan_buffer_percent=120,
        use_direct_eth=False
    )
    params.update(overrides)
    return MarketOptimizer(**params)


def weth_dai_pool(weth_reserve: int, dai_reserve: int) -> PoolSnapshot:
    # DAI sorts before WETH
    return PoolSnapshot(
        address="0xA478c2975Ab1Ea89e8196811F51A7B7Ade33eB11",
        token0=DAI,
        token1=WETH_ADDRESS,
        reserve0=dai_reserve,
        reserve1=weth_reserve,
        fetched_at=0.0
    )


class TestFrontRunSizing:
    """Test optimal front-run computation."""
    
    def test_small_victim_clamps_to_zero(self):
        """Victim of 1% of the pool: closed form is deeply negative and the sandwich is skipped."""
        optimizer = make_optimizer(solver=FrontRunSolver.CLOSED_FORM)
        
        sizing = optimizer.optimize(1000 * WEI, 1000 * WEI, 10 * WEI)
        
        assert sizing.unconstrained_front_run < -900 * WEI
        assert sizing.front_run_amount == 0
        assert sizing.gross_profit == 0
        assert sizing.confidence == 1.0
    
    @pytest.mark.asyncio
    async def test_small_victim_is_unprofitable(self):
        """A zero front-run is never profitable, whatever the costs."""
        optimizer = make_optimizer(solver=FrontRunSolver.CLOSED_FORM, min_profit_threshold=0)
        pool = weth_dai_pool(1000 * WEI, 1000 * WEI)
        
        params = await optimizer.calculate_sandwich_parameters(pool, WETH_ADDRESS, 10 * WEI, 40 * GWEI, 30 * GWEI)
        
        assert params.front_run_amount == 0
        assert params.gross_profit == 0
        assert not params.profitable
    
    def test_half_pool_victim_clamps_to_thirty_percent(self):
        """Victim of half the pool: optimum exceeds 0.3 * v and is clamped to it."""
        optimizer = make_optimizer()
        
        sizing = optimizer.optimize(100 * WEI, 100 * WEI, 50 * WEI)
        
        assert sizing.unconstrained_front_run > 15 * WEI
        assert sizing.front_run_amount == 15 * WEI
        assert sizing.gross_profit > 0
        assert sizing.confidence == pytest.approx(0.7)
    
    def test_closed_form_value(self):
        """Closed form matches (sqrt(x * v * γ) - x) / γ."""
        optimizer = make_optimizer(solver=FrontRunSolver.CLOSED_FORM)
        value = optimizer.closed_form_front_run(1000.0, 10.0)
        assert value == pytest.approx((9970 ** 0.5 - 1000) / 0.997)
    
    @pytest.mark.parametrize("x,y,v,fee", [
        (100.0, 100.0, 50.0, "0.003"),
        (1000.0, 2000.0, 300.0, "0.003"),
        (50.0, 80.0, 40.0, "0.0025"),
        (500.0, 500.0, 400.0, "0.001"),
        (1e6, 3e6, 2e5, "0.003"),
    ])
    def test_exact_solver_finds_local_maximum(self, x, y, v, fee):
        """Interior optimum beats its neighbours; a rising curve stops at the bracket cap."""
        v2_math = UniswapV2Math(fee_rate=Decimal(fee))
        optimizer = make_optimizer(math_engine=v2_math)
        
        search = optimizer.search_front_run(x, y, v)
        a_star = search.amount
        
        profit = lambda a: v2_math.sandwich_profit(a, v, x, y)
        assert a_star > 0
        if search.at_bound:
            assert a_star == x * MAX_SEARCH_RESERVE_MULTIPLE
            assert profit(a_star * BOUNDARY_STEP_BACK) <= profit(a_star)
        else:
            eps = a_star * 1e-3
            assert profit(a_star - eps) < profit(a_star)
            assert profit(a_star + eps) < profit(a_star)
    
    def test_exact_solver_reports_cap_when_profit_keeps_rising(self):
        """Low fee with a victim near the pool size: no interior maximum exists."""
        v2_math = UniswapV2Math(fee_rate=Decimal('0.001'))
        optimizer = make_optimizer(math_engine=v2_math)
        
        search = optimizer.search_front_run(500.0, 500.0, 400.0)
        
        assert search.at_bound
        assert search.amount == 500.0 * MAX_SEARCH_RESERVE_MULTIPLE
        assert v2_math.sandwich_profit(search.amount, 400.0, 500.0, 500.0) >= \
            v2_math.sandwich_profit(search.amount / 2, 400.0, 500.0, 500.0)
    
    def test_capped_search_still_clamps_to_thirty_percent(self):
        """A capped search result is finite and the clamp still bounds the front-run."""
        optimizer = make_optimizer(math_engine=UniswapV2Math(fee_rate=Decimal('0.001')))
        
        sizing = optimizer.optimize(500 * WEI, 500 * WEI, 400 * WEI)
        
        assert sizing.at_search_bound
        assert sizing.unconstrained_front_run == pytest.approx(500 * WEI * MAX_SEARCH_RESERVE_MULTIPLE)
        assert sizing.front_run_amount == 120 * WEI
        assert sizing.gross_profit > 0
    
    def test_exact_solver_returns_zero_when_profit_never_rises(self):
        """High fees on a tiny victim: every positive front-run loses money."""
        optimizer = make_optimizer(math_engine=UniswapV2Math(fee_rate=Decimal('0.1')))
        assert optimizer.exact_front_run(1000.0, 1000.0, 1.0) == 0.0
    
    @pytest.mark.parametrize("front_run,victim", [
        (-1e30, 10),
        (0.0, 10),
        (7.9, 100),
        (1e40, 100),
        (float("nan"), 100),
        (29.99, 100),
        (10.0, 0),
    ])
    def test_clamp_bounds(self, front_run, victim):
        """Clamped front-run always lies in [0, 0.3 * v]."""
        clamped = MarketOptimizer.clamp_front_run(front_run, victim)
        assert isinstance(clamped, int)
        assert 0 <= clamped <= victim * 3 // 10
    
    def test_clamp_floors(self):
        assert MarketOptimizer.clamp_front_run(7.9, 100) == 7
        assert MarketOptimizer.clamp_front_run(1e40, 100) == 30
    
    def test_confidence(self):
        assert MarketOptimizer.confidence(0, 100) == 1.0
        assert MarketOptimizer.confidence(15, 100) == pytest.approx(0.7)
        assert MarketOptimizer.confidence(60, 100) == 0.0
        assert MarketOptimizer.confidence(10, 0) == 0.0


class TestGasPricing:
    """Test gas bidding."""
    
    def setup_method(self):
        self.optimizer = make_optimizer()
    
    def test_victim_bump_dominates(self):
        decision = self.optimizer.select_gas_price(80 * GWEI, 50 * GWEI)
        assert decision.gas_price == 92 * GWEI
        assert decision.executable
    
    def test_network_bump_dominates(self):
        decision = self.optimizer.select_gas_price(10 * GWEI, 50 * GWEI)
        assert decision.gas_price == 55 * GWEI
        assert decision.executable
    
    def test_cap_below_victim_is_unexecutable(self):
        """Capped at the maximum, we can no longer outbid the victim."""
        decision = self.optimizer.select_gas_price(100 * GWEI, 50 * GWEI)
        assert decision.gas_price == 100 * GWEI
        assert not decision.executable
    
    def test_gas_limit_has_buffer(self):
        assert self.optimizer.gas_limit() == 720_000
    
    @pytest.mark.asyncio
    async def test_network_conditions_fallback(self):
        """Gas price falls back to 50 gwei when the RPC fails."""
        provider = Mock()
        provider.get_gas_price = AsyncMock(return_value=None)
        provider.get_block_number = AsyncMock(return_value=123)
        
        conditions = await self.optimizer.network_conditions(provider)
        
        assert conditions.gas_price == FALLBACK_GAS_PRICE == 50 * GWEI
        assert conditions.block_number == 123
    
    @pytest.mark.asyncio
    async def test_network_conditions_survive_rpc_errors(self):
        """Raising RPC calls degrade to the fallback gas price and an unknown block."""
        provider = Mock()
        provider.get_gas_price = AsyncMock(side_effect=ConnectionError("node down"))
        provider.get_block_number = AsyncMock(side_effect=TimeoutError())
        
        conditions = await self.optimizer.network_conditions(provider)
        
        assert conditions.gas_price == FALLBACK_GAS_PRICE
        assert conditions.block_number is None


class TestSandwichParameters:
    """Test full parameter calculation."""
    
    @pytest.mark.asyncio
    async def test_flash_loan_costs_are_netted(self):
        optimizer = make_optimizer()
        pool = weth_dai_pool(100 * WEI, 100 * WEI)
        
        params = await optimizer.calculate_sandwich_parameters(pool, WETH_ADDRESS, 50 * WEI, 40 * GWEI, 30 * GWEI)
        
        assert params.front_run_amount == 15 * WEI
        assert params.flash_loan_amount == 18 * WEI
        assert params.flash_loan_fee == 18 * WEI * 9 // 10_000
        assert params.uses_flash_loan
        assert params.gas_cost == 600_000 * 30 * GWEI
        assert params.gas_limit == 720_000
        assert params.gas_price == 46 * GWEI
        assert params.net_profit == params.gross_profit - params.flash_loan_fee - params.gas_cost
        assert params.back_run_amount > 0
        assert params.profitable
        assert params.executable
    
    @pytest.mark.asyncio
    async def test_direct_eth_takes_no_loan(self):
        optimizer = make_optimizer(use_direct_eth=True)
        pool = weth_dai_pool(100 * WEI, 100 * WEI)
        
        params = await optimizer.calculate_sandwich_parameters(pool, WETH_ADDRESS, 50 * WEI, 40 * GWEI, 30 * GWEI)
        
        assert params.flash_loan_amount == 0
        assert params.flash_loan_fee == 0
        assert not params.uses_flash_loan
        assert params.net_profit == params.gross_profit - params.gas_cost
    
    @pytest.mark.asyncio
    async def test_direct_eth_still_borrows_for_token_input(self):
        optimizer = make_optimizer(use_direct_eth=True)
        assert optimizer.uses_flash_loan(DAI)
        assert not optimizer.uses_flash_loan(WETH_ADDRESS)
    
    @pytest.mark.asyncio
    async def test_token_profit_is_converted_before_gas(self):
        """Profit in DAI is valued in WETH before gas is subtracted."""
        optimizer = make_optimizer()
        pool = weth_dai_pool(100 * WEI, 100 * WEI)
        to_reference = AsyncMock(return_value=WEI)
        
        params = await optimizer.calculate_sandwich_parameters(
            pool, DAI, 50 * WEI, 40 * GWEI, 30 * GWEI, to_reference=to_reference
        )
        
        to_reference.assert_awaited_once()
        token, amount = to_reference.await_args.args
        assert token == DAI
        assert amount == params.gross_profit - params.flash_loan_fee
        assert params.net_profit == WEI - params.gas_cost
    
    @pytest.mark.asyncio
    async def test_gas_eats_the_profit(self):
        """A thin sandwich is rejected once gas is paid."""
        optimizer = make_optimizer(estimated_gas_units=10 ** 12)
        pool = weth_dai_pool(100 * WEI, 100 * WEI)
        
        params = await optimizer.calculate_sandwich_parameters(pool, WETH_ADDRESS, 50 * WEI, 40 * GWEI, 30 * GWEI)
        
        assert params.gross_profit > 0
        assert params.net_profit < 0
        assert not params.profitable
