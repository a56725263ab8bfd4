"""
Sandwich Opportunity Coordinator.

Ingests pending transactions, turns the sandwichable ones into sized
opportunities held in a bounded in-flight map, and runs the processing cycle
that re-validates, dispatches and tracks them.
"""
import asyncio
import logging
import time
from collections import Counter, OrderedDict
from typing import Any, Callable, Dict, List, Optional, Set

from ..config.settings import settings
from ..execution.nonce_manager import NonceUnavailableError
from ..execution.sandwich_executor import SubmissionError
from ..protocols.market_optimizer import SandwichParameters
from ..protocols.token_registry import PoolSnapshot
from .opportunity_models import (
    AttemptStatus,
    ExecutionAttempt,
    Opportunity,
    OpportunityStatus,
    PendingTransaction,
    RejectionReason
)

logger = logging.getLogger(__name__)

SEEN_HASHES_LIMIT = 10_000

ATTEMPT_TO_OPPORTUNITY_STATUS = {
    AttemptStatus.CONFIRMED: OpportunityStatus.CONFIRMED,
    AttemptStatus.REVERTED: OpportunityStatus.REVERTED,
    AttemptStatus.TIMED_OUT: OpportunityStatus.TIMED_OUT,
}


class InFlightOpportunities:
    """
    Bounded map of admitted opportunities keyed by source transaction hash.
    
    Every mutation is synchronous, so no await can interleave with an admit,
    claim or purge. ``claim`` is the single removal point for dispatch.
    """
    
    def __init__(self, capacity: int, timeout: float, clock: Callable[[], float] = time.monotonic):
        self.capacity = capacity
        self.timeout = timeout
        self._clock = clock
        self._entries: Dict[str, Opportunity] = {}
    
    def admit(self, opportunity: Opportunity) -> bool:
        """Add an opportunity; False for a duplicate key or a full map."""
        if opportunity.opportunity_id in self._entries:
            return False
        if len(self._entries) >= self.capacity:
            return False
        self._entries[opportunity.opportunity_id] = opportunity
        return True
    
    def claim(self, opportunity_id: str) -> Optional[Opportunity]:
        return self._entries.pop(opportunity_id, None)
    
    def purge_expired(self, now: Optional[float] = None) -> List[Opportunity]:
        now = self._clock() if now is None else now
        expired = [opp for opp in self._entries.values() if opp.age(now) > self.timeout]
        for opp in expired:
            del self._entries[opp.opportunity_id]
        return expired
    
    def snapshot(self) -> List[Opportunity]:
        return list(self._entries.values())
    
    def __contains__(self, opportunity_id: str) -> bool:
        return opportunity_id in self._entries
    
    def __len__(self) -> int:
        return len(self._entries)


class OpportunityCoordinator:
    """
    Orchestrates classifier, registry, optimizer and executor.
    
    Ingestion (``handle_pending_transaction``) and dispatch
    (``process_cycle``) only share the in-flight map, so either side can run
    without the other. Without an executor the coordinator still detects and
    sizes opportunities but never dispatches them.
    """
    
    def __init__(self,
                 provider: Any,
                 classifier: Any,
                 registry: Any,
                 optimizer: Any,
                 nonce_manager: Any = None,
                 executor: Any = None,
                 min_confidence: Optional[float] = None,
                 max_gas_price: Optional[int] = None,
                 opportunity_timeout: Optional[float] = None,
                 processing_interval_ms: Optional[int] = None,
                 max_in_flight: Optional[int] = None,
                 degraded_after_failures: Optional[int] = None,
                 receipt_timeout: Optional[float] = None,
                 stats_report_interval: Optional[float] = None,
                 simulate_before_dispatch: Optional[bool] = None,
                 clock: Callable[[], float] = time.monotonic,
                 wall_clock: Callable[[], float] = time.time):
        self.provider = provider
        self.classifier = classifier
        self.registry = registry
        self.optimizer = optimizer
        self.nonce_manager = nonce_manager
        self.executor = executor
        
        self.min_confidence = settings.min_confidence if min_confidence is None else min_confidence
        self.max_gas_price = settings.max_gas_price_wei if max_gas_price is None else max_gas_price
        self.processing_interval = (processing_interval_ms or settings.processing_interval_ms) / 1000
        self.degraded_after_failures = degraded_after_failures or settings.degraded_after_failures
        self.receipt_timeout = receipt_timeout or settings.tx_receipt_timeout_seconds
        self.stats_report_interval = stats_report_interval or settings.stats_report_interval_seconds
        self.simulate_before_dispatch = (
            settings.simulate_before_dispatch if simulate_before_dispatch is None else simulate_before_dispatch
        )
        self._clock = clock
        self._wall_clock = wall_clock
        
        self.in_flight = InFlightOpportunities(
            capacity=max_in_flight or settings.max_in_flight_opportunities,
            timeout=opportunity_timeout or settings.opportunity_timeout_seconds,
            clock=clock
        )
        self._seen_hashes: "OrderedDict[str, None]" = OrderedDict()
        
        self.last_gas_price: Optional[int] = None
        self.consecutive_gas_failures = 0
        self.is_degraded = False
        self.is_paused = False
        
        # Event handlers
        self.opportunity_handlers: List[Callable] = []
        self.outcome_handlers: List[Callable] = []
        
        self.stats = {
            "transactions_received": 0,
            "duplicates_ignored": 0,
            "opportunities_detected": 0,
            "opportunities_admitted": 0,
            "opportunities_superseded": 0,
            "opportunities_dispatched": 0,
            "confirmed": 0,
            "reverted": 0,
            "timed_out": 0,
            "cycles_run": 0,
            "cycles_skipped_gas": 0,
            "uptime_start": time.time()
        }
        self.rejections: Counter = Counter()
        
        self.is_running = False
        self.tasks: List[asyncio.Task] = []
        self.receipt_tasks: Set[asyncio.Task] = set()
    
    # Lifecycle
    
    async def start(self):
        """Start the processing and stats loops."""
        if self.is_running:
            logger.warning("Opportunity coordinator already running")
            return
        
        mode = "execution" if self.executor is not None else "monitor-only"
        logger.info(f"Starting opportunity coordinator ({mode} mode)")
        self.is_running = True
        self.tasks = [
            asyncio.create_task(self._processing_loop()),
            asyncio.create_task(self._report_statistics())
        ]
    
    async def stop(self):
        """Stop background loops and abandon outstanding receipt waits."""
        logger.info("Stopping opportunity coordinator")
        self.is_running = False
        
        pending = self.tasks + list(self.receipt_tasks)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self.tasks.clear()
        self.receipt_tasks.clear()
    
    def pause(self):
        self.is_paused = True
        logger.warning("⏸️ Opportunity admission paused")
    
    def resume(self):
        self.is_paused = False
        logger.info("▶️ Opportunity admission resumed")
    
    def add_opportunity_handler(self, handler: Callable):
        """Add handler called with each admitted opportunity."""
        self.opportunity_handlers.append(handler)
    
    def add_outcome_handler(self, handler: Callable):
        """Add handler called with (opportunity, attempt) once an attempt resolves."""
        self.outcome_handlers.append(handler)
    
    async def _trigger_handlers(self, handlers: List[Callable], *args):
        for handler in handlers:
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler(*args)
                else:
                    handler(*args)
            except Exception as e:
                logger.error(f"Handler error: {e}")
    
    # Ingestion
    
    def _remember(self, tx_hash: str) -> bool:
        """Record a source hash; False if it was already seen."""
        key = tx_hash.lower()
        if key in self._seen_hashes:
            self._seen_hashes.move_to_end(key)
            return False
        self._seen_hashes[key] = None
        if len(self._seen_hashes) > SEEN_HASHES_LIMIT:
            self._seen_hashes.popitem(last=False)
        return True
    
    def _reject(self, reason: RejectionReason):
        self.rejections[reason.value] += 1
    
    def _supersede(self, opportunity: Opportunity, reason: RejectionReason):
        opportunity.supersede(reason)
        self.stats["opportunities_superseded"] += 1
        self._reject(reason)
        logger.debug(f"Opportunity {opportunity.opportunity_id} superseded: {reason.value}")
    
    def _admission_rejection(self, params: SandwichParameters) -> Optional[RejectionReason]:
        if not params.profitable:
            return RejectionReason.UNPROFITABLE
        if params.confidence < self.min_confidence:
            return RejectionReason.LOW_CONFIDENCE
        if not params.executable:
            return RejectionReason.GAS_PRICE_UNEXECUTABLE
        return None
    
    async def _size(self, opportunity: Opportunity, pool: PoolSnapshot, network_gas_price: int) -> SandwichParameters:
        intent = opportunity.intent
        return await self.optimizer.calculate_sandwich_parameters(
            pool,
            intent.token_in,
            intent.amount_in,
            intent.gas_price,
            network_gas_price,
            to_reference=self.registry.value_in_reference_asset
        )
    
    async def handle_pending_transaction(self, tx: PendingTransaction) -> Optional[Opportunity]:
        """
        Classify, validate and size one pending transaction.
        
        Returns the resulting opportunity (admitted or superseded), or None
        when the transaction was a duplicate or never became an opportunity.
        """
        self.stats["transactions_received"] += 1
        
        if tx.hash in self.in_flight or not self._remember(tx.hash):
            self.stats["duplicates_ignored"] += 1
            return None
        if self.is_paused:
            self._reject(RejectionReason.PAUSED)
            return None
        if self.is_degraded:
            self._reject(RejectionReason.DEGRADED)
            return None
        
        result = await self.classifier.evaluate(tx)
        if not result.accepted:
            return None
        
        intent = result.intent
        dex = self.classifier.dex_for_router(intent.router)
        opportunity = Opportunity(
            opportunity_id=tx.hash,
            intent=intent,
            dex=dex["name"],
            detected_at=self._clock()
        )
        self.stats["opportunities_detected"] += 1
        opportunity.transition(OpportunityStatus.VALIDATED)
        
        try:
            return await self._size_and_admit(opportunity, dex)
        except Exception as e:
            logger.error(f"Error sizing opportunity {tx.hash}: {e}")
            if not opportunity.is_terminal and opportunity.status != OpportunityStatus.ADMITTED:
                self._supersede(opportunity, RejectionReason.POOL_UNAVAILABLE)
            return opportunity
    
    async def _size_and_admit(self, opportunity: Opportunity, dex: Dict[str, str]) -> Opportunity:
        intent = opportunity.intent
        if intent.deadline_passed(self._wall_clock()):
            self._supersede(opportunity, RejectionReason.DEADLINE_PASSED)
            return opportunity
        
        pool = await self.registry.get_pair_pool(dex, intent.path[0], intent.path[1])
        if pool is None:
            self._supersede(opportunity, RejectionReason.POOL_UNAVAILABLE)
            return opportunity
        opportunity.pool = pool
        
        network_gas_price = self.last_gas_price if self.last_gas_price is not None else intent.gas_price
        opportunity.sizing = await self._size(opportunity, pool, network_gas_price)
        opportunity.transition(OpportunityStatus.SIZED)
        
        reason = self._admission_rejection(opportunity.sizing)
        if reason is not None:
            self._supersede(opportunity, reason)
            return opportunity
        
        opportunity.transition(OpportunityStatus.ADMITTED)
        if not self.in_flight.admit(opportunity):
            self._supersede(opportunity, RejectionReason.CAPACITY)
            return opportunity
        
        self.stats["opportunities_admitted"] += 1
        sizing = opportunity.sizing
        logger.info(
            f"🎯 Admitted sandwich on {opportunity.dex} for {opportunity.opportunity_id}: "
            f"front-run {sizing.front_run_amount}, net profit {sizing.net_profit}, "
            f"confidence {sizing.confidence:.2f}"
        )
        await self._trigger_handlers(self.opportunity_handlers, opportunity)
        return opportunity
    
    # Processing cycle
    
    async def _processing_loop(self):
        logger.info("Starting opportunity processing loop")
        while self.is_running:
            try:
                await self.process_cycle()
                await asyncio.sleep(self.processing_interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Processing cycle error: {e}")
                await asyncio.sleep(1)
    
    async def _fetch_gas_price(self) -> Optional[int]:
        try:
            gas_price = await self.provider.get_gas_price()
        except Exception as e:
            logger.warning(f"Gas price fetch failed: {e}")
            gas_price = None
        
        if gas_price is None:
            self.consecutive_gas_failures += 1
            if not self.is_degraded and self.consecutive_gas_failures >= self.degraded_after_failures:
                self.is_degraded = True
                logger.error(
                    f"🚨 Entering degraded mode after {self.consecutive_gas_failures} gas price failures"
                )
            return None
        
        self.consecutive_gas_failures = 0
        if self.is_degraded:
            self.is_degraded = False
            logger.info("✅ Gas price feed recovered, leaving degraded mode")
        self.last_gas_price = gas_price
        return gas_price
    
    async def process_cycle(self):
        """One pass over the in-flight map: expire, price, then evaluate everything concurrently."""
        self.stats["cycles_run"] += 1
        
        for opportunity in self.in_flight.purge_expired():
            self._supersede(opportunity, RejectionReason.EXPIRED)
            logger.info(f"⏰ Opportunity {opportunity.opportunity_id} expired before dispatch")
        
        gas_price = await self._fetch_gas_price()
        if gas_price is None:
            return
        if gas_price > self.max_gas_price:
            self.stats["cycles_skipped_gas"] += 1
            logger.debug(f"Gas price {gas_price} above maximum, skipping cycle")
            return
        if self.executor is None:
            return
        
        opportunities = self.in_flight.snapshot()
        if not opportunities:
            return
        
        results = await asyncio.gather(
            *(self._process_opportunity(opp, gas_price) for opp in opportunities),
            return_exceptions=True
        )
        for opportunity, result in zip(opportunities, results):
            if isinstance(result, Exception):
                logger.error(f"Error processing opportunity {opportunity.opportunity_id}: {result}")
    
    def _drop(self, opportunity: Opportunity, reason: RejectionReason):
        if self.in_flight.claim(opportunity.opportunity_id) is not None:
            self._supersede(opportunity, reason)
    
    async def _process_opportunity(self, opportunity: Opportunity, gas_price: int):
        if opportunity.opportunity_id not in self.in_flight:
            return
        
        if opportunity.intent.deadline_passed(self._wall_clock()):
            self._drop(opportunity, RejectionReason.DEADLINE_PASSED)
            return
        
        pool = await self.registry.get_pool_snapshot(opportunity.pool.address, force_refresh=True)
        if pool is None:
            # Transient; retried next cycle until expiry
            logger.debug(f"Pool {opportunity.pool.address} unavailable for {opportunity.opportunity_id}")
            return
        
        params = await self._size(opportunity, pool, gas_price)
        opportunity.pool = pool
        opportunity.sizing = params
        
        reason = self._admission_rejection(params)
        if reason is not None:
            self._drop(opportunity, reason)
            return
        
        if self.simulate_before_dispatch:
            try:
                profitable, _ = await self.executor.simulate(opportunity, params)
            except Exception as e:
                logger.warning(f"Simulation failed for {opportunity.opportunity_id}: {e}")
                self._drop(opportunity, RejectionReason.SIMULATION_FAILED)
                return
            if not profitable:
                self._drop(opportunity, RejectionReason.UNPROFITABLE)
                return
        
        if self.in_flight.claim(opportunity.opportunity_id) is None:
            return
        await self._dispatch(opportunity, params)
    
    async def _dispatch(self, opportunity: Opportunity, params: SandwichParameters):
        try:
            nonce = await self.nonce_manager.next_nonce()
        except NonceUnavailableError as e:
            logger.error(f"Refusing to dispatch {opportunity.opportunity_id}: {e}")
            self._supersede(opportunity, RejectionReason.NONCE_UNAVAILABLE)
            return
        
        opportunity.transition(OpportunityStatus.DISPATCHED)
        self.stats["opportunities_dispatched"] += 1
        attempt = ExecutionAttempt(
            opportunity_id=opportunity.opportunity_id,
            nonce=nonce,
            gas_price=params.gas_price,
            gas_limit=params.gas_limit,
            submitted_at=self._wall_clock()
        )
        
        try:
            attempt.tx_hash = await self.executor.submit(opportunity, params, nonce)
        except Exception as e:
            if isinstance(e, SubmissionError):
                logger.error(f"❌ Submission failed for {opportunity.opportunity_id}: {e}")
            else:
                logger.error(f"❌ Unexpected error submitting {opportunity.opportunity_id}: {e}", exc_info=True)
            self.nonce_manager.invalidate()
            attempt.resolve(AttemptStatus.REVERTED, error=str(e))
            await self._finish(opportunity, attempt)
            return
        
        task = asyncio.create_task(self._track_attempt(opportunity, attempt))
        self.receipt_tasks.add(task)
        task.add_done_callback(self.receipt_tasks.discard)
    
    async def _track_attempt(self, opportunity: Opportunity, attempt: ExecutionAttempt):
        try:
            await self.executor.wait_for_outcome(attempt, self.receipt_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error tracking {attempt.tx_hash}: {e}")
            if attempt.status == AttemptStatus.PENDING:
                attempt.resolve(AttemptStatus.TIMED_OUT, error=str(e))
        await self._finish(opportunity, attempt)
    
    async def _finish(self, opportunity: Opportunity, attempt: ExecutionAttempt):
        if attempt.status == AttemptStatus.TIMED_OUT and self.nonce_manager is not None:
            # a dropped transaction leaves its nonce unused on chain
            self.nonce_manager.invalidate()
        status = ATTEMPT_TO_OPPORTUNITY_STATUS[attempt.status]
        opportunity.transition(status)
        self.stats[status.value] += 1
        await self._trigger_handlers(self.outcome_handlers, opportunity, attempt)
    
    # Statistics
    
    async def _report_statistics(self):
        while self.is_running:
            try:
                await asyncio.sleep(self.stats_report_interval)
                self.registry.prune_expired()
                stats = self.get_stats()
                logger.info(
                    f"📊 Coordinator: {stats['transactions_received']} txs, "
                    f"{stats['opportunities_admitted']} admitted, "
                    f"{stats['opportunities_dispatched']} dispatched, "
                    f"{stats['confirmed']} confirmed, {stats['in_flight']} in flight"
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Statistics report error: {e}")
    
    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "in_flight": len(self.in_flight),
            "pending_receipts": len(self.receipt_tasks),
            "is_degraded": self.is_degraded,
            "is_paused": self.is_paused,
            "last_gas_price": self.last_gas_price,
            "rejections": dict(self.rejections),
        }
