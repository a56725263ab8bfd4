"""
Mempool Monitor for sandwich opportunity detection.

Subscribes to pending transaction hashes over a websocket, fetches each
transaction through the RPC provider and hands it to the registered handlers.
"""
import asyncio
import json
import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from ..config.settings import settings
from .opportunity_models import PendingTransaction

logger = logging.getLogger(__name__)

SUBSCRIBE_REQUEST_ID = 1
MAX_PROCESSED_HASHES = 10_000
PRUNE_BATCH = 1_000


class MempoolMonitor:
    """
    Pending transaction feed backed by ``eth_subscribe``.
    
    Reconnects with exponential backoff and gives up after
    ``max_reconnect_attempts`` consecutive failures.
    """
    
    def __init__(self,
                 provider: Any,
                 ws_endpoint: Optional[str] = None,
                 max_gas_price: Optional[int] = None,
                 max_concurrency: int = 64,
                 max_reconnect_attempts: int = 10,
                 reconnect_delay: float = 1.0):
        self.provider = provider
        self.ws_endpoint = ws_endpoint or settings.ws_endpoint
        self.max_gas_price = max_gas_price or settings.max_gas_price_wei
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_delay = reconnect_delay
        
        self.is_running = False
        self.reconnect_attempts = 0
        self.subscription_id: Optional[str] = None
        self.processed_hashes: "OrderedDict[str, None]" = OrderedDict()
        
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._session: Optional[aiohttp.ClientSession] = None
        self._task: Optional[asyncio.Task] = None
        self._tx_tasks: set = set()
        
        # Event handlers
        self.transaction_handlers: List[Callable] = []
        
        self.stats = {
            "hashes_received": 0,
            "transactions_processed": 0,
            "transactions_skipped_gas": 0,
            "fetch_failures": 0,
            "reconnects": 0,
            "uptime_start": time.time()
        }
    
    @property
    def is_connected(self) -> bool:
        return self.subscription_id is not None
    
    def add_transaction_handler(self, handler: Callable):
        """Add handler called with each fetched PendingTransaction."""
        self.transaction_handlers.append(handler)
        logger.debug("Added pending transaction handler")
    
    async def start(self):
        """Start the subscription loop in the background."""
        if self.is_running:
            logger.warning("Mempool monitor already running")
            return
        if not self.ws_endpoint:
            raise ValueError("WS_ENDPOINT is not configured")
        
        logger.info("Starting mempool monitor")
        self.is_running = True
        self._session = aiohttp.ClientSession()
        self._task = asyncio.create_task(self._run())
    
    async def stop(self):
        """Stop the subscription and cancel in-flight fetches."""
        logger.info("Stopping mempool monitor")
        self.is_running = False
        
        pending = list(self._tx_tasks)
        if self._task is not None:
            pending.append(self._task)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._tx_tasks.clear()
        self._task = None
        
        if self._session is not None:
            await self._session.close()
            self._session = None
        self.subscription_id = None
    
    def reconnect_backoff(self, attempt: int) -> float:
        """Delay before reconnect ``attempt`` (1-based)."""
        return self.reconnect_delay * 1.5 ** (attempt - 1)
    
    async def _run(self):
        while self.is_running:
            try:
                await self._subscribe()
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.error(f"WebSocket error: {e}")
            except Exception as e:
                logger.error(f"Mempool subscription error: {e}")
            
            self.subscription_id = None
            if not self.is_running:
                break
            
            self.reconnect_attempts += 1
            if self.reconnect_attempts > self.max_reconnect_attempts:
                logger.error(
                    f"Failed to reconnect after {self.max_reconnect_attempts} attempts. Stopping mempool monitor."
                )
                self.is_running = False
                break
            
            delay = self.reconnect_backoff(self.reconnect_attempts)
            self.stats["reconnects"] += 1
            logger.info(
                f"Reconnecting in {delay:.1f}s "
                f"(attempt {self.reconnect_attempts}/{self.max_reconnect_attempts})"
            )
            await asyncio.sleep(delay)
    
    async def _subscribe(self):
        async with self._session.ws_connect(self.ws_endpoint, heartbeat=30) as ws:
            logger.info("WebSocket connection established")
            await ws.send_str(json.dumps({
                "jsonrpc": "2.0",
                "id": SUBSCRIBE_REQUEST_ID,
                "method": "eth_subscribe",
                "params": ["newPendingTransactions"]
            }))
            
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self.handle_message(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    raise aiohttp.ClientError(f"WebSocket error frame: {ws.exception()}")
                elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                    break
        
        logger.warning("WebSocket connection closed")
    
    def handle_message(self, raw: str) -> Optional[str]:
        """Parse one websocket frame; schedules a fetch and returns the hash for new pending transactions."""
        try:
            message = json.loads(raw)
        except ValueError as e:
            logger.error(f"Error processing WebSocket message: {e}")
            return None
        
        if message.get("id") == SUBSCRIBE_REQUEST_ID and message.get("result"):
            self.subscription_id = message["result"]
            self.reconnect_attempts = 0
            logger.info(f"Subscribed to pending transactions: {self.subscription_id}")
            return None
        
        if message.get("method") != "eth_subscription":
            return None
        tx_hash = message.get("params", {}).get("result")
        if not isinstance(tx_hash, str) or not self._mark_processed(tx_hash):
            return None
        
        self.stats["hashes_received"] += 1
        task = asyncio.create_task(self._bounded_process(tx_hash))
        self._tx_tasks.add(task)
        task.add_done_callback(self._tx_tasks.discard)
        return tx_hash
    
    def _mark_processed(self, tx_hash: str) -> bool:
        if tx_hash in self.processed_hashes:
            return False
        self.processed_hashes[tx_hash] = None
        if len(self.processed_hashes) > MAX_PROCESSED_HASHES:
            for _ in range(PRUNE_BATCH):
                self.processed_hashes.popitem(last=False)
        return True
    
    async def _bounded_process(self, tx_hash: str):
        async with self._semaphore:
            await self.process_transaction_hash(tx_hash)
    
    async def process_transaction_hash(self, tx_hash: str) -> Optional[PendingTransaction]:
        """Fetch a pending transaction and pass it to the handlers."""
        try:
            tx_data = await self.provider.get_transaction(tx_hash)
        except Exception as e:
            self.stats["fetch_failures"] += 1
            logger.debug(f"Could not fetch pending transaction {tx_hash}: {e}")
            return None
        
        if not tx_data or not tx_data.get("to"):
            return None
        
        try:
            tx = PendingTransaction.from_web3(tx_data)
        except (KeyError, TypeError, ValueError) as e:
            logger.debug(f"Unusable pending transaction {tx_hash}: {e}")
            return None
        
        if tx.gas_price > self.max_gas_price:
            self.stats["transactions_skipped_gas"] += 1
            return None
        
        self.stats["transactions_processed"] += 1
        for handler in self.transaction_handlers:
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler(tx)
                else:
                    handler(tx)
            except Exception as e:
                logger.error(f"Error in pending transaction handler for {tx_hash}: {e}")
        return tx
    
    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "connected": self.is_connected,
            "reconnect_attempts": self.reconnect_attempts,
            "tracked_hashes": len(self.processed_hashes),
            "in_progress": len(self._tx_tasks)
        }
