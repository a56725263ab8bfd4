"""
Nonce manager for the sandwich executor account.

Hands out strictly increasing nonces to concurrent dispatches and keeps the
local counter in step with the chain's pending transaction count.
"""
import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from ..mev_detection.opportunity_models import MEVSandwichError

logger = logging.getLogger(__name__)


class NonceUnavailableError(MEVSandwichError):
    """Raised when no nonce is known and the chain cannot be reached."""
    pass


class NonceManager:
    """
    Single source of nonces for one account.
    
    The lock only covers read-and-increment, so a slow RPC never blocks
    dispatch. Refreshes are single-flighted: concurrent callers await the
    same task. A refresh never moves the counter backwards unless the
    counter was invalidated after a failed submission, and an invalidated
    counter issues nothing until the chain has been read again.
    """
    
    def __init__(self,
                 provider: Any,
                 address: str,
                 refresh_interval: float = 30.0,
                 clock: Callable[[], float] = time.monotonic):
        self.provider = provider
        self.address = address
        self.refresh_interval = refresh_interval
        self._clock = clock
        
        self._lock = asyncio.Lock()
        self._next_nonce: Optional[int] = None
        self._invalidated = False
        self._last_refresh: Optional[float] = None
        self._refresh_task: Optional[asyncio.Task] = None
        
        self.stats = {
            "nonces_issued": 0,
            "refreshes": 0,
            "refresh_failures": 0,
            "invalidations": 0,
        }
    
    @property
    def current(self) -> Optional[int]:
        """Next nonce that would be handed out, if known."""
        return self._next_nonce
    
    def _refresh_due(self) -> bool:
        if self._next_nonce is None or self._invalidated or self._last_refresh is None:
            return True
        return self._clock() - self._last_refresh >= self.refresh_interval
    
    async def refresh(self) -> Optional[int]:
        """Pull the pending count from the chain, sharing one in-flight request."""
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.ensure_future(self._fetch_and_merge())
        return await asyncio.shield(self._refresh_task)
    
    async def _fetch_and_merge(self) -> Optional[int]:
        self.stats["refreshes"] += 1
        try:
            chain_nonce = await self.provider.get_transaction_count(self.address, "pending")
        except Exception as e:
            logger.warning(f"Nonce refresh failed for {self.address}: {e}")
            chain_nonce = None
        
        if chain_nonce is None:
            self.stats["refresh_failures"] += 1
            return None
        
        async with self._lock:
            if self._next_nonce is None or self._invalidated:
                self._next_nonce = chain_nonce
                self._invalidated = False
            else:
                self._next_nonce = max(self._next_nonce, chain_nonce)
            self._last_refresh = self._clock()
            logger.debug(f"Nonce for {self.address} synced to {self._next_nonce} (chain {chain_nonce})")
            return self._next_nonce
    
    async def next_nonce(self) -> int:
        """Reserve the next nonce. Raises NonceUnavailableError if none can be determined."""
        if self._refresh_due():
            await self.refresh()
        
        async with self._lock:
            if self._next_nonce is None:
                raise NonceUnavailableError(f"No nonce available for {self.address}")
            if self._invalidated:
                raise NonceUnavailableError(f"Nonce for {self.address} invalidated and chain resync failed")
            nonce = self._next_nonce
            self._next_nonce += 1
            self.stats["nonces_issued"] += 1
            return nonce
    
    def invalidate(self) -> None:
        """Force the next call to resync from the chain, e.g. after a rejected submission."""
        self._invalidated = True
        self.stats["invalidations"] += 1
        logger.info(f"Nonce counter for {self.address} invalidated")
    
    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, "next_nonce": self._next_nonce}
