"""Unit tests for the nonce manager."""
import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from mev_sandwich.execution.nonce_manager import NonceManager, NonceUnavailableError

ACCOUNT = "0x3333333333333333333333333333333333333333"


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now
    
    def __call__(self) -> float:
        return self.now


def make_provider(nonce=5):
    provider = Mock()
    provider.get_transaction_count = AsyncMock(return_value=nonce)
    return provider


class TestNonceManager:
    """Test nonce sequencing."""
    
    @pytest.mark.asyncio
    async def test_first_call_syncs_from_chain(self):
        provider = make_provider(nonce=5)
        manager = NonceManager(provider, ACCOUNT, clock=FakeClock())
        
        assert await manager.next_nonce() == 5
        assert await manager.next_nonce() == 6
        provider.get_transaction_count.assert_awaited_once_with(ACCOUNT, "pending")
    
    @pytest.mark.asyncio
    async def test_concurrent_dispatches_get_distinct_consecutive_nonces(self):
        """N concurrent callers see exactly base..base+N-1."""
        provider = make_provider(nonce=40)
        
        async def slow_count(address, block):
            await asyncio.sleep(0.01)
            return 40
        provider.get_transaction_count = AsyncMock(side_effect=slow_count)
        manager = NonceManager(provider, ACCOUNT, clock=FakeClock())
        
        nonces = await asyncio.gather(*(manager.next_nonce() for _ in range(25)))
        
        assert sorted(nonces) == list(range(40, 65))
        assert provider.get_transaction_count.await_count == 1
    
    @pytest.mark.asyncio
    async def test_refresh_after_interval_never_goes_backwards(self):
        """A lagging chain count does not rewind the local counter."""
        clock = FakeClock()
        provider = make_provider(nonce=10)
        manager = NonceManager(provider, ACCOUNT, refresh_interval=30, clock=clock)
        
        for _ in range(3):
            await manager.next_nonce()
        clock.now += 31
        
        assert await manager.next_nonce() == 13
        assert provider.get_transaction_count.await_count == 2
    
    @pytest.mark.asyncio
    async def test_refresh_moves_forward_to_chain(self):
        """Transactions sent from elsewhere push the counter forward."""
        clock = FakeClock()
        provider = make_provider(nonce=10)
        manager = NonceManager(provider, ACCOUNT, refresh_interval=30, clock=clock)
        
        await manager.next_nonce()
        provider.get_transaction_count.return_value = 20
        clock.now += 31
        
        assert await manager.next_nonce() == 20
    
    @pytest.mark.asyncio
    async def test_invalidate_resyncs_from_chain(self):
        """After a failed submission the chain's count wins, even if lower."""
        provider = make_provider(nonce=10)
        manager = NonceManager(provider, ACCOUNT, clock=FakeClock())
        
        await manager.next_nonce()
        await manager.next_nonce()
        manager.invalidate()
        provider.get_transaction_count.return_value = 11
        
        assert await manager.next_nonce() == 11
        assert manager.stats["invalidations"] == 1
    
    @pytest.mark.asyncio
    async def test_fails_closed_without_any_nonce(self):
        provider = make_provider()
        provider.get_transaction_count.side_effect = ConnectionError("node down")
        manager = NonceManager(provider, ACCOUNT, clock=FakeClock())
        
        with pytest.raises(NonceUnavailableError):
            await manager.next_nonce()
        assert manager.current is None
        assert manager.stats["refresh_failures"] == 1
    
    @pytest.mark.asyncio
    async def test_keeps_local_counter_when_refresh_fails(self):
        clock = FakeClock()
        provider = make_provider(nonce=3)
        manager = NonceManager(provider, ACCOUNT, refresh_interval=30, clock=clock)
        
        await manager.next_nonce()
        provider.get_transaction_count.side_effect = ConnectionError("node down")
        clock.now += 31
        
        assert await manager.next_nonce() == 4
    
    @pytest.mark.asyncio
    async def test_invalidated_counter_is_not_reused_when_resync_fails(self):
        """A nonce known to be bad is withheld until the chain answers again."""
        provider = make_provider(nonce=5)
        manager = NonceManager(provider, ACCOUNT, clock=FakeClock())
        
        assert await manager.next_nonce() == 5
        manager.invalidate()
        provider.get_transaction_count.side_effect = ConnectionError("node down")
        
        with pytest.raises(NonceUnavailableError):
            await manager.next_nonce()
        assert manager.current == 6
        
        provider.get_transaction_count.side_effect = None
        provider.get_transaction_count.return_value = 5
        
        assert await manager.next_nonce() == 5
    
    @pytest.mark.asyncio
    async def test_timed_out_nonce_is_refilled_after_invalidate(self):
        """A dropped transaction leaves a gap that the chain count closes."""
        provider = make_provider(nonce=7)
        manager = NonceManager(provider, ACCOUNT, clock=FakeClock())
        
        assert await manager.next_nonce() == 7
        assert await manager.next_nonce() == 8
        provider.get_transaction_count.return_value = 7
        manager.invalidate()
        
        assert await manager.next_nonce() == 7
