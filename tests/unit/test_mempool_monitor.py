"""
Unit tests for the Mempool Monitor.

The websocket is not opened; frames are fed straight into handle_message.
"""
import asyncio
import json
from unittest.mock import AsyncMock, Mock

import pytest
from hexbytes import HexBytes

from mev_sandwich.mev_detection import mempool_monitor
from mev_sandwich.mev_detection.mempool_monitor import MempoolMonitor

GWEI = 10 ** 9
ROUTER = "0x7a250d5630B4cF539739dF2C5dAcb4c659F2488D"


def notification(tx_hash: str) -> str:
    return json.dumps({
        "jsonrpc": "2.0",
        "method": "eth_subscription",
        "params": {"subscription": "0xabc", "result": tx_hash}
    })


def web3_tx(tx_hash: str, gas_price: int = 40 * GWEI, to: str = ROUTER):
    return {
        "hash": HexBytes(tx_hash),
        "to": to,
        "from": "0x2222222222222222222222222222222222222222",
        "value": 10 ** 18,
        "gasPrice": gas_price,
        "gas": 250_000,
        "nonce": 3,
        "input": HexBytes("0x7ff36ab5")
    }


@pytest.fixture
def provider():
    provider = Mock()
    provider.get_transaction = AsyncMock(side_effect=lambda h: web3_tx(h))
    return provider


@pytest.fixture
def monitor(provider):
    return MempoolMonitor(provider, ws_endpoint="ws://localhost:8546", max_gas_price=100 * GWEI)


class TestMessageHandling:
    """Test websocket frame parsing."""
    
    @pytest.mark.asyncio
    async def test_subscription_confirmation(self, monitor):
        monitor.reconnect_attempts = 3
        
        assert monitor.handle_message(json.dumps({"jsonrpc": "2.0", "id": 1, "result": "0xabc"})) is None
        
        assert monitor.subscription_id == "0xabc"
        assert monitor.is_connected
        assert monitor.reconnect_attempts == 0
    
    @pytest.mark.asyncio
    async def test_new_hash_is_fetched_once(self, monitor, provider):
        tx_hash = "0x" + "ab" * 32
        
        assert monitor.handle_message(notification(tx_hash)) == tx_hash
        assert monitor.handle_message(notification(tx_hash)) is None
        await asyncio.gather(*list(monitor._tx_tasks))
        
        provider.get_transaction.assert_awaited_once_with(tx_hash)
        assert monitor.stats["hashes_received"] == 1
        assert monitor.stats["transactions_processed"] == 1
    
    @pytest.mark.asyncio
    async def test_garbage_is_ignored(self, monitor):
        assert monitor.handle_message("not json") is None
        assert monitor.handle_message(json.dumps({"jsonrpc": "2.0", "method": "other"})) is None
    
    def test_processed_hashes_are_pruned(self, monitor, monkeypatch):
        monkeypatch.setattr(mempool_monitor, "MAX_PROCESSED_HASHES", 10)
        monkeypatch.setattr(mempool_monitor, "PRUNE_BATCH", 4)
        
        for n in range(11):
            assert monitor._mark_processed(f"0x{n:02x}")
        
        assert len(monitor.processed_hashes) == 7
        assert "0x00" not in monitor.processed_hashes
        assert "0x0a" in monitor.processed_hashes


class TestTransactionProcessing:
    """Test fetching and filtering pending transactions."""
    
    @pytest.mark.asyncio
    async def test_handlers_receive_pending_transaction(self, monitor):
        sync_handler = Mock()
        async_handler = AsyncMock()
        monitor.add_transaction_handler(sync_handler)
        monitor.add_transaction_handler(async_handler)
        
        tx = await monitor.process_transaction_hash("0x" + "cd" * 32)
        
        assert tx.hash == "0x" + "cd" * 32
        assert tx.to == ROUTER
        assert tx.data == bytes.fromhex("7ff36ab5")
        sync_handler.assert_called_once_with(tx)
        async_handler.assert_awaited_once_with(tx)
    
    @pytest.mark.asyncio
    async def test_skips_gas_above_maximum(self, monitor, provider):
        provider.get_transaction.side_effect = lambda h: web3_tx(h, gas_price=150 * GWEI)
        handler = Mock()
        monitor.add_transaction_handler(handler)
        
        assert await monitor.process_transaction_hash("0x" + "cd" * 32) is None
        
        handler.assert_not_called()
        assert monitor.stats["transactions_skipped_gas"] == 1
    
    @pytest.mark.asyncio
    async def test_skips_contract_creation_and_missing(self, monitor, provider):
        provider.get_transaction.side_effect = lambda h: web3_tx(h, to=None)
        assert await monitor.process_transaction_hash("0x01") is None
        
        provider.get_transaction.side_effect = None
        provider.get_transaction.return_value = None
        assert await monitor.process_transaction_hash("0x02") is None
    
    @pytest.mark.asyncio
    async def test_fetch_failure_is_counted(self, monitor, provider):
        provider.get_transaction.side_effect = ConnectionError("rpc down")
        
        assert await monitor.process_transaction_hash("0x01") is None
        assert monitor.stats["fetch_failures"] == 1
    
    @pytest.mark.asyncio
    async def test_handler_error_does_not_stop_others(self, monitor):
        failing = Mock(side_effect=RuntimeError("boom"))
        healthy = Mock()
        monitor.add_transaction_handler(failing)
        monitor.add_transaction_handler(healthy)
        
        await monitor.process_transaction_hash("0x" + "cd" * 32)
        
        healthy.assert_called_once()


class TestConnection:
    """Test lifecycle and reconnect policy."""
    
    def test_backoff_grows_geometrically(self, provider):
        monitor = MempoolMonitor(provider, ws_endpoint="ws://x", reconnect_delay=2.0)
        
        assert monitor.reconnect_backoff(1) == 2.0
        assert monitor.reconnect_backoff(2) == 3.0
        assert monitor.reconnect_backoff(3) == 4.5
    
    @pytest.mark.asyncio
    async def test_start_requires_endpoint(self, provider, monkeypatch):
        monkeypatch.setattr(mempool_monitor.settings, "ws_endpoint", None)
        monitor = MempoolMonitor(provider)
        
        with pytest.raises(ValueError):
            await monitor.start()
        assert not monitor.is_running
    
    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, provider):
        monitor = MempoolMonitor(provider, ws_endpoint="ws://x", max_reconnect_attempts=2, reconnect_delay=0.0)
        monitor._subscribe = AsyncMock(side_effect=ConnectionError("refused"))
        monitor.is_running = True
        
        await monitor._run()
        
        assert not monitor.is_running
        assert monitor._subscribe.await_count == 3
        assert monitor.stats["reconnects"] == 2
