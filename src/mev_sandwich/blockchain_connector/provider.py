"""Blockchain provider for the request/response side of the chain connection."""
import logging
from typing import Any, Dict, List, Optional

from web3 import AsyncWeb3
from web3.exceptions import TimeExhausted, TransactionNotFound, Web3Exception
from web3.providers import AsyncHTTPProvider

from ..config.settings import settings

logger = logging.getLogger(__name__)


class ChainConfig:
    """Configuration for the target network."""
    
    def __init__(
        self,
        name: str,
        chain_id: int,
        rpc_url: str,
        request_timeout: int = 30,
        native_currency: str = "ETH"
    ):
        self.name = name
        self.chain_id = chain_id
        self.rpc_url = rpc_url
        self.request_timeout = request_timeout
        self.native_currency = native_currency


class BlockchainProvider:
    """
    Async JSON-RPC client for a single EVM chain.
    
    ``get_gas_price``, ``get_block_number`` and ``get_balance`` log and return
    None on RPC errors. Contract calls, code reads and transaction calls raise,
    so each caller can apply its own failure policy.
    """
    
    def __init__(self, config: Optional[ChainConfig] = None, w3: Optional[AsyncWeb3] = None):
        """Initialize the blockchain provider."""
        self.config = config
        self.w3: Optional[AsyncWeb3] = w3
        self._initialized = w3 is not None
    
    async def initialize(self) -> None:
        """Connect to the configured RPC endpoint."""
        if self._initialized:
            return
        
        if self.config is None:
            if not settings.http_endpoint:
                raise ValueError("HTTP_ENDPOINT is not configured")
            self.config = ChainConfig(name="Ethereum", chain_id=settings.chain_id, rpc_url=settings.http_endpoint)
        
        logger.info(f"🔗 Connecting to {self.config.name}...")
        
        provider = AsyncHTTPProvider(
            self.config.rpc_url,
            request_kwargs={"timeout": self.config.request_timeout}
        )
        self.w3 = AsyncWeb3(provider)
        
        if not await self.w3.is_connected():
            logger.error(f"❌ Failed to connect to {self.config.name}")
        else:
            chain_id = await self.w3.eth.chain_id
            if chain_id != self.config.chain_id:
                logger.warning(
                    f"⚠️ Chain ID mismatch for {self.config.name}: "
                    f"expected {self.config.chain_id}, got {chain_id}"
                )
            logger.info(f"✅ Connected to {self.config.name} (chain ID: {chain_id})")
        
        self._initialized = True
    
    async def get_web3(self) -> AsyncWeb3:
        if not self._initialized:
            await self.initialize()
        return self.w3
    
    async def is_connected(self) -> bool:
        try:
            w3 = await self.get_web3()
            return await w3.is_connected()
        except Exception:
            return False
    
    async def get_block_number(self) -> Optional[int]:
        """Get current block number."""
        w3 = await self.get_web3()
        try:
            return await w3.eth.block_number
        except Web3Exception as e:
            logger.error(f"Failed to get block number: {e}")
            return None
    
    async def get_gas_price(self) -> Optional[int]:
        """Get current gas price (in wei)."""
        w3 = await self.get_web3()
        try:
            return await w3.eth.gas_price
        except Web3Exception as e:
            logger.error(f"Failed to get gas price: {e}")
            return None
    
    async def get_balance(self, address: str) -> Optional[int]:
        """Get native balance for an address (in wei)."""
        w3 = await self.get_web3()
        try:
            return await w3.eth.get_balance(address)
        except Web3Exception as e:
            logger.error(f"Failed to get balance for {address}: {e}")
            return None
    
    async def get_transaction(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """Full transaction by hash, or None if the node does not know it (yet)."""
        w3 = await self.get_web3()
        try:
            tx = await w3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return None
        return dict(tx)
    
    async def get_code(self, address: str) -> bytes:
        w3 = await self.get_web3()
        return bytes(await w3.eth.get_code(address))
    
    async def get_transaction_count(self, address: str, block_identifier: str = "pending") -> int:
        w3 = await self.get_web3()
        return await w3.eth.get_transaction_count(address, block_identifier)
    
    async def call_function(self, address: str, abi: List[Dict], fn_name: str, *args: Any) -> Any:
        """Call a view function on a contract."""
        w3 = await self.get_web3()
        contract = w3.eth.contract(address=address, abi=abi)
        return await getattr(contract.functions, fn_name)(*args).call()
    
    async def send_raw_transaction(self, raw_transaction: bytes) -> str:
        """Broadcast a signed transaction and return its hash as a 0x string."""
        w3 = await self.get_web3()
        tx_hash = await w3.eth.send_raw_transaction(raw_transaction)
        return w3.to_hex(tx_hash)
    
    async def wait_for_transaction_receipt(self, tx_hash: str, timeout: float) -> Optional[Dict[str, Any]]:
        """Receipt of a mined transaction, or None if it is not mined within ``timeout`` seconds."""
        w3 = await self.get_web3()
        try:
            receipt = await w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout, poll_latency=1)
        except TimeExhausted:
            return None
        return dict(receipt)
    
    async def get_chain_health(self) -> Dict[str, Any]:
        """Health information for the connected chain."""
        if self.config is None and not self._initialized:
            return {"status": "not_configured", "connected": False}
        
        try:
            is_connected = await self.is_connected()
            block_number = None
            gas_price = None
            
            if is_connected:
                block_number = await self.get_block_number()
                gas_price = await self.get_gas_price()
            
            return {
                "name": self.config.name if self.config else "Unknown",
                "chain_id": self.config.chain_id if self.config else None,
                "status": "healthy" if is_connected else "unhealthy",
                "connected": is_connected,
                "block_number": block_number,
                "gas_price": gas_price
            }
        except Exception as e:
            return {
                "name": self.config.name if self.config else "Unknown",
                "status": "error",
                "connected": False,
                "error": str(e)
            }
    
    async def close(self) -> None:
        """Close the underlying connection."""
        logger.info("🔒 Closing blockchain connection...")
        if self.w3 is not None:
            try:
                # Only the HTTP session-backed provider has a close coroutine
                disconnect = getattr(self.w3.provider, "disconnect", None)
                if disconnect is not None:
                    await disconnect()
            except Exception as e:
                logger.error(f"Error closing connection: {e}")
        self.w3 = None
        self._initialized = False
        logger.info("✅ Blockchain connection closed")
