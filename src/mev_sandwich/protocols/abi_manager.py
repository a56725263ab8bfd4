"""ABI Manager for protocol contract interactions."""
import logging
from typing import Dict, List, Optional

from .abis import (
    ERC20_ABI,
    SANDWICH_CONTRACT_ABI,
    UNISWAP_V2_FACTORY_ABI,
    UNISWAP_V2_PAIR_ABI
)

logger = logging.getLogger(__name__)


class ABIManager:
    """Manages contract ABIs for protocol interactions."""
    
    def __init__(self):
        """Initialize ABI manager with protocol ABIs."""
        self._abis = {
            "uniswap_v2": {
                "factory": UNISWAP_V2_FACTORY_ABI,
                "pair": UNISWAP_V2_PAIR_ABI,
            },
            "sandwich": SANDWICH_CONTRACT_ABI,
            "erc20": ERC20_ABI
        }
    
    def get_abi(self, protocol: str, contract_type: Optional[str] = None) -> Optional[List[Dict]]:
        """
        Get ABI for a protocol and, for multi-contract protocols, a contract type.
        
        Returns None (and logs a warning) when the ABI is unknown.
        """
        protocol_abis = self._abis.get(protocol.lower())
        
        if not protocol_abis:
            logger.warning(f"Protocol '{protocol}' not found in ABI manager")
            return None
        
        # Single-contract protocols return directly
        if isinstance(protocol_abis, list):
            return protocol_abis
        
        if contract_type:
            contract_abi = protocol_abis.get(contract_type.lower())
            if not contract_abi:
                logger.warning(f"Contract type '{contract_type}' not found for protocol '{protocol}'")
            return contract_abi
        
        logger.warning(f"Contract type required for protocol '{protocol}'")
        return None
    
    def get_factory_abi(self) -> List[Dict]:
        return self.get_abi("uniswap_v2", "factory")
    
    def get_pair_abi(self) -> List[Dict]:
        return self.get_abi("uniswap_v2", "pair")
    
    def get_sandwich_abi(self) -> List[Dict]:
        return self.get_abi("sandwich")
    
    def get_erc20_abi(self) -> List[Dict]:
        return self.get_abi("erc20")


# Global ABI manager instance
abi_manager = ABIManager()
