"""Blockchain connector package for the target EVM chain."""
from .provider import BlockchainProvider, ChainConfig

__all__ = [
    "BlockchainProvider",
    "ChainConfig",
]
