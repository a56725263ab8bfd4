"""
DEX Protocol Math Implementations.

Exact integer constant-product math used to simulate the three legs of a
sandwich on a Uniswap V2 style pair.
"""
from .uniswap_v2_math import SandwichSimulation, UniswapV2Math

__all__ = [
    "SandwichSimulation",
    "UniswapV2Math"
]
