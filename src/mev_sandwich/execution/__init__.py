"""Execution package: nonce sequencing and sandwich submission."""
from .nonce_manager import (
    NonceManager,
    NonceUnavailableError,
)
from .sandwich_executor import (
    ConfigurationError,
    SandwichExecutor,
    SubmissionError,
)

__all__ = [
    "NonceManager",
    "NonceUnavailableError",
    "ConfigurationError",
    "SandwichExecutor",
    "SubmissionError",
]
