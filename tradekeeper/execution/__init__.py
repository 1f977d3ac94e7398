"""
Execution module.

Contains the exit price gate consulted before any position close.
"""

from tradekeeper.execution.price_gate import (
    PriceContext,
    PriceGate,
    PriceGateResult,
    fetch_validated_exit_price,
    validate_exit_price,
)

__all__ = [
    "PriceContext",
    "PriceGate",
    "PriceGateResult",
    "fetch_validated_exit_price",
    "validate_exit_price",
]
