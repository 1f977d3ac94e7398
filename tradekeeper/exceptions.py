"""
Custom exception hierarchy for the trade bookkeeping engine.

Hierarchy:

    TradeKeeperError (base)
    ├── OperationalError   : transient/retryable (exchange, network, timeouts, store)
    │   ├── APIError       : exchange returned an error
    │   │   ├── AuthenticationError
    │   │   └── RateLimitError
    │   ├── ExchangeTimeoutError
    │   ├── StoreError
    │   └── SentimentUnavailableError
    ├── DataError          : bad payload or bad record, skip and continue
    │   ├── ValidationError
    │   ├── MalformedPayloadError
    │   ├── InsufficientDataError
    │   └── RegimeComputationError
    └── InvariantError     : safety violation, halt immediately

Rules:
    - OperationalError: catch, log, let the next scheduled tick retry
    - DataError: catch, log, skip this item, continue loop
    - InvariantError: catch at the top level and stop the engine
    - Everything else (AttributeError, TypeError, etc.): let crash.
"""
from typing import Any, Optional


class TradeKeeperError(Exception):
    """Base exception for all engine errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(TradeKeeperError):
    """Transient/retryable error: exchange API, network, timeouts.

    Treatment: catch, log, continue; the next polling tick is the retry.
    """
    pass


class APIError(OperationalError):
    """API-specific operational error (exchange returned error)."""
    pass


class AuthenticationError(APIError):
    """Raised when API authentication fails."""
    pass


class RateLimitError(APIError):
    """Raised when API rate limit is exceeded."""
    pass


class ExchangeTimeoutError(OperationalError):
    """An exchange call exceeded its deadline. Never retried inline."""
    pass


class StoreError(OperationalError):
    """Entity store read/write failed."""
    pass


class SentimentUnavailableError(OperationalError):
    """Optional sentiment index could not be fetched."""
    pass


# ============ DATA (bad input, skip) ============

class DataError(TradeKeeperError):
    """Bad data: malformed payload, insufficient history, invalid record.

    Treatment: catch, log, skip this item, continue loop.
    """
    pass


class ValidationError(DataError):
    """Raised when data validation fails."""
    pass


class MalformedPayloadError(DataError):
    """Exchange payload did not match the expected shape."""

    def __init__(self, message: str, payload: Any = None):
        super().__init__(message)
        self.payload = payload


class InsufficientDataError(DataError):
    """Not enough valid candles to classify the market."""

    def __init__(self, message: str, available: int = 0, required: int = 0):
        super().__init__(message)
        self.available = available
        self.required = required


class RegimeComputationError(DataError):
    """Regime computation failed; carries the neutral fallback snapshot.

    The fallback is usable by callers (non-blocking); the original error is
    chained as ``__cause__``.
    """

    def __init__(self, message: str, fallback: Optional[Any] = None):
        super().__init__(message)
        self.fallback = fallback


# ============ INVARIANT (safety violation, halt) ============

class InvariantError(TradeKeeperError):
    """Safety invariant violated.

    Treatment: stop the engine. Never catch and continue.
    """
    pass
