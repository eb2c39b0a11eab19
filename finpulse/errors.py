from __future__ import annotations


class InvalidInput(ValueError):
    """Raised for caller mistakes: bad granularity, count, month, limit or currency."""


class UnsupportedCurrency(InvalidInput):
    def __init__(self, currency: str) -> None:
        super().__init__(f"Unsupported currency: {currency}")
        self.currency = currency


class UpstreamUnavailable(RuntimeError):
    """Raised when an external dependency failed and no usable fallback exists."""


class RateProviderUnavailable(UpstreamUnavailable):
    """Raised when a rate provider cannot fetch live rates."""


class ConcurrencyConflict(RuntimeError):
    """Raised by a store when a concurrent writer already changed the same row."""
