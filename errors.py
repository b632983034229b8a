"""Exception taxonomy for the risk-and-execution engine."""

from __future__ import annotations

from typing import Any, Optional


class AutoTraderError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(AutoTraderError):
    """Invalid trader configuration; raised before an engine is built."""


class GuardrailRejection(AutoTraderError):
    """A pre-trade or pre-update validation rejected the decision."""


class StopRatchetViolation(GuardrailRejection):
    """A stop-loss update would loosen the cached stop."""

    def __init__(self, symbol: str, side: str, previous: float, proposed: float):
        self.symbol = symbol
        self.side = side
        self.previous = previous
        self.proposed = proposed
        super().__init__(
            f"{symbol} {side}: stop-loss may only tighten "
            f"(current {previous:.4f}, proposed {proposed:.4f})"
        )


class ExchangeError(AutoTraderError):
    """Venue-level or network failure reported by an exchange adapter."""


class MarketDataUnavailable(AutoTraderError):
    """Market data or a required indicator is missing / not ready."""


class UnknownActionError(AutoTraderError):
    """Decision carries an action tag the executor does not handle."""


class DecisionSourceError(AutoTraderError):
    """The decision source failed; may carry whatever partial bundle it produced."""

    def __init__(self, message: str, bundle: Optional[Any] = None):
        super().__init__(message)
        self.bundle = bundle


class CandidatePoolError(AutoTraderError):
    """Candidate-symbol pool could not be fetched or parsed."""
