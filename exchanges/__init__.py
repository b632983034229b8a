"""Exchange adapter interface, paper venue and registry."""

from .base import (
    SIDE_LONG,
    SIDE_SHORT,
    Balance,
    ExchangeAdapter,
    OrderResult,
    PositionSnapshot,
    normalize_side,
)
from .paper import PaperExchangeAdapter
from .registry import (
    SUPPORTED_EXCHANGES,
    create_adapter,
    register_adapter,
    unregister_adapter,
)

__all__ = [
    "SIDE_LONG",
    "SIDE_SHORT",
    "Balance",
    "ExchangeAdapter",
    "OrderResult",
    "PositionSnapshot",
    "normalize_side",
    "PaperExchangeAdapter",
    "SUPPORTED_EXCHANGES",
    "create_adapter",
    "register_adapter",
    "unregister_adapter",
]
