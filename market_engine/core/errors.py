"""Custom exceptions for market engine operations."""

from __future__ import annotations


class MarketEngineError(Exception):
    """Base error for market engine failures."""


class UnknownInstrumentError(MarketEngineError, KeyError):
    """Raised when a symbol is not part of the configured instrument universe."""

    def __init__(self, symbol: str) -> None:
        super().__init__(symbol)
        self.symbol = symbol

    def __str__(self) -> str:
        return f"Unknown instrument: {self.symbol}"


class InvalidTransitionError(MarketEngineError):
    """Raised when the transport state machine is asked for an illegal move."""


class TransportError(MarketEngineError, ConnectionError):
    """Raised by push transports when a connection cannot be established."""
