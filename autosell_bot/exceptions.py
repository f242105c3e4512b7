"""
Custom exception classes for the auto-sell engine.

Provides typed exceptions so each failure is handled at the right level:
transient feed/venue problems skip a tick, execution errors leave the
position untouched, invariant violations freeze a single position.
"""

from enum import Enum


class BotException(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self):
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} [{ctx_str}]"
        return self.message


class FeedUnavailable(BotException):
    """Price could not be fetched this tick (timeout, transport error, no quote)."""
    pass


class ResolutionUnknown(BotException):
    """Venue for a mint could not be determined this tick."""
    pass


class ExecutionErrorKind(str, Enum):
    TIMEOUT = "TIMEOUT"
    SLIPPAGE_EXCEEDED = "SLIPPAGE_EXCEEDED"
    INSUFFICIENT_LIQUIDITY = "INSUFFICIENT_LIQUIDITY"
    REJECTED = "REJECTED"


class ExecutionError(BotException):
    """Raised when a trade was not confirmed. The position must stay untouched."""

    def __init__(self, kind: ExecutionErrorKind, message: str = "", **context):
        super().__init__(message or kind.value, kind=kind.value, **context)
        self.kind = kind


class TransientSubmitError(BotException):
    """Network-level submit failure, safe to retry."""
    pass


class DuplicatePosition(BotException):
    """A position is already open for this (mint, wallet) pair."""
    pass


class PositionNotFound(BotException):
    """No open position for this (mint, wallet) pair."""
    pass


class InvariantViolation(BotException):
    """Oversell or quantity underflow. Fatal to the owning position only."""
    pass


class ConfigurationException(BotException):
    """Raised when configuration is invalid."""
    pass


class StateException(BotException):
    """Raised when the engine is driven from an invalid state."""
    pass
