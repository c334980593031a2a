"""Core types shared by every PartnerMatch component."""

from partnermatch.core.clock import Clock, FixedClock, SystemClock
from partnermatch.core.errors import (
    ConflictReason,
    ErrorCode,
    MatchError,
    OperationFailed,
    OperationResult,
)

__all__ = [
    "Clock",
    "FixedClock",
    "SystemClock",
    "ConflictReason",
    "ErrorCode",
    "MatchError",
    "OperationFailed",
    "OperationResult",
]
